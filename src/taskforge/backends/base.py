from __future__ import annotations

from abc import ABC, abstractmethod
from collections.abc import AsyncIterator
from typing import Any

from taskforge.errors import BackendExecutionError, BackendProcessError, BackendTimeoutError

__all__ = [
    "AgentBackend",
    "BackendExecutionError",
    "BackendProcessError",
    "BackendTimeoutError",
]


class AgentBackend(ABC):
    """Boundary between a specialist worker and whatever executes its prompt."""

    name: str = "agent"

    @abstractmethod
    def execute(
        self,
        system_prompt: str,
        user_prompt: str,
        context: dict[str, Any],
    ) -> AsyncIterator[str]:
        """Stream the agent's textual output for one worker invocation."""

    async def collect(self, system_prompt: str, user_prompt: str, context: dict[str, Any]) -> str:
        chunks: list[str] = []
        async for chunk in self.execute(system_prompt, user_prompt, context):
            chunks.append(chunk)
        return "".join(chunks)
