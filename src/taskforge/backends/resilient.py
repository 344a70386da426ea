from __future__ import annotations

import asyncio
import logging
from collections.abc import AsyncIterator, Callable
from dataclasses import dataclass
from typing import Any

from taskforge.backends.base import AgentBackend, BackendExecutionError, BackendTimeoutError

logger = logging.getLogger(__name__)

BackendEventHook = Callable[[dict[str, Any]], None]


@dataclass(slots=True)
class RetryPolicy:
    max_retries: int = 1
    backoff_seconds: float = 0.5
    timeout_seconds: float = 90.0

    @property
    def attempts(self) -> int:
        return max(0, self.max_retries) + 1

    def delay_for(self, attempt: int) -> float:
        """Exponential backoff before retry number *attempt* (the first try waits 0)."""
        if attempt <= 0:
            return 0.0
        return self.backoff_seconds * (2 ** (attempt - 1))


@dataclass(slots=True, frozen=True)
class FailedAttempt:
    backend: str
    attempt: int
    error: str
    retriable: bool


class ResilientBackend(AgentBackend):
    """Runs a worker invocation against an ordered backend chain.

    Each backend gets ``retry_policy.attempts`` tries, each bounded by
    ``retry_policy.timeout_seconds``. A non-retriable error moves straight
    to the next backend. Output is buffered so a failed attempt never leaks
    partial text to the worker.
    """

    name = "resilient"

    def __init__(
        self,
        primary_name: str,
        primary_backend: AgentBackend,
        retry_policy: RetryPolicy,
        fallback_name: str | None = None,
        fallback_backend: AgentBackend | None = None,
        event_hook: BackendEventHook | None = None,
    ) -> None:
        self.retry_policy = retry_policy
        self.event_hook = event_hook
        self.chain: list[tuple[str, AgentBackend]] = [(primary_name, primary_backend)]
        if fallback_backend is not None and fallback_name and fallback_name != primary_name:
            self.chain.append((fallback_name, fallback_backend))
        self.failures: list[FailedAttempt] = []

    @property
    def primary_name(self) -> str:
        return self.chain[0][0]

    def _emit(self, event: dict[str, Any]) -> None:
        if self.event_hook:
            self.event_hook(event)

    def _record_failure(self, backend_name: str, attempt: int, exc: Exception) -> bool:
        retriable = exc.retriable if isinstance(exc, BackendExecutionError) else True
        self.failures.append(FailedAttempt(backend_name, attempt, str(exc), retriable))
        logger.warning("Backend %s attempt %d failed: %s", backend_name, attempt, exc)
        self._emit(
            {
                "event": "backend_attempt_failed",
                "backend": backend_name,
                "attempt": attempt,
                "error": str(exc),
                "retriable": retriable,
            }
        )
        return retriable

    async def _attempt(
        self,
        backend: AgentBackend,
        system_prompt: str,
        user_prompt: str,
        context: dict[str, Any],
    ) -> str:
        timeout = self.retry_policy.timeout_seconds
        try:
            return await asyncio.wait_for(
                backend.collect(system_prompt, user_prompt, context), timeout=timeout
            )
        except TimeoutError as exc:
            raise BackendTimeoutError(
                f"Backend request timed out after {timeout:.1f}s", retriable=True
            ) from exc

    async def _run_backend(
        self,
        backend_name: str,
        backend: AgentBackend,
        system_prompt: str,
        user_prompt: str,
        context: dict[str, Any],
    ) -> str | None:
        for attempt in range(self.retry_policy.attempts):
            delay = self.retry_policy.delay_for(attempt)
            if attempt > 0:
                self._emit(
                    {
                        "event": "backend_retry",
                        "backend": backend_name,
                        "attempt": attempt,
                        "delay_seconds": delay,
                    }
                )
                await asyncio.sleep(delay)
            try:
                output = await self._attempt(backend, system_prompt, user_prompt, context)
            except Exception as exc:
                if not self._record_failure(backend_name, attempt, exc):
                    return None
                continue
            if backend_name != self.primary_name:
                self._emit(
                    {
                        "event": "backend_fallback_success",
                        "backend": backend_name,
                        "attempt": attempt,
                    }
                )
            return output
        return None

    async def execute(
        self,
        system_prompt: str,
        user_prompt: str,
        context: dict[str, Any],
    ) -> AsyncIterator[str]:
        failed_before = len(self.failures)
        for index, (backend_name, backend) in enumerate(self.chain):
            if index > 0:
                logger.info("Failing over to backend %s", backend_name)
                self._emit({"event": "backend_failover_start", "backend": backend_name})
            output = await self._run_backend(
                backend_name, backend, system_prompt, user_prompt, context
            )
            if output is not None:
                yield output
                return

        summary = "; ".join(
            f"{item.backend}[{item.attempt}]: {item.error}"
            for item in self.failures[failed_before:][-6:]
        )
        raise BackendExecutionError(f"All backend attempts failed. {summary}", retriable=False)
