from __future__ import annotations

import asyncio
import json
import logging
import os
import shlex
import tempfile
from collections.abc import AsyncIterator, Iterator
from contextlib import contextmanager
from pathlib import Path
from typing import Any

from taskforge.backends.base import AgentBackend, BackendExecutionError, BackendProcessError

logger = logging.getLogger(__name__)

SYSTEM_PROMPT_ENV = "TASKFORGE_SYSTEM_PROMPT"


def event_text(event: dict[str, Any]) -> str:
    """Text carried by one JSON event of an agent's stream."""
    content = event.get("content")
    if isinstance(content, str):
        return content
    if isinstance(content, list):
        return "".join(
            block["text"]
            for block in content
            if isinstance(block, dict) and isinstance(block.get("text"), str)
        )
    for key in ("delta", "result"):
        value = event.get(key)
        if isinstance(value, str):
            return value
    # Worker status lines go through whole; the specialist reads them back as JSON.
    if "status" in event:
        return json.dumps(event, ensure_ascii=False) + "\n"
    return ""


class JsonLineDecoder:
    """Turns raw stdout lines into text, joining JSON objects split over lines."""

    def __init__(self) -> None:
        self._pending = ""

    @staticmethod
    def _unbalanced(raw: str) -> bool:
        return raw.count("{") > raw.count("}") or raw.count("[") > raw.count("]")

    def feed(self, line: str) -> str:
        if not line:
            return ""
        candidate = self._pending + line
        try:
            event = json.loads(candidate)
        except json.JSONDecodeError:
            if self._unbalanced(candidate):
                self._pending = candidate
                return ""
            self._pending = ""
            return line + "\n"
        self._pending = ""
        if isinstance(event, dict):
            return event_text(event)
        return candidate + "\n"

    def flush(self) -> str:
        leftover, self._pending = self._pending, ""
        return leftover


@contextmanager
def _system_prompt_file(system_prompt: str) -> Iterator[str]:
    with tempfile.NamedTemporaryFile(mode="w", suffix=".md", encoding="utf-8") as handle:
        handle.write(system_prompt)
        handle.flush()
        yield handle.name


class CommandBackend(AgentBackend):
    """Runs an external agent CLI once per worker invocation.

    The system prompt is handed over through a temporary file named by
    ``TASKFORGE_SYSTEM_PROMPT``; the instruction, followed by the task
    context as JSON, is the last argument.
    """

    def __init__(self, command: str | list[str], working_directory: Path | None = None) -> None:
        self.argv = shlex.split(command) if isinstance(command, str) else list(command)
        if not self.argv:
            raise ValueError("Backend command is empty.")
        self.working_directory = working_directory

    @property
    def name(self) -> str:
        return Path(self.argv[0]).name

    def build_command(self, user_prompt: str) -> list[str]:
        return [*self.argv, user_prompt]

    @staticmethod
    def render_prompt(user_prompt: str, context: dict[str, Any]) -> str:
        if not context:
            return user_prompt
        rendered = json.dumps(context, ensure_ascii=False, indent=2)
        return f"{user_prompt}\n\nContext JSON:\n{rendered}"

    async def _spawn(self, command: list[str], prompt_path: str) -> asyncio.subprocess.Process:
        env = {**os.environ, SYSTEM_PROMPT_ENV: prompt_path}
        logger.debug("Starting agent %s in %s", self.name, self.working_directory or ".")
        try:
            process = await asyncio.create_subprocess_exec(
                *command,
                cwd=str(self.working_directory) if self.working_directory else None,
                env=env,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        except FileNotFoundError as exc:
            raise BackendProcessError(
                f"Agent binary not found: {self.argv[0]}", backend=self.name, retriable=False
            ) from exc
        if process.stdout is None:
            raise BackendProcessError(
                "Agent process has no stdout pipe", backend=self.name, retriable=False
            )
        return process

    async def execute(
        self,
        system_prompt: str,
        user_prompt: str,
        context: dict[str, Any],
    ) -> AsyncIterator[str]:
        command = self.build_command(self.render_prompt(user_prompt, context))
        with _system_prompt_file(system_prompt) as prompt_path:
            process = await self._spawn(command, prompt_path)
            decoder = JsonLineDecoder()
            try:
                async for raw_line in process.stdout:
                    text = decoder.feed(raw_line.decode("utf-8", errors="replace").strip())
                    if text:
                        yield text
                leftover = decoder.flush()
                if leftover:
                    yield leftover
                return_code = await process.wait()
            except asyncio.CancelledError:
                if process.returncode is None:
                    process.kill()
                    await process.wait()
                raise

            if return_code != 0:
                stderr = b"" if process.stderr is None else await process.stderr.read()
                raise BackendExecutionError(
                    f"Agent {self.name} exited with code {return_code}: "
                    + stderr.decode("utf-8", errors="replace").strip(),
                    backend=self.name,
                    exit_code=return_code,
                    retriable=True,
                )
