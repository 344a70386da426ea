from __future__ import annotations

import json
from dataclasses import dataclass, field
from typing import Any

from taskforge.backends.base import AgentBackend
from taskforge.models import Task, Worker

FAILURE_STATUSES = {"failure", "failed", "error"}


@dataclass(slots=True)
class SpecialistResponse:
    worker_id: str
    content: str
    payload: dict[str, Any] = field(default_factory=dict)
    ok: bool = True
    metadata: dict[str, Any] = field(default_factory=dict)


def extract_json_objects(raw_text: str) -> list[dict[str, Any]]:
    payloads: list[dict[str, Any]] = []
    for raw_line in raw_text.splitlines():
        line = raw_line.strip()
        if not line:
            continue
        if not (line.startswith("{") and line.endswith("}")):
            continue
        try:
            parsed = json.loads(line)
        except json.JSONDecodeError:
            continue
        if isinstance(parsed, dict):
            payloads.append(parsed)
    return payloads


class SpecialistAgent:
    """Runtime side of a registry worker: turns a task into one backend call."""

    fallback_prompt: str = "You are a software specialist."

    def __init__(self, worker: Worker, backend: AgentBackend, *, model: str | None = None) -> None:
        self.worker = worker
        self.backend = backend
        self.model = model
        self.system_prompt = (worker.prompt or self.fallback_prompt).strip()

    @property
    def worker_id(self) -> str:
        return self.worker.id

    def build_instruction(self, task: Task, context: dict[str, Any]) -> str:
        instruction = task.description
        requirement = context.get("requirement")
        diagnostics = context.get("diagnostics")
        if requirement:
            instruction = (
                f"{instruction}\n\nOriginal requirement:\n{requirement}"
            )
        if diagnostics:
            instruction = (
                f"{instruction}\n\nFailing checks:\n"
                f"{json.dumps(diagnostics, ensure_ascii=False, indent=2)}"
            )
        return instruction

    @staticmethod
    def _merge_payload(content: str) -> tuple[dict[str, Any], bool]:
        payload: dict[str, Any] = {}
        ok = True
        for item in extract_json_objects(content):
            status = item.get("status")
            if isinstance(status, str) and status.lower() in FAILURE_STATUSES:
                ok = False
            payload.update(item)
        return payload, ok

    async def run(self, task: Task, context: dict[str, Any] | None = None) -> SpecialistResponse:
        run_context: dict[str, Any] = {
            "worker": self.worker.id,
            "task": task.to_dict(),
        }
        if context:
            run_context.update(context)
        if self.model:
            run_context["model"] = self.model

        output = await self.backend.collect(
            self.system_prompt, self.build_instruction(task, run_context), run_context
        )
        content = output.strip()
        payload, ok = self._merge_payload(content)
        return SpecialistResponse(
            worker_id=self.worker.id,
            content=content,
            payload=payload,
            ok=ok,
            metadata={"task_id": task.id, "model": self.model},
        )
