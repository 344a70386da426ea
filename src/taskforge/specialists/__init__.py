from __future__ import annotations

from taskforge.backends.base import AgentBackend
from taskforge.registry import CapabilityRegistry
from taskforge.specialists.base import (
    SpecialistAgent,
    SpecialistResponse,
    extract_json_objects,
)


def build_specialists(
    registry: CapabilityRegistry,
    backend: AgentBackend,
    *,
    model: str | None = None,
) -> dict[str, SpecialistAgent]:
    return {
        worker.id: SpecialistAgent(worker, backend, model=model) for worker in registry.workers
    }


__all__ = [
    "SpecialistAgent",
    "SpecialistResponse",
    "build_specialists",
    "extract_json_objects",
]
