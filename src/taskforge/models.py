from __future__ import annotations

from dataclasses import asdict, dataclass, field
from datetime import UTC, datetime
from enum import StrEnum
from typing import Any


def utcnow_iso() -> str:
    return datetime.now(UTC).replace(microsecond=0).isoformat()


class PriorityClass(StrEnum):
    SPECIALIST = "specialist"
    GENERALIST = "generalist"


class TaskState(StrEnum):
    PENDING = "pending"
    ROUTING = "routing"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"

    @property
    def terminal(self) -> bool:
        return self in {TaskState.COMPLETED, TaskState.FAILED}


class WorkerState(StrEnum):
    IDLE = "idle"
    ASSIGNED = "assigned"
    EXECUTING = "executing"
    RETURNED = "returned"
    TIMED_OUT = "timed_out"


class OutcomeStatus(StrEnum):
    SUCCESS = "success"
    FAILURE = "failure"
    ROUTING_ERROR = "routing_error"


class FailureReason(StrEnum):
    UPSTREAM_FAILURE = "upstream_failure"
    AMBIGUOUS_ROUTING = "ambiguous_routing"
    ROUTING_CONFLICT = "routing_conflict"
    RESOURCE_CONFLICT = "resource_conflict"
    TIMED_OUT = "timed_out"
    WORKER_ERROR = "worker_error"
    WORKER_UNAVAILABLE = "worker_unavailable"
    CANCELLED = "cancelled"


REMEDIABLE_REASONS = frozenset(
    {FailureReason.TIMED_OUT, FailureReason.WORKER_ERROR, FailureReason.CANCELLED}
)


class CheckCategory(StrEnum):
    STRUCTURAL = "structural"
    CONFORMANCE = "conformance"
    BEHAVIORAL = "behavioral"
    DEPENDENCY_INTEGRITY = "dependency-integrity"


CATEGORY_ORDER = (
    CheckCategory.STRUCTURAL,
    CheckCategory.CONFORMANCE,
    CheckCategory.BEHAVIORAL,
    CheckCategory.DEPENDENCY_INTEGRITY,
)


class CorrectionStrategy(StrEnum):
    MECHANICAL = "mechanical"
    PATTERN_BASED = "pattern_based"
    LOGIC_LEVEL = "logic_level"
    ESCALATED = "escalated"

    def next(self) -> CorrectionStrategy:
        order = list(CorrectionStrategy)
        index = order.index(self)
        return order[min(index + 1, len(order) - 1)]


class CycleStatus(StrEnum):
    RESOLVED = "resolved"
    UNRESOLVED = "unresolved"
    NEEDS_REVIEW = "needs_review"


class Verdict(StrEnum):
    SUCCESS = "SUCCESS"
    PARTIAL = "PARTIAL"
    ESCALATE = "ESCALATE"


@dataclass(slots=True, frozen=True)
class Capability:
    domain: str
    keywords: tuple[str, ...] = ()


@dataclass(slots=True, frozen=True)
class Worker:
    """A registry entry. Immutable once the registry is loaded."""

    id: str
    capabilities: tuple[Capability, ...]
    owns: tuple[str, ...] = ()
    priority: PriorityClass = PriorityClass.SPECIALIST
    aliases: tuple[str, ...] = ()
    prompt: str = ""

    @property
    def domains(self) -> tuple[str, ...]:
        return tuple(capability.domain for capability in self.capabilities)

    def keywords_for(self, domain: str) -> tuple[str, ...]:
        for capability in self.capabilities:
            if capability.domain == domain:
                return capability.keywords
        return ()


@dataclass(slots=True, frozen=True)
class CapabilityRequest:
    domain: str
    worker: str | None = None


@dataclass(slots=True)
class Task:
    id: str
    description: str
    capability: CapabilityRequest
    depends_on: list[str] = field(default_factory=list)
    resources: list[str] = field(default_factory=list)
    state: TaskState = TaskState.PENDING
    started_at: float | None = None
    finished_at: float | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "description": self.description,
            "required_capability": {
                "domain": self.capability.domain,
                "worker": self.capability.worker,
            },
            "depends_on": list(self.depends_on),
            "resources": list(self.resources),
            "state": self.state.value,
        }


@dataclass(slots=True)
class Plan:
    """Tasks of one request plus their wave-ordered execution sequence."""

    tasks: dict[str, Task]
    waves: list[list[str]]
    request: str = ""

    def task(self, task_id: str) -> Task:
        return self.tasks[task_id]

    def wave_of(self, task_id: str) -> int:
        for index, wave in enumerate(self.waves):
            if task_id in wave:
                return index
        raise KeyError(task_id)

    def ordered_ids(self) -> list[str]:
        return [task_id for wave in self.waves for task_id in wave]

    def dependents(self, task_id: str) -> list[str]:
        """Transitive dependents of *task_id* in execution order."""
        found: set[str] = {task_id}
        ordered: list[str] = []
        for candidate in self.ordered_ids():
            if candidate in found:
                continue
            if any(dep in found for dep in self.tasks[candidate].depends_on):
                found.add(candidate)
                ordered.append(candidate)
        return ordered


@dataclass(slots=True, frozen=True)
class ResourceClaim:
    resource: str
    task_id: str
    claimed_at: float


@dataclass(slots=True, frozen=True)
class Outcome:
    task_id: str
    worker_id: str | None
    status: OutcomeStatus
    state: TaskState
    reason: FailureReason | None = None
    detail: str = ""
    payload: dict[str, Any] = field(default_factory=dict)
    retry_count: int = 0
    worker_state: WorkerState = WorkerState.IDLE
    started_at: float | None = None
    finished_at: float | None = None

    @property
    def completed(self) -> bool:
        return self.state == TaskState.COMPLETED

    @property
    def remediable(self) -> bool:
        return self.reason in REMEDIABLE_REASONS

    def to_dict(self) -> dict[str, Any]:
        payload = asdict(self)
        payload["status"] = self.status.value
        payload["state"] = self.state.value
        payload["reason"] = self.reason.value if self.reason else None
        payload["worker_state"] = self.worker_state.value
        return payload


@dataclass(slots=True, frozen=True)
class CheckResult:
    name: str
    category: CheckCategory
    passed: bool
    diagnostics: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "category": self.category.value,
            "passed": self.passed,
            "diagnostics": dict(self.diagnostics),
        }


@dataclass(slots=True)
class CorrectionCycle:
    iteration: int
    strategy: CorrectionStrategy
    category: CheckCategory | None
    status: CycleStatus
    fixes_applied: list[str] = field(default_factory=list)
    checks: list[CheckResult] = field(default_factory=list)
    outcome_updates: list[Outcome] = field(default_factory=list)

    @property
    def failing_checks(self) -> list[CheckResult]:
        return [check for check in self.checks if not check.passed]

    def to_dict(self) -> dict[str, Any]:
        return {
            "iteration": self.iteration,
            "strategy": self.strategy.value,
            "category": self.category.value if self.category else None,
            "status": self.status.value,
            "fixes_applied": list(self.fixes_applied),
            "checks": [check.to_dict() for check in self.checks],
            "outcome_updates": [outcome.task_id for outcome in self.outcome_updates],
        }
