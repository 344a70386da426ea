from __future__ import annotations

from collections.abc import Iterable


class TaskforgeError(RuntimeError):
    """Base class for orchestration failures."""


class ConfigError(TaskforgeError):
    """Raised when the TOML configuration cannot be interpreted."""


class RegistryLoadError(TaskforgeError):
    """Raised at startup when the capability registry is inconsistent."""

    def __init__(self, message: str, *, worker_ids: Iterable[str] = ()) -> None:
        super().__init__(message)
        self.worker_ids = tuple(worker_ids)


class DecompositionError(TaskforgeError):
    """Raised when the decomposition input is malformed."""

    def __init__(self, message: str, *, task_ids: Iterable[str] = ()) -> None:
        super().__init__(message)
        self.task_ids = tuple(task_ids)


class CyclicDependencyError(TaskforgeError):
    """Raised when task dependencies do not form a DAG."""

    def __init__(self, task_ids: Iterable[str], cycle: Iterable[str] = ()) -> None:
        self.task_ids = tuple(sorted(task_ids))
        self.cycle = tuple(cycle)
        detail = " -> ".join(self.cycle) if self.cycle else ", ".join(self.task_ids)
        super().__init__(f"Cyclic dependency between tasks: {detail}")


class RoutingError(TaskforgeError):
    """Per-task routing failure; the task is failed, siblings keep running."""

    reason = "routing_error"

    def __init__(
        self,
        message: str,
        *,
        task_id: str,
        candidates: Iterable[str] = (),
    ) -> None:
        super().__init__(message)
        self.task_id = task_id
        self.candidates = tuple(candidates)


class AmbiguousRoutingError(RoutingError):
    """No routing rule produced exactly one worker."""

    reason = "ambiguous_routing"


class RoutingConflict(RoutingError):
    """The selected worker does not own the resources the task touches."""

    reason = "routing_conflict"

    def __init__(
        self,
        message: str,
        *,
        task_id: str,
        selected: str | None = None,
        owners: dict[str, str] | None = None,
        candidates: Iterable[str] = (),
    ) -> None:
        super().__init__(message, task_id=task_id, candidates=candidates)
        self.selected = selected
        self.owners = dict(owners or {})


class ResourceConflictError(TaskforgeError):
    """Two in-flight tasks claimed overlapping resources.

    The scheduler is expected to make this impossible, so it is surfaced
    rather than retried.
    """

    def __init__(self, *, task_id: str, holder_id: str, resource: str, held: str) -> None:
        super().__init__(
            f"Task {task_id} cannot claim '{resource}': overlaps '{held}' held by {holder_id}"
        )
        self.task_id = task_id
        self.holder_id = holder_id
        self.resource = resource
        self.held = held


class FatalWorkerError(TaskforgeError):
    """Non-recoverable worker failure; siblings in the wave are cancelled."""


class StackDetectionError(TaskforgeError):
    """Raised when no known technology stack is found in a project root."""


class BackendExecutionError(TaskforgeError):
    """An agent backend could not produce output for a worker invocation."""

    def __init__(
        self,
        message: str,
        *,
        backend: str | None = None,
        exit_code: int | None = None,
        retriable: bool = True,
    ) -> None:
        super().__init__(message)
        self.backend = backend
        self.exit_code = exit_code
        self.retriable = retriable


class BackendTimeoutError(BackendExecutionError):
    """A single backend attempt exceeded its timeout."""


class BackendProcessError(BackendExecutionError):
    """The backend process could not be started or exited abnormally."""
