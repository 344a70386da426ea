from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import Callable, Collection, Mapping
from typing import Any

from taskforge.errors import FatalWorkerError, ResourceConflictError, RoutingError
from taskforge.locks import ResourceLockTable
from taskforge.models import (
    FailureReason,
    Outcome,
    OutcomeStatus,
    Plan,
    Task,
    TaskState,
    WorkerState,
)
from taskforge.router import Router
from taskforge.specialists.base import SpecialistAgent

logger = logging.getLogger(__name__)

SupervisorEventHook = Callable[[dict[str, Any]], None]
ContextFactory = Callable[[Task], dict[str, Any]]


class ExecutionSupervisor:
    """Drives a plan wave by wave.

    Within a wave every routed task runs as its own asyncio task; the wave
    ends only when all of them are terminal and their resource claims are
    released.  Per-task failures become FAILED outcomes and never escape.
    """

    def __init__(
        self,
        router: Router,
        specialists: Mapping[str, SpecialistAgent],
        *,
        lock_table: ResourceLockTable | None = None,
        task_timeout_seconds: float = 300.0,
        max_parallel_tasks: int = 0,
        event_hook: SupervisorEventHook | None = None,
    ) -> None:
        self.router = router
        self.specialists = specialists
        self.locks = lock_table or ResourceLockTable()
        self.task_timeout_seconds = task_timeout_seconds
        self.max_parallel_tasks = max(0, int(max_parallel_tasks))
        self.event_hook = event_hook
        self.incidents: list[dict[str, Any]] = []

    def _emit(self, event: dict[str, Any]) -> None:
        if self.event_hook:
            self.event_hook(event)

    def _transition(self, task: Task, state: TaskState) -> None:
        logger.debug("Task %s: %s -> %s", task.id, task.state.value, state.value)
        task.state = state
        if state == TaskState.RUNNING:
            task.started_at = time.monotonic()
        if state.terminal:
            task.finished_at = time.monotonic()
        self._emit({"event": "task_state", "task_id": task.id, "state": state.value})

    def _fail(
        self,
        task: Task,
        *,
        reason: FailureReason,
        detail: str,
        worker_id: str | None = None,
        status: OutcomeStatus = OutcomeStatus.FAILURE,
        retry_count: int = 0,
        worker_state: WorkerState = WorkerState.IDLE,
        payload: dict[str, Any] | None = None,
    ) -> Outcome:
        self._transition(task, TaskState.FAILED)
        logger.warning("Task %s failed (%s): %s", task.id, reason.value, detail)
        return Outcome(
            task_id=task.id,
            worker_id=worker_id,
            status=status,
            state=TaskState.FAILED,
            reason=reason,
            detail=detail,
            payload=dict(payload or {}),
            retry_count=retry_count,
            worker_state=worker_state,
            started_at=task.started_at,
            finished_at=task.finished_at,
        )

    def _record_incident(self, kind: str, **details: Any) -> None:
        incident = {"kind": kind, "at": time.time(), **details}
        self.incidents.append(incident)
        self._emit({"event": "incident", **incident})

    # ------------------------------------------------------------------
    # Invocation
    # ------------------------------------------------------------------

    async def _invoke(
        self,
        task: Task,
        worker_id: str,
        agent: SpecialistAgent,
        *,
        context: dict[str, Any],
        retry_count: int,
        semaphore: asyncio.Semaphore | None,
    ) -> Outcome:
        if semaphore is not None:
            async with semaphore:
                return await self._invoke_now(
                    task, worker_id, agent, context=context, retry_count=retry_count
                )
        return await self._invoke_now(
            task, worker_id, agent, context=context, retry_count=retry_count
        )

    async def _invoke_now(
        self,
        task: Task,
        worker_id: str,
        agent: SpecialistAgent,
        *,
        context: dict[str, Any],
        retry_count: int,
    ) -> Outcome:
        self._transition(task, TaskState.RUNNING)
        self._emit({"event": "worker_state", "worker_id": worker_id, "state": "executing"})
        try:
            response = await asyncio.wait_for(
                agent.run(task, context), timeout=self.task_timeout_seconds
            )
        except TimeoutError:
            self._emit({"event": "worker_state", "worker_id": worker_id, "state": "timed_out"})
            return self._fail(
                task,
                reason=FailureReason.TIMED_OUT,
                detail=f"Worker {worker_id} did not return within {self.task_timeout_seconds:g}s",
                worker_id=worker_id,
                retry_count=retry_count,
                worker_state=WorkerState.TIMED_OUT,
            )
        except (FatalWorkerError, asyncio.CancelledError):
            raise
        except Exception as exc:
            return self._fail(
                task,
                reason=FailureReason.WORKER_ERROR,
                detail=f"{type(exc).__name__}: {exc}",
                worker_id=worker_id,
                retry_count=retry_count,
                worker_state=WorkerState.RETURNED,
            )

        self._emit({"event": "worker_state", "worker_id": worker_id, "state": "returned"})
        if not response.ok:
            return self._fail(
                task,
                reason=FailureReason.WORKER_ERROR,
                detail=str(response.payload.get("error") or "Worker reported failure"),
                worker_id=worker_id,
                retry_count=retry_count,
                worker_state=WorkerState.RETURNED,
                payload=response.payload,
            )

        self._transition(task, TaskState.COMPLETED)
        return Outcome(
            task_id=task.id,
            worker_id=worker_id,
            status=OutcomeStatus.SUCCESS,
            state=TaskState.COMPLETED,
            detail=response.content[:4000],
            payload=dict(response.payload),
            retry_count=retry_count,
            worker_state=WorkerState.RETURNED,
            started_at=task.started_at,
            finished_at=task.finished_at,
        )

    # ------------------------------------------------------------------
    # Waves
    # ------------------------------------------------------------------

    def _claim_wave(self, tasks: list[Task]) -> ResourceConflictError | None:
        for task in tasks:
            try:
                self.locks.acquire(task.id, task.resources)
            except ResourceConflictError as exc:
                return exc
        return None

    async def _dispatch(
        self,
        routed: list[tuple[Task, str, SpecialistAgent]],
        *,
        context_for: ContextFactory | None,
        retry_counts: Mapping[str, int],
    ) -> dict[str, Outcome]:
        semaphore = (
            asyncio.Semaphore(self.max_parallel_tasks) if self.max_parallel_tasks > 0 else None
        )
        jobs: dict[str, asyncio.Task[Outcome]] = {}
        for task, worker_id, agent in routed:
            jobs[task.id] = asyncio.create_task(
                self._invoke(
                    task,
                    worker_id,
                    agent,
                    context=context_for(task) if context_for else {},
                    retry_count=retry_counts.get(task.id, 0),
                    semaphore=semaphore,
                ),
                name=f"taskforge:{task.id}",
            )

        fatal: dict[str, FatalWorkerError] = {}
        unexpected: BaseException | None = None
        pending: set[asyncio.Task[Outcome]] = set(jobs.values())
        while pending:
            done, pending = await asyncio.wait(pending, return_when=asyncio.FIRST_EXCEPTION)
            for job in done:
                if job.cancelled():
                    continue
                error = job.exception()
                if isinstance(error, FatalWorkerError):
                    fatal[job.get_name().removeprefix("taskforge:")] = error
                elif error is not None and unexpected is None:
                    unexpected = error
            if (fatal or unexpected is not None) and pending:
                for job in pending:
                    job.cancel()
                # Claims stay held until every cancelled sibling has stopped.
                await asyncio.gather(*pending, return_exceptions=True)
                pending = set()
        if unexpected is not None:
            raise unexpected

        outcomes: dict[str, Outcome] = {}
        by_id = {task.id: (task, worker_id) for task, worker_id, _agent in routed}
        for task_id, job in jobs.items():
            task, worker_id = by_id[task_id]
            if task_id in fatal:
                self._record_incident(
                    "fatal_worker_error", task_id=task_id, error=str(fatal[task_id])
                )
                outcomes[task_id] = self._fail(
                    task,
                    reason=FailureReason.WORKER_ERROR,
                    detail=f"Fatal worker error: {fatal[task_id]}",
                    worker_id=worker_id,
                    retry_count=retry_counts.get(task_id, 0),
                    worker_state=WorkerState.RETURNED,
                )
            elif job.cancelled():
                self._record_incident("cancelled", task_id=task_id)
                outcomes[task_id] = self._fail(
                    task,
                    reason=FailureReason.CANCELLED,
                    detail="Cancelled after a fatal error in the same wave",
                    worker_id=worker_id,
                    retry_count=retry_counts.get(task_id, 0),
                )
            else:
                outcomes[task_id] = job.result()
        return outcomes

    async def _run_wave(
        self,
        plan: Plan,
        wave_index: int,
        wave: list[str],
        outcomes: dict[str, Outcome],
        *,
        context_for: ContextFactory | None,
        retry_counts: Mapping[str, int],
    ) -> None:
        logger.info("Wave %d: %d tasks", wave_index, len(wave))
        self._emit({"event": "wave_started", "wave": wave_index, "tasks": list(wave)})

        ready: list[Task] = []
        for task_id in wave:
            task = plan.task(task_id)
            task.state = TaskState.PENDING
            blocked = [dep for dep in task.depends_on if not outcomes[dep].completed]
            if blocked:
                outcomes[task_id] = self._fail(
                    task,
                    reason=FailureReason.UPSTREAM_FAILURE,
                    detail="Blocked by failed dependencies: " + ", ".join(blocked),
                    retry_count=retry_counts.get(task_id, 0),
                )
                continue
            ready.append(task)

        try:
            conflict = self._claim_wave(ready)
            if conflict is not None:
                self._record_incident(
                    "resource_conflict",
                    wave=wave_index,
                    task_id=conflict.task_id,
                    holder_id=conflict.holder_id,
                    resource=conflict.resource,
                )
                for task in ready:
                    outcomes[task.id] = self._fail(
                        task,
                        reason=FailureReason.RESOURCE_CONFLICT,
                        detail=str(conflict),
                        retry_count=retry_counts.get(task.id, 0),
                    )
                return

            routed: list[tuple[Task, str, SpecialistAgent]] = []
            for task in ready:
                self._transition(task, TaskState.ROUTING)
                try:
                    worker_id = self.router.route(task)
                except RoutingError as exc:
                    outcomes[task.id] = self._fail(
                        task,
                        reason=FailureReason(exc.reason),
                        detail=str(exc),
                        status=OutcomeStatus.ROUTING_ERROR,
                        retry_count=retry_counts.get(task.id, 0),
                    )
                    continue
                agent = self.specialists.get(worker_id)
                if agent is None:
                    outcomes[task.id] = self._fail(
                        task,
                        reason=FailureReason.WORKER_UNAVAILABLE,
                        detail=f"No runtime agent registered for worker {worker_id}",
                        worker_id=worker_id,
                        retry_count=retry_counts.get(task.id, 0),
                    )
                    continue
                self._emit({"event": "worker_state", "worker_id": worker_id, "state": "assigned"})
                routed.append((task, worker_id, agent))

            outcomes.update(
                await self._dispatch(routed, context_for=context_for, retry_counts=retry_counts)
            )
        finally:
            for task in ready:
                self.locks.release(task.id)
            self._emit({"event": "wave_finished", "wave": wave_index})

    async def execute(
        self,
        plan: Plan,
        *,
        context_for: ContextFactory | None = None,
    ) -> list[Outcome]:
        outcomes: dict[str, Outcome] = {}
        for wave_index, wave in enumerate(plan.waves):
            await self._run_wave(
                plan,
                wave_index,
                wave,
                outcomes,
                context_for=context_for,
                retry_counts={},
            )
        return [outcomes[task_id] for task_id in plan.ordered_ids()]

    async def redispatch(
        self,
        plan: Plan,
        task_ids: Collection[str],
        previous: Mapping[str, Outcome],
        *,
        context_for: ContextFactory | None = None,
    ) -> list[Outcome]:
        """Re-run *task_ids* in plan order; other tasks keep their previous outcome."""
        outcomes: dict[str, Outcome] = dict(previous)
        selected = set(task_ids)
        retry_counts = {
            task_id: previous[task_id].retry_count + 1
            for task_id in selected
            if task_id in previous
        }
        for wave_index, wave in enumerate(plan.waves):
            subset = [task_id for task_id in wave if task_id in selected]
            if not subset:
                continue
            await self._run_wave(
                plan,
                wave_index,
                subset,
                outcomes,
                context_for=context_for,
                retry_counts=retry_counts,
            )
        return [outcomes[task_id] for task_id in plan.ordered_ids() if task_id in selected]
