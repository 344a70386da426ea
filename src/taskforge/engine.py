from __future__ import annotations

import logging
from collections.abc import Callable, Iterable, Mapping
from pathlib import Path
from typing import Any

from taskforge.backends import AgentBackend, CommandBackend, ResilientBackend, RetryPolicy
from taskforge.checks import ValidationCheck, default_checks
from taskforge.config import TaskforgeConfig
from taskforge.consolidator import Report, consolidate
from taskforge.correction import SelfCorrectionLoop
from taskforge.decomposition import parse_decomposition
from taskforge.locks import ResourceLockTable
from taskforge.models import Plan, Task, utcnow_iso
from taskforge.registry import CapabilityRegistry, load_registry
from taskforge.router import Router
from taskforge.scheduler import DependencyScheduler
from taskforge.specialists import SpecialistAgent, build_specialists
from taskforge.supervisor import ExecutionSupervisor

logger = logging.getLogger(__name__)

EventHook = Callable[[dict[str, Any]], None]


def _as_tasks(decomposition: Iterable[Task | Mapping[str, Any]]) -> list[Task]:
    items = list(decomposition)
    if all(isinstance(item, Task) for item in items):
        return list(items)  # type: ignore[arg-type]
    return parse_decomposition(
        item.to_dict() if isinstance(item, Task) else item for item in items
    )


class Orchestrator:
    """Single entry point: decomposition in, Report out."""

    def __init__(
        self,
        registry: CapabilityRegistry,
        specialists: Mapping[str, SpecialistAgent],
        *,
        config: TaskforgeConfig | None = None,
        repo_root: Path | None = None,
        checks: Iterable[ValidationCheck] | None = None,
        event_hook: EventHook | None = None,
    ) -> None:
        self.registry = registry
        self.specialists = specialists
        self.config = config or TaskforgeConfig.default()
        self.repo_root = repo_root or Path.cwd()
        self.router = Router(registry)
        self.scheduler = DependencyScheduler()
        self.event_hook = event_hook
        if checks is None:
            checks = default_checks(
                lint_command=self.config.correction.lint_command,
                type_check_command=self.config.correction.type_check_command,
                test_command=self.config.correction.test_command,
            )
        self.checks = list(checks)

    def plan(
        self, decomposition: Iterable[Task | Mapping[str, Any]], *, request: str = ""
    ) -> Plan:
        return self.scheduler.schedule(_as_tasks(decomposition), request=request)

    def _supervisor(self) -> ExecutionSupervisor:
        return ExecutionSupervisor(
            self.router,
            self.specialists,
            lock_table=ResourceLockTable(),
            task_timeout_seconds=self.config.supervisor.task_timeout_seconds,
            max_parallel_tasks=self.config.supervisor.max_parallel_tasks,
            event_hook=self.event_hook,
        )

    async def run(
        self,
        decomposition: Iterable[Task | Mapping[str, Any]],
        *,
        request: str = "",
    ) -> Report:
        started_at = utcnow_iso()
        # Structural errors (cycles, malformed input) propagate before anything runs.
        plan = self.plan(decomposition, request=request)
        supervisor = self._supervisor()
        outcomes = await supervisor.execute(plan)

        correction = self.config.correction
        loop = SelfCorrectionLoop(
            self.checks,
            plan=plan,
            supervisor=supervisor,
            repo_root=self.repo_root,
            max_iterations=correction.max_iterations,
            format_command=correction.format_command,
            pattern_fixes=correction.pattern_fixes,
            retry_failed_tasks=correction.retry_failed_tasks,
        )
        cycles = await loop.correct(outcomes)
        report = consolidate(
            outcomes,
            cycles,
            plan=plan,
            incidents=supervisor.incidents,
            started_at=started_at,
        )
        logger.info("Run %s finished: %s", report.run_id, report.verdict.value)
        return report


def _log_backend_event(event: dict[str, Any]) -> None:
    logger.debug("Backend event: %s", event)


def build_backend(config: TaskforgeConfig, repo_root: Path) -> AgentBackend:
    policy = RetryPolicy(
        max_retries=max(0, int(config.backend.max_retries)),
        backoff_seconds=max(0.0, float(config.backend.retry_backoff_seconds)),
        timeout_seconds=max(5.0, float(config.backend.timeout_seconds)),
    )
    fallback = None
    if config.backend.fallback_command.strip():
        fallback = CommandBackend(config.backend.fallback_command, working_directory=repo_root)
    return ResilientBackend(
        primary_name="primary",
        primary_backend=CommandBackend(config.backend.command, working_directory=repo_root),
        fallback_name="fallback" if fallback else None,
        fallback_backend=fallback,
        retry_policy=policy,
        event_hook=_log_backend_event,
    )


def load_configured_registry(config: TaskforgeConfig, repo_root: Path) -> CapabilityRegistry:
    path: Path | None = None
    if config.registry.path:
        path = Path(config.registry.path)
        if not path.is_absolute():
            path = repo_root / path
    return load_registry(
        path,
        active=config.registry.active,
        precedence=config.registry.precedence,
        overlap_policy=config.registry.overlap_policy,
    )


def build_orchestrator(
    config: TaskforgeConfig,
    repo_root: Path,
    *,
    backend: AgentBackend | None = None,
    event_hook: EventHook | None = None,
) -> Orchestrator:
    registry = load_configured_registry(config, repo_root)
    specialists = build_specialists(
        registry,
        backend or build_backend(config, repo_root),
        model=config.backend.model or None,
    )
    return Orchestrator(
        registry,
        specialists,
        config=config,
        repo_root=repo_root,
        event_hook=event_hook,
    )
