"""Bounded post-execution remediation.

Each iteration applies the fixes of one strategy, then re-runs every check.
Strategies advance MECHANICAL -> PATTERN_BASED -> LOGIC_LEVEL -> ESCALATED;
there is never a fourth iteration.
"""

from __future__ import annotations

import asyncio
import fnmatch
import json
import logging
from collections.abc import Callable, Iterable, Mapping
from pathlib import Path
from typing import Any

from taskforge.checks import CheckContext, ValidationCheck, outcomes_by_id, run_command
from taskforge.config import PatternFix
from taskforge.models import (
    CATEGORY_ORDER,
    CheckCategory,
    CheckResult,
    CorrectionCycle,
    CorrectionStrategy,
    CycleStatus,
    Outcome,
    Plan,
    Task,
)
from taskforge.supervisor import ExecutionSupervisor

logger = logging.getLogger(__name__)

MAX_ITERATIONS = 3

CommandRunner = Callable[[str, Path], dict[str, Any]]


def primary_category(failing: Iterable[CheckResult]) -> CheckCategory | None:
    categories = {result.category for result in failing}
    for category in CATEGORY_ORDER:
        if category in categories:
            return category
    return None


class SelfCorrectionLoop:
    def __init__(
        self,
        checks: Iterable[ValidationCheck],
        *,
        plan: Plan,
        supervisor: ExecutionSupervisor | None = None,
        repo_root: Path | None = None,
        max_iterations: int = MAX_ITERATIONS,
        format_command: str = "",
        pattern_fixes: Iterable[PatternFix] = (),
        retry_failed_tasks: bool = True,
        command_runner: CommandRunner = run_command,
    ) -> None:
        self.checks = list(checks)
        self.plan = plan
        self.supervisor = supervisor
        self.repo_root = repo_root or Path.cwd()
        self.max_iterations = min(MAX_ITERATIONS, max(1, int(max_iterations)))
        self.format_command = format_command
        self.pattern_fixes = list(pattern_fixes)
        self.retry_failed_tasks = retry_failed_tasks
        self.command_runner = command_runner
        self.strategy = CorrectionStrategy.MECHANICAL

    async def validate(self, outcomes: Mapping[str, Outcome]) -> list[CheckResult]:
        context = CheckContext(plan=self.plan, outcomes=dict(outcomes), repo_root=self.repo_root)
        results: list[CheckResult] = []
        for check in self.checks:
            results.append(await asyncio.to_thread(check.run, context))
        return results

    # ------------------------------------------------------------------
    # Strategies
    # ------------------------------------------------------------------

    def _run_fix(self, label: str, command: str) -> str:
        result = self.command_runner(command, self.repo_root)
        logger.info("Applied %s fix %r (exit %s)", label, command, result["exit_code"])
        return f"{label}: {command} (exit {result['exit_code']})"

    async def _mechanical(
        self, failing: list[CheckResult], outcomes: dict[str, Outcome]
    ) -> tuple[list[str], list[Outcome]]:
        if not self.format_command:
            return [], []
        fix = await asyncio.to_thread(self._run_fix, "format", self.format_command)
        return [fix], []

    def _pattern_matches(self, rule: PatternFix, result: CheckResult) -> bool:
        if not fnmatch.fnmatchcase(result.name, rule.check or "*"):
            return False
        if not rule.diagnostic:
            return True
        rendered = json.dumps(result.diagnostics, ensure_ascii=False, default=str)
        return rule.diagnostic in rendered

    async def _pattern_based(
        self, failing: list[CheckResult], outcomes: dict[str, Outcome]
    ) -> tuple[list[str], list[Outcome]]:
        fixes: list[str] = []
        applied: set[str] = set()
        for rule in self.pattern_fixes:
            if not rule.command or rule.command in applied:
                continue
            if any(self._pattern_matches(rule, result) for result in failing):
                applied.add(rule.command)
                fixes.append(await asyncio.to_thread(self._run_fix, "pattern", rule.command))
        return fixes, []

    def _redispatch_targets(self, outcomes: Mapping[str, Outcome]) -> list[str]:
        roots = [
            task_id
            for task_id, outcome in outcomes.items()
            if not outcome.completed and outcome.remediable
        ]
        targets: set[str] = set(roots)
        for task_id in roots:
            targets.update(
                dependent
                for dependent in self.plan.dependents(task_id)
                if not outcomes[dependent].completed
            )
        return [task_id for task_id in self.plan.ordered_ids() if task_id in targets]

    async def _logic_level(
        self, failing: list[CheckResult], outcomes: dict[str, Outcome]
    ) -> tuple[list[str], list[Outcome]]:
        if self.supervisor is None or not self.retry_failed_tasks:
            return [], []
        targets = self._redispatch_targets(outcomes)
        if not targets:
            return [], []
        diagnostics = [result.to_dict() for result in failing]

        def context_for(task: Task) -> dict[str, Any]:
            previous = outcomes.get(task.id)
            requirement = task.description
            if self.plan.request:
                requirement = f"{self.plan.request}\n\n{task.description}"
            return {
                "requirement": requirement,
                "diagnostics": diagnostics,
                "previous_failure": previous.detail if previous else "",
            }

        logger.info("Re-dispatching %d task(s): %s", len(targets), ", ".join(targets))
        updates = await self.supervisor.redispatch(
            self.plan, targets, outcomes, context_for=context_for
        )
        return [f"redispatch: {task_id}" for task_id in targets], updates

    async def _apply(
        self,
        strategy: CorrectionStrategy,
        failing: list[CheckResult],
        outcomes: dict[str, Outcome],
    ) -> tuple[list[str], list[Outcome]]:
        handlers = {
            CorrectionStrategy.MECHANICAL: self._mechanical,
            CorrectionStrategy.PATTERN_BASED: self._pattern_based,
            CorrectionStrategy.LOGIC_LEVEL: self._logic_level,
        }
        handler = handlers.get(strategy)
        if handler is None:
            return [], []
        return await handler(failing, outcomes)

    # ------------------------------------------------------------------

    async def correct(
        self, outcomes: Iterable[Outcome] | Mapping[str, Outcome]
    ) -> list[CorrectionCycle]:
        current = outcomes_by_id(outcomes if isinstance(outcomes, Mapping) else list(outcomes))
        self.strategy = CorrectionStrategy.MECHANICAL

        results = await self.validate(current)
        failing = [result for result in results if not result.passed]
        if not failing:
            logger.info("All %d checks passed; no correction needed", len(results))
            return [
                CorrectionCycle(
                    iteration=1,
                    strategy=self.strategy,
                    category=None,
                    status=CycleStatus.RESOLVED,
                    checks=results,
                )
            ]

        cycles: list[CorrectionCycle] = []
        for iteration in range(1, self.max_iterations + 1):
            strategy = self.strategy
            category = primary_category(failing)
            fixes, updates = await self._apply(strategy, failing, current)
            for outcome in updates:
                current[outcome.task_id] = outcome

            results = await self.validate(current)
            failing = [result for result in results if not result.passed]
            if not failing:
                status = CycleStatus.RESOLVED
            elif iteration == self.max_iterations:
                status = CycleStatus.NEEDS_REVIEW
            else:
                status = CycleStatus.UNRESOLVED
            cycles.append(
                CorrectionCycle(
                    iteration=iteration,
                    strategy=strategy,
                    category=category,
                    status=status,
                    fixes_applied=fixes,
                    checks=results,
                    outcome_updates=list(updates),
                )
            )
            logger.info(
                "Correction iteration %d (%s): %s", iteration, strategy.value, status.value
            )
            if status == CycleStatus.RESOLVED:
                break
            self.strategy = strategy.next()
            if status == CycleStatus.NEEDS_REVIEW:
                self.strategy = CorrectionStrategy.ESCALATED
                logger.warning(
                    "Escalating: %s still failing after %d iterations",
                    ", ".join(result.name for result in failing),
                    iteration,
                )
        return cycles
