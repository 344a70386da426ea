from __future__ import annotations

import logging
import re
import shlex
import subprocess
from abc import ABC, abstractmethod
from collections.abc import Mapping
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from taskforge.models import CheckCategory, CheckResult, Outcome, Plan

logger = logging.getLogger(__name__)

SHELL_REQUIRED_PATTERN = re.compile(r"(?:\|\||&&|[|;<>`]|[$]\()")


def run_command(command: str, cwd: Path) -> dict[str, Any]:
    command_text = command.strip()
    if not command_text:
        return {
            "type": "command",
            "command": command,
            "exit_code": 1,
            "stdout_tail": "",
            "stderr_tail": "Command is empty.",
            "used_shell": False,
        }

    used_shell = bool(SHELL_REQUIRED_PATTERN.search(command_text))
    command_payload: str | list[str] = command_text
    if not used_shell:
        try:
            command_payload = shlex.split(command_text)
        except ValueError:
            used_shell = True
            command_payload = command_text

    try:
        proc = subprocess.run(
            command_payload,
            cwd=cwd,
            shell=used_shell,
            text=True,
            capture_output=True,
        )
    except FileNotFoundError as exc:
        return {
            "type": "command",
            "command": command,
            "exit_code": 127,
            "stdout_tail": "",
            "stderr_tail": str(exc),
            "used_shell": used_shell,
        }
    return {
        "type": "command",
        "command": command,
        "exit_code": proc.returncode,
        "stdout_tail": proc.stdout.strip()[-1000:],
        "stderr_tail": proc.stderr.strip()[-1000:],
        "used_shell": used_shell,
    }


@dataclass(slots=True)
class CheckContext:
    """What a check may look at: the plan, the current outcomes and the project root."""

    plan: Plan
    outcomes: dict[str, Outcome]
    repo_root: Path = field(default_factory=Path.cwd)


class ValidationCheck(ABC):
    name: str
    category: CheckCategory

    @abstractmethod
    def run(self, context: CheckContext) -> CheckResult:
        raise NotImplementedError


class CommandCheck(ValidationCheck):
    """Passes when the configured shell command exits 0."""

    def __init__(self, name: str, command: str, category: CheckCategory) -> None:
        self.name = name
        self.command = command
        self.category = category

    def run(self, context: CheckContext) -> CheckResult:
        result = run_command(self.command, context.repo_root)
        passed = result["exit_code"] == 0
        if not passed:
            logger.debug("Check %s failed with exit code %s", self.name, result["exit_code"])
        return CheckResult(
            name=self.name,
            category=self.category,
            passed=passed,
            diagnostics={} if passed else result,
        )


class TaskOutcomeCheck(ValidationCheck):
    """Fails while any outcome carries a failure the loop can still act on."""

    name = "task_outcomes"
    category = CheckCategory.BEHAVIORAL

    def run(self, context: CheckContext) -> CheckResult:
        failing = [
            outcome
            for outcome in context.outcomes.values()
            if not outcome.completed and outcome.remediable
        ]
        if not failing:
            return CheckResult(self.name, self.category, True)
        return CheckResult(
            self.name,
            self.category,
            False,
            {
                "failed_tasks": {
                    outcome.task_id: {
                        "reason": outcome.reason.value if outcome.reason else None,
                        "detail": outcome.detail,
                    }
                    for outcome in failing
                }
            },
        )


class DependencyIntegrityCheck(ValidationCheck):
    name = "dependency_integrity"
    category = CheckCategory.DEPENDENCY_INTEGRITY

    def run(self, context: CheckContext) -> CheckResult:
        violations: list[dict[str, Any]] = []
        for task_id, outcome in context.outcomes.items():
            if not outcome.completed:
                continue
            for dep in context.plan.task(task_id).depends_on:
                upstream = context.outcomes.get(dep)
                if upstream is None or not upstream.completed:
                    violations.append(
                        {"task_id": task_id, "dependency": dep, "problem": "not_completed"}
                    )
                    continue
                if (
                    upstream.finished_at is not None
                    and outcome.started_at is not None
                    and outcome.started_at < upstream.finished_at
                ):
                    violations.append(
                        {"task_id": task_id, "dependency": dep, "problem": "started_early"}
                    )
        if violations:
            return CheckResult(self.name, self.category, False, {"violations": violations})
        return CheckResult(self.name, self.category, True)


def default_checks(
    *,
    lint_command: str = "",
    type_check_command: str = "",
    test_command: str = "",
) -> list[ValidationCheck]:
    checks: list[ValidationCheck] = []
    if type_check_command:
        checks.append(CommandCheck("type_check", type_check_command, CheckCategory.STRUCTURAL))
    if lint_command:
        checks.append(CommandCheck("lint", lint_command, CheckCategory.CONFORMANCE))
    if test_command:
        checks.append(CommandCheck("tests", test_command, CheckCategory.BEHAVIORAL))
    checks.append(TaskOutcomeCheck())
    checks.append(DependencyIntegrityCheck())
    return checks


def outcomes_by_id(outcomes: list[Outcome] | Mapping[str, Outcome]) -> dict[str, Outcome]:
    if isinstance(outcomes, Mapping):
        return dict(outcomes)
    return {outcome.task_id: outcome for outcome in outcomes}
