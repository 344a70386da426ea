import asyncio
import json
from collections.abc import AsyncIterator
from pathlib import Path
from typing import Any

from taskforge.backends.base import AgentBackend
from taskforge.checks import (
    CheckContext,
    DependencyIntegrityCheck,
    TaskOutcomeCheck,
    ValidationCheck,
)
from taskforge.config import PatternFix
from taskforge.correction import SelfCorrectionLoop, primary_category
from taskforge.models import (
    CapabilityRequest,
    CheckCategory,
    CheckResult,
    CorrectionStrategy,
    CycleStatus,
    Outcome,
    OutcomeStatus,
    Task,
    TaskState,
)
from taskforge.registry import registry_from_dict
from taskforge.router import Router
from taskforge.scheduler import DependencyScheduler
from taskforge.specialists import build_specialists
from taskforge.supervisor import ExecutionSupervisor


class FlagCheck(ValidationCheck):
    """Passes once ``state[flag]`` is truthy."""

    def __init__(self, name: str, category: CheckCategory, state: dict, flag: str) -> None:
        self.name = name
        self.category = category
        self.state = state
        self.flag = flag
        self.runs = 0

    def run(self, context: CheckContext) -> CheckResult:
        _ = context
        self.runs += 1
        passed = bool(self.state.get(self.flag))
        diagnostics = {} if passed else {"message": f"missing {self.flag}"}
        return CheckResult(self.name, self.category, passed, diagnostics)


class FakeRunner:
    def __init__(self, state: dict, effects: dict[str, dict[str, Any]] | None = None) -> None:
        self.state = state
        self.effects = effects or {}
        self.commands: list[str] = []

    def __call__(self, command: str, cwd: Path) -> dict[str, Any]:
        _ = cwd
        self.commands.append(command)
        self.state.update(self.effects.get(command, {}))
        return {"type": "command", "command": command, "exit_code": 0}


class FlakyBackend(AgentBackend):
    def __init__(self, failures: dict[str, int]) -> None:
        self.failures = dict(failures)
        self.contexts: list[dict[str, Any]] = []

    async def execute(
        self,
        system_prompt: str,
        user_prompt: str,
        context: dict[str, Any],
    ) -> AsyncIterator[str]:
        _ = system_prompt, user_prompt
        self.contexts.append(context)
        task_id = context["task"]["id"]
        if self.failures.get(task_id, 0) > 0:
            self.failures[task_id] -= 1
            yield json.dumps({"status": "failed", "error": "tests red"}) + "\n"
            return
        yield json.dumps({"status": "success"}) + "\n"


def _plan():
    return DependencyScheduler().schedule(
        [
            Task(id="a", description="build a", capability=CapabilityRequest(domain="general")),
            Task(
                id="b",
                description="build b",
                capability=CapabilityRequest(domain="general"),
                depends_on=["a"],
            ),
        ],
        request="Ship the feature",
    )


def _completed(task_id: str) -> Outcome:
    return Outcome(
        task_id=task_id,
        worker_id="builder",
        status=OutcomeStatus.SUCCESS,
        state=TaskState.COMPLETED,
        started_at=float(ord(task_id)),
        finished_at=float(ord(task_id)) + 0.5,
    )


def test_all_checks_passing_yields_single_resolved_cycle() -> None:
    state = {"formatted": True}
    check = FlagCheck("lint", CheckCategory.CONFORMANCE, state, "formatted")
    loop = SelfCorrectionLoop([check], plan=_plan())

    cycles = asyncio.run(loop.correct([_completed("a"), _completed("b")]))

    assert len(cycles) == 1
    assert cycles[0].status == CycleStatus.RESOLVED
    assert cycles[0].fixes_applied == []
    assert cycles[0].category is None


def test_mechanical_fix_resolves_in_first_iteration() -> None:
    state: dict[str, bool] = {}
    runner = FakeRunner(state, {"ruff format .": {"formatted": True}})
    loop = SelfCorrectionLoop(
        [FlagCheck("lint", CheckCategory.CONFORMANCE, state, "formatted")],
        plan=_plan(),
        format_command="ruff format .",
        command_runner=runner,
    )

    cycles = asyncio.run(loop.correct([_completed("a"), _completed("b")]))

    assert [cycle.status for cycle in cycles] == [CycleStatus.RESOLVED]
    assert cycles[0].strategy == CorrectionStrategy.MECHANICAL
    assert cycles[0].category == CheckCategory.CONFORMANCE
    assert cycles[0].fixes_applied == ["format: ruff format . (exit 0)"]
    assert runner.commands == ["ruff format ."]


def test_pattern_fix_runs_in_second_iteration_when_diagnostic_matches() -> None:
    state: dict[str, bool] = {}
    runner = FakeRunner(state, {"add-init": {"init": True}})
    loop = SelfCorrectionLoop(
        [FlagCheck("type_check", CheckCategory.STRUCTURAL, state, "init")],
        plan=_plan(),
        pattern_fixes=[
            PatternFix(check="lint", diagnostic="missing", command="never-run"),
            PatternFix(check="type_*", diagnostic="missing init", command="add-init"),
        ],
        command_runner=runner,
    )

    cycles = asyncio.run(loop.correct([_completed("a"), _completed("b")]))

    assert [cycle.status for cycle in cycles] == [CycleStatus.UNRESOLVED, CycleStatus.RESOLVED]
    assert cycles[1].strategy == CorrectionStrategy.PATTERN_BASED
    assert cycles[1].fixes_applied == ["pattern: add-init (exit 0)"]
    assert runner.commands == ["add-init"]


def test_persistent_failure_escalates_after_three_iterations() -> None:
    state: dict[str, bool] = {}
    check = FlagCheck("tests", CheckCategory.BEHAVIORAL, state, "green")
    loop = SelfCorrectionLoop([check], plan=_plan(), max_iterations=10)

    cycles = asyncio.run(loop.correct([_completed("a"), _completed("b")]))

    assert [cycle.iteration for cycle in cycles] == [1, 2, 3]
    assert [cycle.strategy for cycle in cycles] == [
        CorrectionStrategy.MECHANICAL,
        CorrectionStrategy.PATTERN_BASED,
        CorrectionStrategy.LOGIC_LEVEL,
    ]
    assert [cycle.status for cycle in cycles] == [
        CycleStatus.UNRESOLVED,
        CycleStatus.UNRESOLVED,
        CycleStatus.NEEDS_REVIEW,
    ]
    assert loop.strategy == CorrectionStrategy.ESCALATED
    # Initial validation plus one full re-validation per iteration.
    assert check.runs == 4


def test_every_iteration_revalidates_the_full_check_set() -> None:
    state = {"formatted": True}
    runner = FakeRunner(state, {"fmt": {"formatted": False, "typed": True}})
    lint = FlagCheck("lint", CheckCategory.CONFORMANCE, state, "formatted")
    types = FlagCheck("type_check", CheckCategory.STRUCTURAL, state, "typed")
    loop = SelfCorrectionLoop(
        [types, lint], plan=_plan(), format_command="fmt", command_runner=runner
    )

    cycles = asyncio.run(loop.correct([_completed("a"), _completed("b")]))

    # The mechanical fix repaired typing but broke formatting; the regression is caught at once.
    first = cycles[0]
    assert first.category == CheckCategory.STRUCTURAL
    assert {check.name: check.passed for check in first.checks} == {
        "type_check": True,
        "lint": False,
    }
    assert len(cycles) == 3
    assert cycles[-1].status == CycleStatus.NEEDS_REVIEW


def test_logic_level_redispatches_remediable_failures() -> None:
    registry = registry_from_dict(
        {"workers": [{"id": "builder", "capabilities": [{"domain": "general"}]}]}
    )
    backend = FlakyBackend({"a": 1})
    supervisor = ExecutionSupervisor(Router(registry), build_specialists(registry, backend))
    plan = _plan()
    outcomes = asyncio.run(supervisor.execute(plan))
    assert [outcome.state for outcome in outcomes] == [TaskState.FAILED, TaskState.FAILED]

    loop = SelfCorrectionLoop(
        [TaskOutcomeCheck(), DependencyIntegrityCheck()], plan=plan, supervisor=supervisor
    )
    cycles = asyncio.run(loop.correct(outcomes))

    assert [cycle.status for cycle in cycles] == [
        CycleStatus.UNRESOLVED,
        CycleStatus.UNRESOLVED,
        CycleStatus.RESOLVED,
    ]
    final = cycles[-1]
    assert final.strategy == CorrectionStrategy.LOGIC_LEVEL
    assert final.fixes_applied == ["redispatch: a", "redispatch: b"]
    assert [(outcome.task_id, outcome.retry_count) for outcome in final.outcome_updates] == [
        ("a", 1),
        ("b", 1),
    ]
    retry_context = backend.contexts[-1]
    assert "Ship the feature" in retry_context["requirement"]
    assert retry_context["diagnostics"][0]["name"] == "task_outcomes"


def test_logic_level_can_be_disabled() -> None:
    registry = registry_from_dict(
        {"workers": [{"id": "builder", "capabilities": [{"domain": "general"}]}]}
    )
    backend = FlakyBackend({"a": 5})
    supervisor = ExecutionSupervisor(Router(registry), build_specialists(registry, backend))
    plan = _plan()
    outcomes = asyncio.run(supervisor.execute(plan))

    loop = SelfCorrectionLoop(
        [TaskOutcomeCheck()], plan=plan, supervisor=supervisor, retry_failed_tasks=False
    )
    cycles = asyncio.run(loop.correct(outcomes))

    assert cycles[-1].status == CycleStatus.NEEDS_REVIEW
    assert all(cycle.outcome_updates == [] for cycle in cycles)
    assert len(backend.contexts) == 1


def test_resolved_validation_is_idempotent() -> None:
    loop = SelfCorrectionLoop([TaskOutcomeCheck(), DependencyIntegrityCheck()], plan=_plan())
    outcomes = {"a": _completed("a"), "b": _completed("b")}

    first = asyncio.run(loop.validate(outcomes))
    second = asyncio.run(loop.validate(outcomes))

    assert all(result.passed for result in first)
    assert first == second


def test_primary_category_uses_fixed_order() -> None:
    results = [
        CheckResult("tests", CheckCategory.BEHAVIORAL, False),
        CheckResult("types", CheckCategory.STRUCTURAL, False),
    ]

    assert primary_category(results) == CheckCategory.STRUCTURAL
    assert primary_category([]) is None
