from __future__ import annotations

import logging
import uuid
from collections.abc import Iterable
from dataclasses import dataclass, field
from typing import Any

from taskforge.models import (
    CorrectionCycle,
    CycleStatus,
    Outcome,
    Plan,
    TaskState,
    Verdict,
    utcnow_iso,
)

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class Report:
    run_id: str
    verdict: Verdict
    tasks: list[dict[str, Any]]
    cycles: list[CorrectionCycle] = field(default_factory=list)
    request: str = ""
    waves: list[list[str]] = field(default_factory=list)
    incidents: list[dict[str, Any]] = field(default_factory=list)
    escalation: dict[str, Any] | None = None
    started_at: str = ""
    finished_at: str = ""

    def task(self, task_id: str) -> dict[str, Any]:
        for entry in self.tasks:
            if entry["task_id"] == task_id:
                return entry
        raise KeyError(task_id)

    def to_dict(self) -> dict[str, Any]:
        return {
            "run_id": self.run_id,
            "request": self.request,
            "verdict": self.verdict.value,
            "started_at": self.started_at,
            "finished_at": self.finished_at,
            "waves": [list(wave) for wave in self.waves],
            "tasks": [dict(entry) for entry in self.tasks],
            "cycles": [cycle.to_dict() for cycle in self.cycles],
            "incidents": [dict(incident) for incident in self.incidents],
            "escalation": self.escalation,
        }


def final_outcomes(
    outcomes: Iterable[Outcome], cycles: Iterable[CorrectionCycle]
) -> dict[str, Outcome]:
    merged = {outcome.task_id: outcome for outcome in outcomes}
    for cycle in cycles:
        for outcome in cycle.outcome_updates:
            merged[outcome.task_id] = outcome
    return merged


def decide_verdict(outcomes: Iterable[Outcome], cycles: list[CorrectionCycle]) -> Verdict:
    if any(cycle.status == CycleStatus.NEEDS_REVIEW for cycle in cycles):
        return Verdict.ESCALATE
    merged = list(outcomes)
    resolved = not cycles or cycles[-1].status == CycleStatus.RESOLVED
    if all(outcome.completed for outcome in merged) and resolved:
        return Verdict.SUCCESS
    return Verdict.PARTIAL


def consolidate(
    outcomes: Iterable[Outcome],
    cycles: Iterable[CorrectionCycle],
    *,
    plan: Plan | None = None,
    incidents: Iterable[dict[str, Any]] = (),
    run_id: str | None = None,
    started_at: str = "",
) -> Report:
    """Fold correction updates into the outcomes and decide the verdict.

    Every outcome passed in appears in the report, failed or not.
    """
    cycle_list = list(cycles)
    merged = final_outcomes(outcomes, cycle_list)
    order = plan.ordered_ids() if plan is not None else list(merged)
    order += [task_id for task_id in merged if task_id not in order]

    touched: dict[str, list[int]] = {}
    for cycle in cycle_list:
        for outcome in cycle.outcome_updates:
            touched.setdefault(outcome.task_id, []).append(cycle.iteration)

    entries: list[dict[str, Any]] = []
    for task_id in order:
        outcome = merged.get(task_id)
        if outcome is None:
            continue
        entry = outcome.to_dict()
        entry["description"] = (
            plan.task(task_id).description if plan is not None and task_id in plan.tasks else ""
        )
        entry["correction_iterations"] = touched.get(task_id, [])
        entries.append(entry)

    verdict = decide_verdict(merged.values(), cycle_list)
    escalation: dict[str, Any] | None = None
    if verdict == Verdict.ESCALATE:
        last_checks = cycle_list[-1].failing_checks if cycle_list else []
        escalation = {
            "failing_checks": [check.to_dict() for check in last_checks],
            "failed_tasks": [
                outcome.task_id
                for outcome in merged.values()
                if outcome.state == TaskState.FAILED
            ],
        }
        logger.warning("Run requires human review: %s", escalation)

    return Report(
        run_id=run_id or uuid.uuid4().hex[:12],
        verdict=verdict,
        tasks=entries,
        cycles=cycle_list,
        request=plan.request if plan is not None else "",
        waves=[list(wave) for wave in plan.waves] if plan is not None else [],
        incidents=list(incidents),
        escalation=escalation,
        started_at=started_at or utcnow_iso(),
        finished_at=utcnow_iso(),
    )
