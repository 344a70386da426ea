"""Capability routing.

Tie-break rules run in a fixed order.  Each rule is a pure function that
narrows the candidate list: one survivor decides the route, several
survivors become the input of the next rule, none means "no decision".
"""

from __future__ import annotations

import logging
import re
from collections.abc import Callable
from dataclasses import dataclass

from taskforge.errors import AmbiguousRoutingError, RoutingConflict
from taskforge.models import PriorityClass, Task, Worker
from taskforge.registry import CapabilityRegistry

logger = logging.getLogger(__name__)

RoutingRule = Callable[[Task, tuple[Worker, ...], CapabilityRegistry], tuple[Worker, ...]]


@dataclass(slots=True, frozen=True)
class RouteDecision:
    task_id: str
    worker_id: str
    rule: str
    candidates: tuple[str, ...]


def explicit_mention(
    task: Task, candidates: tuple[Worker, ...], registry: CapabilityRegistry
) -> tuple[Worker, ...]:
    if task.capability.worker:
        worker = registry.get(task.capability.worker)
        return (worker,) if worker is not None else ()
    mentioned = tuple(registry.mentioned_workers(task.description))
    if len(mentioned) == 1:
        return mentioned
    # Several mentions only narrow within the capability matches.
    return tuple(worker for worker in mentioned if worker in candidates)


def sole_capability_match(
    task: Task, candidates: tuple[Worker, ...], registry: CapabilityRegistry
) -> tuple[Worker, ...]:
    _ = task, registry
    return candidates if len(candidates) == 1 else ()


def specialist_over_generalist(
    task: Task, candidates: tuple[Worker, ...], registry: CapabilityRegistry
) -> tuple[Worker, ...]:
    _ = task, registry
    return tuple(worker for worker in candidates if worker.priority == PriorityClass.SPECIALIST)


def resource_ownership(
    task: Task, candidates: tuple[Worker, ...], registry: CapabilityRegistry
) -> tuple[Worker, ...]:
    owners = set(registry.owners_of(task.resources).values())
    if len(owners) != 1:
        return ()
    return tuple(worker for worker in candidates if worker.id in owners)


def _keyword_pattern(keyword: str) -> re.Pattern[str]:
    return re.compile(rf"(?<!\w){re.escape(keyword)}(?!\w)", re.IGNORECASE)


def first_keyword_match(
    task: Task, candidates: tuple[Worker, ...], registry: CapabilityRegistry
) -> tuple[Worker, ...]:
    _ = registry
    domain = task.capability.domain
    for worker in candidates:
        for keyword in worker.keywords_for(domain):
            if _keyword_pattern(keyword).search(task.description):
                return (worker,)
    return ()


ROUTING_RULES: tuple[tuple[str, RoutingRule], ...] = (
    ("explicit_mention", explicit_mention),
    ("capability_match", sole_capability_match),
    ("specialist_over_generalist", specialist_over_generalist),
    ("resource_ownership", resource_ownership),
    ("keyword_match", first_keyword_match),
)


class Router:
    def __init__(
        self,
        registry: CapabilityRegistry,
        rules: tuple[tuple[str, RoutingRule], ...] = ROUTING_RULES,
    ) -> None:
        self.registry = registry
        self.rules = rules

    def _check_ownership(self, task: Task, worker: Worker, candidates: tuple[str, ...]) -> None:
        owners = self.registry.owners_of(task.resources)
        foreign = {resource: owner for resource, owner in owners.items() if owner != worker.id}
        if not foreign:
            return
        details = ", ".join(f"{resource} -> {owner}" for resource, owner in sorted(foreign.items()))
        raise RoutingConflict(
            f"Task {task.id} routed to {worker.id} but touches resources owned by "
            f"other workers: {details}",
            task_id=task.id,
            selected=worker.id,
            owners=owners,
            candidates=candidates,
        )

    def explain(self, task: Task) -> RouteDecision:
        """Route *task* and report which rule decided."""
        if task.capability.worker and task.capability.worker not in self.registry:
            raise AmbiguousRoutingError(
                f"Task {task.id} requests unknown worker '{task.capability.worker}'",
                task_id=task.id,
            )

        candidates = tuple(self.registry.lookup(task.capability.domain))
        candidate_ids = tuple(worker.id for worker in candidates)
        current = candidates
        for rule_name, rule in self.rules:
            narrowed = rule(task, current, self.registry)
            if len(narrowed) == 1:
                selected = narrowed[0]
                self._check_ownership(task, selected, candidate_ids)
                logger.info("Routed %s to %s via %s", task.id, selected.id, rule_name)
                return RouteDecision(
                    task_id=task.id,
                    worker_id=selected.id,
                    rule=rule_name,
                    candidates=candidate_ids,
                )
            if narrowed:
                current = narrowed

        if not candidates:
            message = (
                f"No registered worker offers capability '{task.capability.domain}' "
                f"for task {task.id}"
            )
        else:
            message = (
                f"Task {task.id} matches several workers with no deciding rule: "
                + ", ".join(worker.id for worker in current)
            )
        raise AmbiguousRoutingError(
            message,
            task_id=task.id,
            candidates=tuple(worker.id for worker in current),
        )

    def route(self, task: Task) -> str:
        return self.explain(task).worker_id
