"""Dependency scheduling into wave-ordered plans.

Wave placement::

    wave[t] = 0                                   if t has no dependencies
    wave[t] = 1 + max(wave[d] for d in deps(t))   otherwise

then bumped forward while an earlier-declared task in the same wave claims
an overlapping resource.  Tasks are placed in topological order (Kahn),
ties broken by declaration order, so the result is deterministic.
"""

from __future__ import annotations

import logging
from collections import deque
from collections.abc import Iterable

from taskforge import patterns
from taskforge.errors import CyclicDependencyError, DecompositionError
from taskforge.models import Plan, Task

logger = logging.getLogger(__name__)


def _find_cycle(remaining: set[str], tasks: dict[str, Task]) -> list[str]:
    """Return one concrete cycle among the tasks Kahn could not order."""
    color: dict[str, int] = {}
    stack: list[str] = []

    def visit(task_id: str) -> list[str] | None:
        color[task_id] = 1
        stack.append(task_id)
        for dep_id in tasks[task_id].depends_on:
            if dep_id not in remaining:
                continue
            state = color.get(dep_id, 0)
            if state == 1:
                start = stack.index(dep_id)
                return [*stack[start:], dep_id]
            if state == 0:
                found = visit(dep_id)
                if found:
                    return found
        stack.pop()
        color[task_id] = 2
        return None

    for task_id in sorted(remaining):
        if color.get(task_id, 0) == 0:
            found = visit(task_id)
            if found:
                return found
    return sorted(remaining)


def topological_order(tasks: dict[str, Task]) -> list[str]:
    order_index = {task_id: index for index, task_id in enumerate(tasks)}
    in_degree = {task_id: 0 for task_id in tasks}
    dependents: dict[str, list[str]] = {task_id: [] for task_id in tasks}
    for task in tasks.values():
        for dep_id in task.depends_on:
            if dep_id not in tasks:
                raise DecompositionError(
                    f"Task {task.id} depends on unknown task {dep_id}",
                    task_ids=[task.id, dep_id],
                )
            if dep_id == task.id:
                raise CyclicDependencyError([task.id], [task.id, task.id])
            in_degree[task.id] += 1
            dependents[dep_id].append(task.id)

    queue: deque[str] = deque(task_id for task_id in tasks if in_degree[task_id] == 0)
    ordered: list[str] = []
    while queue:
        task_id = queue.popleft()
        ordered.append(task_id)
        released: list[str] = []
        for child_id in dependents[task_id]:
            in_degree[child_id] -= 1
            if in_degree[child_id] == 0:
                released.append(child_id)
        queue.extend(sorted(released, key=order_index.__getitem__))

    if len(ordered) != len(tasks):
        remaining = set(tasks) - set(ordered)
        raise CyclicDependencyError(remaining, _find_cycle(remaining, tasks))
    return ordered


class DependencyScheduler:
    def schedule(self, tasks: Iterable[Task], *, request: str = "") -> Plan:
        by_id: dict[str, Task] = {}
        for task in tasks:
            if task.id in by_id:
                raise DecompositionError(f"Duplicate task id: {task.id}", task_ids=[task.id])
            by_id[task.id] = task

        order = topological_order(by_id)
        wave_of: dict[str, int] = {}
        waves: list[list[str]] = []
        for task_id in order:
            task = by_id[task_id]
            wave = max((wave_of[dep] + 1 for dep in task.depends_on), default=0)
            while wave < len(waves) and self._conflicts(task, waves[wave], by_id):
                wave += 1
            while len(waves) <= wave:
                waves.append([])
            waves[wave].append(task_id)
            wave_of[task_id] = wave

        declared = {task_id: index for index, task_id in enumerate(by_id)}
        for wave in waves:
            wave.sort(key=declared.__getitem__)
        logger.info("Scheduled %d tasks into %d waves", len(by_id), len(waves))
        return Plan(tasks=by_id, waves=waves, request=request)

    @staticmethod
    def _conflicts(task: Task, wave: list[str], tasks: dict[str, Task]) -> bool:
        for other_id in wave:
            if patterns.any_overlap(task.resources, tasks[other_id].resources):
                logger.debug(
                    "Serializing %s after %s: overlapping resources", task.id, other_id
                )
                return True
        return False
