from __future__ import annotations

import json
from collections.abc import Iterable, Mapping
from pathlib import Path
from typing import Any

from taskforge.errors import DecompositionError
from taskforge.models import CapabilityRequest, Task


def _first(record: Mapping[str, Any], *keys: str, default: Any = None) -> Any:
    for key in keys:
        if key in record:
            return record[key]
    return default


def _string_list(value: Any, *, field_name: str, task_id: str) -> list[str]:
    if value is None:
        return []
    if isinstance(value, str):
        return [value]
    if not isinstance(value, list) or not all(isinstance(item, str) for item in value):
        raise DecompositionError(
            f"Task {task_id}: '{field_name}' must be a list of strings", task_ids=[task_id]
        )
    return [item.strip() for item in value if item.strip()]


def _capability(value: Any, *, task_id: str) -> CapabilityRequest:
    if isinstance(value, str) and value.strip():
        return CapabilityRequest(domain=value.strip().lower())
    if isinstance(value, Mapping):
        domain = str(value.get("domain", "")).strip().lower()
        worker = value.get("worker")
        if domain or worker:
            return CapabilityRequest(
                domain=domain,
                worker=str(worker).strip() if worker else None,
            )
    raise DecompositionError(
        f"Task {task_id}: 'requiredCapability' must be a domain or {{domain, worker}}",
        task_ids=[task_id],
    )


def task_from_record(record: Any) -> Task:
    if not isinstance(record, Mapping):
        raise DecompositionError("Each task record must be an object")
    task_id = str(record.get("id", "")).strip()
    if not task_id:
        raise DecompositionError("Task record is missing an 'id'")
    description = record.get("description", "")
    if not isinstance(description, str):
        raise DecompositionError(
            f"Task {task_id}: 'description' must be a string", task_ids=[task_id]
        )
    return Task(
        id=task_id,
        description=description.strip(),
        capability=_capability(
            _first(record, "requiredCapability", "required_capability", "capability"),
            task_id=task_id,
        ),
        depends_on=_string_list(
            _first(record, "dependsOn", "depends_on"), field_name="dependsOn", task_id=task_id
        ),
        resources=_string_list(record.get("resources"), field_name="resources", task_id=task_id),
    )


def parse_decomposition(records: Iterable[Any]) -> list[Task]:
    tasks: list[Task] = []
    seen: set[str] = set()
    for record in records:
        task = task_from_record(record)
        if task.id in seen:
            raise DecompositionError(f"Duplicate task id: {task.id}", task_ids=[task.id])
        seen.add(task.id)
        tasks.append(task)
    for task in tasks:
        unknown = [dep for dep in task.depends_on if dep not in seen]
        if unknown:
            raise DecompositionError(
                f"Task {task.id} depends on unknown tasks: {', '.join(unknown)}",
                task_ids=[task.id, *unknown],
            )
    return tasks


def load_decomposition(path: Path) -> tuple[str, list[Task]]:
    """Read ``[...]`` or ``{"request": ..., "tasks": [...]}`` from a JSON file."""
    try:
        data = json.loads(path.read_text(encoding="utf-8"))
    except OSError as exc:
        raise DecompositionError(f"Cannot read decomposition {path}: {exc}") from exc
    except json.JSONDecodeError as exc:
        raise DecompositionError(f"Decomposition {path} is not valid JSON: {exc}") from exc

    request = ""
    records = data
    if isinstance(data, Mapping):
        request = str(data.get("request", ""))
        records = data.get("tasks")
    if not isinstance(records, list):
        raise DecompositionError("Decomposition must be a list of tasks or contain 'tasks'")
    return request, parse_decomposition(records)
