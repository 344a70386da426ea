from __future__ import annotations

import logging
import re
import tomllib
from collections.abc import Iterable, Mapping
from importlib import resources
from pathlib import Path
from typing import Any, Literal

from taskforge import patterns
from taskforge.errors import RegistryLoadError
from taskforge.models import Capability, PriorityClass, Worker

logger = logging.getLogger(__name__)

OverlapPolicy = Literal["error", "warn"]
DEFAULT_REGISTRY_RESOURCE = "data/registry.toml"


class CapabilityRegistry:
    """Immutable table of workers, built once at startup and passed by reference."""

    def __init__(
        self,
        workers: Iterable[Worker],
        *,
        precedence: Iterable[str] = (),
        overlap_policy: OverlapPolicy = "error",
    ) -> None:
        self._workers: tuple[Worker, ...] = tuple(workers)
        self._by_id: dict[str, Worker] = {}
        for worker in self._workers:
            if worker.id in self._by_id:
                raise RegistryLoadError(
                    f"Duplicate worker id in registry: {worker.id}", worker_ids=[worker.id]
                )
            self._by_id[worker.id] = worker
        self._precedence: tuple[str, ...] = tuple(precedence)
        self._overlap_policy: OverlapPolicy = overlap_policy
        self._mention_patterns = {
            worker.id: self._compile_mention(worker) for worker in self._workers
        }
        self._validate()

    # ------------------------------------------------------------------
    # Validation
    # ------------------------------------------------------------------

    @staticmethod
    def _compile_mention(worker: Worker) -> re.Pattern[str]:
        # Aliases are ordinary words ("backend"), so they only count with an @ handle.
        aliases = sorted(
            (alias for alias in worker.aliases if alias.strip()), key=len, reverse=True
        )
        alternatives = [rf"@?{re.escape(worker.id)}"]
        alternatives.extend(rf"@{re.escape(alias)}" for alias in aliases)
        return re.compile(
            rf"(?<![\w@-])(?:{'|'.join(alternatives)})(?![\w-])", re.IGNORECASE
        )

    def _validate(self) -> None:
        if self._overlap_policy not in {"error", "warn"}:
            raise RegistryLoadError(f"Unsupported overlap policy: {self._overlap_policy}")
        unknown = [worker_id for worker_id in self._precedence if worker_id not in self._by_id]
        if unknown:
            raise RegistryLoadError(
                "Precedence names unknown workers: " + ", ".join(unknown), worker_ids=unknown
            )
        for worker in self._workers:
            if not worker.capabilities:
                raise RegistryLoadError(
                    f"Worker {worker.id} declares no capabilities", worker_ids=[worker.id]
                )

        for index, first in enumerate(self._workers):
            for second in self._workers[index + 1 :]:
                overlap = self._ownership_overlap(first, second)
                if overlap is None:
                    continue
                if first.id in self._precedence and second.id in self._precedence:
                    continue
                message = (
                    f"Workers {first.id} and {second.id} both own overlapping resources "
                    f"('{overlap[0]}' / '{overlap[1]}') without a declared precedence"
                )
                if self._overlap_policy == "error":
                    raise RegistryLoadError(message, worker_ids=[first.id, second.id])
                logger.warning(
                    "%s; ownership falls to the worker listed first in precedence, "
                    "then to the one declared first",
                    message,
                )

    @staticmethod
    def _ownership_overlap(first: Worker, second: Worker) -> tuple[str, str] | None:
        for left in first.owns:
            for right in second.owns:
                if patterns.overlaps(left, right):
                    return left, right
        return None

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    @property
    def workers(self) -> tuple[Worker, ...]:
        return self._workers

    @property
    def precedence(self) -> tuple[str, ...]:
        return self._precedence

    @property
    def overlap_policy(self) -> OverlapPolicy:
        return self._overlap_policy

    def __contains__(self, worker_id: object) -> bool:
        return worker_id in self._by_id

    def __len__(self) -> int:
        return len(self._workers)

    def get(self, worker_id: str) -> Worker | None:
        return self._by_id.get(worker_id)

    def lookup(self, domain: str) -> list[Worker]:
        """Workers advertising *domain*, in declaration order."""
        wanted = domain.strip().lower()
        return [
            worker
            for worker in self._workers
            if any(capability.domain == wanted for capability in worker.capabilities)
        ]

    def ownership_patterns_of(self, worker_id: str) -> frozenset[str]:
        worker = self._by_id.get(worker_id)
        if worker is None:
            raise KeyError(worker_id)
        return frozenset(worker.owns)

    def is_explicit_mention(self, request_text: str, worker_id: str) -> bool:
        pattern = self._mention_patterns.get(worker_id)
        if pattern is None:
            return False
        return bool(pattern.search(request_text))

    def mentioned_workers(self, request_text: str) -> list[Worker]:
        return [
            worker
            for worker in self._workers
            if self.is_explicit_mention(request_text, worker.id)
        ]

    def _rank(self, worker_id: str) -> tuple[int, int]:
        declared = (
            self._precedence.index(worker_id)
            if worker_id in self._precedence
            else len(self._precedence)
        )
        return declared, self._workers.index(self._by_id[worker_id])

    def owner_of(self, resource: str) -> str | None:
        """The worker holding exclusive write ownership of *resource*, if any."""
        owners = [
            worker.id
            for worker in self._workers
            if any(patterns.overlaps(resource, pattern) for pattern in worker.owns)
        ]
        if not owners:
            return None
        return min(owners, key=self._rank)

    def owners_of(self, resources: Iterable[str]) -> dict[str, str]:
        resolved: dict[str, str] = {}
        for resource in resources:
            owner = self.owner_of(resource)
            if owner is not None:
                resolved[resource] = owner
        return resolved

    def restricted_to(self, worker_ids: Iterable[str]) -> CapabilityRegistry:
        wanted = list(dict.fromkeys(worker_ids))
        missing = [worker_id for worker_id in wanted if worker_id not in self._by_id]
        if missing:
            raise RegistryLoadError(
                "Active worker list names unknown workers: " + ", ".join(missing),
                worker_ids=missing,
            )
        keep = set(wanted)
        return CapabilityRegistry(
            [worker for worker in self._workers if worker.id in keep],
            precedence=[worker_id for worker_id in self._precedence if worker_id in keep],
            overlap_policy=self._overlap_policy,
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "overlap_policy": self._overlap_policy,
            "precedence": list(self._precedence),
            "workers": [
                {
                    "id": worker.id,
                    "priority": worker.priority.value,
                    "domains": list(worker.domains),
                    "owns": list(worker.owns),
                    "aliases": list(worker.aliases),
                }
                for worker in self._workers
            ],
        }


def _string_list(value: Any, *, field_name: str, worker_id: str) -> tuple[str, ...]:
    if value is None:
        return ()
    if isinstance(value, str):
        value = [value]
    if not isinstance(value, list):
        raise RegistryLoadError(
            f"Worker {worker_id}: '{field_name}' must be a list of strings",
            worker_ids=[worker_id],
        )
    return tuple(str(item).strip() for item in value if str(item).strip())


def _worker_from_dict(payload: Mapping[str, Any]) -> Worker:
    worker_id = str(payload.get("id", "")).strip()
    if not worker_id:
        raise RegistryLoadError("Registry worker entry is missing an id")

    raw_priority = str(payload.get("priority", PriorityClass.SPECIALIST.value)).strip().lower()
    try:
        priority = PriorityClass(raw_priority)
    except ValueError as exc:
        raise RegistryLoadError(
            f"Worker {worker_id}: unknown priority class '{raw_priority}'",
            worker_ids=[worker_id],
        ) from exc

    capabilities: list[Capability] = []
    raw_capabilities = payload.get("capabilities", [])
    if not isinstance(raw_capabilities, list):
        raise RegistryLoadError(
            f"Worker {worker_id}: 'capabilities' must be a list", worker_ids=[worker_id]
        )
    for item in raw_capabilities:
        if not isinstance(item, Mapping) or not str(item.get("domain", "")).strip():
            raise RegistryLoadError(
                f"Worker {worker_id}: capability entries need a domain", worker_ids=[worker_id]
            )
        keywords = _string_list(item.get("keywords"), field_name="keywords", worker_id=worker_id)
        capabilities.append(
            Capability(
                domain=str(item["domain"]).strip().lower(),
                keywords=tuple(keyword.lower() for keyword in keywords),
            )
        )

    return Worker(
        id=worker_id,
        capabilities=tuple(capabilities),
        owns=tuple(
            patterns.normalize(item)
            for item in _string_list(payload.get("owns"), field_name="owns", worker_id=worker_id)
        ),
        priority=priority,
        aliases=_string_list(payload.get("aliases"), field_name="aliases", worker_id=worker_id),
        prompt=str(payload.get("prompt", "")).strip(),
    )


def registry_from_dict(
    data: Mapping[str, Any],
    *,
    precedence: Iterable[str] = (),
    overlap_policy: OverlapPolicy = "error",
) -> CapabilityRegistry:
    raw_workers = data.get("workers", [])
    if not isinstance(raw_workers, list) or not raw_workers:
        raise RegistryLoadError("Registry declares no workers")
    workers = [_worker_from_dict(item) for item in raw_workers if isinstance(item, Mapping)]
    declared = [str(item) for item in data.get("precedence", [])]
    return CapabilityRegistry(
        workers,
        precedence=[*declared, *[item for item in precedence if item not in declared]],
        overlap_policy=overlap_policy,
    )


def _read_registry_text(path: Path | None) -> str:
    if path is None:
        return (
            resources.files("taskforge")
            .joinpath(DEFAULT_REGISTRY_RESOURCE)
            .read_text(encoding="utf-8")
        )
    try:
        return path.read_text(encoding="utf-8")
    except OSError as exc:
        raise RegistryLoadError(f"Cannot read registry file {path}: {exc}") from exc


def load_registry(
    path: Path | None = None,
    *,
    active: Iterable[str] = (),
    precedence: Iterable[str] = (),
    overlap_policy: OverlapPolicy = "error",
) -> CapabilityRegistry:
    """Load and validate a registry; ``path=None`` loads the bundled roster."""
    text = _read_registry_text(path)
    try:
        data = tomllib.loads(text)
    except tomllib.TOMLDecodeError as exc:
        raise RegistryLoadError(f"Registry is not valid TOML: {exc}") from exc

    registry = registry_from_dict(data, precedence=precedence, overlap_policy=overlap_policy)
    active_ids = [item for item in active if item]
    if active_ids:
        registry = registry.restricted_to(active_ids)
    logger.info(
        "Loaded capability registry with %d workers (%s)",
        len(registry),
        path or "bundled",
    )
    return registry
