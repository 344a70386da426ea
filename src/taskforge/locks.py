from __future__ import annotations

import logging
import threading
import time
from collections.abc import Iterable

from taskforge import patterns
from taskforge.errors import ResourceConflictError
from taskforge.models import ResourceClaim

logger = logging.getLogger(__name__)


class ResourceLockTable:
    """Exclusive claims on resource identifiers held by in-flight tasks.

    This is the only shared mutable structure of a run; every mutation goes
    through one mutex so claims and releases are linearizable.
    """

    def __init__(self) -> None:
        self._mutex = threading.Lock()
        self._claims: list[ResourceClaim] = []

    def _conflict(self, task_id: str, resource: str) -> ResourceClaim | None:
        for claim in self._claims:
            if claim.task_id == task_id:
                continue
            if patterns.overlaps(resource, claim.resource):
                return claim
        return None

    def acquire(self, task_id: str, resources: Iterable[str]) -> list[ResourceClaim]:
        """Claim every resource for *task_id* or none of them."""
        wanted = [patterns.normalize(item) for item in resources if item.strip()]
        with self._mutex:
            for resource in wanted:
                held = self._conflict(task_id, resource)
                if held is not None:
                    logger.error(
                        "Resource conflict: %s wants '%s' held by %s ('%s')",
                        task_id,
                        resource,
                        held.task_id,
                        held.resource,
                    )
                    raise ResourceConflictError(
                        task_id=task_id,
                        holder_id=held.task_id,
                        resource=resource,
                        held=held.resource,
                    )
            now = time.time()
            claims = [
                ResourceClaim(resource=resource, task_id=task_id, claimed_at=now)
                for resource in wanted
            ]
            self._claims.extend(claims)
        logger.debug("Task %s claimed %d resources", task_id, len(claims))
        return claims

    def release(self, task_id: str) -> int:
        with self._mutex:
            before = len(self._claims)
            self._claims = [claim for claim in self._claims if claim.task_id != task_id]
            released = before - len(self._claims)
        logger.debug("Task %s released %d resources", task_id, released)
        return released

    def release_all(self) -> None:
        with self._mutex:
            self._claims.clear()

    def holder_of(self, resource: str) -> str | None:
        with self._mutex:
            for claim in self._claims:
                if patterns.overlaps(resource, claim.resource):
                    return claim.task_id
        return None

    def active_claims(self) -> list[ResourceClaim]:
        with self._mutex:
            return list(self._claims)

    def __len__(self) -> int:
        with self._mutex:
            return len(self._claims)
