"""Per-(job, chunk) processing leases.

A lease bounds a chunk to one active processor. The in-process manager is
enough for a single worker; the store-backed one persists the owner and an
expiry so a crashed holder cannot block the chunk forever.
"""

from __future__ import annotations

import logging
import threading
import time
import uuid
from collections.abc import Callable, Iterator
from contextlib import contextmanager
from typing import Protocol

from podcast_engine.jobs.store import JobStore

logger = logging.getLogger(__name__)


class LeaseManager(Protocol):
    def acquire(self, job_id: str, chunk_index: int, owner: str) -> bool: ...

    def release(self, job_id: str, chunk_index: int, owner: str) -> None: ...


def new_owner() -> str:
    return uuid.uuid4().hex


@contextmanager
def held_lease(leases: LeaseManager, job_id: str, chunk_index: int) -> Iterator[bool]:
    """Yield whether the lease was obtained; release it on exit if it was."""
    owner = new_owner()
    acquired = leases.acquire(job_id, chunk_index, owner)
    try:
        yield acquired
    finally:
        if acquired:
            leases.release(job_id, chunk_index, owner)


class InMemoryLeaseManager:
    def __init__(self, ttl_seconds: float = 600.0, clock: Callable[[], float] = time.monotonic) -> None:
        self.ttl_seconds = ttl_seconds
        self._clock = clock
        self._lock = threading.Lock()
        self._held: dict[tuple[str, int], tuple[str, float]] = {}

    def acquire(self, job_id: str, chunk_index: int, owner: str) -> bool:
        key = (job_id, chunk_index)
        now = self._clock()
        with self._lock:
            current = self._held.get(key)
            if current is not None and current[1] > now and current[0] != owner:
                logger.info("Chunk %d of job %s is leased by %s", chunk_index, job_id, current[0])
                return False
            self._held[key] = (owner, now + self.ttl_seconds)
            return True

    def release(self, job_id: str, chunk_index: int, owner: str) -> None:
        with self._lock:
            current = self._held.get((job_id, chunk_index))
            if current is not None and current[0] == owner:
                del self._held[(job_id, chunk_index)]


class StoreLeaseManager:
    """Lease persisted on the chunk row with an expiry timestamp."""

    def __init__(self, store: JobStore, ttl_seconds: float = 600.0) -> None:
        self.store = store
        self.ttl_seconds = ttl_seconds

    def acquire(self, job_id: str, chunk_index: int, owner: str) -> bool:
        acquired = self.store.acquire_lease(job_id, chunk_index, owner, self.ttl_seconds)
        if not acquired:
            logger.info("Chunk %d of job %s is leased by another worker", chunk_index, job_id)
        return acquired

    def release(self, job_id: str, chunk_index: int, owner: str) -> None:
        self.store.release_lease(job_id, chunk_index, owner)
