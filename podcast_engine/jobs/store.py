"""Job and chunk record stores: the Supabase tables and an in-process twin.

Every mutation that can race goes through a guarded operation: chunk
completion is one transaction, counter writes carry the value they expect
to replace, and status writes can carry the status they expect.
"""

from __future__ import annotations

import logging
import threading
import uuid
from collections.abc import Callable
from dataclasses import replace
from datetime import datetime, timedelta
from typing import Any, Protocol

from supabase import Client, create_client

from podcast_engine.config import settings
from podcast_engine.errors import JobNotFoundError
from podcast_engine.jobs.models import Chunk, Job, utc_now
from podcast_engine.pipeline_config import ChunkStatus, JobStatus

logger = logging.getLogger(__name__)


class _Unset:
    def __repr__(self) -> str:
        return "UNSET"


UNSET: Any = _Unset()


class JobStore(Protocol):
    def create_job(self, job: Job, chunk_texts: list[str]) -> Job: ...

    def get_job(self, job_id: str) -> Job: ...

    def list_jobs(self, status: JobStatus | None = None) -> list[Job]: ...

    def update_job(
        self,
        job_id: str,
        *,
        status: JobStatus | None = None,
        error: str | None = UNSET,
        audio_reference: str | None = UNSET,
        expected_status: JobStatus | None = None,
    ) -> bool: ...

    def get_chunk(self, job_id: str, chunk_index: int) -> Chunk: ...

    def list_chunks(self, job_id: str) -> list[Chunk]: ...

    def update_chunk(
        self,
        job_id: str,
        chunk_index: int,
        *,
        status: ChunkStatus | None = None,
        error: str | None = UNSET,
        attempts: int | None = None,
        expected_status: ChunkStatus | None = None,
    ) -> bool: ...

    def complete_chunk(self, job_id: str, chunk_index: int, audio_reference: str) -> bool: ...

    def set_completed_chunks(self, job_id: str, value: int, *, expected: int | None = None) -> bool: ...

    def acquire_lease(self, job_id: str, chunk_index: int, owner: str, ttl_seconds: float) -> bool: ...

    def release_lease(self, job_id: str, chunk_index: int, owner: str) -> None: ...

    def list_stalled_chunks(self, older_than: datetime) -> list[Chunk]: ...

    def reset_stalled_chunk(self, job_id: str, chunk_index: int, older_than: datetime) -> bool: ...


def new_job_id() -> str:
    return str(uuid.uuid4())


# ---------------------------------------------------------------------------
# In-memory store
# ---------------------------------------------------------------------------


class InMemoryJobStore:
    """Thread-safe store for single-process deployments and tests.

    Reads return copies so callers never hold live references to rows.
    """

    def __init__(self, clock: Callable[[], datetime] = utc_now) -> None:
        self._lock = threading.RLock()
        self._clock = clock
        self._jobs: dict[str, Job] = {}
        self._chunks: dict[str, list[Chunk]] = {}

    def _job(self, job_id: str) -> Job:
        job = self._jobs.get(job_id)
        if job is None:
            raise JobNotFoundError(job_id)
        return job

    def _chunk(self, job_id: str, chunk_index: int) -> Chunk:
        chunks = self._chunks.get(job_id)
        if chunks is None:
            raise JobNotFoundError(job_id)
        if not 0 <= chunk_index < len(chunks):
            raise JobNotFoundError(job_id, chunk_index)
        return chunks[chunk_index]

    def create_job(self, job: Job, chunk_texts: list[str]) -> Job:
        now = self._clock()
        with self._lock:
            stored = replace(job, total_chunks=len(chunk_texts), created_at=now, updated_at=now)
            self._jobs[job.id] = stored
            self._chunks[job.id] = [
                Chunk(job_id=job.id, chunk_index=i, chunk_text=text, updated_at=now)
                for i, text in enumerate(chunk_texts)
            ]
            return replace(stored)

    def get_job(self, job_id: str) -> Job:
        with self._lock:
            return replace(self._job(job_id))

    def list_jobs(self, status: JobStatus | None = None) -> list[Job]:
        with self._lock:
            return [replace(j) for j in self._jobs.values() if status is None or j.status is status]

    def update_job(
        self,
        job_id: str,
        *,
        status: JobStatus | None = None,
        error: str | None = UNSET,
        audio_reference: str | None = UNSET,
        expected_status: JobStatus | None = None,
    ) -> bool:
        with self._lock:
            job = self._job(job_id)
            if expected_status is not None and job.status is not expected_status:
                return False
            if status is not None:
                job.status = status
            if error is not UNSET:
                job.error = error
            if audio_reference is not UNSET:
                job.audio_reference = audio_reference
            job.updated_at = self._clock()
            return True

    def get_chunk(self, job_id: str, chunk_index: int) -> Chunk:
        with self._lock:
            return replace(self._chunk(job_id, chunk_index))

    def list_chunks(self, job_id: str) -> list[Chunk]:
        with self._lock:
            if job_id not in self._chunks:
                raise JobNotFoundError(job_id)
            return [replace(c) for c in self._chunks[job_id]]

    def update_chunk(
        self,
        job_id: str,
        chunk_index: int,
        *,
        status: ChunkStatus | None = None,
        error: str | None = UNSET,
        attempts: int | None = None,
        expected_status: ChunkStatus | None = None,
    ) -> bool:
        with self._lock:
            chunk = self._chunk(job_id, chunk_index)
            # Completed chunks are final; only complete_chunk writes them.
            if chunk.status is ChunkStatus.COMPLETED:
                return False
            if expected_status is not None and chunk.status is not expected_status:
                return False
            if status is not None:
                chunk.status = status
            if error is not UNSET:
                chunk.error = error
            if attempts is not None:
                chunk.attempts = attempts
            chunk.updated_at = self._clock()
            return True

    def complete_chunk(self, job_id: str, chunk_index: int, audio_reference: str) -> bool:
        with self._lock:
            chunk = self._chunk(job_id, chunk_index)
            if chunk.status is ChunkStatus.COMPLETED:
                logger.info("Chunk %d of job %s already completed, not counting again", chunk_index, job_id)
                return False
            now = self._clock()
            chunk.status = ChunkStatus.COMPLETED
            chunk.audio_reference = audio_reference
            chunk.error = None
            chunk.updated_at = now

            job = self._job(job_id)
            observed = job.completed_chunks
            if observed >= job.total_chunks:
                logger.warning("Not incrementing job %s past total_chunks=%d", job_id, job.total_chunks)
                return True
            if not self._compare_and_set_completed(job, observed + 1, expected=observed):
                logger.warning("Completed counter for job %s moved concurrently", job_id)
            return True

    def _compare_and_set_completed(self, job: Job, value: int, *, expected: int | None) -> bool:
        if expected is not None and job.completed_chunks != expected:
            return False
        job.completed_chunks = value
        if value == job.total_chunks:
            job.status = JobStatus.COMPLETED
            job.error = None
        job.updated_at = self._clock()
        return True

    def set_completed_chunks(self, job_id: str, value: int, *, expected: int | None = None) -> bool:
        with self._lock:
            job = self._job(job_id)
            if expected is not None and job.completed_chunks != expected:
                return False
            job.completed_chunks = value
            job.updated_at = self._clock()
            return True

    def acquire_lease(self, job_id: str, chunk_index: int, owner: str, ttl_seconds: float) -> bool:
        with self._lock:
            chunk = self._chunk(job_id, chunk_index)
            now = self._clock()
            held = chunk.lease_owner is not None and chunk.lease_expires_at is not None
            if held and chunk.lease_expires_at > now and chunk.lease_owner != owner:
                return False
            chunk.lease_owner = owner
            chunk.lease_expires_at = now + timedelta(seconds=ttl_seconds)
            return True

    def release_lease(self, job_id: str, chunk_index: int, owner: str) -> None:
        with self._lock:
            chunk = self._chunk(job_id, chunk_index)
            if chunk.lease_owner == owner:
                chunk.lease_owner = None
                chunk.lease_expires_at = None

    def list_stalled_chunks(self, older_than: datetime) -> list[Chunk]:
        with self._lock:
            return [
                replace(c)
                for chunks in self._chunks.values()
                for c in chunks
                if c.status is ChunkStatus.PROCESSING and c.updated_at < older_than
            ]

    def reset_stalled_chunk(self, job_id: str, chunk_index: int, older_than: datetime) -> bool:
        with self._lock:
            chunk = self._chunk(job_id, chunk_index)
            if chunk.status is not ChunkStatus.PROCESSING or chunk.updated_at >= older_than:
                return False
            chunk.status = ChunkStatus.PENDING
            chunk.error = "Reset after being stuck in processing state"
            chunk.lease_owner = None
            chunk.lease_expires_at = None
            chunk.updated_at = self._clock()
            return True


# ---------------------------------------------------------------------------
# Supabase store
# ---------------------------------------------------------------------------

JOBS_TABLE = "podcast_jobs"
CHUNKS_TABLE = "podcast_chunks"


def get_supabase_client() -> Client:
    """Create and return a Supabase client from settings."""
    return create_client(settings.supabase_url, settings.supabase_key)


def _parse_timestamp(value: Any) -> datetime | None:
    if value is None or isinstance(value, datetime):
        return value
    return datetime.fromisoformat(str(value).replace("Z", "+00:00"))


def _job_from_row(row: dict[str, Any]) -> Job:
    return Job(
        id=str(row["id"]),
        total_chunks=int(row.get("total_chunks") or 0),
        completed_chunks=int(row.get("completed_chunks") or 0),
        status=JobStatus(row.get("status") or JobStatus.PENDING.value),
        error=row.get("error"),
        user_id=row.get("user_id"),
        estimated_minutes=row.get("estimated_minutes"),
        audio_reference=row.get("audio_url"),
        created_at=_parse_timestamp(row.get("created_at")) or utc_now(),
        updated_at=_parse_timestamp(row.get("updated_at")) or utc_now(),
    )


def _chunk_from_row(row: dict[str, Any]) -> Chunk:
    return Chunk(
        job_id=str(row["job_id"]),
        chunk_index=int(row["chunk_index"]),
        chunk_text=row.get("chunk_text") or "",
        status=ChunkStatus(row.get("status") or ChunkStatus.PENDING.value),
        audio_reference=row.get("audio_url"),
        error=row.get("error"),
        attempts=int(row.get("attempts") or 0),
        lease_owner=row.get("lease_owner"),
        lease_expires_at=_parse_timestamp(row.get("lease_expires_at")),
        updated_at=_parse_timestamp(row.get("updated_at")) or utc_now(),
    )


class SupabaseJobStore:
    """Record store over the ``podcast_jobs`` / ``podcast_chunks`` tables.

    The transactional operations are SQL functions (see
    ``supabase/migrations``) invoked through ``rpc``.
    """

    def __init__(self, client: Client | None = None) -> None:
        self._client = client

    @property
    def client(self) -> Client:
        if self._client is None:
            self._client = get_supabase_client()
        return self._client

    def create_job(self, job: Job, chunk_texts: list[str]) -> Job:
        result = (
            self.client.table(JOBS_TABLE)
            .insert(
                {
                    "id": job.id,
                    "user_id": job.user_id,
                    "status": job.status.value,
                    "total_chunks": len(chunk_texts),
                    "completed_chunks": 0,
                    "estimated_minutes": job.estimated_minutes,
                }
            )
            .execute()
        )
        rows = [
            {
                "job_id": job.id,
                "chunk_index": i,
                "chunk_text": text,
                "status": ChunkStatus.PENDING.value,
            }
            for i, text in enumerate(chunk_texts)
        ]
        # Insert in batches of 50
        batch_size = 50
        for i in range(0, len(rows), batch_size):
            self.client.table(CHUNKS_TABLE).insert(rows[i : i + batch_size]).execute()
        return _job_from_row(result.data[0])

    def get_job(self, job_id: str) -> Job:
        result = self.client.table(JOBS_TABLE).select("*").eq("id", job_id).execute()
        if not result.data:
            raise JobNotFoundError(job_id)
        return _job_from_row(result.data[0])

    def list_jobs(self, status: JobStatus | None = None) -> list[Job]:
        query = self.client.table(JOBS_TABLE).select("*")
        if status is not None:
            query = query.eq("status", status.value)
        result = query.order("created_at", desc=True).execute()
        return [_job_from_row(row) for row in result.data]

    def update_job(
        self,
        job_id: str,
        *,
        status: JobStatus | None = None,
        error: str | None = UNSET,
        audio_reference: str | None = UNSET,
        expected_status: JobStatus | None = None,
    ) -> bool:
        payload: dict[str, Any] = {"updated_at": utc_now().isoformat()}
        if status is not None:
            payload["status"] = status.value
        if error is not UNSET:
            payload["error"] = error
        if audio_reference is not UNSET:
            payload["audio_url"] = audio_reference
        query = self.client.table(JOBS_TABLE).update(payload).eq("id", job_id)
        if expected_status is not None:
            query = query.eq("status", expected_status.value)
        return bool(query.execute().data)

    def get_chunk(self, job_id: str, chunk_index: int) -> Chunk:
        result = (
            self.client.table(CHUNKS_TABLE)
            .select("*")
            .eq("job_id", job_id)
            .eq("chunk_index", chunk_index)
            .execute()
        )
        if not result.data:
            raise JobNotFoundError(job_id, chunk_index)
        return _chunk_from_row(result.data[0])

    def list_chunks(self, job_id: str) -> list[Chunk]:
        result = (
            self.client.table(CHUNKS_TABLE)
            .select("*")
            .eq("job_id", job_id)
            .order("chunk_index")
            .execute()
        )
        return [_chunk_from_row(row) for row in result.data]

    def update_chunk(
        self,
        job_id: str,
        chunk_index: int,
        *,
        status: ChunkStatus | None = None,
        error: str | None = UNSET,
        attempts: int | None = None,
        expected_status: ChunkStatus | None = None,
    ) -> bool:
        payload: dict[str, Any] = {"updated_at": utc_now().isoformat()}
        if status is not None:
            payload["status"] = status.value
        if error is not UNSET:
            payload["error"] = error
        if attempts is not None:
            payload["attempts"] = attempts
        query = (
            self.client.table(CHUNKS_TABLE)
            .update(payload)
            .eq("job_id", job_id)
            .eq("chunk_index", chunk_index)
            .neq("status", ChunkStatus.COMPLETED.value)
        )
        if expected_status is not None:
            query = query.eq("status", expected_status.value)
        result = query.execute()
        return bool(result.data)

    def complete_chunk(self, job_id: str, chunk_index: int, audio_reference: str) -> bool:
        result = self.client.rpc(
            "complete_chunk",
            {"p_job_id": job_id, "p_chunk_index": chunk_index, "p_audio_url": audio_reference},
        ).execute()
        return bool(result.data)

    def set_completed_chunks(self, job_id: str, value: int, *, expected: int | None = None) -> bool:
        query = (
            self.client.table(JOBS_TABLE)
            .update({"completed_chunks": value, "updated_at": utc_now().isoformat()})
            .eq("id", job_id)
        )
        if expected is not None:
            query = query.eq("completed_chunks", expected)
        return bool(query.execute().data)

    def acquire_lease(self, job_id: str, chunk_index: int, owner: str, ttl_seconds: float) -> bool:
        result = self.client.rpc(
            "acquire_chunk_lease",
            {
                "p_job_id": job_id,
                "p_chunk_index": chunk_index,
                "p_owner": owner,
                "p_ttl_seconds": int(ttl_seconds),
            },
        ).execute()
        return bool(result.data)

    def release_lease(self, job_id: str, chunk_index: int, owner: str) -> None:
        (
            self.client.table(CHUNKS_TABLE)
            .update({"lease_owner": None, "lease_expires_at": None})
            .eq("job_id", job_id)
            .eq("chunk_index", chunk_index)
            .eq("lease_owner", owner)
            .execute()
        )

    def list_stalled_chunks(self, older_than: datetime) -> list[Chunk]:
        result = (
            self.client.table(CHUNKS_TABLE)
            .select("*")
            .eq("status", ChunkStatus.PROCESSING.value)
            .lt("updated_at", older_than.isoformat())
            .execute()
        )
        return [_chunk_from_row(row) for row in result.data]

    def reset_stalled_chunk(self, job_id: str, chunk_index: int, older_than: datetime) -> bool:
        result = (
            self.client.table(CHUNKS_TABLE)
            .update(
                {
                    "status": ChunkStatus.PENDING.value,
                    "error": "Reset after being stuck in processing state",
                    "lease_owner": None,
                    "lease_expires_at": None,
                    "updated_at": utc_now().isoformat(),
                }
            )
            .eq("job_id", job_id)
            .eq("chunk_index", chunk_index)
            .eq("status", ChunkStatus.PROCESSING.value)
            .lt("updated_at", older_than.isoformat())
            .execute()
        )
        return bool(result.data)
