"""Data models for jobs, chunks and the engine's return values."""

from __future__ import annotations

from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from typing import Any

from podcast_engine.pipeline_config import ChunkStatus, JobStatus


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class Job:
    """A podcast generation job and its aggregate progress counters."""

    id: str
    total_chunks: int
    completed_chunks: int = 0
    status: JobStatus = JobStatus.PENDING
    error: str | None = None
    user_id: str | None = None
    estimated_minutes: float | None = None
    audio_reference: str | None = None
    created_at: datetime = field(default_factory=utc_now)
    updated_at: datetime = field(default_factory=utc_now)


@dataclass
class Chunk:
    """A bounded slice of the script, synthesized as one unit of work."""

    job_id: str
    chunk_index: int
    chunk_text: str
    status: ChunkStatus = ChunkStatus.PENDING
    audio_reference: str | None = None
    error: str | None = None
    attempts: int = 0
    lease_owner: str | None = None
    lease_expires_at: datetime | None = None
    updated_at: datetime = field(default_factory=utc_now)


@dataclass
class Segment:
    """One speaker turn inside a chunk. Never persisted."""

    index: int
    speaker: str
    text: str
    voice: str


@dataclass(frozen=True)
class NextAction:
    """A request for the scheduler to run ``process_chunk`` later."""

    job_id: str
    chunk_index: int
    retry_count: int = 0
    delay_seconds: float = 0.0


@dataclass
class ProcessResult:
    """Outcome of a single ``process_chunk`` invocation."""

    job_id: str
    chunk_index: int
    outcome: str  # "completed", "skipped", "locked", "job_error", "failed"
    audio_reference: str | None = None
    segments_total: int = 0
    segments_failed: int = 0
    error: str | None = None
    retry_scheduled: bool = False
    next_action: NextAction | None = None

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass
class ReconciliationReport:
    """What the auditor found for one job and what it changed."""

    job_id: str
    recorded_total: int
    recorded_completed: int
    actual_completed: int
    actual_pending: int
    actual_processing: int
    actual_errored: int
    status_before: JobStatus
    status_after: JobStatus
    actual_retrying: int = 0
    reconciled: bool = False
    fixed_overflow: bool = False
    status_updated: bool = False
    error: str | None = None

    def to_dict(self) -> dict[str, Any]:
        data = asdict(self)
        data["status_before"] = self.status_before.value
        data["status_after"] = self.status_after.value
        return data
