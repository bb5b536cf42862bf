"""Pydantic request/response schemas for the podcast job API."""

from __future__ import annotations

from typing import Any

from pydantic import BaseModel, Field

from podcast_engine.pipeline_config import JobStatus


class CreateJobRequest(BaseModel):
    """Request body for POST /api/jobs."""

    script: str
    estimated_minutes: float = Field(gt=0)
    user_id: str | None = None


class Article(BaseModel):
    id: str | None = None
    title: str
    content: str | None = None
    summary: str | None = None


class CreateJobFromArticlesRequest(BaseModel):
    """Request body for POST /api/jobs/from-articles."""

    articles: list[Article]
    user_id: str | None = None


class CreateJobResponse(BaseModel):
    job_id: str
    total_chunks: int
    estimated_minutes: float | None = None


class ProcessChunkRequest(BaseModel):
    retry_count: int = Field(default=0, ge=0)


class NextActionModel(BaseModel):
    job_id: str
    chunk_index: int
    retry_count: int = 0
    delay_seconds: float = 0.0


class ProcessChunkResponse(BaseModel):
    """Outcome of one process-chunk invocation."""

    job_id: str
    chunk_index: int
    outcome: str
    audio_reference: str | None = None
    segments_total: int = 0
    segments_failed: int = 0
    error: str | None = None
    retry_scheduled: bool = False
    next_action: NextActionModel | None = None


class ReconciliationResponse(BaseModel):
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


class JobStatusResponse(BaseModel):
    """Status snapshot for GET /api/jobs/{job_id}."""

    job_id: str
    status: JobStatus
    total_chunks: int
    completed_chunks: int
    progress: float
    error: str | None = None
    audio_reference: str | None = None
    chunks: dict[str, int] = {}
    created_at: str | None = None
    updated_at: str | None = None


class AssembleResponse(BaseModel):
    job_id: str
    audio_reference: str


class ResetStalledResponse(BaseModel):
    reset: int
    resumed: int = 0


def dump(data: Any) -> dict[str, Any]:
    """Dataclass results expose ``to_dict``; plain dicts pass through."""
    return data.to_dict() if hasattr(data, "to_dict") else dict(data)
