"""Reconciliation of job counters and status against the chunk rows."""

from __future__ import annotations

import logging
from collections import Counter

from podcast_engine.jobs.models import Chunk, ReconciliationReport
from podcast_engine.jobs.store import JobStore
from podcast_engine.pipeline_config import ChunkStatus, EngineConfig, JobStatus

logger = logging.getLogger(__name__)

MAX_COUNTER_WRITE_ATTEMPTS = 5


def derive_status(
    total: int,
    completed: int,
    pending: int,
    processing: int,
    errored: int,
    retrying: int = 0,
) -> tuple[JobStatus, str | None]:
    """Job status and error message implied by chunk counts.

    ``errored`` counts chunks that have used up their retries; ``retrying``
    counts errored chunks that still have a retry coming and so are treated
    like in-flight work. A job with nothing left pending, processing or
    retrying and at least one errored chunk can make no further progress,
    so it is an error even when some chunks completed.
    """
    if total > 0 and completed >= total:
        return JobStatus.COMPLETED, None
    if pending or processing or retrying:
        message = f"{errored} of {total} chunks failed" if errored else None
        return JobStatus.PROCESSING, message
    if errored:
        return JobStatus.ERROR, f"{errored} of {total} chunks failed"
    if completed == 0:
        return JobStatus.ERROR, "No chunks were processed"
    return JobStatus.PROCESSING, None


def is_retrying(chunk: Chunk, max_chunk_retries: int) -> bool:
    """An errored chunk whose last attempt still left a retry to schedule."""
    return chunk.status is ChunkStatus.ERROR and chunk.attempts < max_chunk_retries


class ReconciliationAuditor:
    """Recount chunk rows and repair the job record to match.

    Never raises on inconsistencies; it heals and reports them. Only a
    missing job propagates (``JobNotFoundError`` from the store).
    """

    def __init__(self, store: JobStore, max_chunk_retries: int = EngineConfig.max_chunk_retries) -> None:
        self.store = store
        self.max_chunk_retries = max_chunk_retries

    def reconcile(self, job_id: str) -> ReconciliationReport:
        job = self.store.get_job(job_id)
        recorded_completed = job.completed_chunks
        chunks = self.store.list_chunks(job_id)
        counts = Counter(c.status for c in chunks)
        completed = counts[ChunkStatus.COMPLETED]
        pending = counts[ChunkStatus.PENDING]
        processing = counts[ChunkStatus.PROCESSING]
        retrying = sum(1 for c in chunks if is_retrying(c, self.max_chunk_retries))
        errored = counts[ChunkStatus.ERROR] - retrying

        report = ReconciliationReport(
            job_id=job_id,
            recorded_total=job.total_chunks,
            recorded_completed=recorded_completed,
            actual_completed=completed,
            actual_pending=pending,
            actual_processing=processing,
            actual_errored=errored,
            actual_retrying=retrying,
            status_before=job.status,
            status_after=job.status,
        )

        if recorded_completed != completed:
            report.fixed_overflow = recorded_completed > job.total_chunks
            report.reconciled = self._write_counter(job_id, completed, recorded_completed)
            logger.warning(
                "Job %s completed_chunks drifted: recorded %d, actual %d%s",
                job_id,
                recorded_completed,
                completed,
                " (overflow)" if report.fixed_overflow else "",
            )

        status, message = derive_status(job.total_chunks, completed, pending, processing, errored, retrying)
        if status is JobStatus.ERROR and job.status is JobStatus.ERROR and job.error:
            # Keep the more specific message recorded when the job failed.
            message = job.error
        if status is not job.status or message != job.error:
            if self.store.update_job(job_id, status=status, error=message, expected_status=job.status):
                report.status_updated = status is not job.status
                report.status_after = status
                report.reconciled = True
                report.error = message
                logger.info("Job %s status %s -> %s", job_id, job.status.value, status.value)
            else:
                current = self.store.get_job(job_id)
                report.status_after = current.status
                report.error = current.error
                logger.info("Job %s status changed concurrently to %s", job_id, current.status.value)
        else:
            report.error = job.error
        return report

    def _write_counter(self, job_id: str, value: int, expected: int) -> bool:
        for _ in range(MAX_COUNTER_WRITE_ATTEMPTS):
            if self.store.set_completed_chunks(job_id, value, expected=expected):
                return True
            # A completion landed in between; recount from the rows.
            expected = self.store.get_job(job_id).completed_chunks
            value = sum(1 for c in self.store.list_chunks(job_id) if c.status is ChunkStatus.COMPLETED)
            if value == expected:
                return False
        logger.error("Could not reconcile completed_chunks for job %s", job_id)
        return False
