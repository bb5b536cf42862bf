"""Job state machine: start jobs, run chunks, choose what runs next."""

from __future__ import annotations

import logging
import random
from collections import Counter
from collections.abc import Callable
from datetime import datetime, timedelta
from typing import Any

from podcast_engine.errors import ValidationError
from podcast_engine.jobs.chunking import chunk_script
from podcast_engine.jobs.dispatch import Dispatcher
from podcast_engine.jobs.leases import LeaseManager, held_lease
from podcast_engine.jobs.models import Job, NextAction, ProcessResult, utc_now
from podcast_engine.jobs.processor import ChunkProcessor
from podcast_engine.jobs.reconciliation import ReconciliationAuditor, is_retrying
from podcast_engine.jobs.store import JobStore, new_job_id
from podcast_engine.pipeline_config import ChunkStatus, EngineConfig, JobStatus

logger = logging.getLogger(__name__)


class JobOrchestrator:
    """Drives a job from script to completed chunks one invocation at a time.

    Each call does a bounded amount of work and hands a ``NextAction`` to the
    dispatcher for whatever should happen next, so no single invocation has
    to outlive the whole job.
    """

    def __init__(
        self,
        store: JobStore,
        processor: ChunkProcessor,
        auditor: ReconciliationAuditor,
        leases: LeaseManager,
        dispatcher: Dispatcher,
        config: EngineConfig | None = None,
        rng: random.Random | None = None,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self.store = store
        self.processor = processor
        self.auditor = auditor
        self.leases = leases
        self.dispatcher = dispatcher
        self.config = config or EngineConfig()
        self._rng = rng or random.Random()
        self._clock = clock

    def handle(self, action: NextAction) -> ProcessResult:
        """Dispatcher callback."""
        return self.process_chunk(action.job_id, action.chunk_index, action.retry_count)

    def start_job(self, script_text: str, estimated_minutes: float, *, user_id: str | None = None) -> str:
        """Chunk a script, persist the job and dispatch its first chunk.

        Raises:
            ValidationError: Empty script or non-positive duration.
        """
        if not script_text or not script_text.strip():
            raise ValidationError("Podcast script is empty")
        if estimated_minutes is None or estimated_minutes <= 0:
            raise ValidationError("estimated_minutes must be positive")

        chunks = chunk_script(script_text, estimated_minutes, hard_limit=self.config.chunk_hard_limit)
        job = Job(
            id=new_job_id(),
            total_chunks=len(chunks),
            user_id=user_id,
            estimated_minutes=estimated_minutes,
        )
        self.store.create_job(job, chunks)
        self.store.update_job(job.id, status=JobStatus.PROCESSING)
        logger.info("Started job %s with %d chunks (~%.0f min)", job.id, len(chunks), estimated_minutes)

        self.dispatcher.dispatch(NextAction(job.id, 0))
        return job.id

    def process_chunk(self, job_id: str, chunk_index: int, retry_count: int = 0) -> ProcessResult:
        with held_lease(self.leases, job_id, chunk_index) as acquired:
            if not acquired:
                return ProcessResult(job_id, chunk_index, "locked")
            job = self.store.get_job(job_id)
            if job.status is JobStatus.ERROR and retry_count == 0:
                logger.info("Job %s is in error state, not processing chunk %d", job_id, chunk_index)
                return ProcessResult(job_id, chunk_index, "job_error", error=job.error)
            result = self.processor.process(job_id, chunk_index, retry_count)

        if result.outcome == "failed":
            if result.retry_scheduled:
                action = NextAction(job_id, chunk_index, retry_count + 1, self.config.retry_delay(retry_count))
                logger.info(
                    "Retrying chunk %d of job %s (retry %d/%d) in %.0fs",
                    chunk_index,
                    job_id,
                    action.retry_count,
                    self.config.max_chunk_retries,
                    action.delay_seconds,
                )
                self.dispatcher.dispatch(action)
                result.next_action = action
                return result
            logger.error("Chunk %d of job %s exhausted %d retries", chunk_index, job_id, self.config.max_chunk_retries)
            if self.config.fail_fast_on_chunk_failure:
                self._fail_job(
                    job_id,
                    chunk_index,
                    f"Chunk {chunk_index} failed after {retry_count + 1} attempts: {result.error}",
                )
                return result

        result.next_action = self.pick_next_chunk(job_id, chunk_index)
        return result

    def _fail_job(self, job_id: str, chunk_index: int, message: str) -> None:
        """Stop a job after one chunk failed for good.

        Chunks still pending are marked as errored with no retries left, so
        the job stays in error under later reconciliation.
        """
        abandoned = 0
        for chunk in self.store.list_chunks(job_id):
            if chunk.status is not ChunkStatus.PENDING:
                continue
            if self.store.update_chunk(
                job_id,
                chunk.chunk_index,
                status=ChunkStatus.ERROR,
                error=f"Not processed: chunk {chunk_index} failed",
                attempts=self.config.max_chunk_retries,
                expected_status=ChunkStatus.PENDING,
            ):
                abandoned += 1
        self.store.update_job(job_id, status=JobStatus.ERROR, error=message)
        logger.error("Job %s failed on chunk %d, %d pending chunks abandoned", job_id, chunk_index, abandoned)

    def pick_next_chunk(self, job_id: str, last_index: int | None = None) -> NextAction | None:
        """Dispatch the next pending chunk, or finalize the job if none remain.

        Returns the dispatched action, or ``None`` when nothing was dispatched.
        """
        job = self.store.get_job(job_id)
        chunks = self.store.list_chunks(job_id)
        counts = Counter(c.status for c in chunks)
        completed = counts[ChunkStatus.COMPLETED]

        if completed != job.completed_chunks:
            logger.warning(
                "Job %s counter mismatch (%d recorded, %d actual), reconciling",
                job_id,
                job.completed_chunks,
                completed,
            )
            self.auditor.reconcile(job_id)
            job = self.store.get_job(job_id)

        if completed >= job.total_chunks:
            report = self.auditor.reconcile(job_id)
            logger.info("Job %s finished with status %s", job_id, report.status_after.value)
            return None

        if job.status is JobStatus.ERROR:
            logger.info("Job %s is in error state, not scheduling more chunks", job_id)
            return None

        pending = sorted(c.chunk_index for c in chunks if c.status is ChunkStatus.PENDING)
        if pending:
            if last_index is not None and last_index + 1 in pending:
                next_index = last_index + 1
            else:
                next_index = pending[0]
            action = NextAction(job_id, next_index, 0, self._rng.uniform(*self.config.next_chunk_delay_range))
            self.dispatcher.dispatch(action)
            logger.info(
                "Job %s: %d/%d completed, next chunk %d",
                job_id,
                completed,
                job.total_chunks,
                next_index,
            )
            return action

        if counts[ChunkStatus.PROCESSING]:
            # The processing chunk's own invocation will pick next.
            return None

        # Errored chunks with retries left already have their retry dispatched;
        # the auditor keeps the job processing until they land.

        report = self.auditor.reconcile(job_id)
        logger.info(
            "Job %s has no runnable chunks, final status %s (%s)",
            job_id,
            report.status_after.value,
            report.error,
        )
        return None

    def reset_stalled_chunks(self, threshold_seconds: float | None = None) -> int:
        """Return chunks stuck in ``processing`` to ``pending`` and resume their jobs."""
        threshold = self.config.stalled_chunk_seconds if threshold_seconds is None else threshold_seconds
        cutoff = self._clock() - timedelta(seconds=threshold)
        reset = 0
        jobs: list[str] = []
        for chunk in self.store.list_stalled_chunks(cutoff):
            if self.store.reset_stalled_chunk(chunk.job_id, chunk.chunk_index, cutoff):
                reset += 1
                logger.warning("Reset stalled chunk %d of job %s", chunk.chunk_index, chunk.job_id)
                if chunk.job_id not in jobs:
                    jobs.append(chunk.job_id)
        for job_id in jobs:
            self.pick_next_chunk(job_id)
        return reset

    def resume_idle_jobs(self, threshold_seconds: float | None = None) -> int:
        """Re-dispatch processing jobs that have had no activity for too long.

        Covers a NextAction that never reached its worker: the job has
        pending (or retrying) chunks but nothing is processing and no row has
        changed since the cutoff. Returns the number of jobs re-dispatched.
        """
        threshold = self.config.stalled_chunk_seconds if threshold_seconds is None else threshold_seconds
        cutoff = self._clock() - timedelta(seconds=threshold)
        resumed = 0
        for job in self.store.list_jobs(JobStatus.PROCESSING):
            chunks = self.store.list_chunks(job.id)
            if any(c.status is ChunkStatus.PROCESSING for c in chunks):
                continue
            last_activity = max([job.updated_at, *(c.updated_at for c in chunks)])
            if last_activity >= cutoff:
                continue

            retrying = [c for c in chunks if is_retrying(c, self.config.max_chunk_retries)]
            if any(c.status is ChunkStatus.PENDING for c in chunks) or not retrying:
                action = self.pick_next_chunk(job.id)
            else:
                chunk = retrying[0]
                action = NextAction(job.id, chunk.chunk_index, chunk.attempts + 1)
                self.dispatcher.dispatch(action)
            if action is not None:
                resumed += 1
                logger.warning("Resumed idle job %s at chunk %d", job.id, action.chunk_index)
        return resumed

    def job_status(self, job_id: str) -> dict[str, Any]:
        job = self.store.get_job(job_id)
        counts = Counter(c.status for c in self.store.list_chunks(job_id))
        progress = (job.completed_chunks / job.total_chunks * 100) if job.total_chunks else 0.0
        return {
            "job_id": job.id,
            "status": job.status.value,
            "total_chunks": job.total_chunks,
            "completed_chunks": job.completed_chunks,
            "progress": round(progress, 1),
            "error": job.error,
            "audio_reference": job.audio_reference,
            "chunks": {status.value: counts[status] for status in ChunkStatus},
            "created_at": job.created_at.isoformat(),
            "updated_at": job.updated_at.isoformat(),
        }
