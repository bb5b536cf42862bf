"""Tests for the reconciliation auditor."""

from __future__ import annotations

import pytest

from podcast_engine.errors import JobNotFoundError
from podcast_engine.jobs.reconciliation import ReconciliationAuditor, derive_status
from podcast_engine.pipeline_config import ChunkStatus, JobStatus


@pytest.fixture
def auditor(store) -> ReconciliationAuditor:
    return ReconciliationAuditor(store)


class TestDeriveStatus:
    @pytest.mark.parametrize(
        "counts,expected_status,expected_error",
        [
            ((3, 3, 0, 0, 0), JobStatus.COMPLETED, None),
            ((3, 1, 2, 0, 0), JobStatus.PROCESSING, None),
            ((3, 0, 0, 1, 0), JobStatus.PROCESSING, None),
            ((3, 1, 1, 0, 1), JobStatus.PROCESSING, "1 of 3 chunks failed"),
            ((3, 2, 0, 0, 1), JobStatus.ERROR, "1 of 3 chunks failed"),
            ((3, 2, 0, 0, 0, 1), JobStatus.PROCESSING, None),
            ((3, 1, 0, 0, 1, 1), JobStatus.PROCESSING, "1 of 3 chunks failed"),
            ((3, 0, 0, 0, 3), JobStatus.ERROR, "3 of 3 chunks failed"),
            ((0, 0, 0, 0, 0), JobStatus.ERROR, "No chunks were processed"),
        ],
    )
    def test_table(self, counts, expected_status, expected_error) -> None:
        assert derive_status(*counts) == (expected_status, expected_error)


class TestReconcile:
    def test_consistent_job_untouched(self, store, auditor, make_job) -> None:
        job_id = make_job(["a", "b"])
        store.complete_chunk(job_id, 0, "u0")
        report = auditor.reconcile(job_id)
        assert report.reconciled is False
        assert report.status_updated is False
        assert report.actual_completed == 1
        assert report.actual_pending == 1
        assert report.status_after is JobStatus.PROCESSING

    def test_restores_injected_mismatch(self, store, auditor, make_job) -> None:
        job_id = make_job(["a", "b", "c"])
        store.complete_chunk(job_id, 0, "u0")
        store.set_completed_chunks(job_id, 2)
        report = auditor.reconcile(job_id)
        assert report.reconciled is True
        assert report.fixed_overflow is False
        assert report.recorded_completed == 2
        assert store.get_job(job_id).completed_chunks == 1

    def test_fixes_overflow(self, store, auditor, make_job) -> None:
        job_id = make_job(["a", "b"])
        store.complete_chunk(job_id, 0, "u0")
        store.set_completed_chunks(job_id, 5)
        report = auditor.reconcile(job_id)
        assert report.fixed_overflow is True
        assert store.get_job(job_id).completed_chunks == 1

    def test_all_completed_marks_completed(self, store, auditor, make_job) -> None:
        job_id = make_job(["a"])
        store.update_chunk(job_id, 0, status=ChunkStatus.PROCESSING)
        store.complete_chunk(job_id, 0, "u0")
        store.update_job(job_id, status=JobStatus.PROCESSING)
        report = auditor.reconcile(job_id)
        assert report.status_after is JobStatus.COMPLETED
        assert report.status_updated is True

    def test_no_progress_possible_is_error(self, store, auditor, make_job) -> None:
        job_id = make_job(["a", "b", "c"])
        store.complete_chunk(job_id, 0, "u0")
        store.complete_chunk(job_id, 2, "u2")
        store.update_chunk(job_id, 1, status=ChunkStatus.ERROR, error="synthesis failed", attempts=2)
        report = auditor.reconcile(job_id)
        assert report.status_before is JobStatus.PROCESSING
        assert report.status_after is JobStatus.ERROR
        job = store.get_job(job_id)
        assert job.status is JobStatus.ERROR
        assert job.error == "1 of 3 chunks failed"

    def test_recovers_from_error_when_chunks_complete(self, store, auditor, make_job) -> None:
        job_id = make_job(["a"])
        store.complete_chunk(job_id, 0, "u0")
        store.update_job(job_id, status=JobStatus.ERROR, error="1 of 1 chunks failed")
        report = auditor.reconcile(job_id)
        assert report.status_after is JobStatus.COMPLETED
        assert store.get_job(job_id).error is None

    def test_idempotent(self, store, auditor, make_job) -> None:
        job_id = make_job(["a", "b"])
        store.complete_chunk(job_id, 0, "u0")
        store.set_completed_chunks(job_id, 0)
        auditor.reconcile(job_id)
        second = auditor.reconcile(job_id)
        assert second.reconciled is False

    def test_report_to_dict(self, store, auditor, make_job) -> None:
        job_id = make_job(["a"])
        data = auditor.reconcile(job_id).to_dict()
        assert data["status_before"] == "processing"
        assert data["recorded_total"] == 1

    def test_missing_job_raises(self, auditor) -> None:
        with pytest.raises(JobNotFoundError):
            auditor.reconcile("missing")


class TestRetryingChunks:
    def test_errored_chunk_with_retries_left_keeps_job_processing(self, store, auditor, make_job) -> None:
        job_id = make_job(["a", "b"])
        store.complete_chunk(job_id, 0, "u0")
        store.update_chunk(job_id, 1, status=ChunkStatus.ERROR, error="connection reset", attempts=1)
        report = auditor.reconcile(job_id)
        assert report.actual_retrying == 1
        assert report.actual_errored == 0
        assert report.status_after is JobStatus.PROCESSING
        job = store.get_job(job_id)
        assert job.status is JobStatus.PROCESSING
        assert job.error is None

    def test_exhausted_chunk_fails_job(self, store, auditor, make_job) -> None:
        job_id = make_job(["a", "b"])
        store.complete_chunk(job_id, 0, "u0")
        store.update_chunk(job_id, 1, status=ChunkStatus.ERROR, error="connection reset", attempts=2)
        report = auditor.reconcile(job_id)
        assert report.actual_retrying == 0
        assert report.status_after is JobStatus.ERROR

    def test_retry_limit_is_configurable(self, store, make_job) -> None:
        job_id = make_job(["a", "b"])
        store.complete_chunk(job_id, 0, "u0")
        store.update_chunk(job_id, 1, status=ChunkStatus.ERROR, error="connection reset", attempts=0)
        report = ReconciliationAuditor(store, max_chunk_retries=0).reconcile(job_id)
        assert report.status_after is JobStatus.ERROR


class TestTerminalError:
    def test_error_message_kept_when_still_failed(self, store, auditor, make_job) -> None:
        job_id = make_job(["a", "b"])
        store.update_chunk(job_id, 0, status=ChunkStatus.ERROR, error="boom", attempts=2)
        store.update_chunk(job_id, 1, status=ChunkStatus.ERROR, error="not processed", attempts=2)
        store.update_job(job_id, status=JobStatus.ERROR, error="Chunk 0 failed after 3 attempts: boom")
        report = auditor.reconcile(job_id)
        assert report.status_updated is False
        assert report.status_after is JobStatus.ERROR
        assert store.get_job(job_id).error == "Chunk 0 failed after 3 attempts: boom"
