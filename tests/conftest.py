"""Shared fixtures: in-memory engine components and a scriptable speech provider."""

from __future__ import annotations

import random
from datetime import datetime, timedelta, timezone

import pytest

from podcast_engine.errors import TransientNetworkError
from podcast_engine.jobs.dispatch import RecordingDispatcher
from podcast_engine.jobs.leases import InMemoryLeaseManager
from podcast_engine.jobs.models import Job
from podcast_engine.jobs.orchestrator import JobOrchestrator
from podcast_engine.jobs.processor import ChunkProcessor
from podcast_engine.jobs.rate_limiter import TokenBucket
from podcast_engine.jobs.reconciliation import ReconciliationAuditor
from podcast_engine.jobs.storage import InMemoryObjectStore
from podcast_engine.jobs.store import InMemoryJobStore, new_job_id
from podcast_engine.jobs.synthesis import SegmentSynthesizer
from podcast_engine.pipeline_config import EngineConfig, JobStatus


class FakeSpeechProvider:
    """Returns ``<voice:text>`` as audio; fails on request for matching text."""

    def __init__(self) -> None:
        self.calls: list[tuple[str, str]] = []
        self._plans: list[list] = []

    def fail(self, needle: str, times: int | None = None, error: Exception | None = None) -> None:
        """Fail calls containing ``needle``; ``times=None`` fails forever."""
        self._plans.append([needle, times, error or TransientNetworkError("connection reset")])

    def synthesize(self, text: str, voice: str, timeout: float) -> bytes:
        self.calls.append((text, voice))
        for plan in self._plans:
            needle, remaining, error = plan
            if needle in text and (remaining is None or remaining > 0):
                if remaining is not None:
                    plan[1] = remaining - 1
                raise error
        return f"<{voice}:{text}>".encode()


class FakeClock:
    """Manually advanced UTC clock."""

    def __init__(self, start: datetime | None = None) -> None:
        self.now = start or datetime(2025, 3, 1, 12, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += timedelta(seconds=seconds)


def no_sleep(seconds: float) -> None:
    return None


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def store(clock: FakeClock) -> InMemoryJobStore:
    return InMemoryJobStore(clock=clock)


@pytest.fixture
def object_store() -> InMemoryObjectStore:
    return InMemoryObjectStore()


@pytest.fixture
def provider() -> FakeSpeechProvider:
    return FakeSpeechProvider()


@pytest.fixture
def synthesizer(provider: FakeSpeechProvider) -> SegmentSynthesizer:
    limiter = TokenBucket(capacity=1000, refill_rate=1000.0, sleep=no_sleep)
    return SegmentSynthesizer(provider, limiter, sleep=no_sleep, rng=random.Random(0))


@pytest.fixture
def config() -> EngineConfig:
    return EngineConfig(upload_retry_delay_seconds=0.0)


@pytest.fixture
def dispatcher() -> RecordingDispatcher:
    return RecordingDispatcher()


@pytest.fixture
def processor(store, object_store, synthesizer, config) -> ChunkProcessor:
    return ChunkProcessor(store, object_store, synthesizer, config)


@pytest.fixture
def orchestrator(store, processor, dispatcher, config, clock) -> JobOrchestrator:
    return JobOrchestrator(
        store,
        processor,
        ReconciliationAuditor(store, config.max_chunk_retries),
        InMemoryLeaseManager(),
        dispatcher,
        config,
        rng=random.Random(0),
        clock=clock,
    )


def seed_job(store: InMemoryJobStore, texts: list[str], status: JobStatus = JobStatus.PROCESSING) -> str:
    """Create a job whose chunks are exactly ``texts``."""
    job_id = new_job_id()
    store.create_job(Job(id=job_id, total_chunks=len(texts)), texts)
    store.update_job(job_id, status=status)
    return job_id


@pytest.fixture
def make_job(store: InMemoryJobStore):
    def _make(texts: list[str], status: JobStatus = JobStatus.PROCESSING) -> str:
        return seed_job(store, texts, status)

    return _make
