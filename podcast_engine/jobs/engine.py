"""Wire the job engine's components together from settings."""

from __future__ import annotations

import logging
from dataclasses import dataclass

from podcast_engine.config import Settings, get_settings
from podcast_engine.jobs.dispatch import Dispatcher, HttpDispatcher, ThreadDispatcher
from podcast_engine.jobs.leases import InMemoryLeaseManager, LeaseManager, StoreLeaseManager
from podcast_engine.jobs.orchestrator import JobOrchestrator
from podcast_engine.jobs.processor import ChunkProcessor
from podcast_engine.jobs.rate_limiter import TokenBucket
from podcast_engine.jobs.reconciliation import ReconciliationAuditor
from podcast_engine.jobs.script import ScriptGenerator
from podcast_engine.jobs.storage import InMemoryObjectStore, ObjectStore, SupabaseObjectStore
from podcast_engine.jobs.store import InMemoryJobStore, JobStore, SupabaseJobStore
from podcast_engine.jobs.synthesis import OpenAISpeechProvider, SegmentSynthesizer, SpeechProvider
from podcast_engine.pipeline_config import DispatchMode, EngineConfig

logger = logging.getLogger(__name__)


@dataclass
class Engine:
    """Everything the API needs, built once per process."""

    store: JobStore
    object_store: ObjectStore
    orchestrator: JobOrchestrator
    auditor: ReconciliationAuditor
    script_generator: ScriptGenerator
    config: EngineConfig


def build_engine(
    settings: Settings | None = None,
    *,
    store: JobStore | None = None,
    object_store: ObjectStore | None = None,
    provider: SpeechProvider | None = None,
    dispatcher: Dispatcher | None = None,
    script_generator: ScriptGenerator | None = None,
) -> Engine:
    """Build an Engine; explicit components override what settings would pick."""
    settings = settings or get_settings()
    config = EngineConfig.from_settings(settings)

    if store is None:
        store = SupabaseJobStore() if settings.record_store == "supabase" else InMemoryJobStore()
    if object_store is None:
        object_store = (
            SupabaseObjectStore(bucket=settings.storage_bucket)
            if settings.record_store == "supabase"
            else InMemoryObjectStore(f"{settings.public_base_url.rstrip('/')}/audio")
        )

    leases: LeaseManager
    if isinstance(store, InMemoryJobStore):
        leases = InMemoryLeaseManager(config.lease_seconds)
    else:
        leases = StoreLeaseManager(store, config.lease_seconds)

    limiter = TokenBucket(settings.rate_limit_capacity, settings.rate_limit_refill_per_second)
    synthesizer = SegmentSynthesizer(
        provider or OpenAISpeechProvider(model=settings.tts_model),
        limiter,
        max_attempts=settings.synthesis_max_attempts,
        base_delay=settings.synthesis_base_delay_seconds,
        max_delay=settings.synthesis_max_delay_seconds,
        part_limit=settings.synthesis_part_limit,
        timeout=settings.synthesis_timeout_seconds,
    )
    processor = ChunkProcessor(store, object_store, synthesizer, config)
    auditor = ReconciliationAuditor(store, config.max_chunk_retries)

    bind_thread = False
    if dispatcher is None:
        if DispatchMode(settings.dispatch_mode) is DispatchMode.HTTP:
            dispatcher = HttpDispatcher(settings.public_base_url)
        else:
            dispatcher = ThreadDispatcher()
            bind_thread = True

    orchestrator = JobOrchestrator(store, processor, auditor, leases, dispatcher, config)
    if bind_thread:
        dispatcher.bind(orchestrator.handle)

    logger.info(
        "Job engine ready (store=%s, dispatch=%s)",
        type(store).__name__,
        type(dispatcher).__name__,
    )
    return Engine(
        store=store,
        object_store=object_store,
        orchestrator=orchestrator,
        auditor=auditor,
        script_generator=script_generator or ScriptGenerator(),
        config=config,
    )
