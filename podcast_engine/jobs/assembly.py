"""Final podcast assembly from completed chunk audio."""

from __future__ import annotations

import logging

from podcast_engine.errors import JobNotReadyError
from podcast_engine.jobs.storage import (
    ObjectStore,
    chunk_audio_key,
    podcast_audio_key,
    upload_with_verification,
)
from podcast_engine.jobs.store import JobStore
from podcast_engine.pipeline_config import ChunkStatus, EngineConfig, JobStatus

logger = logging.getLogger(__name__)


def assemble_podcast(
    store: JobStore,
    object_store: ObjectStore,
    job_id: str,
    config: EngineConfig | None = None,
) -> str:
    """Concatenate chunk audio in ``chunk_index`` order and store the episode.

    Returns:
        Public URL of the assembled file, also recorded on the job.

    Raises:
        JobNotFoundError: Unknown job.
        JobNotReadyError: The job is not completed or a chunk has no audio.
    """
    config = config or EngineConfig()
    job = store.get_job(job_id)
    if job.status is not JobStatus.COMPLETED:
        raise JobNotReadyError(f"Job {job_id} is {job.status.value}, not completed")

    chunks = sorted(store.list_chunks(job_id), key=lambda c: c.chunk_index)
    missing = [c.chunk_index for c in chunks if c.status is not ChunkStatus.COMPLETED]
    if missing:
        raise JobNotReadyError(f"Job {job_id} has chunks without audio: {missing}")

    audio = b"".join(
        object_store.get(chunk_audio_key(job_id, c.chunk_index, job.user_id, config.storage_prefix))
        for c in chunks
    )
    url = upload_with_verification(
        object_store,
        podcast_audio_key(job_id, job.user_id),
        audio,
        attempts=config.upload_attempts,
        retry_delay=config.upload_retry_delay_seconds,
    )
    store.update_job(job_id, audio_reference=url)
    logger.info("Assembled job %s from %d chunks (%d bytes)", job_id, len(chunks), len(audio))
    return url
