"""Chunk processing: parse speaker segments, synthesize, concatenate, persist."""

from __future__ import annotations

import logging
import re

from podcast_engine.errors import ChunkFailure, SegmentSynthesisFailed
from podcast_engine.jobs.chunking import SPEAKER_MARKER
from podcast_engine.jobs.models import ProcessResult, Segment
from podcast_engine.jobs.storage import ObjectStore, chunk_audio_key, upload_with_verification
from podcast_engine.jobs.store import JobStore
from podcast_engine.jobs.synthesis import SegmentSynthesizer
from podcast_engine.pipeline_config import ChunkStatus, EngineConfig

logger = logging.getLogger(__name__)

_ANNOTATION = re.compile(r"\[.*?\]")

DEFAULT_VOICES = {"Alice": "alloy", "Bob": "onyx"}


def parse_segments(text: str, voices: dict[str, str] | None = None) -> list[Segment]:
    """Split chunk text into speaker turns and assign a voice to each.

    A line starting with ``NAME:`` opens a new segment; following lines
    without a label are continuations. Text before the first label is
    ignored. Speakers missing from ``voices`` alternate between the
    configured voices in order of first appearance.
    """
    voices = voices or DEFAULT_VOICES
    rotation = list(dict.fromkeys(voices.values()))
    assigned: dict[str, str] = dict(voices)
    unknown_seen = 0

    turns: list[tuple[str, str]] = []
    cleaned = _ANNOTATION.sub("", text.replace("\\n", "\n"))
    for raw_line in cleaned.split("\n"):
        line = raw_line.strip()
        if not line:
            continue
        match = SPEAKER_MARKER.match(line)
        if match:
            turns.append((match.group(1), line[match.end() :].strip()))
        elif turns:
            speaker, body = turns[-1]
            turns[-1] = (speaker, f"{body} {line}" if body else line)

    segments: list[Segment] = []
    for speaker, body in turns:
        if not body:
            continue
        if speaker not in assigned:
            assigned[speaker] = rotation[unknown_seen % len(rotation)]
            unknown_seen += 1
        segments.append(Segment(index=len(segments), speaker=speaker, text=body, voice=assigned[speaker]))
    return segments


class ChunkProcessor:
    """Turns one pending chunk into stored audio and marks it completed."""

    def __init__(
        self,
        store: JobStore,
        object_store: ObjectStore,
        synthesizer: SegmentSynthesizer,
        config: EngineConfig | None = None,
    ) -> None:
        self.store = store
        self.object_store = object_store
        self.synthesizer = synthesizer
        self.config = config or EngineConfig()

    def process(self, job_id: str, chunk_index: int, retry_count: int = 0) -> ProcessResult:
        """Synthesize and persist a chunk. Safe to call again on a completed chunk.

        Synthesis and storage failures are contained: the chunk is marked
        ``error`` and the result says whether another attempt is allowed.
        """
        chunk = self.store.get_chunk(job_id, chunk_index)
        if chunk.status is ChunkStatus.COMPLETED:
            logger.info("Chunk %d of job %s already completed, skipping", chunk_index, job_id)
            return ProcessResult(job_id, chunk_index, "skipped", audio_reference=chunk.audio_reference)

        job = self.store.get_job(job_id)
        if not self.store.update_chunk(
            job_id, chunk_index, status=ChunkStatus.PROCESSING, error=None, attempts=retry_count
        ):
            # Completed by someone else between the read and the write.
            return ProcessResult(job_id, chunk_index, "skipped")

        segments = parse_segments(chunk.chunk_text, self.config.voices)
        failed = 0
        try:
            if not segments:
                raise ChunkFailure("No speaker segments found in chunk", job_id=job_id, chunk_index=chunk_index)

            buffers: list[bytes] = []
            succeeded = 0
            for segment in segments:
                context = f"job {job_id} chunk {chunk_index} segment {segment.index}"
                try:
                    parts = self.synthesizer.synthesize(segment.text, segment.voice, context=context)
                except SegmentSynthesisFailed as exc:
                    failed += 1
                    if succeeded == 0:
                        raise ChunkFailure(
                            f"Segment {segment.index} failed after {exc.attempts} attempts: {exc.cause}",
                            job_id=job_id,
                            chunk_index=chunk_index,
                        ) from exc
                    logger.error("%s skipped after %d attempts (%s): %s", context, exc.attempts, exc.kind.value, exc.cause)
                    continue
                if parts:
                    succeeded += 1
                    buffers.extend(parts)

            if not buffers:
                raise ChunkFailure("No audio produced for chunk", job_id=job_id, chunk_index=chunk_index)

            audio = b"".join(buffers)
            key = chunk_audio_key(job_id, chunk_index, job.user_id, self.config.storage_prefix)
            audio_reference = upload_with_verification(
                self.object_store,
                key,
                audio,
                attempts=self.config.upload_attempts,
                retry_delay=self.config.upload_retry_delay_seconds,
            )
        except Exception as exc:
            logger.exception("Chunk %d of job %s failed on attempt %d", chunk_index, job_id, retry_count + 1)
            self.store.update_chunk(job_id, chunk_index, status=ChunkStatus.ERROR, error=str(exc))
            return ProcessResult(
                job_id,
                chunk_index,
                "failed",
                segments_total=len(segments),
                segments_failed=failed,
                error=str(exc),
                retry_scheduled=retry_count < self.config.max_chunk_retries,
            )

        counted = self.store.complete_chunk(job_id, chunk_index, audio_reference)
        logger.info(
            "Chunk %d of job %s completed (%d bytes, %d/%d segments%s)",
            chunk_index,
            job_id,
            len(audio),
            len(segments) - failed,
            len(segments),
            "" if counted else ", already counted",
        )
        return ProcessResult(
            job_id,
            chunk_index,
            "completed",
            audio_reference=audio_reference,
            segments_total=len(segments),
            segments_failed=failed,
        )
