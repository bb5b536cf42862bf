"""Engine configuration: status enums and the EngineConfig dataclass."""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from podcast_engine.config import Settings


class JobStatus(str, Enum):
    """Lifecycle states of a podcast job."""

    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    ERROR = "error"


class ChunkStatus(str, Enum):
    """Lifecycle states of a single script chunk."""

    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    ERROR = "error"


class DispatchMode(str, Enum):
    """How follow-up chunk invocations are delivered."""

    THREAD = "thread"
    HTTP = "http"


def _default_voices() -> dict[str, str]:
    return {"Alice": "alloy", "Bob": "onyx"}


@dataclass(frozen=True)
class EngineConfig:
    """Immutable tunables for the chunked job engine.

    Defaults mirror the production limits of the speech service: 4000
    characters per chunk, 2000 characters per synthesis call, three
    attempts per call and two chunk-level retries.
    """

    chunk_hard_limit: int = 4000
    part_limit: int = 2000
    max_chunk_retries: int = 2
    stalled_chunk_seconds: float = 600.0
    lease_seconds: float = 600.0
    next_chunk_delay_range: tuple[float, float] = (1.0, 3.0)
    retry_base_delay_seconds: float = 5.0
    upload_attempts: int = 3
    upload_retry_delay_seconds: float = 1.0
    fail_fast_on_chunk_failure: bool = False
    storage_prefix: str = "chunks"
    voices: dict[str, str] = field(default_factory=_default_voices)

    def retry_delay(self, retry_count: int) -> float:
        """Delay before re-invoking a failed chunk; grows with each retry."""
        return self.retry_base_delay_seconds * (retry_count + 1)

    @classmethod
    def from_settings(cls, settings: Settings) -> EngineConfig:
        return cls(
            chunk_hard_limit=settings.chunk_hard_limit,
            part_limit=settings.synthesis_part_limit,
            max_chunk_retries=settings.max_chunk_retries,
            stalled_chunk_seconds=float(settings.stalled_chunk_seconds),
            lease_seconds=float(settings.lease_seconds),
            fail_fast_on_chunk_failure=settings.fail_fast_on_chunk_failure,
            voices=dict(settings.voice_map),
        )
