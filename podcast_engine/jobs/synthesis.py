"""Speech synthesis for single segments: sanitize, split, rate-limit, retry."""

from __future__ import annotations

import logging
import random
import re
import time
from collections.abc import Callable
from typing import Protocol

import openai
from openai import OpenAI

from podcast_engine.errors import (
    ErrorKind,
    RateLimitError,
    SegmentSynthesisFailed,
    SynthesisAPIError,
    TransientNetworkError,
    classify_error,
)
from podcast_engine.jobs.rate_limiter import TokenBucket

logger = logging.getLogger(__name__)

PART_LIMIT = 2000
RATE_LIMIT_DRAIN = 10

_REPLACEMENTS = (
    ("“", '"'),
    ("”", '"'),
    ("„", '"'),
    ("‘", "'"),
    ("’", "'"),
    ("‚", "'"),
    ("–", "-"),
    ("—", "-"),
    ("…", "..."),
    ("&", " and "),
)
_STAGE_DIRECTIONS = re.compile(r"\[.*?\]|\*\*\*.*?\*\*\*")
_NON_PRINTABLE = re.compile(r"[^\x20-\x7E\s]")
_SENTENCE_BREAK = re.compile(r"[.!?](?=\s)")


class SpeechProvider(Protocol):
    def synthesize(self, text: str, voice: str, timeout: float) -> bytes: ...


def sanitize_text(text: str) -> str:
    """Normalize text into the plain ASCII subset the speech service accepts.

    Drops ``[stage directions]`` and ``***notes***``, maps typographic
    quotes, dashes and ellipses to ASCII, spells out ampersands, removes
    anything non-printable and collapses whitespace.
    """
    cleaned = _STAGE_DIRECTIONS.sub("", text)
    for old, new in _REPLACEMENTS:
        cleaned = cleaned.replace(old, new)
    cleaned = _NON_PRINTABLE.sub("", cleaned)
    return " ".join(cleaned.split())


def split_for_tts(text: str, limit: int = PART_LIMIT) -> list[str]:
    """Split text into parts of at most ``limit`` characters, in order.

    Cuts after the last sentence end that fits, otherwise at the last space
    past the halfway point, otherwise exactly at the limit.
    """
    rest = text.strip()
    parts: list[str] = []
    while len(rest) > limit:
        window = rest[: limit + 1]
        cut = -1
        for match in _SENTENCE_BREAK.finditer(window):
            if match.end() <= limit:
                cut = match.end()
        if cut <= 0:
            space = rest.rfind(" ", 0, limit)
            cut = space if space > limit // 2 else limit
        parts.append(rest[:cut].strip())
        rest = rest[cut:].lstrip()
    if rest:
        parts.append(rest)
    return [p for p in parts if p]


class OpenAISpeechProvider:
    """Speech provider backed by the OpenAI audio API."""

    def __init__(
        self,
        client: OpenAI | None = None,
        model: str = "tts-1",
        response_format: str = "mp3",
    ) -> None:
        self._client = client
        self.model = model
        self.response_format = response_format

    @property
    def client(self) -> OpenAI:
        if self._client is None:
            self._client = OpenAI()  # reads OPENAI_API_KEY from env
        return self._client

    def synthesize(self, text: str, voice: str, timeout: float) -> bytes:
        try:
            response = self.client.audio.speech.create(
                model=self.model,
                voice=voice,
                input=text,
                response_format=self.response_format,
                timeout=timeout,
            )
        except openai.RateLimitError as exc:
            raise RateLimitError(f"Speech API rate limit: {exc}") from exc
        except openai.APIConnectionError as exc:
            # Includes APITimeoutError.
            raise TransientNetworkError(f"Speech API unreachable: {exc}") from exc
        except openai.APIStatusError as exc:
            raise SynthesisAPIError(
                f"Speech API error {exc.status_code}: {exc.message}",
                status_code=exc.status_code,
            ) from exc
        return response.content


class SegmentSynthesizer:
    """Turns one segment of dialogue into ordered audio buffers.

    Every call acquires rate limiter tokens first and is retried with
    exponential backoff and jitter. Rate-limit errors additionally cool
    down for 5-15 seconds and drain the shared bucket so concurrent
    callers slow down too.
    """

    def __init__(
        self,
        provider: SpeechProvider,
        rate_limiter: TokenBucket,
        *,
        max_attempts: int = 3,
        base_delay: float = 1.0,
        max_delay: float = 10.0,
        part_limit: int = PART_LIMIT,
        timeout: float = 60.0,
        sleep: Callable[[float], None] = time.sleep,
        rng: random.Random | None = None,
    ) -> None:
        self.provider = provider
        self.rate_limiter = rate_limiter
        self.max_attempts = max(1, max_attempts)
        self.base_delay = base_delay
        self.max_delay = max_delay
        self.part_limit = part_limit
        self.timeout = timeout
        self._sleep = sleep
        self._rng = rng or random.Random()

    def backoff_delay(self, attempt: int) -> float:
        delay = min(self.base_delay * (2 ** (attempt - 1)), self.max_delay)
        return delay + self._rng.uniform(0, delay * 0.25)

    def synthesize(
        self,
        text: str,
        voice: str,
        *,
        context: str = "",
    ) -> list[bytes]:
        """Synthesize ``text`` with ``voice``.

        Args:
            text: Segment text with the speaker prefix already removed.
            voice: Provider voice identifier.
            context: Log prefix identifying job, chunk and segment.

        Returns:
            One audio buffer per part, in text order. Empty if the text
            sanitizes to nothing.

        Raises:
            SegmentSynthesisFailed: A part failed on every attempt.
        """
        clean = sanitize_text(text)
        if not clean:
            return []

        parts = split_for_tts(clean, self.part_limit)
        if len(parts) > 1:
            logger.info("%s split into %d parts", context, len(parts))

        buffers: list[bytes] = []
        for part_index, part in enumerate(parts):
            cost = 2 if part_index == 0 else 1
            buffers.append(self._call_with_retry(part, voice, cost, f"{context} part {part_index}"))
        return buffers

    def _call_with_retry(self, text: str, voice: str, cost: int, context: str) -> bytes:
        last_error: Exception | None = None
        attempt = 0
        while attempt < self.max_attempts:
            attempt += 1
            self.rate_limiter.acquire(cost)
            try:
                audio = self.provider.synthesize(text, voice, self.timeout)
                if not audio:
                    raise SynthesisAPIError("Speech API returned no audio")
                return audio
            except Exception as exc:
                last_error = exc
                kind = classify_error(exc)
                logger.warning(
                    "%s attempt %d/%d failed (%s, %d chars): %s",
                    context,
                    attempt,
                    self.max_attempts,
                    kind.value,
                    len(text),
                    exc,
                )
                if kind is ErrorKind.VALIDATION or attempt >= self.max_attempts:
                    break
                if kind is ErrorKind.RATE_LIMIT:
                    cooldown = self._rng.uniform(5.0, 15.0)
                    logger.info("%s rate limited, cooling down %.1fs", context, cooldown)
                    self.rate_limiter.drain(RATE_LIMIT_DRAIN)
                    self._sleep(cooldown)
                self._sleep(self.backoff_delay(attempt))

        raise SegmentSynthesisFailed(
            f"{context} failed after {attempt} attempt(s): {last_error}",
            cause=last_error,
            attempts=attempt,
        ) from last_error
