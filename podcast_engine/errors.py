"""Error taxonomy for the job engine and a classifier for foreign exceptions."""

from __future__ import annotations

import socket
from collections.abc import Iterator
from enum import Enum


class ErrorKind(str, Enum):
    """Coarse failure classes used to pick a retry policy."""

    NETWORK = "network"
    TIMEOUT = "timeout"
    RATE_LIMIT = "rate_limit"
    API_ERROR = "api_error"
    VALIDATION = "validation"
    STORAGE = "storage"
    UNKNOWN = "unknown"


class PodcastEngineError(Exception):
    """Base class for all engine errors."""

    kind: ErrorKind = ErrorKind.UNKNOWN


class TransientNetworkError(PodcastEngineError):
    """Timeouts and connection resets. Always retried with backoff."""

    kind = ErrorKind.NETWORK


class RateLimitError(PodcastEngineError):
    """The speech service asked us to slow down."""

    kind = ErrorKind.RATE_LIMIT


class SynthesisAPIError(PodcastEngineError):
    """Any other error reported by the speech service."""

    kind = ErrorKind.API_ERROR

    def __init__(self, message: str, status_code: int | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code


class ValidationError(PodcastEngineError):
    """Malformed job input. Fatal, never retried."""

    kind = ErrorKind.VALIDATION


class StorageError(PodcastEngineError):
    """Object store upload or verification failure."""

    kind = ErrorKind.STORAGE


class JobNotFoundError(PodcastEngineError):
    """No job (or chunk) row exists for the given identity."""

    kind = ErrorKind.VALIDATION

    def __init__(self, job_id: str, chunk_index: int | None = None) -> None:
        if chunk_index is None:
            message = f"Job {job_id} not found"
        else:
            message = f"Chunk {chunk_index} of job {job_id} not found"
        super().__init__(message)
        self.job_id = job_id
        self.chunk_index = chunk_index


class JobNotReadyError(PodcastEngineError):
    """The job is not in a state that allows the requested operation."""

    kind = ErrorKind.VALIDATION


class ScriptGenerationError(PodcastEngineError):
    """The text producer could not return a script."""

    kind = ErrorKind.API_ERROR


class SegmentSynthesisFailed(PodcastEngineError):
    """All attempts for one segment were exhausted.

    Carries the last underlying error as ``cause`` (also chained as
    ``__cause__``) and the number of attempts made.
    """

    def __init__(self, message: str, *, cause: BaseException | None, attempts: int) -> None:
        super().__init__(message)
        self.cause = cause
        self.attempts = attempts
        self.kind = classify_error(cause) if cause is not None else ErrorKind.UNKNOWN


PersistentSegmentFailure = SegmentSynthesisFailed


class ChunkFailure(PodcastEngineError):
    """A chunk could not be turned into audio during this invocation."""

    def __init__(self, message: str, *, job_id: str, chunk_index: int) -> None:
        super().__init__(message)
        self.job_id = job_id
        self.chunk_index = chunk_index


def _iter_exception_chain(exc: BaseException) -> Iterator[BaseException]:
    seen: set[int] = set()
    current: BaseException | None = exc
    while current is not None and id(current) not in seen:
        yield current
        seen.add(id(current))
        current = current.__cause__ or current.__context__


def _status_code(exc: BaseException) -> int | None:
    code = getattr(exc, "status_code", None) or getattr(exc, "status", None)
    if isinstance(code, int):
        return code
    response = getattr(exc, "response", None)
    code = getattr(response, "status_code", None)
    return code if isinstance(code, int) else None


def classify_error(exc: BaseException) -> ErrorKind:
    """Map any exception (including third-party client errors) to an ErrorKind.

    Engine errors answer for themselves; otherwise HTTP status codes,
    builtin timeout/connection types and finally the message text decide.
    """
    messages: list[str] = []
    for item in _iter_exception_chain(exc):
        if isinstance(item, PodcastEngineError) and item.kind is not ErrorKind.UNKNOWN:
            return item.kind
        if isinstance(item, (TimeoutError, socket.timeout)):
            return ErrorKind.TIMEOUT
        if isinstance(item, ConnectionError):
            return ErrorKind.NETWORK
        code = _status_code(item)
        if code == 429:
            return ErrorKind.RATE_LIMIT
        if code in (408, 504):
            return ErrorKind.TIMEOUT
        if code is not None and code >= 500:
            return ErrorKind.NETWORK
        messages.append(str(item))

    message = " ".join(messages).lower()
    if "rate limit" in message or "too many requests" in message or "429" in message:
        return ErrorKind.RATE_LIMIT
    if "timeout" in message or "timed out" in message:
        return ErrorKind.TIMEOUT
    if "econnreset" in message or "socket hang up" in message or "connection" in message:
        return ErrorKind.NETWORK
    return ErrorKind.UNKNOWN


def is_retryable(exc: BaseException) -> bool:
    """Validation failures are fatal; everything else may be retried."""
    return classify_error(exc) is not ErrorKind.VALIDATION
