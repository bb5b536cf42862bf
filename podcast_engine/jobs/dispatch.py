"""Delivery of NextAction descriptors to the next process_chunk invocation.

The state machine only describes what should run next; a dispatcher decides
how it gets there: a background timer thread in the same process, or an
HTTP call back into the triggering API so each chunk gets a fresh request.
"""

from __future__ import annotations

import logging
import threading
import time
from collections.abc import Callable
from typing import Any, Protocol

import httpx

from podcast_engine.jobs.models import NextAction

logger = logging.getLogger(__name__)


class Dispatcher(Protocol):
    def dispatch(self, action: NextAction) -> None: ...


class RecordingDispatcher:
    """Collects actions instead of running them. Drive with ``run_pending``."""

    def __init__(self) -> None:
        self.actions: list[NextAction] = []

    def dispatch(self, action: NextAction) -> None:
        self.actions.append(action)

    def pop(self) -> NextAction | None:
        return self.actions.pop(0) if self.actions else None

    def run_pending(self, handler: Callable[[NextAction], Any], limit: int = 1000) -> int:
        """Run queued actions (and any they enqueue) in FIFO order."""
        ran = 0
        while self.actions and ran < limit:
            handler(self.actions.pop(0))
            ran += 1
        return ran


class ThreadDispatcher:
    """Runs each action on a daemon timer thread after its delay."""

    def __init__(self, handler: Callable[[NextAction], Any] | None = None) -> None:
        self._handler = handler
        self._timers: list[threading.Timer] = []
        self._lock = threading.Lock()

    def bind(self, handler: Callable[[NextAction], Any]) -> None:
        self._handler = handler

    def dispatch(self, action: NextAction) -> None:
        if self._handler is None:
            raise RuntimeError("ThreadDispatcher has no handler bound")
        timer = threading.Timer(action.delay_seconds, self._run, args=(action,))
        timer.daemon = True
        with self._lock:
            self._timers = [t for t in self._timers if t.is_alive()]
            self._timers.append(timer)
        timer.start()
        logger.info(
            "Scheduled chunk %d of job %s in %.1fs (retry %d)",
            action.chunk_index,
            action.job_id,
            action.delay_seconds,
            action.retry_count,
        )

    def _run(self, action: NextAction) -> None:
        try:
            self._handler(action)
        except Exception:
            logger.exception("Background processing of chunk %d of job %s failed", action.chunk_index, action.job_id)

    def cancel_all(self) -> None:
        with self._lock:
            for timer in self._timers:
                timer.cancel()
            self._timers.clear()


class HttpDispatcher:
    """POSTs each action to the process-chunk endpoint after its delay.

    The endpoint runs the chunk before it answers, so the client only waits
    ``read_timeout`` seconds for a response: once the request is written the
    worker owns it. Connection failures and 5xx answers are retried with
    capped exponential backoff; anything still undelivered is left to
    ``JobOrchestrator.resume_idle_jobs``.
    """

    def __init__(
        self,
        base_url: str,
        *,
        client: httpx.Client | None = None,
        timeout: float = 10.0,
        read_timeout: float = 2.0,
        background: bool = True,
        attempts: int = 3,
        backoff_seconds: float = 1.0,
        max_backoff_seconds: float = 10.0,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self._client = client or httpx.Client(timeout=httpx.Timeout(timeout, read=read_timeout))
        self.background = background
        self.attempts = attempts
        self.backoff_seconds = backoff_seconds
        self.max_backoff_seconds = max_backoff_seconds
        self._sleep = sleep

    def url_for(self, action: NextAction) -> str:
        return f"{self.base_url}/api/jobs/{action.job_id}/chunks/{action.chunk_index}/process"

    def send(self, action: NextAction) -> bool:
        """Deliver one action. Returns False if it could not be handed over."""
        url = self.url_for(action)
        error: Exception | None = None
        for attempt in range(1, self.attempts + 1):
            try:
                resp = self._client.post(url, json={"retry_count": action.retry_count})
                resp.raise_for_status()
                return True
            except httpx.ReadTimeout:
                logger.debug("Triggered chunk %d of job %s, not waiting for it", action.chunk_index, action.job_id)
                return True
            except httpx.HTTPStatusError as exc:
                if exc.response.status_code < 500:
                    logger.error(
                        "Trigger for chunk %d of job %s rejected: %s",
                        action.chunk_index,
                        action.job_id,
                        exc,
                    )
                    return False
                error = exc
            except httpx.TransportError as exc:
                error = exc

            if attempt < self.attempts:
                delay = min(self.max_backoff_seconds, self.backoff_seconds * 2 ** (attempt - 1))
                logger.warning(
                    "Trigger for chunk %d of job %s failed (attempt %d/%d), retrying in %.1fs: %s",
                    action.chunk_index,
                    action.job_id,
                    attempt,
                    self.attempts,
                    delay,
                    error,
                )
                self._sleep(delay)

        logger.error(
            "Failed to trigger chunk %d of job %s after %d attempts: %s",
            action.chunk_index,
            action.job_id,
            self.attempts,
            error,
        )
        return False

    def dispatch(self, action: NextAction) -> None:
        if not self.background:
            self.send(action)
            return
        timer = threading.Timer(action.delay_seconds, self.send, args=(action,))
        timer.daemon = True
        timer.start()
