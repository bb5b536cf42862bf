"""Durable object storage for chunk and podcast audio."""

from __future__ import annotations

import logging
import posixpath
import threading
import time
from collections.abc import Callable
from typing import Protocol

from supabase import Client

from podcast_engine.config import settings
from podcast_engine.errors import StorageError
from podcast_engine.jobs.store import get_supabase_client

logger = logging.getLogger(__name__)

AUDIO_CONTENT_TYPE = "audio/mpeg"


class ObjectStore(Protocol):
    def put(self, key: str, data: bytes, content_type: str = AUDIO_CONTENT_TYPE) -> None: ...

    def get(self, key: str) -> bytes: ...

    def list(self, prefix: str) -> list[str]: ...

    def public_url(self, key: str) -> str: ...


def chunk_audio_key(job_id: str, chunk_index: int, user_id: str | None = None, prefix: str = "chunks") -> str:
    return f"{prefix}/{user_id or 'anonymous'}/{job_id}/chunk_{chunk_index}.mp3"


def podcast_audio_key(job_id: str, user_id: str | None = None) -> str:
    return f"podcasts/{user_id or 'anonymous'}/{job_id}.mp3"


class InMemoryObjectStore:
    """Dict-backed object store. Keys behave like paths for ``list``."""

    def __init__(self, base_url: str = "memory://audio") -> None:
        self.base_url = base_url.rstrip("/")
        self._objects: dict[str, bytes] = {}
        self._lock = threading.Lock()

    def put(self, key: str, data: bytes, content_type: str = AUDIO_CONTENT_TYPE) -> None:
        with self._lock:
            self._objects[key] = bytes(data)

    def get(self, key: str) -> bytes:
        with self._lock:
            try:
                return self._objects[key]
            except KeyError:
                raise StorageError(f"Object {key} not found") from None

    def list(self, prefix: str) -> list[str]:
        """Names of the objects directly under ``prefix``."""
        folder = prefix.rstrip("/") + "/"
        with self._lock:
            return sorted(
                key[len(folder) :]
                for key in self._objects
                if key.startswith(folder) and "/" not in key[len(folder) :]
            )

    def public_url(self, key: str) -> str:
        return f"{self.base_url}/{key}"


class SupabaseObjectStore:
    """Object store over a Supabase storage bucket."""

    def __init__(self, client: Client | None = None, bucket: str | None = None) -> None:
        self._client = client
        self.bucket = bucket or settings.storage_bucket

    @property
    def client(self) -> Client:
        if self._client is None:
            self._client = get_supabase_client()
        return self._client

    def put(self, key: str, data: bytes, content_type: str = AUDIO_CONTENT_TYPE) -> None:
        self.client.storage.from_(self.bucket).upload(
            key,
            data,
            file_options={"content-type": content_type, "upsert": "true"},
        )

    def get(self, key: str) -> bytes:
        return self.client.storage.from_(self.bucket).download(key)

    def list(self, prefix: str) -> list[str]:
        entries = self.client.storage.from_(self.bucket).list(prefix.rstrip("/"))
        return [entry["name"] for entry in entries or []]

    def public_url(self, key: str) -> str:
        return self.client.storage.from_(self.bucket).get_public_url(key)


def upload_with_verification(
    store: ObjectStore,
    key: str,
    data: bytes,
    *,
    attempts: int = 3,
    retry_delay: float = 1.0,
    content_type: str = AUDIO_CONTENT_TYPE,
    sleep: Callable[[float], None] = time.sleep,
) -> str:
    """Upload ``data`` and confirm it is listed under its folder.

    Returns:
        The public URL of the stored object.

    Raises:
        StorageError: Every attempt failed to upload or to verify.
    """
    folder, name = posixpath.split(key)
    last_error: Exception | None = None
    for attempt in range(1, attempts + 1):
        try:
            store.put(key, data, content_type)
            if name not in store.list(folder):
                raise StorageError(f"Uploaded object {key} is not listed under {folder}")
            return store.public_url(key)
        except Exception as exc:
            last_error = exc
            logger.warning("Upload attempt %d/%d for %s failed: %s", attempt, attempts, key, exc)
            if attempt < attempts:
                sleep(retry_delay)
    raise StorageError(f"Failed to upload {key} after {attempts} attempts: {last_error}") from last_error
