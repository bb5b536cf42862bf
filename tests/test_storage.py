"""Tests for object storage and verified uploads."""

from __future__ import annotations

from unittest.mock import MagicMock

import pytest

from podcast_engine.errors import StorageError
from podcast_engine.jobs.storage import (
    InMemoryObjectStore,
    SupabaseObjectStore,
    chunk_audio_key,
    podcast_audio_key,
    upload_with_verification,
)


class TestKeys:
    def test_chunk_key_with_user(self) -> None:
        assert chunk_audio_key("job-1", 3, "user-9") == "chunks/user-9/job-1/chunk_3.mp3"

    def test_chunk_key_anonymous(self) -> None:
        assert chunk_audio_key("job-1", 0) == "chunks/anonymous/job-1/chunk_0.mp3"

    def test_podcast_key(self) -> None:
        assert podcast_audio_key("job-1", "u") == "podcasts/u/job-1.mp3"


class TestInMemoryObjectStore:
    def test_put_get(self) -> None:
        store = InMemoryObjectStore()
        store.put("a/b.mp3", b"123")
        assert store.get("a/b.mp3") == b"123"

    def test_get_missing_raises(self) -> None:
        with pytest.raises(StorageError):
            InMemoryObjectStore().get("nope")

    def test_list_is_one_level(self) -> None:
        store = InMemoryObjectStore()
        store.put("a/x.mp3", b"1")
        store.put("a/y.mp3", b"2")
        store.put("a/sub/z.mp3", b"3")
        store.put("ab/w.mp3", b"4")
        assert store.list("a") == ["x.mp3", "y.mp3"]

    def test_public_url(self) -> None:
        assert InMemoryObjectStore("http://h/audio/").public_url("a/b.mp3") == "http://h/audio/a/b.mp3"


class TestUploadWithVerification:
    def test_success_first_try(self) -> None:
        store = InMemoryObjectStore()
        url = upload_with_verification(store, "chunks/u/j/chunk_0.mp3", b"abc", sleep=lambda s: None)
        assert url.endswith("chunks/u/j/chunk_0.mp3")
        assert store.get("chunks/u/j/chunk_0.mp3") == b"abc"

    def test_retries_until_listed(self) -> None:
        store = MagicMock()
        store.list.side_effect = [[], ["chunk_0.mp3"]]
        store.public_url.return_value = "https://cdn/chunk_0.mp3"
        sleeps: list[float] = []
        url = upload_with_verification(store, "chunks/u/j/chunk_0.mp3", b"abc", retry_delay=2.0, sleep=sleeps.append)
        assert url == "https://cdn/chunk_0.mp3"
        assert store.put.call_count == 2
        store.list.assert_called_with("chunks/u/j")
        assert sleeps == [2.0]

    def test_gives_up_after_attempts(self) -> None:
        store = MagicMock()
        store.put.side_effect = RuntimeError("bucket unavailable")
        with pytest.raises(StorageError, match="after 3 attempts"):
            upload_with_verification(store, "k/x.mp3", b"abc", sleep=lambda s: None)
        assert store.put.call_count == 3


class TestSupabaseObjectStore:
    def test_put_uploads_to_bucket(self) -> None:
        client = MagicMock()
        SupabaseObjectStore(client, bucket="audio-files").put("a/b.mp3", b"x")
        client.storage.from_.assert_called_with("audio-files")
        args, kwargs = client.storage.from_.return_value.upload.call_args
        assert args == ("a/b.mp3", b"x")
        assert kwargs["file_options"]["content-type"] == "audio/mpeg"

    def test_list_returns_names(self) -> None:
        client = MagicMock()
        client.storage.from_.return_value.list.return_value = [{"name": "chunk_0.mp3"}, {"name": "chunk_1.mp3"}]
        assert SupabaseObjectStore(client, bucket="b").list("chunks/u/j/") == ["chunk_0.mp3", "chunk_1.mp3"]
        client.storage.from_.return_value.list.assert_called_with("chunks/u/j")

    def test_public_url(self) -> None:
        client = MagicMock()
        client.storage.from_.return_value.get_public_url.return_value = "https://s/b/a.mp3"
        assert SupabaseObjectStore(client, bucket="b").public_url("a.mp3") == "https://s/b/a.mp3"
