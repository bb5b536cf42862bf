"""Tests for Settings, status enums and EngineConfig."""

from __future__ import annotations

import dataclasses

import pytest

from podcast_engine.config import Settings
from podcast_engine.pipeline_config import ChunkStatus, DispatchMode, EngineConfig, JobStatus

# ---------------------------------------------------------------------------
# Enum tests
# ---------------------------------------------------------------------------


class TestStatusEnums:
    def test_job_status_values(self) -> None:
        assert [s.value for s in JobStatus] == ["pending", "processing", "completed", "error"]

    def test_chunk_status_values(self) -> None:
        assert [s.value for s in ChunkStatus] == ["pending", "processing", "completed", "error"]

    def test_from_string(self) -> None:
        assert JobStatus("error") is JobStatus.ERROR
        assert DispatchMode("http") is DispatchMode.HTTP

    def test_invalid_raises(self) -> None:
        with pytest.raises(ValueError):
            ChunkStatus("done")

    def test_is_str_subclass(self) -> None:
        """Enum values behave as plain strings for JSON serialization."""
        assert isinstance(JobStatus.COMPLETED, str)


# ---------------------------------------------------------------------------
# EngineConfig tests
# ---------------------------------------------------------------------------


class TestEngineConfig:
    def test_defaults(self) -> None:
        config = EngineConfig()
        assert config.chunk_hard_limit == 4000
        assert config.part_limit == 2000
        assert config.max_chunk_retries == 2
        assert config.stalled_chunk_seconds == 600.0
        assert config.fail_fast_on_chunk_failure is False
        assert config.voices == {"Alice": "alloy", "Bob": "onyx"}

    def test_frozen(self) -> None:
        config = EngineConfig()
        with pytest.raises(dataclasses.FrozenInstanceError):
            config.max_chunk_retries = 5  # type: ignore[misc]

    @pytest.mark.parametrize("retry_count,expected", [(0, 5.0), (1, 10.0), (2, 15.0)])
    def test_retry_delay_grows(self, retry_count: int, expected: float) -> None:
        assert EngineConfig().retry_delay(retry_count) == expected

    def test_from_settings(self) -> None:
        settings = Settings(
            _env_file=None,  # type: ignore[call-arg]
            max_chunk_retries=4,
            chunk_hard_limit=3000,
            fail_fast_on_chunk_failure=True,
            voice_map={"Host": "nova"},
        )
        config = EngineConfig.from_settings(settings)
        assert config.max_chunk_retries == 4
        assert config.chunk_hard_limit == 3000
        assert config.fail_fast_on_chunk_failure is True
        assert config.voices == {"Host": "nova"}


class TestSettings:
    def test_defaults(self) -> None:
        settings = Settings(_env_file=None)  # type: ignore[call-arg]
        assert settings.storage_bucket == "audio-files"
        assert settings.tts_model == "tts-1"
        assert settings.rate_limit_capacity == 50
        assert settings.synthesis_max_attempts == 3
        assert settings.dispatch_mode == "thread"

    def test_env_override(self, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.setenv("MAX_CHUNK_RETRIES", "7")
        monkeypatch.setenv("DISPATCH_MODE", "http")
        settings = Settings(_env_file=None)  # type: ignore[call-arg]
        assert settings.max_chunk_retries == 7
        assert settings.dispatch_mode == "http"
