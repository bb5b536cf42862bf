from __future__ import annotations

from functools import lru_cache

from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    """Application settings validated via Pydantic.

    Values are loaded from environment variables and/or a .env file.
    """

    # API Keys
    openai_api_key: str = ""
    anthropic_api_key: str = ""

    # Supabase
    supabase_url: str = ""
    supabase_key: str = ""
    storage_bucket: str = "audio-files"

    # App config
    api_host: str = "0.0.0.0"
    api_port: int = 8000
    public_base_url: str = "http://localhost:8000"
    dispatch_mode: str = "thread"  # "thread" or "http"
    record_store: str = "memory"  # "memory" or "supabase"

    # Script generation
    llm_model: str = "claude-sonnet-4-20250514"
    script_max_tokens: int = 2500

    # Speech synthesis
    tts_model: str = "tts-1"
    voice_map: dict[str, str] = {"Alice": "alloy", "Bob": "onyx"}
    synthesis_timeout_seconds: float = 60.0
    synthesis_max_attempts: int = 3
    synthesis_base_delay_seconds: float = 1.0
    synthesis_max_delay_seconds: float = 10.0
    synthesis_part_limit: int = 2000

    # Rate limiter
    rate_limit_capacity: int = 50
    rate_limit_refill_per_second: float = 1.0

    # Job engine
    chunk_hard_limit: int = 4000
    max_chunk_retries: int = 2
    stalled_chunk_seconds: int = 600
    lease_seconds: int = 600
    fail_fast_on_chunk_failure: bool = False

    model_config = {"env_file": ".env", "env_file_encoding": "utf-8"}


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    """Return a cached Settings instance.

    Gracefully handles missing .env files (e.g. in CI/testing) by falling
    back to environment variables and defaults.
    """
    try:
        return Settings()
    except Exception:
        # If .env is missing or unreadable, build settings from env vars only.
        return Settings(_env_file=None)  # type: ignore[call-arg]


settings = get_settings()
