"""Centralized settings for the Quill AI orchestration core.

Uses pydantic-settings to load from environment variables (prefixed QUILL_).
Provider API keys are also read from each vendor's conventional variable
(``OPENAI_API_KEY``, ``ANTHROPIC_API_KEY``, ...) so existing deployments
keep working without renaming secrets.
"""

from functools import lru_cache

from pydantic import AliasChoices, Field
from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    """Quill settings loaded from environment variables."""

    # --- Database ---
    database_url: str = "sqlite+aiosqlite:///quill.db"
    database_echo: bool = False

    # --- Provider credentials (absent key = provider unavailable) ---
    openai_api_key: str = Field(
        default="",
        validation_alias=AliasChoices("QUILL_OPENAI_API_KEY", "OPENAI_API_KEY"),
    )
    anthropic_api_key: str = Field(
        default="",
        validation_alias=AliasChoices("QUILL_ANTHROPIC_API_KEY", "ANTHROPIC_API_KEY"),
    )
    gemini_api_key: str = Field(
        default="",
        validation_alias=AliasChoices(
            "QUILL_GEMINI_API_KEY", "GEMINI_API_KEY", "GOOGLE_API_KEY"
        ),
    )
    perplexity_api_key: str = Field(
        default="",
        validation_alias=AliasChoices("QUILL_PERPLEXITY_API_KEY", "PERPLEXITY_API_KEY"),
    )

    # --- Provider behaviour ---
    openai_use_responses_api: bool = False
    provider_timeout_seconds: int = 60
    provider_max_retries: int = 2

    # --- Memory maintenance ---
    memory_sweep_interval_seconds: int = 3600

    model_config = {
        "env_prefix": "QUILL_",
        "env_file": ".env",
        "extra": "ignore",
        "populate_by_name": True,
    }


@lru_cache
def get_settings() -> Settings:
    """Get cached settings singleton."""
    return Settings()
