"""Typed settings configuration - single source of truth."""

from functools import lru_cache
from typing import Any

from pydantic import AliasChoices, Field, SecretStr, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

DEFAULT_SYSTEM_PROMPT = (
    "You are a helpful, concise assistant. Ask clarifying questions when needed, "
    "be factual, and keep responses structured and actionable."
)


def _int_or_default(value: Any, default: int, minimum: int) -> int:
    """Parse an int knob, falling back to the default when unusable."""
    if value is None or (isinstance(value, str) and not value.strip()):
        return default
    try:
        parsed = int(value)
    except (TypeError, ValueError):
        return default
    return parsed if parsed >= minimum else default


class Settings(BaseSettings):
    """Application settings loaded from environment variables.

    Engine knobs use the DOCASSIST_ prefix; the OpenAI and database settings
    keep their conventional unprefixed names.
    """

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        env_prefix="DOCASSIST_",
        extra="ignore",
        populate_by_name=True,
    )

    # Server
    host: str = "0.0.0.0"
    port: int = Field(default=3000, validation_alias=AliasChoices("PORT", "port"))

    # Database
    database_url: str | None = Field(
        default=None, validation_alias=AliasChoices("DATABASE_URL", "database_url")
    )

    # OpenAI
    openai_api_key: SecretStr | None = Field(
        default=None, validation_alias=AliasChoices("OPENAI_API_KEY", "openai_api_key")
    )
    openai_model: str = Field(
        default="gpt-5.2-2025-12-11",
        validation_alias=AliasChoices("OPENAI_MODEL", "openai_model"),
    )
    max_output_tokens: int = 1200
    system_prompt: str = DEFAULT_SYSTEM_PROMPT

    # History
    max_turns_per_doc: int = 25
    max_doc_chars: int = 50000

    # Rolling summary
    summary_enabled: bool = True
    summary_max_chars: int = 1800
    summary_input_max_chars: int = 20000

    # Chunking (approximate tokens, see chars_per_token)
    chunking_enabled: bool = True
    chunk_max_tokens: int = 700
    chunk_overlap_tokens: int = 150
    chars_per_token: int = 4

    # Retrieval
    force_file_search: bool = True
    two_step_enabled: bool = False

    # Logging / cleanup
    chat_log_enabled: bool = True
    reset_cleanup_openai: bool = False

    # Request limits
    max_doc_id_chars: int = 256
    max_tab_id_chars: int = 256
    max_user_message_chars: int = 20000
    max_instructions_chars: int = 20000
    max_doc_title_chars: int = 256
    max_filename_chars: int = 256
    max_doc_text_chars: int = 2_000_000
    max_upload_bytes: int = 15 * 1024 * 1024

    @field_validator("max_output_tokens", mode="before")
    @classmethod
    def _max_output_tokens(cls, value: Any) -> int:
        return _int_or_default(value, 1200, 1)

    @field_validator("max_turns_per_doc", mode="before")
    @classmethod
    def _max_turns(cls, value: Any) -> int:
        return _int_or_default(value, 25, 1)

    @field_validator("max_doc_chars", mode="before")
    @classmethod
    def _max_doc_chars(cls, value: Any) -> int:
        return _int_or_default(value, 50000, 1)

    @field_validator("summary_max_chars", mode="before")
    @classmethod
    def _summary_max_chars(cls, value: Any) -> int:
        return _int_or_default(value, 1800, 101)

    @field_validator("summary_input_max_chars", mode="before")
    @classmethod
    def _summary_input_max_chars(cls, value: Any) -> int:
        return _int_or_default(value, 20000, 1001)

    @field_validator("chunk_max_tokens", mode="before")
    @classmethod
    def _chunk_max_tokens(cls, value: Any) -> int:
        return _int_or_default(value, 700, 101)

    @field_validator("chunk_overlap_tokens", mode="before")
    @classmethod
    def _chunk_overlap_tokens(cls, value: Any) -> int:
        return _int_or_default(value, 150, 0)

    @field_validator("chars_per_token", mode="before")
    @classmethod
    def _chars_per_token(cls, value: Any) -> int:
        return _int_or_default(value, 4, 1)

    @field_validator("system_prompt", mode="after")
    @classmethod
    def _system_prompt(cls, value: str) -> str:
        return value.strip() or DEFAULT_SYSTEM_PROMPT


@lru_cache
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()
