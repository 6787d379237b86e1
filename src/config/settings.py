from __future__ import annotations

from pathlib import Path
from typing import Self

from dotenv import load_dotenv
from pydantic import Field, field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

# Load .env once at module import so every BaseSettings group sees it
load_dotenv()

_DEFAULT_REGISTRY_PATH = Path(__file__).resolve().parent.parent / "tools" / "tool_registry.json"


class CatalogSettings(BaseSettings):
    """Tool registry artifact settings. Env vars prefixed with CATALOG_."""

    model_config = SettingsConfigDict(env_prefix="CATALOG_")

    registry_path: Path = _DEFAULT_REGISTRY_PATH
    lock_on_load: bool = True  # production: no hot reload after startup
    verify_content_hash: bool = True


class PolicySettings(BaseSettings):
    """Per-turn call ceilings and confirmation gate. Env vars prefixed with POLICY_.

    Voice ceilings are tighter than text ceilings (latency budget).
    """

    model_config = SettingsConfigDict(env_prefix="POLICY_")

    voice_retrieval_per_turn: int = Field(2, ge=0)
    voice_action_per_turn: int = Field(2, ge=0)
    voice_utility_per_turn: int = Field(3, ge=0)
    voice_total_per_turn: int = Field(3, ge=1)

    text_retrieval_per_turn: int = Field(5, ge=0)
    text_action_per_turn: int = Field(5, ge=0)
    text_utility_per_turn: int = Field(10, ge=0)
    text_total_per_turn: int = Field(12, ge=1)

    confirmation_ttl_s: float = Field(120.0, gt=0)

    @model_validator(mode="after")
    def _validate(self) -> Self:
        if self.voice_total_per_turn > self.text_total_per_turn:
            raise ValueError(
                f"voice_total_per_turn ({self.voice_total_per_turn}) must not "
                f"exceed text_total_per_turn ({self.text_total_per_turn})"
            )
        if self.voice_retrieval_per_turn > self.text_retrieval_per_turn:
            raise ValueError(
                f"voice_retrieval_per_turn ({self.voice_retrieval_per_turn}) must not "
                f"exceed text_retrieval_per_turn ({self.text_retrieval_per_turn})"
            )
        return self

    def category_ceiling(self, mode: str, category: str) -> int:
        """Per-turn ceiling for a tool category in the given conversation mode."""
        return getattr(self, f"{mode}_{category}_per_turn")

    def total_ceiling(self, mode: str) -> int:
        return getattr(self, f"{mode}_total_per_turn")


class LoopSettings(BaseSettings):
    """Loop detection thresholds. Env vars prefixed with LOOP_."""

    model_config = SettingsConfigDict(env_prefix="LOOP_")

    same_call_threshold: int = Field(2, ge=1)  # prior identical calls before refusing
    empty_result_threshold: int = Field(2, ge=1)
    max_turns_per_session: int = Field(5, ge=1)


class ToolMemorySettings(BaseSettings):
    """Tool call ledger window and dedup settings. Env vars prefixed with TOOL_MEMORY_."""

    model_config = SettingsConfigDict(env_prefix="TOOL_MEMORY_")

    recent_count: int = Field(10, ge=1)  # ranks kept with full responses
    summary_count: int = Field(40, ge=0)  # ranks kept as summaries only
    max_age_s: float = Field(3600.0, gt=0)
    similarity_threshold: float = 0.85
    dedup_enabled: bool = True
    summary_model: str = "gpt-4o-mini"
    summary_max_tokens: int = 150
    summary_temperature: float = 0.3
    summary_max_response_chars: int = 1000

    @field_validator("similarity_threshold")
    @classmethod
    def _validate_threshold(cls, v: float) -> float:
        if not (0.0 < v <= 1.0):
            raise ValueError(f"similarity_threshold must be in (0, 1], got {v}")
        return v


class ContextSettings(BaseSettings):
    """Conversation window, token budget, and assembly cache. Env prefix CONTEXT_."""

    model_config = SettingsConfigDict(env_prefix="CONTEXT_")

    raw_tail_size: int = Field(20, ge=1)
    max_tokens: int = Field(30_000, gt=0)
    summary_word_limit: int = Field(80, ge=1)
    cache_ttl_s: float = Field(3600.0, gt=0)
    fingerprint_messages: int = Field(5, ge=1)
    fingerprint_chars: int = Field(500, ge=1)
    max_history_messages: int = Field(200, ge=1)
    tokenizer_model: str | None = "gpt-4o-mini"  # None = chars/4 estimate
    summary_model: str = "gpt-4o-mini"
    summary_temperature: float = 0.1

    @model_validator(mode="after")
    def _validate(self) -> Self:
        if self.max_history_messages <= self.raw_tail_size:
            raise ValueError(
                f"max_history_messages ({self.max_history_messages}) must be greater "
                f"than raw_tail_size ({self.raw_tail_size})"
            )
        if not (0.0 <= self.summary_temperature <= 1.0):
            raise ValueError(
                f"summary_temperature must be in [0.0, 1.0], got {self.summary_temperature}"
            )
        return self


class RetrySettings(BaseSettings):
    """Backoff for retryable tool failures (text mode only). Env prefix RETRY_."""

    model_config = SettingsConfigDict(env_prefix="RETRY_")

    max_retries: int = Field(3, ge=0)
    initial_delay_ms: float = Field(300.0, ge=0)
    max_delay_ms: float = Field(3000.0, ge=0)
    backoff_multiplier: float = Field(2.0, ge=1.0)


class OpenAISettings(BaseSettings):
    """OpenAI-compatible endpoint used for summaries. Env vars prefixed with OPENAI_."""

    model_config = SettingsConfigDict(env_prefix="OPENAI_")

    api_key: str = ""  # empty = summaries use rule-based fallbacks
    base_url: str | None = None
    timeout_s: float = Field(20.0, gt=0)
    max_retries: int = Field(2, ge=0)
    retry_base_delay_s: float = Field(0.5, ge=0)


class LoggingSettings(BaseSettings):
    """Env vars prefixed with LOG_."""

    model_config = SettingsConfigDict(env_prefix="LOG_")

    json_output: bool = True
    level: str = "INFO"

    @field_validator("level")
    @classmethod
    def _validate_level(cls, v: str) -> str:
        allowed = {"DEBUG", "INFO", "WARNING", "ERROR"}
        if v.upper() not in allowed:
            msg = f"LOG_LEVEL must be one of {sorted(allowed)} (got '{v}')"
            raise ValueError(msg)
        return v.upper()


class Settings(BaseSettings):
    """Root settings composing all sub-configurations."""

    model_config = SettingsConfigDict(extra="ignore")

    catalog: CatalogSettings = Field(default_factory=CatalogSettings)
    policy: PolicySettings = Field(default_factory=PolicySettings)
    loop: LoopSettings = Field(default_factory=LoopSettings)
    tool_memory: ToolMemorySettings = Field(default_factory=ToolMemorySettings)
    context: ContextSettings = Field(default_factory=ContextSettings)
    retry: RetrySettings = Field(default_factory=RetrySettings)
    openai: OpenAISettings = Field(default_factory=OpenAISettings)
    logging: LoggingSettings = Field(default_factory=LoggingSettings)


def get_settings() -> Settings:
    """Load and validate settings. Raises ValidationError on invalid values."""
    return Settings()
