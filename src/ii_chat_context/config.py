"""
Configuration management for ii-chat-context

Uses pydantic-settings for environment variable parsing and validation.
Context-management and compression thresholds are resolved once per
operation into an effective config and passed down explicitly.
"""

from functools import lru_cache
from typing import Literal

from pydantic import BaseModel, Field, ValidationInfo, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


DEFAULT_SUMMARY_PROMPT = (
    "请将以下对话历史压缩为一个简洁的摘要，保留核心信息和关键对话转折点：\n\n"
    "{context}\n\n"
    "摘要要求：\n1. 用中文输出\n2. 保持客观中立\n3. 不超过 300 字"
)


class ContextManagementConfig(BaseModel):
    """Token window applied to session history."""

    enabled: bool = False
    max_context_tokens: int = 0
    retained_characters: int = 200


class SummaryModelRef(BaseModel):
    """Explicit model used for compression summaries."""

    profile_id: str
    model_id: str


class CompressionConfig(BaseModel):
    """Configuration for summary-based context compression."""

    enabled: bool = False
    trigger_mode: Literal["token", "count", "both"] = "token"
    token_threshold: int = 80_000
    count_threshold: int = 50
    min_history_count: int = 15
    protect_recent_count: int = 10
    compress_count: int = 20
    summary_role: Literal["system", "user", "assistant"] = "system"
    summary_prompt: str | None = None
    summary_model: SummaryModelRef | None = None

    @field_validator("token_threshold", "count_threshold")
    @classmethod
    def clamp_non_negative(cls, v: int) -> int:
        return max(0, v)

    @field_validator("min_history_count", "protect_recent_count", "compress_count")
    @classmethod
    def default_when_not_positive(cls, v: int, info: ValidationInfo) -> int:
        # 0 means unset for batch sizing; a zero protected window would compress the active leaf
        if v <= 0:
            return cls.model_fields[info.field_name].default
        return v

    @property
    def prompt_template(self) -> str:
        return self.summary_prompt or DEFAULT_SUMMARY_PROMPT


class LLMModelInfo(BaseModel):
    """A model exposed by a profile."""

    id: str
    name: str = ""
    vision: bool = True
    audio: bool = False
    video: bool = False
    document: bool = True


class LLMProfile(BaseModel):
    """Connection profile for one LLM provider endpoint."""

    id: str
    name: str = ""
    provider: Literal["openai", "anthropic", "openrouter"] = "openai"
    api_key: str = ""
    base_url: str | None = None
    enabled: bool = True
    models: list[LLMModelInfo] = Field(default_factory=list)

    def get_model(self, model_id: str) -> LLMModelInfo | None:
        for model in self.models:
            if model.id == model_id:
                return model
        return None


class Settings(BaseSettings):
    """Main application settings."""

    model_config = SettingsConfigDict(
        env_prefix="CHAT_CONTEXT_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
        env_nested_delimiter="__",
    )

    # Application
    app_name: str = "ii-chat-context"
    debug: bool = False
    log_level: str = "INFO"

    # Database
    database_url: str = Field(
        default="sqlite+aiosqlite:///./data/chat_context.db",
        description="Database connection URL for session persistence",
    )

    # Context assembly
    context_management: ContextManagementConfig = Field(default_factory=ContextManagementConfig)
    context_compression: CompressionConfig = Field(default_factory=CompressionConfig)

    # Response handling
    inline_data_threshold_kb: int = Field(
        default=100, description="Inline base64 payloads above this size become attachments"
    )

    # LLM profiles and request defaults
    profiles: list[LLMProfile] = Field(default_factory=list)
    default_temperature: float = 0.7
    default_max_tokens: int = 4096

    @field_validator("inline_data_threshold_kb")
    @classmethod
    def clamp_threshold(cls, v: int) -> int:
        return max(0, v)

    @property
    def enabled_profiles(self) -> list[LLMProfile]:
        """Get profiles that are enabled."""
        return [p for p in self.profiles if p.enabled]

    def get_profile(self, profile_id: str) -> LLMProfile | None:
        """Get a profile by id."""
        for profile in self.profiles:
            if profile.id == profile_id:
                return profile
        return None


def resolve_compression_config(
    global_config: CompressionConfig,
    agent_override: dict | None = None,
    explicit: CompressionConfig | dict | None = None,
) -> CompressionConfig:
    """Merge compression settings: explicit > agent override > global."""
    merged = global_config.model_dump()
    if explicit is not None:
        if isinstance(explicit, CompressionConfig):
            explicit = explicit.model_dump(exclude_unset=True)
        merged.update(explicit)
    elif agent_override:
        merged.update(agent_override)
    return CompressionConfig.model_validate(merged)


def resolve_context_management(
    global_config: ContextManagementConfig,
    agent_override: dict | None = None,
) -> ContextManagementConfig:
    """Merge context-management settings: agent override > global."""
    merged = global_config.model_dump()
    if agent_override:
        merged.update(agent_override)
    return ContextManagementConfig.model_validate(merged)


@lru_cache
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()
