"""Pydantic models for configuration validation."""

import os
from pathlib import Path
from typing import Literal, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator


DEFAULT_SYSTEM_PROMPT = (
    "You are a collaborative storyteller. Fully embody your character, stay in "
    "their voice, and keep responses focused: no more than three paragraphs.\n\n"
    "Formatting rules:\n"
    "1. Enclose all dialogue in double quotation marks.\n"
    "2. Enclose all actions, thoughts and descriptions in asterisks.\n\n"
    "Messages starting with \"(OOC:\" or \"//\" are directions from the user about "
    "the story. Follow them without mentioning them in character."
)

# Providers that need an API key
KEYED_PROVIDERS = {"openai-compatible", "openrouter", "deepseek", "gemini"}

PROVIDER_BASE_URLS = {
    "openrouter": "https://openrouter.ai/api/v1",
    "deepseek": "https://api.deepseek.com/v1",
    "ollama": "http://localhost:11434",
    "gemini": "https://generativelanguage.googleapis.com",
}


class LLMConfig(BaseModel):
    """LLM backend configuration."""

    provider: Literal["openai-compatible", "openrouter", "deepseek", "ollama", "gemini"] = "openrouter"
    base_url: Optional[str] = None
    api_key: Optional[str] = Field(default=None, description="Falls back to NEXUS_API_KEY")
    model: str = "gryphe/mythomax-l2-13b"
    context_window: int = Field(default=8192, gt=0, le=1_000_000)
    max_response_tokens: int = Field(default=2048, ge=0, le=65536)
    temperature: float = Field(default=0.8, ge=0.0, le=2.0)
    timeout_seconds: int = Field(default=120, gt=0)

    @field_validator('base_url')
    @classmethod
    def validate_url(cls, v: Optional[str]) -> Optional[str]:
        """Ensure URL is properly formatted."""
        if v is None:
            return v
        if not v.startswith(('http://', 'https://')):
            raise ValueError('base_url must start with http:// or https://')
        return v.rstrip('/')

    @property
    def resolved_base_url(self) -> str:
        if self.base_url:
            return self.base_url
        return PROVIDER_BASE_URLS.get(self.provider, "http://localhost:1234/v1")

    @property
    def resolved_api_key(self) -> str:
        return self.api_key or os.environ.get("NEXUS_API_KEY", "")

    @property
    def requires_api_key(self) -> bool:
        return self.provider in KEYED_PROVIDERS


class MemoryConfig(BaseModel):
    """Long-term memory summarization settings."""

    trigger_ratio: float = Field(default=0.75, gt=0.0, le=1.0)
    slice_ratio: float = Field(default=0.5, gt=0.0, lt=1.0)
    summary_temperature: float = Field(default=0.3, ge=0.0, le=2.0)


class RetrievalConfig(BaseModel):
    """Lore retrieval scoring weights."""

    max_lore_entries: int = Field(default=7, gt=0)
    recent_message_window: int = Field(default=5, gt=0)
    always_active_bonus: float = 100
    speaker_link_bonus: float = 50
    interaction_weight: float = 15
    user_persona_weight: float = 5
    character_persona_weight: float = 3
    max_suggestions: int = Field(default=5, gt=0)


class RetryConfig(BaseModel):
    """Backoff policy for idempotent, non-streaming provider calls."""

    max_attempts: int = Field(default=3, gt=0, le=10)
    base_delay_seconds: float = Field(default=0.3, ge=0.0)
    max_delay_seconds: float = Field(default=5.0, ge=0.0)


class ThinkingConfig(BaseModel):
    """Multi-step reasoning before the final response."""

    enabled: bool = False
    depth: Literal["quick", "medium", "deep"] = "medium"
    step_timeout_seconds: float = Field(default=20.0, gt=0)


class GenerationConfig(BaseModel):
    """Response generation behaviour."""

    system_prompt: str = DEFAULT_SYSTEM_PROMPT
    response_prefill: str = ""
    render_interval_ms: int = Field(default=100, ge=0)


class PathsConfig(BaseModel):
    """File path configuration."""

    data: Path = Path("data")

    @field_validator('data')
    @classmethod
    def validate_path(cls, v: Path) -> Path:
        """Ensure paths are cross-platform."""
        return Path(v)


class SystemConfig(BaseModel):
    """Top-level system configuration."""

    model_config = ConfigDict(extra='ignore')

    llm: LLMConfig = Field(default_factory=LLMConfig)
    memory: MemoryConfig = Field(default_factory=MemoryConfig)
    retrieval: RetrievalConfig = Field(default_factory=RetrievalConfig)
    retry: RetryConfig = Field(default_factory=RetryConfig)
    thinking: ThinkingConfig = Field(default_factory=ThinkingConfig)
    generation: GenerationConfig = Field(default_factory=GenerationConfig)
    paths: PathsConfig = Field(default_factory=PathsConfig)
    debug: bool = False
