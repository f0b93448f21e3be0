"""Configuration loading and validation."""

from .models import (
    SystemConfig,
    LLMConfig,
    MemoryConfig,
    RetrievalConfig,
    RetryConfig,
    ThinkingConfig,
    GenerationConfig,
    PathsConfig,
)
from .loader import ConfigLoader, ConfigLoadError, ConfigValidationError

__all__ = [
    "SystemConfig",
    "LLMConfig",
    "MemoryConfig",
    "RetrievalConfig",
    "RetryConfig",
    "ThinkingConfig",
    "GenerationConfig",
    "PathsConfig",
    "ConfigLoader",
    "ConfigLoadError",
    "ConfigValidationError",
]
