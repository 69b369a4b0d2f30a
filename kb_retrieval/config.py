"""Configuration defaults and environment settings."""

from __future__ import annotations

import logging
from typing import Dict

from pydantic import BaseModel, Field
from pydantic_settings import BaseSettings, SettingsConfigDict


ARTIFACT_VERSION = "1.0.0"
DEFAULT_MODEL_NAME = "Xenova/all-MiniLM-L6-v2"
DEFAULT_DIMENSIONS = 384


class ChunkingConfig(BaseModel):
    """Chunk sizing, in estimated tokens."""
    target_tokens: int = 256
    max_tokens: int = 512
    min_tokens: int = 64
    overlap_tokens: int = 32


class FusionConfig(BaseModel):
    """Reciprocal rank fusion and context budget."""
    k: int = 60
    semantic_weight: float = 0.6
    lexical_weight: float = 0.4
    token_budget: int = 2000
    min_chunks: int = 3
    semantic_top_k: int = 50
    lexical_top_n: int = 50


class RetryConfig(BaseModel):
    """Exponential backoff parameters (delays in seconds)."""
    max_retries: int = 3
    initial_delay: float = 1.0
    max_delay: float = 10.0
    backoff_multiplier: float = 2.0

    def delay_for(self, attempt: int) -> float:
        return min(self.initial_delay * (self.backoff_multiplier ** attempt), self.max_delay)


RETRY_CONFIGS: Dict[str, RetryConfig] = {
    "model_load": RetryConfig(max_retries=3, initial_delay=2.0, max_delay=15.0),
    "artifact_fetch": RetryConfig(max_retries=3, initial_delay=1.0, max_delay=10.0),
    "api_call": RetryConfig(max_retries=2, initial_delay=0.5, max_delay=5.0),
}


class TimeoutConfig(BaseModel):
    """Caller-side timeouts in seconds."""
    init: float = 30.0
    search: float = 10.0
    fetch: float = 60.0


class Settings(BaseSettings):
    """Runtime settings, overridable through ``KB_RETRIEVAL_*`` variables.

    Nested values use a double underscore, e.g.
    ``KB_RETRIEVAL_FUSION__TOKEN_BUDGET=1500``.
    """

    model_config = SettingsConfigDict(
        env_prefix="KB_RETRIEVAL_",
        env_nested_delimiter="__",
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    artifact_config_path: str = Field(
        default="./kb/artifact-config.json",
        description="Bundled artifact config carrying the deployed build hash",
    )
    cache_dir: str = Field(
        default="./.kb_cache",
        description="Directory holding the single persisted corpus snapshot",
    )
    log_level: str = Field(default="INFO")
    chunking: ChunkingConfig = Field(default_factory=ChunkingConfig)
    fusion: FusionConfig = Field(default_factory=FusionConfig)
    retry: RetryConfig = Field(default_factory=lambda: RETRY_CONFIGS["artifact_fetch"].model_copy())
    timeouts: TimeoutConfig = Field(default_factory=TimeoutConfig)


def configure_logging(level: str = "INFO") -> None:
    """Install a basic root handler; intended for scripts, not library code."""
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
    )
