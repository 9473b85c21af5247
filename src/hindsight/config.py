"""
Engine configuration.

A single frozen pydantic model holds every tunable. Invalid values are
rejected at construction time so the engine never starts with a partial
configuration.
"""

import logging
import os
from typing import Any, Dict, Literal, Optional

from dotenv import load_dotenv
from pydantic import BaseModel, ConfigDict, Field, ValidationError, model_validator

from hindsight.errors import ConfigurationError

logger = logging.getLogger(__name__)

ENV_PREFIX = "HINDSIGHT_"


class HindsightConfig(BaseModel):
    model_config = ConfigDict(frozen=True, extra="forbid")

    # Storage
    storage_type: Literal["memory", "sqlite", "qdrant"] = "memory"
    storage_path: str = "hindsight.db"
    qdrant_url: Optional[str] = None
    qdrant_host: str = "localhost"
    qdrant_port: int = Field(default=6333, gt=0, lt=65536)
    qdrant_api_key: Optional[str] = None
    qdrant_collection: str = "hindsight_fragments"

    # Embeddings
    embedding_dimension: int = Field(default=384, gt=0)
    embedding_timeout_seconds: float = Field(default=30.0, gt=0)

    # Fragments
    max_content_length: int = Field(default=2000, gt=0)

    # Retrieval
    similarity_threshold: float = Field(default=0.7, ge=0.0, le=1.0)
    cross_agent_enabled: bool = False
    cross_agent_threshold: float = Field(default=0.85, ge=0.0, le=1.0)
    default_top_k: int = Field(default=10, gt=0)
    token_budget: int = Field(default=2000, gt=0)
    recency_half_life_days: float = Field(default=30.0, gt=0)
    frequency_weight: float = Field(default=0.1, ge=0.0)
    negative_outcome_boost: float = Field(default=1.0, ge=1.0)

    # Consolidation
    deduplication_threshold: float = Field(default=0.95, ge=0.0, le=1.0)
    decay_rate: float = Field(default=0.01, ge=0.0)
    deletion_threshold: float = Field(default=0.1, ge=0.0, le=1.0)
    reinforcement_boost: float = Field(default=0.2, ge=0.0, le=1.0)
    consolidation_interval_seconds: float = Field(default=3600.0, gt=0)

    # Vector index
    brute_force_threshold: int = Field(default=100_000, ge=0)

    # Degraded mode
    retry_max_attempts: int = Field(default=5, ge=1)
    retry_base_delay_seconds: float = Field(default=0.5, gt=0)
    retry_max_delay_seconds: float = Field(default=30.0, gt=0)
    cache_max_fragments: int = Field(default=10_000, gt=0)

    @model_validator(mode="after")
    def _check_relations(self) -> "HindsightConfig":
        if self.cross_agent_threshold < self.similarity_threshold:
            raise ValueError(
                "cross_agent_threshold must be at least similarity_threshold "
                f"({self.cross_agent_threshold} < {self.similarity_threshold})"
            )
        if self.retry_max_delay_seconds < self.retry_base_delay_seconds:
            raise ValueError("retry_max_delay_seconds must be >= retry_base_delay_seconds")
        return self

    @classmethod
    def create(cls, **overrides: Any) -> "HindsightConfig":
        """
        Build a config, converting validation failures to ConfigurationError.

        Raises:
            ConfigurationError: If any value is invalid
        """
        try:
            return cls(**overrides)
        except ValidationError as e:
            raise ConfigurationError(f"Invalid memory engine configuration: {e}") from e


def _env_overrides(environ: Dict[str, str]) -> Dict[str, Any]:
    overrides: Dict[str, Any] = {}
    for name in HindsightConfig.model_fields:
        key = f"{ENV_PREFIX}{name.upper()}"
        if key in environ:
            overrides[name] = environ[key]
    return overrides


def load_config(env_file: Optional[str] = None, **overrides: Any) -> HindsightConfig:
    """
    Load configuration from ``HINDSIGHT_*`` environment variables.

    Args:
        env_file: Optional .env file loaded before reading the environment
        **overrides: Explicit values that win over the environment

    Returns:
        Validated configuration

    Raises:
        ConfigurationError: If any value is invalid
    """
    if env_file:
        load_dotenv(env_file)

    values = _env_overrides(dict(os.environ))
    values.update(overrides)
    config = HindsightConfig.create(**values)

    logger.info(
        f"Configuration loaded: storage={config.storage_type}, "
        f"dimension={config.embedding_dimension}, env_keys={len(values) - len(overrides)}"
    )
    return config
