"""Application settings — Pydantic-based configuration with YAML and env var support.

Configuration is loaded from (in order of precedence):
  1. Environment variables (SEARCHINDEX_ prefix)
  2. YAML config file (if specified)
  3. Default values

Index definitions live under ``indexes``; the core reads them but never
persists or mutates them.
"""

from __future__ import annotations

from pathlib import Path
from typing import Any

from pydantic import BaseModel, Field, field_validator
from pydantic_settings import BaseSettings

from searchindex.models.index import EngineType, Index

# Names the YAML file that worker processes load settings from.
CONFIG_ENV_VAR = "SEARCHINDEX_CONFIG_FILE"


class ServerSettings(BaseModel):
    """HTTP server configuration."""

    host: str = Field(default="0.0.0.0", description="Server bind address")
    port: int = Field(default=8080, description="Server port")
    workers: int = Field(default=1, description="Number of worker processes")
    cors_origins: list[str] = Field(default=["*"], description="Allowed CORS origins")


class RetrySettings(BaseModel):
    """Bounded exponential backoff for sync tasks."""

    max_attempts: int = Field(default=3, ge=1, description="Attempts per task, including the first")
    base_delay: float = Field(default=1.0, ge=0, description="Delay before the first retry, in seconds")
    max_delay: float = Field(default=30.0, ge=0, description="Upper bound for a single delay, in seconds")


class SyncSettings(BaseModel):
    """Sync orchestration configuration."""

    batch_size: int = Field(default=500, ge=1, description="Documents per bulk indexing task")
    orphan_batch_size: int = Field(default=500, ge=1, description="IDs per orphan deletion request")
    max_concurrent_tasks: int = Field(default=4, ge=1, description="Worker pool size of the in-process queue")
    lock_timeout: float = Field(default=10.0, gt=0, description="Seconds to wait for the swap-counter mutex")
    counter_backend: str = Field(default="memory", description="Swap counter store: memory, redis")
    retry: RetrySettings = Field(default_factory=RetrySettings)


class CacheSettings(BaseModel):
    """Cache configuration (embeddings, swap counters)."""

    backend: str = Field(default="memory", description="Cache backend: memory, redis")
    redis_url: str = Field(default="redis://localhost:6379/0", description="Redis connection URL")
    embedding_ttl: int = Field(default=604800, description="Embedding cache TTL in seconds (7 days)")


class EmbeddingSettings(BaseModel):
    """OpenAI-compatible embeddings endpoint used for ``vectorSearch``."""

    api_key: str = Field(default="", description="Embeddings API key")
    base_url: str | None = Field(default=None, description="Embeddings API base URL (None = OpenAI)")
    default_model: str = Field(default="text-embedding-3-small", description="Model used when none is requested")
    timeout: float = Field(default=10.0, description="Request timeout in seconds")


class ObservabilitySettings(BaseModel):
    """Observability configuration."""

    log_level: str = Field(default="info", description="Log level: debug, info, warning, error")
    log_format: str = Field(default="json", description="Log format: json, console")


class Settings(BaseSettings):
    """Root application settings.

    Configuration is loaded from environment variables with the SEARCHINDEX_
    prefix.  Nested settings use double underscores:

    Example:
        SEARCHINDEX_SERVER__PORT=9090
        SEARCHINDEX_SYNC__BATCH_SIZE=250
        SEARCHINDEX_ENGINES__MEILISEARCH__HOST=http://localhost:7700
    """

    model_config = {
        "env_prefix": "SEARCHINDEX_",
        "env_nested_delimiter": "__",
        "case_sensitive": False,
        "env_file": ".env",
        "env_file_encoding": "utf-8",
    }

    # Application metadata
    app_name: str = Field(default="searchindex", description="Application name")
    version: str = Field(default="0.1.0", description="Application version")
    debug: bool = Field(default=False, description="Debug mode")

    # Component settings
    server: ServerSettings = Field(default_factory=ServerSettings)
    sync: SyncSettings = Field(default_factory=SyncSettings)
    cache: CacheSettings = Field(default_factory=CacheSettings)
    embeddings: EmbeddingSettings = Field(default_factory=EmbeddingSettings)
    observability: ObservabilitySettings = Field(default_factory=ObservabilitySettings)

    # Global per-engine defaults, e.g. {"elasticsearch": {"host": "$ES_HOST"}}.
    engines: dict[str, dict[str, Any]] = Field(default_factory=dict, description="Global engine settings by kind")
    indexes: list[Index] = Field(default_factory=list, description="Configured search indexes")

    @field_validator("engines")
    @classmethod
    def _validate_engine_kinds(cls, v: dict[str, dict[str, Any]]) -> dict[str, dict[str, Any]]:
        known = {t.value for t in EngineType}
        unknown = sorted(set(v) - known)
        if unknown:
            raise ValueError(f"Unknown engine kind(s) {unknown}; expected one of {sorted(known)}")
        return v

    @field_validator("indexes")
    @classmethod
    def _validate_unique_handles(cls, v: list[Index]) -> list[Index]:
        seen: set[str] = set()
        for index in v:
            if index.handle in seen:
                raise ValueError(f"Duplicate index handle: {index.handle}")
            seen.add(index.handle)
        return v

    def index_map(self) -> dict[str, Index]:
        return {index.handle: index for index in self.indexes}

    @classmethod
    def from_yaml(cls, path: str | Path) -> Settings:
        """Load settings from a YAML configuration file.

        Values from the YAML file replace defaults; environment variables
        still take precedence.

        Args:
            path: Path to the YAML config file.

        Returns:
            Populated Settings instance.
        """
        import yaml  # type: ignore[import-untyped]

        config_path = Path(path)
        if not config_path.exists():
            raise FileNotFoundError(f"Config file not found: {config_path}")

        with open(config_path) as f:
            data = yaml.safe_load(f) or {}

        from_env = cls().model_dump(exclude_unset=True)
        return cls(**_deep_merge(data, from_env))


def _deep_merge(base: dict[str, Any], override: dict[str, Any]) -> dict[str, Any]:
    merged = dict(base)
    for key, value in override.items():
        if isinstance(value, dict) and isinstance(merged.get(key), dict):
            merged[key] = _deep_merge(merged[key], value)
        else:
            merged[key] = value
    return merged
