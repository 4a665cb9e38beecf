"""
Memingest Configuration
-----------------------
Centralized configuration for the ingestion subsystem.
Loads from environment variables and YAML config files.
"""

import os
import logging
from pathlib import Path
from typing import Optional

import yaml
from pydantic import BaseModel, Field, field_validator

from memingest.core.errors import ConfigurationError
from memingest.platform import get_data_dir

logger = logging.getLogger("Memingest.Config")

DEFAULT_DATA_DIR = str(get_data_dir())
SUPPORTED_EMBEDDING_PROVIDERS = ("ollama", "openai")


def _env_flag(name: str, default: bool) -> bool:
    raw = os.environ.get(name)
    if raw is None or raw.strip() == "":
        return default
    return raw.strip().lower() in ("1", "true", "yes", "on")


def _env_int(name: str, default: int, minimum: int = 0) -> int:
    raw = os.environ.get(name)
    if raw is None or raw.strip() == "":
        return default
    try:
        value = int(raw)
    except ValueError:
        logger.warning("Invalid %s value '%s'; expected integer. Using %d.", name, raw, default)
        return default
    if value < minimum:
        logger.warning("%s=%d below minimum %d; clamping.", name, value, minimum)
        return minimum
    return value


def _env_float(name: str, default: float) -> float:
    raw = os.environ.get(name)
    if raw is None or raw.strip() == "":
        return default
    try:
        value = float(raw)
        if value < 0:
            raise ValueError
        return value
    except ValueError:
        logger.warning(
            "Invalid %s value '%s'; expected non-negative float. Using %s.",
            name,
            raw,
            default,
        )
        return default


class EmbeddingConfig(BaseModel):
    """Embedding service configuration."""
    provider: str = "ollama"  # "ollama" | "openai"
    model: str = "nomic-embed-text"
    dimensions: int = 768
    ollama_url: str = "http://localhost:11434"
    openai_url: str = "https://api.openai.com/v1"
    api_key: Optional[str] = None
    timeout_seconds: float = 30.0

    @field_validator("provider")
    @classmethod
    def _check_provider(cls, value: str) -> str:
        normalized = value.strip().lower()
        if normalized not in SUPPORTED_EMBEDDING_PROVIDERS:
            raise ValueError(
                f"provider must be one of {SUPPORTED_EMBEDDING_PROVIDERS}, got '{value}'"
            )
        return normalized


class VectorConfig(BaseModel):
    """Qdrant vector store configuration."""
    path: str = os.path.join(DEFAULT_DATA_DIR, "qdrant")
    url: Optional[str] = None  # remote Qdrant; overrides path when set
    api_key: Optional[str] = None
    collection: str = "memingest_memories"
    on_disk: bool = True
    dimensions: int = 768


class RelationalConfig(BaseModel):
    """SQLite relational store configuration."""
    path: str = os.path.join(DEFAULT_DATA_DIR, "memingest.db")


class PipelineConfig(BaseModel):
    """Batching, rate limiting and retry bounds."""
    batch_size: int = Field(default=10, ge=1)
    batch_delay_seconds: float = Field(default=1.0, ge=0.0)
    max_workers: int = Field(default=1, ge=1)
    dry_run: bool = False
    skip_existing: bool = True
    max_attempts: int = Field(default=3, ge=1)


class IdentityConfig(BaseModel):
    """Orphan persona used when a source user cannot be resolved."""
    orphan_persona_name: str = "Orphaned Memories"
    orphan_persona_description: str = (
        "Memories whose owner could not be resolved during ingestion"
    )


class IngestOptions(BaseModel):
    """Per-run overrides of PipelineConfig."""
    dry_run: Optional[bool] = None
    batch_size: Optional[int] = Field(default=None, ge=1)
    max_attempts: Optional[int] = Field(default=None, ge=1)
    skip_existing: Optional[bool] = None
    batch_delay_seconds: Optional[float] = Field(default=None, ge=0.0)

    def apply(self, base: PipelineConfig) -> PipelineConfig:
        """Return a copy of ``base`` with every explicitly set option applied."""
        overrides = {k: v for k, v in self.model_dump().items() if v is not None}
        return base.model_copy(update=overrides)


class IngestConfig(BaseModel):
    """Root configuration for the ingestion subsystem."""
    embedding: EmbeddingConfig = Field(default_factory=EmbeddingConfig)
    vector: VectorConfig = Field(default_factory=VectorConfig)
    relational: RelationalConfig = Field(default_factory=RelationalConfig)
    pipeline: PipelineConfig = Field(default_factory=PipelineConfig)
    identity: IdentityConfig = Field(default_factory=IdentityConfig)
    data_dir: str = DEFAULT_DATA_DIR

    @classmethod
    def from_env(cls) -> "IngestConfig":
        """
        Load configuration from environment variables.

        Environment variables override defaults:
        - MEMINGEST_DATA_DIR: Base data directory
        - MEMINGEST_DB_PATH: SQLite relational store file
        - MEMINGEST_EMBEDDING_PROVIDER: "ollama" or "openai"
        - MEMINGEST_EMBEDDING_MODEL / MEMINGEST_EMBEDDING_DIMS
        - MEMINGEST_OLLAMA_URL / MEMINGEST_OPENAI_URL / MEMINGEST_OPENAI_API_KEY
        - MEMINGEST_QDRANT_URL / MEMINGEST_QDRANT_API_KEY / MEMINGEST_COLLECTION
        - MEMINGEST_BATCH_SIZE / MEMINGEST_BATCH_DELAY / MEMINGEST_MAX_WORKERS
        - MEMINGEST_MAX_ATTEMPTS / MEMINGEST_DRY_RUN / MEMINGEST_SKIP_EXISTING
        """
        data_dir = os.environ.get("MEMINGEST_DATA_DIR", DEFAULT_DATA_DIR)
        embedding_dims = _env_int("MEMINGEST_EMBEDDING_DIMS", 768, minimum=1)
        try:
            embedding = EmbeddingConfig(
                provider=os.environ.get("MEMINGEST_EMBEDDING_PROVIDER", "ollama"),
                model=os.environ.get("MEMINGEST_EMBEDDING_MODEL", "nomic-embed-text"),
                dimensions=embedding_dims,
                ollama_url=os.environ.get("MEMINGEST_OLLAMA_URL", "http://localhost:11434"),
                openai_url=os.environ.get("MEMINGEST_OPENAI_URL", "https://api.openai.com/v1"),
                api_key=os.environ.get("MEMINGEST_OPENAI_API_KEY") or None,
                timeout_seconds=_env_float("MEMINGEST_EMBEDDING_TIMEOUT", 30.0),
            )
        except ValueError as e:
            raise ConfigurationError(f"Invalid embedding configuration: {e}") from e

        return cls(
            data_dir=data_dir,
            embedding=embedding,
            vector=VectorConfig(
                path=os.path.join(data_dir, "qdrant"),
                url=os.environ.get("MEMINGEST_QDRANT_URL") or None,
                api_key=os.environ.get("MEMINGEST_QDRANT_API_KEY") or None,
                collection=os.environ.get("MEMINGEST_COLLECTION", "memingest_memories"),
                dimensions=embedding_dims,
            ),
            relational=RelationalConfig(
                path=os.environ.get(
                    "MEMINGEST_DB_PATH", os.path.join(data_dir, "memingest.db")
                ),
            ),
            pipeline=PipelineConfig(
                batch_size=_env_int("MEMINGEST_BATCH_SIZE", 10, minimum=1),
                batch_delay_seconds=_env_float("MEMINGEST_BATCH_DELAY", 1.0),
                max_workers=_env_int("MEMINGEST_MAX_WORKERS", 1, minimum=1),
                dry_run=_env_flag("MEMINGEST_DRY_RUN", False),
                skip_existing=_env_flag("MEMINGEST_SKIP_EXISTING", True),
                max_attempts=_env_int("MEMINGEST_MAX_ATTEMPTS", 3, minimum=1),
            ),
        )

    @classmethod
    def from_yaml(cls, path: str) -> "IngestConfig":
        """Load configuration from a YAML file."""
        try:
            with open(path, "r", encoding="utf-8") as f:
                data = yaml.safe_load(f) or {}
        except FileNotFoundError:
            logger.warning("Config file not found: %s; using environment", path)
            return cls.from_env()
        except yaml.YAMLError as e:
            raise ConfigurationError(f"Cannot parse config file {path}: {e}") from e
        if not isinstance(data, dict):
            raise ConfigurationError(f"Config file {path} must contain a mapping")
        try:
            return cls(**data)
        except ValueError as e:
            raise ConfigurationError(f"Invalid config file {path}: {e}") from e

    def ensure_directories(self) -> None:
        """Create data directories if they don't exist."""
        Path(self.data_dir).mkdir(parents=True, exist_ok=True)
        if not self.vector.url:
            Path(self.vector.path).mkdir(parents=True, exist_ok=True)
        Path(self.relational.path).parent.mkdir(parents=True, exist_ok=True)
        logger.info("Data directory: %s", self.data_dir)
