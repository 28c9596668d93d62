"""Pipeline configuration for code-graph-search."""

from __future__ import annotations

import os
from dataclasses import asdict, dataclass, field
from pathlib import Path
from typing import Any

import yaml
from loguru import logger

from ..core.exceptions import ConfigError
from .defaults import (
    DEFAULT_BATCH_PAUSE_SECONDS,
    DEFAULT_BUFFER_POOL_SIZE,
    DEFAULT_CONTEXT_HOPS,
    DEFAULT_CONTEXT_K,
    DEFAULT_DISTANCE_METRIC,
    DEFAULT_EMBEDDING_BATCH_SIZE,
    DEFAULT_EMBEDDING_DIM,
    DEFAULT_EMBEDDING_MODEL,
    DEFAULT_MAX_DISTANCE,
    DEFAULT_MAX_EMBEDDING_CHARS,
    DEFAULT_SEARCH_K,
    DEFAULT_SUB_BATCH_SIZE,
    DISTANCE_METRICS,
    EDGE_TABLE_NAME,
    EMBEDDABLE_LABELS,
    ENV_PREFIX,
    IN_MEMORY_DB_PATH,
    MAX_CONTEXT_HOPS,
    MAX_CONTEXT_NEIGHBORS,
    NODE_TABLE_NAME,
    VECTOR_INDEX_NAME,
)


@dataclass
class EngineConfig:
    """Kuzu database construction settings."""

    database_path: str = IN_MEMORY_DB_PATH
    buffer_pool_size: int = DEFAULT_BUFFER_POOL_SIZE  # bytes
    max_num_threads: int = 0  # 0 = let Kuzu decide
    staging_dir: str | None = None  # None = private temp directory


@dataclass
class SchemaConfig:
    """Graph schema parameters."""

    node_table: str = NODE_TABLE_NAME
    edge_table: str = EDGE_TABLE_NAME
    vector_index: str = VECTOR_INDEX_NAME
    embedding_dim: int = DEFAULT_EMBEDDING_DIM


@dataclass
class BatchConfig:
    """Sub-batching of prepared statement executions.

    Smaller batches keep fewer live statement bindings inside the engine;
    the pause between batches lets memory from the released statement be
    reclaimed before the next allocation.
    """

    batch_size: int = DEFAULT_SUB_BATCH_SIZE
    pause_seconds: float = DEFAULT_BATCH_PAUSE_SECONDS


@dataclass
class EmbeddingConfig:
    """Embedding model and embedding phase settings."""

    model_name: str = DEFAULT_EMBEDDING_MODEL
    device: str | None = None  # None = auto-detect
    batch_size: int = DEFAULT_EMBEDDING_BATCH_SIZE
    max_chars: int = DEFAULT_MAX_EMBEDDING_CHARS
    labels: list[str] = field(default_factory=lambda: list(EMBEDDABLE_LABELS))


@dataclass
class SearchConfig:
    """Semantic search settings."""

    metric: str = DEFAULT_DISTANCE_METRIC
    k: int = DEFAULT_SEARCH_K
    max_distance: float = DEFAULT_MAX_DISTANCE
    context_k: int = DEFAULT_CONTEXT_K
    context_hops: int = DEFAULT_CONTEXT_HOPS
    max_neighbors: int = MAX_CONTEXT_NEIGHBORS


@dataclass
class PipelineConfig:
    """Complete pipeline configuration."""

    engine: EngineConfig = field(default_factory=EngineConfig)
    schema: SchemaConfig = field(default_factory=SchemaConfig)
    batch: BatchConfig = field(default_factory=BatchConfig)
    embedding: EmbeddingConfig = field(default_factory=EmbeddingConfig)
    search: SearchConfig = field(default_factory=SearchConfig)

    @classmethod
    def load(cls, path: Path) -> PipelineConfig:
        """Load configuration from YAML file.

        Args:
            path: Path to YAML configuration file

        Returns:
            PipelineConfig instance (defaults when the file does not exist)
        """
        if not path.exists():
            return cls()

        with open(path) as f:
            data = yaml.safe_load(f) or {}

        return cls.from_dict(data)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> PipelineConfig:
        """Create config from dictionary.

        Args:
            data: Configuration dictionary

        Returns:
            PipelineConfig instance

        Raises:
            ConfigError: If a section contains unknown keys or invalid values
        """
        try:
            config = cls(
                engine=EngineConfig(**data.get("engine", {})),
                schema=SchemaConfig(**data.get("schema", {})),
                batch=BatchConfig(**data.get("batch", {})),
                embedding=EmbeddingConfig(**data.get("embedding", {})),
                search=SearchConfig(**data.get("search", {})),
            )
        except TypeError as e:
            raise ConfigError(f"Invalid configuration: {e}") from e

        config.validate()
        return config

    @classmethod
    def from_env(cls, base: PipelineConfig | None = None) -> PipelineConfig:
        """Apply CODE_GRAPH_SEARCH_* environment overrides.

        Invalid values are logged and ignored.

        Args:
            base: Configuration to override (defaults when omitted)

        Returns:
            PipelineConfig with overrides applied
        """
        config = base or cls()

        def _env(name: str) -> str | None:
            value = os.environ.get(f"{ENV_PREFIX}{name}")
            return value if value else None

        if db_path := _env("DB_PATH"):
            config.engine.database_path = db_path

        if model := _env("EMBEDDING_MODEL"):
            logger.info(f"Using embedding model from environment: {model}")
            config.embedding.model_name = model

        if device := _env("DEVICE"):
            if device.lower() in ("cpu", "cuda", "mps"):
                config.embedding.device = device.lower()
            else:
                logger.warning(f"Invalid {ENV_PREFIX}DEVICE value: {device}, ignoring")

        if metric := _env("DISTANCE_METRIC"):
            if metric.lower() in DISTANCE_METRICS:
                config.search.metric = metric.lower()
            else:
                logger.warning(
                    f"Invalid {ENV_PREFIX}DISTANCE_METRIC value: {metric}, ignoring"
                )

        int_overrides = [
            ("BUFFER_POOL_MB", config.engine, "buffer_pool_size", 1024 * 1024),
            ("BATCH_SIZE", config.batch, "batch_size", 1),
            ("EMBEDDING_DIM", config.schema, "embedding_dim", 1),
        ]
        for name, section, attr, scale in int_overrides:
            raw = _env(name)
            if raw is None:
                continue
            try:
                value = int(raw)
            except ValueError:
                logger.warning(f"Invalid {ENV_PREFIX}{name} value: {raw}, ignoring")
                continue
            if value <= 0:
                logger.warning(f"Invalid {ENV_PREFIX}{name} value: {raw}, ignoring")
                continue
            setattr(section, attr, value * scale)

        if raw_pause := _env("BATCH_PAUSE"):
            try:
                config.batch.pause_seconds = max(0.0, float(raw_pause))
            except ValueError:
                logger.warning(
                    f"Invalid {ENV_PREFIX}BATCH_PAUSE value: {raw_pause}, ignoring"
                )

        return config

    def validate(self) -> None:
        """Check value ranges.

        Raises:
            ConfigError: On the first invalid value found
        """
        if self.batch.batch_size < 1:
            raise ConfigError(
                f"batch.batch_size must be positive, got {self.batch.batch_size}"
            )
        if self.batch.pause_seconds < 0:
            raise ConfigError("batch.pause_seconds must not be negative")
        if self.schema.embedding_dim < 1:
            raise ConfigError(
                f"schema.embedding_dim must be positive, got {self.schema.embedding_dim}"
            )
        if self.embedding.batch_size < 1:
            raise ConfigError("embedding.batch_size must be positive")
        if self.search.metric not in DISTANCE_METRICS:
            raise ConfigError(
                f"Unknown distance metric '{self.search.metric}'",
                context={"allowed": list(DISTANCE_METRICS)},
            )
        if not 1 <= self.search.context_hops <= MAX_CONTEXT_HOPS:
            raise ConfigError(
                f"search.context_hops must be between 1 and {MAX_CONTEXT_HOPS}"
            )

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for serialization."""
        return asdict(self)

    def save(self, path: Path) -> None:
        """Save configuration to YAML file.

        Args:
            path: Path to save configuration
        """
        path.parent.mkdir(parents=True, exist_ok=True)
        with open(path, "w") as f:
            yaml.dump(self.to_dict(), f, default_flow_style=False, sort_keys=False)
