"""Typed exception hierarchy for code-graph-search.

Hierarchy
---------
CodeGraphSearchError (base)
├── DatabaseError              – Kuzu engine / storage layer errors
│   ├── DatabaseInitializationError
│   ├── DatabaseNotInitializedError
│   ├── QueryError
│   ├── PreparedStatementError
│   └── BulkLoadError
├── GraphValidationError       – malformed input graph (dangling edges)
├── SearchError                – search-time failures
│   └── EmbeddingsNotReadyError
├── EmbeddingError             – embedding model load / inference errors
└── ConfigError                – configuration / validation errors

Propagated errors (initialization, prepare, ad hoc query) are raised to the
caller. Best-effort operations (bulk load, stats, teardown) never raise these;
they return result objects instead.
"""

from typing import Any


class CodeGraphSearchError(Exception):
    """Base exception for code-graph-search."""

    def __init__(self, message: str, context: dict[str, Any] | None = None) -> None:
        super().__init__(message)
        self.context = context or {}


# ── Database layer ──────────────────────────────────────────────────────


class DatabaseError(CodeGraphSearchError):
    """Graph engine errors."""

    pass


class DatabaseInitializationError(DatabaseError):
    """Engine module load or database construction failed."""

    pass


class DatabaseNotInitializedError(DatabaseError):
    """Operation attempted before the graph engine is ready."""

    pass


class QueryError(DatabaseError):
    """Ad hoc query execution failed."""

    pass


class PreparedStatementError(DatabaseError):
    """The engine refused to prepare a statement.

    The engine's diagnostic message is kept in ``context["engine_message"]``.
    """

    pass


class BulkLoadError(DatabaseError):
    """A step of the COPY FROM bulk load failed."""

    pass


# ── Input graph ─────────────────────────────────────────────────────────


class GraphValidationError(CodeGraphSearchError):
    """Input graph violates referential integrity."""

    pass


# ── Search layer ────────────────────────────────────────────────────────


class SearchError(CodeGraphSearchError):
    """Search operation failed."""

    pass


class EmbeddingsNotReadyError(SearchError):
    """Semantic search requested before the embedding phase completed."""

    pass


# ── Embedding layer ─────────────────────────────────────────────────────


class EmbeddingError(CodeGraphSearchError):
    """Embedding generation errors."""

    pass


# ── Configuration layer ─────────────────────────────────────────────────


class ConfigError(CodeGraphSearchError):
    """Configuration / validation errors."""

    pass
