"""Core functionality for Code Graph Search."""

from .exceptions import (
    BulkLoadError,
    CodeGraphSearchError,
    ConfigError,
    DatabaseError,
    DatabaseInitializationError,
    DatabaseNotInitializedError,
    EmbeddingError,
    EmbeddingsNotReadyError,
    GraphValidationError,
    PreparedStatementError,
    QueryError,
    SearchError,
)

__all__ = [
    # Exceptions
    "BulkLoadError",
    "CodeGraphSearchError",
    "ConfigError",
    "DatabaseError",
    "DatabaseInitializationError",
    "DatabaseNotInitializedError",
    "EmbeddingError",
    "EmbeddingsNotReadyError",
    "GraphValidationError",
    "PreparedStatementError",
    "QueryError",
    "SearchError",
]
