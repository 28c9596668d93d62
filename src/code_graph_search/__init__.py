"""Code Graph Search - Kuzu-backed code knowledge graph with semantic search."""

__version__ = "0.1.0"

from .core.exceptions import CodeGraphSearchError

__all__ = ["CodeGraphSearchError", "__version__"]
