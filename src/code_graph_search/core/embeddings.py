"""Embedding generation for code-graph-search.

The pipeline only depends on the ``Embedder`` protocol. The default
implementation wraps a sentence-transformers model, loaded lazily on first
use so that hosts without the model stay usable for structural queries.
"""

import asyncio
import logging
import os
import warnings
from typing import Any, Protocol, runtime_checkable

import numpy as np
from loguru import logger

from ..config.defaults import DEFAULT_EMBEDDING_MODEL, get_model_dimensions
from .exceptions import EmbeddingError

# Only our own messages should show; transformers noise is ERROR-only
logging.getLogger("transformers").setLevel(logging.ERROR)
logging.getLogger("sentence_transformers").setLevel(logging.ERROR)
logging.getLogger("torch").setLevel(logging.ERROR)
logging.getLogger("huggingface_hub").setLevel(logging.ERROR)

# Suppress tqdm progress bars (used by transformers for model loading)
os.environ.setdefault("TQDM_DISABLE", "1")

warnings.filterwarnings("ignore", message=".*position_ids.*")
warnings.filterwarnings("ignore", category=FutureWarning, module="transformers")


@runtime_checkable
class Embedder(Protocol):
    """Turns text into fixed-length vectors."""

    @property
    def dimension(self) -> int: ...

    def is_ready(self) -> bool: ...

    async def load(self) -> None: ...

    async def embed(self, texts: list[str]) -> list[list[float]]: ...

    async def embed_query(self, text: str) -> list[float]: ...

    async def dispose(self) -> None: ...


def _detect_device() -> str:
    """Detect optimal compute device (MPS > CUDA > CPU).

    Returns:
        Device string: "mps", "cuda", or "cpu"
    """
    import torch

    if torch.backends.mps.is_available() and torch.backends.mps.is_built():
        logger.info("Apple Silicon detected. Using MPS for GPU-accelerated inference.")
        return "mps"

    if torch.cuda.is_available():
        gpu_name = torch.cuda.get_device_name(0)
        logger.info(f"Using CUDA backend for GPU acceleration ({gpu_name})")
        return "cuda"

    logger.info("Using CPU backend (no GPU acceleration)")
    return "cpu"


def to_float32_list(vector: Any) -> list[float]:
    """Convert a model output row to a plain list of float32-representable floats."""
    return np.asarray(vector, dtype=np.float32).tolist()


class SentenceTransformerEmbedder:
    """Embedder backed by a sentence-transformers model."""

    def __init__(
        self,
        model_name: str = DEFAULT_EMBEDDING_MODEL,
        device: str | None = None,
        batch_size: int = 32,
        expected_dim: int | None = None,
    ) -> None:
        """Configure the embedder (the model is loaded by ``load()``).

        Args:
            model_name: Hugging Face model identifier
            device: "cpu", "cuda" or "mps"; auto-detected when None
            batch_size: Encode batch size
            expected_dim: Dimension the graph schema was created with
        """
        self.model_name = model_name
        self.device = device
        self.batch_size = batch_size
        self.model: Any = None

        if expected_dim is None:
            try:
                expected_dim = get_model_dimensions(model_name)
            except ValueError:
                logger.warning(
                    f"Unknown embedding model {model_name}; dimension taken from the model"
                )
        self._dimension = expected_dim

    @property
    def dimension(self) -> int:
        if self._dimension is None:
            raise EmbeddingError(
                f"Dimension of {self.model_name} unknown until the model is loaded"
            )
        return self._dimension

    def is_ready(self) -> bool:
        return self.model is not None

    def _load_sync(self) -> Any:
        from sentence_transformers import SentenceTransformer

        device = self.device or _detect_device()
        model = SentenceTransformer(self.model_name, device=device)
        self.device = device
        return model

    async def load(self) -> None:
        """Load the model once.

        Raises:
            EmbeddingError: If the model cannot be loaded or its dimension does
                not match the configured one
        """
        if self.model is not None:
            return

        try:
            model = await asyncio.to_thread(self._load_sync)
        except Exception as e:
            logger.error(f"Failed to load embedding model {self.model_name}: {e}")
            raise EmbeddingError(f"Failed to load embedding model: {e}") from e

        actual_dim = model.get_sentence_embedding_dimension()
        if self._dimension is not None and actual_dim != self._dimension:
            raise EmbeddingError(
                f"Model dimension mismatch: expected {self._dimension}, got {actual_dim}",
                context={"model": self.model_name},
            )

        self.model = model
        self._dimension = actual_dim
        logger.info(
            f"Loaded embedding model: {self.model_name} on {self.device} "
            f"with {actual_dim} dimensions"
        )

    def _encode(self, texts: list[str]) -> list[list[float]]:
        vectors = self.model.encode(
            texts,
            batch_size=self.batch_size,
            convert_to_numpy=True,
            normalize_embeddings=True,
            show_progress_bar=False,
        )
        return [to_float32_list(v) for v in vectors]

    async def embed(self, texts: list[str]) -> list[list[float]]:
        """Embed a batch of texts.

        Raises:
            EmbeddingError: If inference fails
        """
        if not texts:
            return []
        await self.load()

        try:
            # CUDA contexts are thread-bound; stay on the calling thread there
            if self.device == "cuda":
                return self._encode(texts)
            return await asyncio.to_thread(self._encode, texts)
        except Exception as e:
            logger.error(f"Failed to generate embeddings: {e}")
            raise EmbeddingError(f"Failed to generate embeddings: {e}") from e

    async def embed_query(self, text: str) -> list[float]:
        vectors = await self.embed([text])
        return vectors[0]

    async def dispose(self) -> None:
        """Release the model."""
        self.model = None
        logger.debug(f"Disposed embedding model {self.model_name}")
