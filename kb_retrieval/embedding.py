"""Embedding source used on the query path."""

from __future__ import annotations

import logging
from typing import Callable, Optional, Protocol

import numpy as np
from langchain_core.embeddings import Embeddings

from .codec import l2_normalize
from .config import DEFAULT_DIMENSIONS
from .errors import DimensionMismatchError

logger = logging.getLogger(__name__)

ProgressCallback = Callable[[float], None]


class EmbeddingSource(Protocol):
    """Turns query text into a unit-length vector of fixed dimension."""

    dimensions: int

    def load(self, on_progress: Optional[ProgressCallback] = None) -> None:
        """Make the source ready; ``on_progress`` receives fractions in [0, 1]."""
        ...

    def embed(self, text: str) -> np.ndarray:
        ...


class LangChainEmbeddingSource:
    """
    Adapter over any LangChain ``Embeddings`` client (e.g. ``OllamaEmbeddings``).

    Vectors are L2-normalised here so the engine can score by plain dot product.
    """

    def __init__(self, embeddings: Embeddings, dimensions: int = DEFAULT_DIMENSIONS, warmup_text: str = "warmup"):
        self.embeddings = embeddings
        self.dimensions = dimensions
        self.warmup_text = warmup_text
        self.loaded = False

    def load(self, on_progress: Optional[ProgressCallback] = None) -> None:
        if on_progress is not None:
            on_progress(0.0)
        # First call forces any lazy model download on the client side.
        self.embed(self.warmup_text)
        self.loaded = True
        logger.info("Embedding source ready (%d dims)", self.dimensions)
        if on_progress is not None:
            on_progress(1.0)

    def embed(self, text: str) -> np.ndarray:
        """
        Embed ``text`` and return a unit-length float32 vector.

        Raises:
            DimensionMismatchError: If the client returns the wrong dimension
            ValueError: If the client returns a zero vector
        """
        vector = np.asarray(self.embeddings.embed_query(text), dtype=np.float32)
        if vector.shape != (self.dimensions,):
            raise DimensionMismatchError(
                f"Dimension mismatch: embedding client returned {vector.shape[-1] if vector.ndim else 0} "
                f"values, expected {self.dimensions}"
            )
        return l2_normalize(vector)
