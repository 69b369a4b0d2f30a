"""Semantic search engine state machine.

``uninitialized -> ready`` on a successful init; every later search leaves it
``ready``. Requests are handled one at a time in arrival order.
"""

from __future__ import annotations

import logging
from enum import Enum
from typing import List, Optional

import numpy as np

from .codec import decode_query, decode_vectors, similarity_scores
from .errors import DimensionMismatchError, MalformedArtifactError
from .protocol import (
    ErrorResponse,
    InitRequest,
    ReadyResponse,
    Response,
    SearchRequest,
    SearchResultsResponse,
)
from .schemas import Manifest, SearchHit

logger = logging.getLogger(__name__)


class EngineState(str, Enum):
    UNINITIALIZED = "uninitialized"
    READY = "ready"


class SearchEngine:
    """Holds the deserialized corpus vectors and answers similarity queries."""

    def __init__(self) -> None:
        self.state = EngineState.UNINITIALIZED
        self.manifest: Optional[Manifest] = None
        self.vectors: Optional[np.ndarray] = None

    def handle(self, message: object) -> Response:
        """Dispatch one request and return its response; never raises."""
        if isinstance(message, InitRequest):
            return self._handle_init(message)
        if isinstance(message, SearchRequest):
            return self._handle_search(message)
        request_id = getattr(message, "id", None)
        kind = getattr(message, "type", type(message).__name__)
        logger.error("Unrecognized message: %s", kind)
        return ErrorResponse(id=request_id, error=f"Unrecognized message type: {kind}")

    def _handle_init(self, message: InitRequest) -> Response:
        logger.info("Initializing with %d bytes of embeddings", len(message.embeddings))
        manifest = message.manifest
        try:
            vectors = decode_vectors(message.embeddings, manifest.dimensions, count=len(manifest.chunks))
        except MalformedArtifactError as exc:
            return ErrorResponse(id=message.id, error=str(exc))

        self.manifest = manifest
        # Widened once so every search accumulates in float64 without a per-query copy.
        self.vectors = vectors.astype(np.float64)
        self.state = EngineState.READY
        logger.info("Deserialized %d embeddings", len(manifest.chunks))
        return ReadyResponse(id=message.id, count=len(manifest.chunks))

    def _handle_search(self, message: SearchRequest) -> Response:
        if self.state is not EngineState.READY or self.manifest is None or self.vectors is None:
            logger.error("Search before init: %s", message.id)
            return ErrorResponse(id=message.id, error="Worker not initialized")
        try:
            query = decode_query(message.query_embedding, self.manifest.dimensions)
            results = self.search(query, message.top_k)
        except DimensionMismatchError as exc:
            return ErrorResponse(id=message.id, error=str(exc))
        return SearchResultsResponse(id=message.id, results=results)

    def search(self, query: np.ndarray, top_k: int) -> List[SearchHit]:
        """Score ``query`` against every resident vector; best ``top_k`` first."""
        if self.manifest is None or self.vectors is None:
            raise RuntimeError("engine is not initialized")
        if len(self.manifest.chunks) == 0:
            return []
        scores = similarity_scores(self.vectors, query)
        order = np.argsort(-scores, kind="stable")[: max(top_k, 0)]
        chunks = self.manifest.chunks
        return [SearchHit(chunk_id=chunks[i].id, score=float(scores[i]), chunk=chunks[i]) for i in order]
