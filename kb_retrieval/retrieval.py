"""Hybrid query path and context formatting for generation."""

from __future__ import annotations

import asyncio
import logging
from typing import Dict, List, Optional, Sequence

from .config import FusionConfig
from .errors import MalformedArtifactError, NoRelevantContentError
from .fusion import reciprocal_rank_fusion, select_top_k_within_budget
from .initialization import RetrievalContext
from .schemas import FusedResult, RetrievedChunk

logger = logging.getLogger(__name__)


class Retriever:
    """Answers queries against a ready :class:`RetrievalContext`."""

    def __init__(self, context: RetrievalContext, config: Optional[FusionConfig] = None) -> None:
        self.context = context
        self.config = config or FusionConfig()

    async def retrieve(self, query: str, max_tokens: Optional[int] = None) -> List[RetrievedChunk]:
        """
        Embed ``query``, run both searches, fuse them and trim to the token budget.

        Raises:
            NoRelevantContentError: If neither search found anything
            WorkerTimeoutError: If the search worker did not answer in time
            WorkerError: If the search worker answered with an error
        """
        budget = self.config.token_budget if max_tokens is None else max_tokens

        query_vector = await asyncio.to_thread(self.context.embedding_source.embed, query)
        semantic = await self.context.worker.search(query_vector, self.config.semantic_top_k)
        lexical = self.context.lexical_index.search(query, self.config.lexical_top_n)
        logger.debug("Query hits: semantic=%d lexical=%d", len(semantic), len(lexical))

        fused = reciprocal_rank_fusion(semantic, lexical, self.context.manifest, self.config)
        selected = select_top_k_within_budget(fused, budget, self.config.min_chunks)
        if not selected:
            raise NoRelevantContentError()

        chunks = [self._resolve(result) for result in selected]
        logger.info(
            "Retrieved %d chunks (%d tokens) for query",
            len(chunks),
            sum(chunk.tokens for chunk in chunks),
        )
        return chunks

    def _resolve(self, result: FusedResult) -> RetrievedChunk:
        text = self.context.text_for(result.chunk_id)
        if text is None:
            raise MalformedArtifactError(f"No text for chunk {result.chunk_id}")
        metadata = result.chunk.metadata
        return RetrievedChunk(
            id=result.chunk_id,
            text=text,
            score=result.score,
            title=metadata.title,
            section=metadata.section,
            url=metadata.url,
            tokens=result.chunk.tokens,
        )


def format_context(chunks: Sequence[RetrievedChunk]) -> str:
    """Render retrieved chunks as numbered sources for the generation prompt."""
    parts = []
    for number, chunk in enumerate(chunks, start=1):
        header = f"[Source {number}] {chunk.title}"
        if chunk.section:
            header += f" - {chunk.section}"
        parts.append(f"{header}\n{chunk.text}\nURL: {chunk.url}\n")
    return "\n---\n\n".join(parts)


def build_sources(chunks: Sequence[RetrievedChunk]) -> List[Dict[str, object]]:
    return [
        {"title": chunk.title, "url": chunk.url, "score": chunk.score, "section": chunk.section}
        for chunk in chunks
    ]
