"""Reciprocal rank fusion of semantic and lexical rankings."""

from __future__ import annotations

import logging
import math
from typing import Dict, List, Optional, Sequence

from .config import FusionConfig
from .errors import NoRelevantContentError
from .schemas import FusedResult, LexicalHit, Manifest, ManifestChunk, SearchHit

logger = logging.getLogger(__name__)


def rrf_contribution(rank: int, k: int, weight: float) -> float:
    """Weighted ``1 / (k + rank + 1)`` for a 0-indexed rank."""
    return weight / (k + rank + 1)


def reciprocal_rank_fusion(
    semantic: Sequence[SearchHit],
    lexical: Sequence[LexicalHit],
    manifest: Manifest,
    config: Optional[FusionConfig] = None,
) -> List[FusedResult]:
    """
    Fuse two rankings over the same chunk-id space.

    The result is the union of both inputs: an id found by only one ranking
    keeps that ranking's contribution alone. Ties on the combined score are
    broken by semantic rank, then by first appearance.

    Raises:
        NoRelevantContentError: If both rankings are empty.
    """
    config = config or FusionConfig()
    if not semantic and not lexical:
        raise NoRelevantContentError()

    records: Dict[str, ManifestChunk] = {record.id: record for record in manifest.chunks}
    scores: Dict[str, float] = {}
    chunks: Dict[str, ManifestChunk] = {}
    semantic_rank: Dict[str, int] = {}

    for rank, hit in enumerate(semantic):
        if hit.chunk_id in scores:
            continue
        scores[hit.chunk_id] = rrf_contribution(rank, config.k, config.semantic_weight)
        chunks[hit.chunk_id] = hit.chunk
        semantic_rank[hit.chunk_id] = rank

    seen_lexical = set()
    for rank, hit in enumerate(lexical):
        if hit.id in seen_lexical:
            continue
        seen_lexical.add(hit.id)
        contribution = rrf_contribution(rank, config.k, config.lexical_weight)
        if hit.id in scores:
            scores[hit.id] += contribution
            continue
        record = records.get(hit.id)
        if record is None:
            logger.warning("Lexical hit %s is not in the manifest; ignoring", hit.id)
            continue
        scores[hit.id] = contribution
        chunks[hit.id] = record

    ordered = sorted(
        scores,
        key=lambda chunk_id: (-scores[chunk_id], semantic_rank.get(chunk_id, math.inf)),
    )
    return [FusedResult(chunk_id=chunk_id, score=scores[chunk_id], chunk=chunks[chunk_id]) for chunk_id in ordered]


def select_top_k_within_budget(
    fused: Sequence[FusedResult],
    max_tokens: int = 2000,
    min_chunks: int = 3,
) -> List[FusedResult]:
    """
    Take the longest prefix of ``fused`` that fits ``max_tokens``.

    The first ``min_chunks`` results are always kept, even over budget.
    """
    selected: List[FusedResult] = []
    total_tokens = 0

    for result in fused:
        if len(selected) >= min_chunks and total_tokens + result.chunk.tokens > max_tokens:
            break
        selected.append(result)
        total_tokens += result.chunk.tokens

    return selected
