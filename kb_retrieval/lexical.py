"""
Keyword index for the lexical half of hybrid retrieval.

Documents are hashed into unigram + bigram counts slice by slice, with the
title and section fields boosted over body text; IDF weighting is fitted
once every slice is in. Queries are scored by cosine similarity.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Callable, List, Optional, Sequence

import numpy as np
from scipy.sparse import csr_matrix, vstack
from sklearn.feature_extraction.text import HashingVectorizer, TfidfTransformer

from .schemas import LexicalHit, Manifest

logger = logging.getLogger(__name__)

FIELD_BOOSTS = {"title": 3.0, "section": 2.0, "text": 1.0}
DEFAULT_SLICE_SIZE = 50


def _make_vectorizer() -> HashingVectorizer:
    return HashingVectorizer(
        n_features=2 ** 18,
        alternate_sign=False,
        norm=None,
        ngram_range=(1, 2),
        lowercase=True,
        strip_accents="unicode",
    )


class LexicalIndex:
    """Immutable, query-ready keyword index over chunk ids."""

    def __init__(
        self,
        chunk_ids: List[str],
        doc_vectors: Optional[csr_matrix],
        vectorizer: HashingVectorizer,
        transformer: Optional[TfidfTransformer],
    ) -> None:
        self.chunk_ids = chunk_ids
        self.doc_vectors = doc_vectors
        self.vectorizer = vectorizer
        self.transformer = transformer

    def __len__(self) -> int:
        return len(self.chunk_ids)

    def search(self, query: str, limit: int = 50) -> List[LexicalHit]:
        """Top ``limit`` chunks with a positive score, best first."""
        if self.doc_vectors is None or self.transformer is None or not query.strip():
            return []

        query_vector = self.transformer.transform(self.vectorizer.transform([query]))
        scores = np.asarray((self.doc_vectors @ query_vector.T).todense()).ravel()

        order = np.argsort(-scores, kind="stable")
        hits: List[LexicalHit] = []
        for idx in order[:limit]:
            score = float(scores[idx])
            if score <= 0:
                break
            hits.append(LexicalHit(id=self.chunk_ids[idx], score=score))
        return hits


class LexicalIndexBuilder:
    """
    Builds a :class:`LexicalIndex` in bounded slices.

    Each :meth:`step` indexes at most ``slice_size`` records, so a caller can
    interleave construction with other work and resume at any point.
    """

    def __init__(self, manifest: Manifest, texts: Sequence[str], slice_size: int = DEFAULT_SLICE_SIZE) -> None:
        if len(texts) != len(manifest.chunks):
            raise ValueError(
                f"manifest lists {len(manifest.chunks)} chunks but {len(texts)} texts were given"
            )
        if slice_size <= 0:
            raise ValueError("slice_size must be positive")
        self.manifest = manifest
        self.texts = texts
        self.slice_size = slice_size
        self.processed = 0
        self._vectorizer = _make_vectorizer()
        self._blocks: List[csr_matrix] = []

    @property
    def total(self) -> int:
        return len(self.manifest.chunks)

    @property
    def done(self) -> bool:
        return self.processed >= self.total

    @property
    def progress(self) -> float:
        return 1.0 if self.total == 0 else self.processed / self.total

    def step(self) -> bool:
        """Index the next slice; returns True once every record is indexed."""
        if self.done:
            return True

        start, end = self.processed, min(self.processed + self.slice_size, self.total)
        records = self.manifest.chunks[start:end]
        body = self._vectorizer.transform(self.texts[start:end])
        titles = self._vectorizer.transform([record.metadata.title for record in records])
        sections = self._vectorizer.transform([record.metadata.section or "" for record in records])

        block = (
            FIELD_BOOSTS["text"] * body
            + FIELD_BOOSTS["title"] * titles
            + FIELD_BOOSTS["section"] * sections
        )
        self._blocks.append(csr_matrix(block))
        self.processed = end
        return self.done

    def finish(self) -> LexicalIndex:
        """Fit IDF weights and return the index; indexes any remaining slices first."""
        while not self.step():
            pass

        chunk_ids = [record.id for record in self.manifest.chunks]
        if not self._blocks:
            return LexicalIndex(chunk_ids, None, self._vectorizer, None)

        counts = vstack(self._blocks).tocsr()
        transformer = TfidfTransformer(sublinear_tf=True)
        doc_vectors = csr_matrix(transformer.fit_transform(counts))
        logger.info("Search index ready: %d chunks indexed", len(chunk_ids))
        return LexicalIndex(chunk_ids, doc_vectors, self._vectorizer, transformer)


async def build_lexical_index(
    manifest: Manifest,
    texts: Sequence[str],
    slice_size: int = DEFAULT_SLICE_SIZE,
    on_progress: Optional[Callable[[float], None]] = None,
) -> LexicalIndex:
    """Build the index, yielding to the event loop after every slice."""
    builder = LexicalIndexBuilder(manifest, texts, slice_size)
    while not builder.step():
        if on_progress is not None:
            on_progress(builder.progress)
        await asyncio.sleep(0)
    if on_progress is not None:
        on_progress(1.0)
    return builder.finish()
