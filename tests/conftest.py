"""Shared fixtures for KB Retrieval tests."""

import asyncio
from typing import List, Optional, Sequence

import httpx
import numpy as np
import pytest
from langchain_core.embeddings import Embeddings

from kb_retrieval.codec import encode_text_blob, encode_vectors, l2_normalize, vector_stride
from kb_retrieval.engine import SearchEngine
from kb_retrieval.protocol import InitRequest
from kb_retrieval.schemas import (
    ArtifactConfig,
    ChunkMetadata,
    CorpusArtifacts,
    Manifest,
    ManifestChunk,
    ManifestStats,
    ModelInfo,
)

DIMENSIONS = 4


def make_manifest(
    ids: Sequence[str],
    tokens: Optional[Sequence[int]] = None,
    build_hash: str = "A",
    dimensions: int = DIMENSIONS,
    titles: Optional[Sequence[str]] = None,
) -> Manifest:
    tokens = list(tokens) if tokens is not None else [100] * len(ids)
    titles = list(titles) if titles is not None else [f"Post {chunk_id}" for chunk_id in ids]
    stride = vector_stride(dimensions)
    chunks = [
        ManifestChunk(
            id=chunk_id,
            parent_id=chunk_id.split("#")[0],
            tokens=tokens[i],
            metadata=ChunkMetadata(
                type="blog",
                title=titles[i],
                section=None,
                url=f"/blog/{chunk_id.split('#')[0]}",
                index=i,
            ),
            embedding_offset=i * stride,
        )
        for i, chunk_id in enumerate(ids)
    ]
    return Manifest(
        build_time="2024-01-01T12:00:00Z",
        build_hash=build_hash,
        model=ModelInfo(dimensions=dimensions),
        chunks=chunks,
        stats=ManifestStats(
            total_chunks=len(chunks),
            total_tokens=sum(tokens),
            avg_tokens_per_chunk=sum(tokens) / len(chunks) if chunks else 0.0,
        ),
    )


def make_artifacts(
    vectors: Sequence[Sequence[float]],
    texts: Sequence[str],
    build_hash: str = "A",
    titles: Optional[Sequence[str]] = None,
) -> CorpusArtifacts:
    ids = [f"doc{i}#intro-0" for i in range(len(texts))]
    unit = np.array([l2_normalize(v) for v in vectors], dtype=np.float32)
    manifest = make_manifest(ids, build_hash=build_hash, dimensions=unit.shape[1], titles=titles)
    return CorpusArtifacts(embeddings=encode_vectors(unit), manifest=manifest, chunks=list(texts))


def raw_artifacts(artifacts: CorpusArtifacts) -> List[bytes]:
    """The three files as served: embeddings, manifest JSON, text blob."""
    return [
        artifacts.embeddings,
        artifacts.manifest.model_dump_json(by_alias=True).encode("utf-8"),
        encode_text_blob(artifacts.chunks),
    ]


@pytest.fixture
def corpus() -> CorpusArtifacts:
    """Four chunks along distinct axes, with matching keyword text."""
    return make_artifacts(
        vectors=[
            [1.0, 0.0, 0.0, 0.0],
            [0.0, 1.0, 0.0, 0.0],
            [0.0, 0.0, 1.0, 0.0],
            [0.7, 0.7, 0.0, 0.1],
        ],
        texts=[
            "Caching strategies for static sites and service workers.",
            "Vector search with half precision embeddings.",
            "Gardening notes about tomatoes and basil.",
            "Caching embeddings next to the vector search index.",
        ],
        titles=["Caching", "Vectors", "Garden", "Index"],
    )


class KeywordEmbeddings(Embeddings):
    """Deterministic embeddings: one axis per keyword, plus a bias axis."""

    KEYWORDS = ("caching", "vector", "garden")

    def __init__(self, fail_times: int = 0):
        self.fail_times = fail_times
        self.calls = 0

    def _vector(self, text: str) -> List[float]:
        lowered = text.lower()
        return [float(keyword in lowered) for keyword in self.KEYWORDS] + [0.1]

    def embed_documents(self, texts: List[str]) -> List[List[float]]:
        self.calls += 1
        if self.calls <= self.fail_times:
            raise ConnectionError("embedding service unavailable")
        return [self._vector(text) for text in texts]

    def embed_query(self, text: str) -> List[float]:
        return self.embed_documents([text])[0]


class InProcessWorker:
    """Stands in for the worker process, running the engine in-process."""

    def __init__(self, init_error: Optional[Exception] = None):
        self.init_error = init_error
        self.engine = SearchEngine()
        self.started = False
        self.closed = False
        self.received = None
        self.gate: Optional[asyncio.Event] = None

    async def start(self) -> None:
        if self.gate is not None:
            await self.gate.wait()
        self.started = True

    async def init(self, embeddings, manifest) -> int:
        self.received = embeddings
        if self.init_error is not None:
            raise self.init_error
        response = self.engine.handle(InitRequest(id="init", embeddings=bytes(embeddings), manifest=manifest))
        return response.count

    async def search(self, query, top_k: int = 50):
        return self.engine.search(np.asarray(query, dtype=np.float32), top_k)

    async def close(self) -> None:
        self.closed = True


def corpus_transport(artifacts: CorpusArtifacts, requests: Optional[list] = None) -> httpx.MockTransport:
    """Serve ``artifacts`` under https://cdn.test/kb/."""
    embeddings, manifest, chunks = raw_artifacts(artifacts)
    files = {"/kb/embeddings.bin": embeddings, "/kb/manifest.json": manifest, "/kb/chunks.bin": chunks}

    def handler(request):
        if requests is not None:
            requests.append(request.url.path)
        return httpx.Response(200, content=files[request.url.path])

    return httpx.MockTransport(handler)


def artifact_config(build_hash: str) -> ArtifactConfig:
    return ArtifactConfig(
        build_hash=build_hash,
        embeddings_url="https://cdn.test/kb/embeddings.bin",
        chunks_url="https://cdn.test/kb/chunks.bin",
        manifest_url="https://cdn.test/kb/manifest.json",
    )
