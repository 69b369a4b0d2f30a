"""Data schemas for the retrieval core."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from typing import List, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field, model_validator
from pydantic.alias_generators import to_camel

from .config import ARTIFACT_VERSION, DEFAULT_DIMENSIONS, DEFAULT_MODEL_NAME


ContentType = Literal["blog", "works"]


class _CamelModel(BaseModel):
    """Accepts snake_case or camelCase input; serialises camelCase with ``by_alias``."""
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class ContentMetadata(_CamelModel):
    tags: List[str] = Field(default_factory=list)
    pub_date: Optional[datetime] = None
    date: Optional[datetime] = None
    author: Optional[str] = None


class ContentItem(_CamelModel):
    """A source document handed over by the content loader."""
    model_config = ConfigDict(frozen=True)

    id: str
    slug: str
    type: ContentType
    title: str
    content: str
    metadata: ContentMetadata = Field(default_factory=ContentMetadata)


class ChunkMetadata(_CamelModel):
    type: ContentType
    title: str
    section: Optional[str] = None
    tags: List[str] = Field(default_factory=list)
    url: str
    index: int


class Chunk(_CamelModel):
    """A bounded, independently embeddable unit of document text."""
    model_config = ConfigDict(frozen=True)

    id: str
    parent_id: str
    text: str
    tokens: int
    metadata: ChunkMetadata


class EmbeddingResult(_CamelModel):
    chunk_id: str
    embedding: List[float]
    dimensions: int = DEFAULT_DIMENSIONS


class ModelInfo(_CamelModel):
    name: str = DEFAULT_MODEL_NAME
    dimensions: int = DEFAULT_DIMENSIONS
    normalization: str = "l2"


class StorageInfo(_CamelModel):
    precision: str = "fp16"
    accumulation_precision: str = "float64"


class ManifestChunk(_CamelModel):
    """Per-chunk record of the manifest; text lives in the text blob."""
    id: str
    parent_id: str
    tokens: int
    metadata: ChunkMetadata
    embedding_offset: int


class ManifestStats(_CamelModel):
    total_chunks: int
    total_tokens: int
    avg_tokens_per_chunk: float


class Manifest(_CamelModel):
    """Corpus metadata-of-record.

    Chunk order defines the byte layout of both binary blobs: record ``i``
    owns bytes ``[i * dims * 2, (i + 1) * dims * 2)`` of the vector blob and
    the ``i``-th length-prefixed record of the text blob.
    """
    version: str = ARTIFACT_VERSION
    build_time: str
    build_hash: str
    model: ModelInfo = Field(default_factory=ModelInfo)
    storage: StorageInfo = Field(default_factory=StorageInfo)
    chunks: List[ManifestChunk] = Field(default_factory=list)
    stats: ManifestStats

    @model_validator(mode="after")
    def _check_layout(self) -> "Manifest":
        seen = set()
        stride = self.model.dimensions * 2
        for position, record in enumerate(self.chunks):
            if record.id in seen:
                raise ValueError(f"duplicate chunk id: {record.id}")
            seen.add(record.id)
            if record.embedding_offset != position * stride:
                raise ValueError(
                    f"chunk {record.id} has embeddingOffset {record.embedding_offset}, "
                    f"expected {position * stride}"
                )
        if self.stats.total_chunks != len(self.chunks):
            raise ValueError(
                f"stats.totalChunks={self.stats.total_chunks} but manifest lists {len(self.chunks)} chunks"
            )
        return self

    @property
    def dimensions(self) -> int:
        return self.model.dimensions

    def to_json_dict(self) -> dict:
        return self.model_dump(mode="json", by_alias=True, exclude_none=True)


class ArtifactConfig(_CamelModel):
    """Build-generated config bundled with the deployment."""
    build_hash: str
    embeddings_url: str
    chunks_url: str
    manifest_url: str


class CacheRecord(_CamelModel):
    """Header of the persisted snapshot in the ``current`` slot."""
    build_hash: str
    timestamp: float


@dataclass
class SearchHit:
    """One semantic search result."""
    chunk_id: str
    score: float
    chunk: ManifestChunk


@dataclass
class LexicalHit:
    id: str
    score: float


@dataclass
class FusedResult:
    chunk_id: str
    score: float
    chunk: ManifestChunk


@dataclass
class RetrievedChunk:
    """Final output unit handed to the generation collaborator."""
    id: str
    text: str
    score: float
    title: str
    section: Optional[str]
    url: str
    tokens: int


@dataclass
class CorpusArtifacts:
    """In-memory corpus: raw vector blob, validated manifest, chunk texts."""
    embeddings: bytes
    manifest: Manifest
    chunks: List[str]
