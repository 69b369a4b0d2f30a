"""Build the corpus artifacts: chunk, embed, serialize, activate."""

from __future__ import annotations

import json
import os
import time
from datetime import datetime, timezone
from pathlib import Path
from typing import Dict, Iterable, List, Optional, Sequence

import faiss
import numpy as np
from tqdm import tqdm

from .chunking import chunk_document
from .codec import encode_text_blob, encode_vectors, vector_stride
from .config import ARTIFACT_VERSION, DEFAULT_MODEL_NAME, RETRY_CONFIGS, ChunkingConfig
from .loader import CHUNKS_FILE, EMBEDDINGS_FILE, MANIFEST_FILE
from .retry import retry_with_backoff
from .schemas import (
    ArtifactConfig,
    Chunk,
    ContentItem,
    EmbeddingResult,
    Manifest,
    ManifestChunk,
    ManifestStats,
    ModelInfo,
)
from .utils import activate_version, canonical_json, iter_batches, normalize_prose, sha256_text

ARTIFACT_CONFIG_FILE = "artifact-config.json"
BUILD_LOG_FILE = "build_log.json"


def read_content_items(path: str) -> List[ContentItem]:
    """
    Read content items from a JSON array or JSON-lines file.

    Item bodies are passed through :func:`normalize_prose`.
    """
    source = Path(path)
    raw = source.read_text(encoding="utf-8")
    if source.suffix == ".jsonl":
        payload = [json.loads(line) for line in raw.splitlines() if line.strip()]
    else:
        payload = json.loads(raw)

    items = []
    for entry in payload:
        entry = dict(entry)
        entry["content"] = normalize_prose(entry.get("content", ""))
        items.append(ContentItem.model_validate(entry))
    return items


def compute_build_hash(chunks: Sequence[Chunk], chunking: ChunkingConfig) -> str:
    """Content fingerprint of the corpus: first 16 hex chars of SHA-256."""
    payload = {
        "version": ARTIFACT_VERSION,
        "config": chunking.model_dump(),
        "chunks": [
            {
                "id": chunk.id,
                "text": chunk.text,
                "tokens": chunk.tokens,
                "metadata": chunk.metadata.model_dump(mode="json", by_alias=True),
            }
            for chunk in chunks
        ],
    }
    return sha256_text(canonical_json(payload))[:16]


def _embed_documents_with_retry(embeddings, texts: List[str]) -> List[List[float]]:
    """Embed documents with exponential backoff retry."""
    try:
        return retry_with_backoff(lambda: embeddings.embed_documents(texts), RETRY_CONFIGS["api_call"])
    except Exception as exc:
        raise RuntimeError(f"Embedding failed after retries: {exc}") from exc


def build_manifest(
    chunks: Sequence[Chunk],
    build_hash: str,
    embed_model: str,
    dimensions: int,
    build_time: Optional[str] = None,
) -> Manifest:
    stride = vector_stride(dimensions)
    total_tokens = sum(chunk.tokens for chunk in chunks)
    return Manifest(
        version=ARTIFACT_VERSION,
        build_time=build_time or datetime.now(timezone.utc).isoformat().replace("+00:00", "Z"),
        build_hash=build_hash,
        model=ModelInfo(name=embed_model, dimensions=dimensions, normalization="l2"),
        chunks=[
            ManifestChunk(
                id=chunk.id,
                parent_id=chunk.parent_id,
                tokens=chunk.tokens,
                metadata=chunk.metadata,
                embedding_offset=position * stride,
            )
            for position, chunk in enumerate(chunks)
        ],
        stats=ManifestStats(
            total_chunks=len(chunks),
            total_tokens=total_tokens,
            avg_tokens_per_chunk=round(total_tokens / len(chunks), 2) if chunks else 0.0,
        ),
    )


def write_artifact_config(out_dir: str, manifest: Manifest, base_url: str) -> ArtifactConfig:
    """Write the bundled config that carries the deployed build hash."""
    base = base_url.rstrip("/")
    config = ArtifactConfig(
        build_hash=manifest.build_hash,
        embeddings_url=f"{base}/{EMBEDDINGS_FILE}",
        chunks_url=f"{base}/{CHUNKS_FILE}",
        manifest_url=f"{base}/{MANIFEST_FILE}",
    )
    path = os.path.join(out_dir, ARTIFACT_CONFIG_FILE)
    with open(path, "w", encoding="utf-8") as handle:
        json.dump(config.model_dump(by_alias=True), handle, ensure_ascii=False, indent=2)
    return config


def build_kb(
    items: Iterable[ContentItem],
    out_dir: str,
    embeddings_client,
    embed_model: str = DEFAULT_MODEL_NAME,
    chunking: Optional[ChunkingConfig] = None,
    batch_size: int = 32,
    base_url: Optional[str] = None,
) -> Manifest:
    """
    Build the three corpus artifacts from content items.

    Args:
        items: Normalized content items
        out_dir: Output directory (creates versions/ subdirectory)
        embeddings_client: LangChain embeddings instance (e.g., OllamaEmbeddings)
        embed_model: Name of embedding model, recorded in the manifest
        chunking: Chunk sizing; defaults to ``ChunkingConfig()``
        batch_size: Batch size for embedding
        base_url: Public URL the artifacts are served from; when given,
            ``artifact-config.json`` is written to ``out_dir``

    Returns:
        Manifest of the activated build

    Raises:
        RuntimeError: If no chunks are generated or embedding fails
    """
    start_time = time.perf_counter()
    items = list(items)
    chunking = chunking or ChunkingConfig()
    print(f"Scan summary: documents={len(items)}")

    os.makedirs(out_dir, exist_ok=True)
    versions_dir = os.path.join(out_dir, "versions")
    os.makedirs(versions_dir, exist_ok=True)

    kb_version = datetime.now().strftime("%Y%m%d-%H%M%S")
    version_dir = os.path.join(versions_dir, kb_version)
    os.makedirs(version_dir, exist_ok=True)

    # Chunk documents
    print("Starting chunking...")
    chunks: List[Chunk] = []
    empty_documents: List[str] = []
    for item in tqdm(items, desc="Chunking documents"):
        document_chunks = chunk_document(item, chunking)
        if not document_chunks:
            tqdm.write(f"[WARN] no chunks above {chunking.min_tokens} tokens: {item.id}")
            empty_documents.append(item.id)
        chunks.extend(document_chunks)

    if not chunks:
        raise RuntimeError("No chunks generated; check content items and chunking config.")

    # Embed chunks
    print(f"Starting embedding: chunks={len(chunks)}")
    results: List[EmbeddingResult] = []
    embedding_failed: List[Dict[str, str]] = []

    with tqdm(total=len(chunks), desc="Embedding chunks") as progress:
        for batch in iter_batches(chunks, batch_size):
            batch_texts = [chunk.text for chunk in batch]

            try:
                batch_vectors = _embed_documents_with_retry(embeddings_client, batch_texts)
            except RuntimeError as exc:
                tqdm.write(f"[WARN] embedding batch failed; fallback to per-chunk: {exc}")
                for chunk in batch:
                    try:
                        vector = _embed_documents_with_retry(embeddings_client, [chunk.text])[0]
                    except RuntimeError as inner_exc:
                        embedding_failed.append({"chunk_id": chunk.id, "reason": str(inner_exc)})
                        tqdm.write(f"[WARN] embedding failed; skipped chunk: {chunk.id}")
                        progress.update(1)
                        continue
                    results.append(EmbeddingResult(chunk_id=chunk.id, embedding=vector, dimensions=len(vector)))
                    progress.update(1)
                continue

            if len(batch_vectors) != len(batch):
                raise RuntimeError("Embedding batch returned mismatched vector count.")

            results.extend(
                EmbeddingResult(chunk_id=chunk.id, embedding=vector, dimensions=len(vector))
                for chunk, vector in zip(batch, batch_vectors)
            )
            progress.update(len(batch))

    if embedding_failed:
        tqdm.write(f"[WARN] embedding failures: {len(embedding_failed)} chunk(s) skipped.")

    if not results:
        raise RuntimeError("Embedding returned no vectors.")
    found_dimensions = sorted({result.dimensions for result in results})
    if len(found_dimensions) != 1:
        raise RuntimeError(f"Embedding returned mixed dimensions: {found_dimensions}")

    by_id = {chunk.id: chunk for chunk in chunks}
    chunks = [by_id[result.chunk_id] for result in results]

    # Normalize
    print("Normalizing vectors...")
    vector_array = np.array([result.embedding for result in results], dtype="float32")
    norms = np.linalg.norm(vector_array, axis=1)
    if np.any(norms == 0):
        zero_ids = [chunks[i].id for i in np.flatnonzero(norms == 0)]
        raise RuntimeError(f"Embedding returned zero vectors for: {', '.join(zero_ids)}")
    faiss.normalize_L2(vector_array)
    dimensions = vector_array.shape[1]

    # Write artifacts
    print("Writing KB artifacts...")
    build_hash = compute_build_hash(chunks, chunking)
    manifest = build_manifest(chunks, build_hash, embed_model, dimensions)

    with open(os.path.join(version_dir, EMBEDDINGS_FILE), "wb") as handle:
        handle.write(encode_vectors(vector_array))
    with open(os.path.join(version_dir, CHUNKS_FILE), "wb") as handle:
        handle.write(encode_text_blob([chunk.text for chunk in chunks]))
    with open(os.path.join(version_dir, MANIFEST_FILE), "w", encoding="utf-8") as handle:
        json.dump(manifest.to_json_dict(), handle, ensure_ascii=False, indent=2)

    # Build log
    build_log = {
        "kb_version": kb_version,
        "build_hash": build_hash,
        "document_count": len(items),
        "chunk_count": len(chunks),
        "chunking": chunking.model_dump(),
        "empty_documents": empty_documents,
        "embedding_failed_chunks": embedding_failed,
    }
    with open(os.path.join(version_dir, BUILD_LOG_FILE), "w", encoding="utf-8") as handle:
        json.dump(build_log, handle, ensure_ascii=False, indent=2)

    # Activate version
    print("Activating KB version (atomic switch)...")
    activate_version(out_dir, version_dir)
    print("Atomic switch completed.")

    if base_url:
        write_artifact_config(out_dir, manifest, base_url)
        print(f"Artifact config written: {os.path.join(out_dir, ARTIFACT_CONFIG_FILE)}")

    elapsed = time.perf_counter() - start_time
    print(
        "Build summary: "
        f"documents={len(items)}, chunks={len(chunks)}, tokens={manifest.stats.total_tokens}, "
        f"skipped={len(embedding_failed)}"
    )
    print(f"Build summary: duration={elapsed:.1f}s, output_dir={version_dir}")
    print(f"Build summary: build_hash={build_hash}")

    return manifest
