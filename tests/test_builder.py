"""Tests for the artifact build pipeline."""

import json
import os

import numpy as np
import pytest

from kb_retrieval.builder import build_kb, compute_build_hash, read_content_items
from kb_retrieval.chunking import chunk_all
from kb_retrieval.codec import decode_vectors
from kb_retrieval.config import ChunkingConfig
from kb_retrieval.loader import load_artifact_config, load_local_artifacts
from kb_retrieval.schemas import ContentItem

from conftest import KeywordEmbeddings


def _items():
    body = " ".join(f"caching{i:03d}" for i in range(80))
    garden = " ".join(f"garden{i:03d}" for i in range(80))
    return [
        ContentItem(id="blog/cache", slug="cache", type="blog", title="Caching", content=body),
        ContentItem(
            id="works/garden",
            slug="garden",
            type="works",
            title="Garden",
            content=f"{garden}\n\n## Vector notes\n\n{body.replace('caching', 'vector')}",
        ),
        ContentItem(id="blog/short", slug="short", type="blog", title="Short", content="Too short to keep."),
    ]


class PoisonEmbeddings(KeywordEmbeddings):
    def embed_documents(self, texts):
        if any("garden000" in text for text in texts):
            raise ConnectionError("model rejected input")
        return super().embed_documents(texts)


@pytest.fixture(autouse=True)
def no_backoff(monkeypatch):
    monkeypatch.setattr("kb_retrieval.retry.time.sleep", lambda seconds: None)


def test_build_writes_loadable_artifacts(tmp_path):
    """Test the build produces a corpus the loader accepts."""
    out_dir = tmp_path / "kb"
    manifest = build_kb(_items(), str(out_dir), KeywordEmbeddings(), embed_model="keyword-4")

    current = out_dir / "current"
    assert sorted(os.listdir(current)) == ["build_log.json", "chunks.bin", "embeddings.bin", "manifest.json"]

    artifacts = load_local_artifacts(str(current))
    assert artifacts.manifest == manifest
    assert manifest.stats.total_chunks == 3
    assert manifest.model.name == "keyword-4"
    assert manifest.dimensions == 4
    assert len(manifest.build_hash) == 16
    assert [record.id for record in manifest.chunks] == [
        "blog/cache#intro-0",
        "works/garden#intro-0",
        "works/garden#Vector notes-0",
    ]
    assert artifacts.chunks[0].startswith("caching000")

    vectors = decode_vectors(artifacts.embeddings, 4, count=3)
    assert np.allclose(np.linalg.norm(vectors, axis=1), 1.0, atol=1e-3)

    log = json.loads((current / "build_log.json").read_text())
    assert log["empty_documents"] == ["blog/short"]


def test_build_hash_is_deterministic():
    """Test identical content and config give an identical hash."""
    config = ChunkingConfig()
    first = compute_build_hash(chunk_all(_items(), config), config)
    second = compute_build_hash(chunk_all(_items(), config), config)
    other = compute_build_hash(chunk_all(_items()[:1], config), config)

    assert first == second
    assert first != other
    assert first != compute_build_hash(chunk_all(_items(), config), ChunkingConfig(overlap_tokens=16))


def test_build_writes_artifact_config(tmp_path):
    """Test the bundled config carries the build hash and artifact URLs."""
    out_dir = tmp_path / "kb"
    manifest = build_kb(_items(), str(out_dir), KeywordEmbeddings(), base_url="https://cdn.test/kb/")

    config = load_artifact_config(str(out_dir / "artifact-config.json"))
    assert config.build_hash == manifest.build_hash
    assert config.embeddings_url == "https://cdn.test/kb/embeddings.bin"
    assert config.manifest_url == "https://cdn.test/kb/manifest.json"


def test_failed_chunks_are_skipped(tmp_path):
    """Test a chunk the model keeps rejecting is left out of the corpus."""
    out_dir = tmp_path / "kb"
    manifest = build_kb(_items(), str(out_dir), PoisonEmbeddings(), batch_size=8)

    assert [record.id for record in manifest.chunks] == ["blog/cache#intro-0", "works/garden#Vector notes-0"]
    assert manifest.chunks[1].embedding_offset == 4 * 2
    log = json.loads((out_dir / "current" / "build_log.json").read_text())
    assert [entry["chunk_id"] for entry in log["embedding_failed_chunks"]] == ["works/garden#intro-0"]


def test_transient_embedding_failure_is_retried(tmp_path):
    """Test a batch succeeds after a transient failure."""
    client = KeywordEmbeddings(fail_times=1)
    manifest = build_kb(_items(), str(tmp_path / "kb"), client)
    assert manifest.stats.total_chunks == 3
    assert client.calls == 2


def test_build_without_chunks(tmp_path):
    """Test a build with nothing to embed fails."""
    with pytest.raises(RuntimeError, match="No chunks"):
        build_kb(_items()[2:], str(tmp_path / "kb"), KeywordEmbeddings())


def test_read_content_items(tmp_path):
    """Test content files are read and bodies normalized."""
    path = tmp_path / "content.json"
    path.write_text(json.dumps([
        {
            "id": "blog/a",
            "slug": "a",
            "type": "blog",
            "title": "A",
            "content": "import X from './x'\n\nHello   world.\n\n\n\n<Callout />\nBye {props.name}",
            "metadata": {"tags": ["t"], "pubDate": "2024-01-01T00:00:00Z"},
        }
    ]))

    (item,) = read_content_items(str(path))
    assert item.content == "Hello world.\n\nBye"
    assert item.metadata.tags == ["t"]
    assert item.metadata.pub_date.year == 2024


def test_repeated_headings_build_and_reload(tmp_path):
    """Test a document repeating a heading builds a loadable corpus."""
    body = " ".join(f"caching{i:03d}" for i in range(80))
    item = ContentItem(
        id="blog/post",
        slug="post",
        type="blog",
        title="Post",
        content=f"## Example\n\n{body}\n\n## Notes\n\n{body}\n\n## Example\n\n{body}",
    )
    out_dir = tmp_path / "kb"
    manifest = build_kb([item], str(out_dir), KeywordEmbeddings())

    ids = [record.id for record in manifest.chunks]
    assert ids == ["blog/post#Example-0", "blog/post#Notes-0", "blog/post#Example-1"]
    assert load_local_artifacts(str(out_dir / "current")).manifest.chunks[2].id == "blog/post#Example-1"


class RaggedEmbeddings(KeywordEmbeddings):
    def embed_documents(self, texts):
        vectors = super().embed_documents(texts)
        return [vector + [0.0] if "garden" in text else vector for text, vector in zip(texts, vectors)]


def test_mixed_dimensions_fail_the_build(tmp_path):
    """Test vectors of differing lengths are rejected before serialization."""
    with pytest.raises(RuntimeError, match=r"mixed dimensions: \[4, 5\]"):
        build_kb(_items(), str(tmp_path / "kb"), RaggedEmbeddings())
