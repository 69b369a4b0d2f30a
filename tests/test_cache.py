"""Tests for the single-slot snapshot cache."""

import errno
import os
from pathlib import Path

import pytest

from kb_retrieval.cache import SnapshotCache
from kb_retrieval.errors import QuotaExceededError

from conftest import make_artifacts


def _artifacts(build_hash="A"):
    return make_artifacts([[1, 0], [0, 1]], ["first chunk", "second chunk"], build_hash=build_hash)


def test_empty_cache_reads_none(tmp_path):
    """Test reading an empty cache."""
    assert SnapshotCache(str(tmp_path)).read() is None


def test_write_then_read(tmp_path):
    """Test a written snapshot reads back intact."""
    cache = SnapshotCache(str(tmp_path))
    artifacts = _artifacts()

    record = cache.write(artifacts, timestamp=1700000000.0)
    snapshot = cache.read()

    assert record.build_hash == "A"
    assert snapshot.record.build_hash == "A"
    assert snapshot.record.timestamp == 1700000000.0
    assert snapshot.artifacts.embeddings == artifacts.embeddings
    assert snapshot.artifacts.chunks == ["first chunk", "second chunk"]
    assert snapshot.artifacts.manifest == artifacts.manifest


def test_write_replaces_single_slot(tmp_path):
    """Test a second write replaces the first and leaves one snapshot."""
    cache = SnapshotCache(str(tmp_path))
    cache.write(_artifacts("A"))
    cache.write(_artifacts("B"))

    assert cache.read().record.build_hash == "B"
    assert len(os.listdir(tmp_path / "snapshots")) == 1


def test_quota_error_is_distinct(tmp_path, monkeypatch):
    """Test running out of space raises QuotaExceededError and keeps the old slot."""
    cache = SnapshotCache(str(tmp_path))
    cache.write(_artifacts("A"))

    def full(self, data):
        raise OSError(errno.ENOSPC, "No space left on device")

    monkeypatch.setattr(Path, "write_bytes", full)
    with pytest.raises(QuotaExceededError) as excinfo:
        cache.write(_artifacts("B"))
    monkeypatch.undo()

    assert not excinfo.value.recoverable
    assert cache.read().record.build_hash == "A"
    assert len(os.listdir(tmp_path / "snapshots")) == 1


def test_other_storage_errors_propagate(tmp_path, monkeypatch):
    """Test non-quota failures surface as OSError."""
    cache = SnapshotCache(str(tmp_path))

    def denied(self, data):
        raise OSError(errno.EACCES, "Permission denied")

    monkeypatch.setattr(Path, "write_bytes", denied)
    with pytest.raises(OSError) as excinfo:
        cache.write(_artifacts())
    assert not isinstance(excinfo.value, QuotaExceededError)


def test_clear(tmp_path):
    """Test clearing removes the snapshot."""
    cache = SnapshotCache(str(tmp_path))
    cache.write(_artifacts())
    cache.clear()
    assert cache.read() is None


def test_truncated_snapshot_is_rejected(tmp_path):
    """Test a snapshot whose texts or vectors disagree with its manifest fails to read."""
    cache = SnapshotCache(str(tmp_path))
    cache.write(_artifacts())
    chunks_path = cache.slot_path / "chunks.json"
    chunks_path.write_text('["first chunk"]', encoding="utf-8")

    with pytest.raises(ValueError, match="1 texts for 2"):
        cache.read()

    cache.write(_artifacts())
    embeddings_path = cache.slot_path / "embeddings.bin"
    embeddings_path.write_bytes(embeddings_path.read_bytes()[:-2])

    with pytest.raises(ValueError, match="expected 8"):
        cache.read()
