"""Persisted single-slot corpus snapshot."""

from __future__ import annotations

import errno
import json
import logging
import os
import shutil
import tempfile
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Optional

from .codec import vector_stride
from .errors import QuotaExceededError
from .schemas import CacheRecord, CorpusArtifacts, Manifest
from .utils import activate_version

logger = logging.getLogger(__name__)

_QUOTA_ERRNOS = {errno.ENOSPC, getattr(errno, "EDQUOT", errno.ENOSPC)}

RECORD_FILE = "snapshot.json"
EMBEDDINGS_FILE = "embeddings.bin"
MANIFEST_FILE = "manifest.json"
CHUNKS_FILE = "chunks.json"


@dataclass
class CachedSnapshot:
    record: CacheRecord
    artifacts: CorpusArtifacts


class SnapshotCache:
    """
    Stores exactly one corpus snapshot under ``<root>/current``.

    Each write lands in a fresh directory under ``<root>/snapshots`` and is
    then activated by an atomic symlink switch; the previous snapshot is
    removed afterwards.
    """

    SLOT = "current"

    def __init__(self, root: str) -> None:
        self.root = Path(root)

    @property
    def slot_path(self) -> Path:
        return self.root / self.SLOT

    def read(self) -> Optional[CachedSnapshot]:
        """
        Load the snapshot in the ``current`` slot.

        Returns:
            The snapshot, or None if the slot is empty

        Raises:
            OSError, ValueError: If the slot exists but cannot be read or its
                files disagree with the manifest
        """
        slot = self.slot_path
        if not (slot / RECORD_FILE).exists():
            return None

        record = CacheRecord.model_validate_json((slot / RECORD_FILE).read_text(encoding="utf-8"))
        manifest = Manifest.model_validate_json((slot / MANIFEST_FILE).read_text(encoding="utf-8"))
        embeddings = (slot / EMBEDDINGS_FILE).read_bytes()
        with open(slot / CHUNKS_FILE, "r", encoding="utf-8") as handle:
            chunks = json.load(handle)

        count = len(manifest.chunks)
        if not isinstance(chunks, list):
            raise ValueError("Snapshot chunk texts are not a list")
        if len(chunks) != count:
            raise ValueError(f"Snapshot holds {len(chunks)} texts for {count} manifest chunks")
        expected = count * vector_stride(manifest.dimensions)
        if len(embeddings) != expected:
            raise ValueError(f"Snapshot embeddings are {len(embeddings)} bytes, expected {expected}")

        return CachedSnapshot(
            record=record,
            artifacts=CorpusArtifacts(embeddings=embeddings, manifest=manifest, chunks=chunks),
        )

    def write(self, artifacts: CorpusArtifacts, timestamp: Optional[float] = None) -> CacheRecord:
        """
        Replace the ``current`` slot with ``artifacts``.

        Raises:
            QuotaExceededError: If the filesystem is out of space or quota
            OSError: For any other storage failure
        """
        record = CacheRecord(
            build_hash=artifacts.manifest.build_hash,
            timestamp=time.time() if timestamp is None else timestamp,
        )
        snapshots_dir = self.root / "snapshots"
        version_dir: Optional[str] = None

        try:
            snapshots_dir.mkdir(parents=True, exist_ok=True)
            version_dir = tempfile.mkdtemp(prefix="snapshot-", dir=str(snapshots_dir))
            target = Path(version_dir)

            (target / EMBEDDINGS_FILE).write_bytes(bytes(artifacts.embeddings))
            with open(target / MANIFEST_FILE, "w", encoding="utf-8") as handle:
                json.dump(artifacts.manifest.to_json_dict(), handle, ensure_ascii=False)
            with open(target / CHUNKS_FILE, "w", encoding="utf-8") as handle:
                json.dump(list(artifacts.chunks), handle, ensure_ascii=False)
            # Header last: a slot without it reads as empty.
            (target / RECORD_FILE).write_text(
                record.model_dump_json(by_alias=True), encoding="utf-8"
            )

            previous = self._current_target()
            activate_version(str(self.root), version_dir, self.SLOT)
            version_dir = None
        except OSError as exc:
            if version_dir is not None:
                shutil.rmtree(version_dir, ignore_errors=True)
            if exc.errno in _QUOTA_ERRNOS:
                raise QuotaExceededError(f"Storage quota exceeded writing {self.root}") from exc
            raise

        if previous and os.path.isdir(previous) and previous != self._current_target():
            shutil.rmtree(previous, ignore_errors=True)

        logger.info("Cached corpus snapshot %s", record.build_hash)
        return record

    def clear(self) -> None:
        """Drop the snapshot and every stored version."""
        slot = self.slot_path
        if os.path.islink(slot):
            os.unlink(slot)
        elif slot.exists():
            shutil.rmtree(slot)
        shutil.rmtree(self.root / "snapshots", ignore_errors=True)

    def _current_target(self) -> Optional[str]:
        slot = self.slot_path
        if os.path.islink(slot):
            return os.path.realpath(slot)
        return None
