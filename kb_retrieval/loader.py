"""Load corpus artifacts from the snapshot cache, the network or disk."""

from __future__ import annotations

import asyncio
import logging
from pathlib import Path
from typing import Callable, List, Optional, Tuple

import httpx
from pydantic import ValidationError

from .cache import SnapshotCache
from .codec import parse_text_blob, vector_stride
from .config import RETRY_CONFIGS, RetryConfig
from .errors import (
    ArtifactsFetchError,
    MalformedArtifactError,
    OfflineError,
    QuotaExceededError,
)
from .retry import retry_with_backoff_async
from .schemas import ArtifactConfig, CorpusArtifacts, Manifest

logger = logging.getLogger(__name__)

EMBEDDINGS_FILE = "embeddings.bin"
CHUNKS_FILE = "chunks.bin"
MANIFEST_FILE = "manifest.json"


def load_artifact_config(path: str) -> ArtifactConfig:
    """
    Read the bundled artifact config written at build time.

    Raises:
        FileNotFoundError: If the config file is missing
    """
    config_file = Path(path)
    if not config_file.exists():
        raise FileNotFoundError(f"Artifact config not found: {config_file}")
    return ArtifactConfig.model_validate_json(config_file.read_text(encoding="utf-8"))


def parse_artifacts(embeddings: bytes, manifest_data: bytes, chunks_data: bytes) -> CorpusArtifacts:
    """
    Validate the three raw artifacts against each other.

    Raises:
        MalformedArtifactError: If the manifest is invalid, the vector blob
            does not hold one vector per chunk, or the text blob is truncated
    """
    try:
        manifest = Manifest.model_validate_json(manifest_data)
    except ValidationError as exc:
        raise MalformedArtifactError(f"Malformed manifest.json: {exc}") from exc

    expected = len(manifest.chunks) * vector_stride(manifest.dimensions)
    if len(embeddings) != expected:
        raise MalformedArtifactError(
            f"Malformed embeddings.bin: {len(embeddings)} bytes, expected {expected} "
            f"for {len(manifest.chunks)} x {manifest.dimensions} dims"
        )

    chunks = parse_text_blob(chunks_data, len(manifest.chunks))
    return CorpusArtifacts(embeddings=bytes(embeddings), manifest=manifest, chunks=chunks)


def load_local_artifacts(artifact_dir: str) -> CorpusArtifacts:
    """
    Load a built corpus from disk (e.g. ``kb/current``).

    Raises:
        FileNotFoundError: If required files are missing
        MalformedArtifactError: If the artifacts are inconsistent
    """
    base = Path(artifact_dir)
    paths = [base / EMBEDDINGS_FILE, base / MANIFEST_FILE, base / CHUNKS_FILE]
    for path in paths:
        if not path.exists():
            raise FileNotFoundError(f"Artifact not found: {path}")
    return parse_artifacts(*(path.read_bytes() for path in paths))


class ArtifactLoader:
    """
    Resolves the corpus for a session.

    Cache validity is decided without a network round trip: a persisted
    snapshot is used only when its build hash equals the hash bundled in
    ``config``. Anything else is a full miss.
    """

    def __init__(
        self,
        config: ArtifactConfig,
        cache: Optional[SnapshotCache] = None,
        *,
        is_online: Optional[Callable[[], bool]] = None,
        retry: Optional[RetryConfig] = None,
        timeout: float = 60.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self.config = config
        self.cache = cache
        self.is_online = is_online or (lambda: True)
        self.retry = retry or RETRY_CONFIGS["artifact_fetch"]
        self.timeout = timeout
        self._transport = transport

    def check_cache(self) -> Optional[CorpusArtifacts]:
        """Return the cached corpus if its build hash matches, else None."""
        if self.cache is None:
            return None
        try:
            snapshot = self.cache.read()
        except (OSError, ValueError) as exc:
            logger.warning("Snapshot cache unreadable: %s", exc)
            return None

        if snapshot is None:
            return None
        if snapshot.record.build_hash != self.config.build_hash:
            logger.info(
                "Cache invalidated (hash mismatch): cached=%s current=%s",
                snapshot.record.build_hash,
                self.config.build_hash,
            )
            return None

        logger.info("Cache hit (hash match): %s", self.config.build_hash)
        return snapshot.artifacts

    async def fetch_artifacts(self, cached: Optional[CorpusArtifacts] = None) -> CorpusArtifacts:
        """
        Return ``cached`` if given, otherwise download, parse and persist.

        Raises:
            OfflineError: If connectivity is known to be unavailable
            ArtifactsFetchError: If any of the three downloads fails
            MalformedArtifactError: If the artifacts do not parse
            QuotaExceededError: If persisting the snapshot ran out of space
        """
        if cached is not None:
            logger.info("Using cached artifacts")
            return cached

        if not self.is_online():
            raise OfflineError("No internet connection. Search requires network access.")

        embeddings, manifest_data, chunks_data = await self._download()
        logger.info(
            "Artifacts fetched: embeddings=%.2f KB chunks=%.2f KB manifest=%.2f KB",
            len(embeddings) / 1024,
            len(chunks_data) / 1024,
            len(manifest_data) / 1024,
        )

        artifacts = parse_artifacts(embeddings, manifest_data, chunks_data)
        if artifacts.manifest.build_hash != self.config.build_hash:
            logger.warning(
                "Fetched manifest hash %s differs from bundled hash %s; "
                "the cached snapshot will miss until a matching build is deployed",
                artifacts.manifest.build_hash,
                self.config.build_hash,
            )
        logger.info("Chunk text parsed: %d chunks", len(artifacts.chunks))

        self._persist(artifacts)
        return artifacts

    async def load(self) -> CorpusArtifacts:
        """Cache check, then fetch with backoff on recoverable failures."""
        cached = self.check_cache()
        if cached is not None:
            return cached
        return await retry_with_backoff_async(self.fetch_artifacts, self.retry)

    def _persist(self, artifacts: CorpusArtifacts) -> None:
        if self.cache is None:
            return
        try:
            self.cache.write(artifacts)
        except QuotaExceededError:
            logger.warning("Storage quota exceeded while caching artifacts")
            raise
        except (OSError, ValueError) as exc:
            logger.warning("Could not cache artifacts: %s", exc)

    async def _download(self) -> Tuple[bytes, bytes, bytes]:
        urls = [self.config.embeddings_url, self.config.manifest_url, self.config.chunks_url]
        async with httpx.AsyncClient(
            timeout=self.timeout,
            follow_redirects=True,
            transport=self._transport,
        ) as client:
            results = await asyncio.gather(
                *(self._get(client, url) for url in urls),
                return_exceptions=True,
            )

        payloads: List[bytes] = []
        for result in results:
            if isinstance(result, BaseException):
                raise result
            payloads.append(result)
        return payloads[0], payloads[1], payloads[2]

    @staticmethod
    async def _get(client: httpx.AsyncClient, url: str) -> bytes:
        name = url.rsplit("/", 1)[-1] or url
        try:
            response = await client.get(url)
            response.raise_for_status()
        except httpx.HTTPStatusError as exc:
            raise ArtifactsFetchError(
                f"Failed to fetch {name}: {exc.response.status_code} {exc.response.reason_phrase}"
            ) from exc
        except httpx.HTTPError as exc:
            raise ArtifactsFetchError(f"Failed to fetch {name}: {exc}") from exc
        return response.content
