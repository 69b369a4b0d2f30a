"""
Session initialization: cache check, embedding source, artifacts, lexical
index and search worker, in that order.

Progress is reported as a non-decreasing percentage on a fixed allocation:

    checking-cache       0 - 10
    loading-model       10 - 40   (scaled by the source's own progress)
    fetching-artifacts  40 - 70
    initializing-search 70 - 90   (lexical index slices)
    spawning-worker     90 - 99
    complete            100
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Callable, Dict, Optional

from .cache import SnapshotCache
from .config import RETRY_CONFIGS, RetryConfig, Settings, TimeoutConfig
from .embedding import EmbeddingSource
from .errors import ModelLoadError, RetrievalError
from .lexical import DEFAULT_SLICE_SIZE, LexicalIndex, build_lexical_index
from .loader import ArtifactLoader, load_artifact_config
from .retry import retry_with_backoff_async
from .schemas import CorpusArtifacts
from .worker import SearchWorkerClient

logger = logging.getLogger(__name__)


class LifecycleState(str, Enum):
    UNINITIALIZED = "uninitialized"
    INITIALIZING = "initializing"
    READY = "ready"
    ERROR = "error"


class InitSubstate(str, Enum):
    CHECKING_CACHE = "checking-cache"
    LOADING_MODEL = "loading-model"
    FETCHING_ARTIFACTS = "fetching-artifacts"
    INITIALIZING_SEARCH = "initializing-search"
    SPAWNING_WORKER = "spawning-worker"
    COMPLETE = "complete"


_STEPS = list(InitSubstate)


@dataclass
class InitProgress:
    substate: InitSubstate
    percent: float


ProgressCallback = Callable[[InitProgress], None]


@dataclass
class RetrievalContext:
    """Everything a query needs, owned by the session that built it."""
    artifacts: CorpusArtifacts
    embedding_source: EmbeddingSource
    lexical_index: LexicalIndex
    worker: SearchWorkerClient
    positions: Dict[str, int] = field(init=False, repr=False)

    def __post_init__(self) -> None:
        self.positions = {record.id: i for i, record in enumerate(self.artifacts.manifest.chunks)}

    @property
    def manifest(self):
        return self.artifacts.manifest

    def text_for(self, chunk_id: str) -> Optional[str]:
        position = self.positions.get(chunk_id)
        if position is None:
            return None
        return self.artifacts.chunks[position]

    async def close(self) -> None:
        await self.worker.close()


class Initializer:
    """
    Drives one session from ``uninitialized`` to ``ready`` or ``error``.

    Only one initialization may be in flight; after an error the caller may
    call :meth:`initialize` again, which starts over from the cache check.
    """

    def __init__(
        self,
        loader: ArtifactLoader,
        embedding_source: EmbeddingSource,
        *,
        worker_factory: Optional[Callable[[], SearchWorkerClient]] = None,
        timeouts: Optional[TimeoutConfig] = None,
        model_retry: Optional[RetryConfig] = None,
        lexical_slice_size: int = DEFAULT_SLICE_SIZE,
    ) -> None:
        self.loader = loader
        self.embedding_source = embedding_source
        self.timeouts = timeouts or TimeoutConfig()
        self.worker_factory = worker_factory or self._default_worker
        self.model_retry = model_retry or RETRY_CONFIGS["model_load"]
        self.lexical_slice_size = lexical_slice_size

        self.state = LifecycleState.UNINITIALIZED
        self.substate: Optional[InitSubstate] = None
        self.progress = 0.0
        self.error: Optional[Exception] = None
        self.context: Optional[RetrievalContext] = None
        self._on_progress: Optional[ProgressCallback] = None

    @classmethod
    def from_settings(
        cls,
        settings: Settings,
        embedding_source: EmbeddingSource,
        *,
        is_online: Optional[Callable[[], bool]] = None,
    ) -> "Initializer":
        """Wire a loader and cache from ``Settings``."""
        loader = ArtifactLoader(
            load_artifact_config(settings.artifact_config_path),
            SnapshotCache(settings.cache_dir),
            is_online=is_online,
            retry=settings.retry,
            timeout=settings.timeouts.fetch,
        )
        return cls(loader, embedding_source, timeouts=settings.timeouts)

    async def initialize(self, on_progress: Optional[ProgressCallback] = None) -> RetrievalContext:
        """
        Run every step and return the ready context.

        Raises:
            RuntimeError: If an initialization is already in flight
            RetrievalError: The typed failure of whichever step failed
        """
        if self.state is LifecycleState.INITIALIZING:
            raise RuntimeError("initialization already in progress")
        if self.state is LifecycleState.READY and self.context is not None:
            return self.context

        self.state = LifecycleState.INITIALIZING
        self.error = None
        self.substate = None
        self.progress = 0.0
        self._on_progress = on_progress
        worker: Optional[SearchWorkerClient] = None

        try:
            self._report(InitSubstate.CHECKING_CACHE, 0)
            cached = self.loader.check_cache()
            self._report(InitSubstate.CHECKING_CACHE, 10)

            self._report(InitSubstate.LOADING_MODEL, 10)
            await self._load_model()
            self._report(InitSubstate.LOADING_MODEL, 40)

            self._report(InitSubstate.FETCHING_ARTIFACTS, 40)
            if cached is not None:
                artifacts = cached
            else:
                artifacts = await retry_with_backoff_async(self.loader.fetch_artifacts, self.loader.retry)
            self._report(InitSubstate.FETCHING_ARTIFACTS, 70)

            self._report(InitSubstate.INITIALIZING_SEARCH, 70)
            lexical_index = await build_lexical_index(
                artifacts.manifest,
                artifacts.chunks,
                self.lexical_slice_size,
                on_progress=lambda fraction: self._report(InitSubstate.INITIALIZING_SEARCH, 70 + 20 * fraction),
            )
            self._report(InitSubstate.INITIALIZING_SEARCH, 90)

            self._report(InitSubstate.SPAWNING_WORKER, 90)
            worker = self.worker_factory()
            await worker.start()
            # The worker takes the bytearray it is given; artifacts keep their own copy.
            await worker.init(bytearray(artifacts.embeddings), artifacts.manifest)
            self._report(InitSubstate.SPAWNING_WORKER, 99)

            context = RetrievalContext(
                artifacts=artifacts,
                embedding_source=self.embedding_source,
                lexical_index=lexical_index,
                worker=worker,
            )
        except Exception as exc:
            if worker is not None:
                await worker.close()
            self.state = LifecycleState.ERROR
            self.error = exc
            if isinstance(exc, RetrievalError):
                logger.error("Initialization failed [%s]: %s", exc.kind.value, exc.message)
            else:
                logger.exception("Initialization failed")
            raise
        finally:
            self._on_progress = None

        self.context = context
        self.state = LifecycleState.READY
        self._report(InitSubstate.COMPLETE, 100, callback=on_progress)
        logger.info("Retrieval ready: %d chunks", len(artifacts.manifest.chunks))
        return context

    async def reset(self) -> None:
        """Stop the worker and return to ``uninitialized``."""
        if self.context is not None:
            await self.context.close()
        self.context = None
        self.state = LifecycleState.UNINITIALIZED
        self.substate = None
        self.progress = 0.0
        self.error = None

    async def _load_model(self) -> None:
        loop = asyncio.get_running_loop()

        def scaled(fraction: float) -> None:
            percent = 10 + 30 * min(max(fraction, 0.0), 1.0)
            loop.call_soon_threadsafe(self._report, InitSubstate.LOADING_MODEL, percent)

        async def attempt() -> None:
            await asyncio.to_thread(self.embedding_source.load, scaled)

        try:
            await retry_with_backoff_async(attempt, self.model_retry)
        except Exception as exc:
            raise ModelLoadError(f"Failed to load embedding model: {exc}") from exc

    def _report(self, substate: InitSubstate, percent: float, callback: Optional[ProgressCallback] = None) -> None:
        callback = callback or self._on_progress
        if self.state is LifecycleState.ERROR:
            return
        if self.substate is not None and _STEPS.index(substate) < _STEPS.index(self.substate):
            return
        self.substate = substate
        self.progress = max(self.progress, float(percent))
        if callback is not None:
            callback(InitProgress(substate=substate, percent=self.progress))

    def _default_worker(self) -> SearchWorkerClient:
        return SearchWorkerClient(init_timeout=self.timeouts.init, search_timeout=self.timeouts.search)
