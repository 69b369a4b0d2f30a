"""Search engine running in its own process.

The caller talks to it through :class:`SearchWorkerClient`: every request is
tagged with a correlation id, parked in a pending table, and resolved when
the matching response arrives. A timeout only stops the caller waiting; a
response that arrives afterwards is dropped.
"""

from __future__ import annotations

import asyncio
import logging
import multiprocessing
import threading
import uuid
from multiprocessing.connection import Connection
from typing import Dict, List, Optional, Union

import numpy as np

from .codec import encode_query
from .engine import SearchEngine
from .errors import WorkerError, WorkerTimeoutError
from .protocol import (
    DEFAULT_TOP_K,
    ErrorResponse,
    InitRequest,
    ReadyResponse,
    Request,
    Response,
    SearchRequest,
    SearchResultsResponse,
    ShutdownRequest,
)
from .schemas import Manifest, SearchHit

logger = logging.getLogger(__name__)


def worker_main(conn: Connection) -> None:
    """Child-process loop: one request in, one response out, in order."""
    engine = SearchEngine()
    while True:
        try:
            message = conn.recv()
        except (EOFError, OSError):
            break
        if isinstance(message, ShutdownRequest):
            break
        conn.send(engine.handle(message))
    conn.close()


class SearchWorkerClient:
    """Caller-side handle on the search process."""

    def __init__(
        self,
        init_timeout: float = 30.0,
        search_timeout: float = 10.0,
        start_method: str = "spawn",
    ) -> None:
        self.init_timeout = init_timeout
        self.search_timeout = search_timeout
        self._ctx = multiprocessing.get_context(start_method)
        self._process = None
        self._conn: Optional[Connection] = None
        self._reader: Optional[threading.Thread] = None
        self._loop: Optional[asyncio.AbstractEventLoop] = None
        self._pending: Dict[str, asyncio.Future] = {}
        self._send_lock = threading.Lock()
        self.ready = False

    @property
    def running(self) -> bool:
        return self._process is not None and self._process.is_alive()

    async def start(self) -> None:
        """Spawn the process and the response reader."""
        if self._process is not None:
            raise RuntimeError("search worker already started")
        self._loop = asyncio.get_running_loop()
        parent_conn, child_conn = self._ctx.Pipe()
        try:
            process = self._ctx.Process(
                target=worker_main,
                args=(child_conn,),
                name="kb-retrieval-search",
                daemon=True,
            )
            process.start()
        except OSError as exc:
            parent_conn.close()
            raise WorkerError(f"Could not start search worker: {exc}") from exc
        finally:
            child_conn.close()

        self._process = process
        self._conn = parent_conn
        self._reader = threading.Thread(target=self._read_loop, name="kb-retrieval-reader", daemon=True)
        self._reader.start()
        logger.info("Search worker started (pid=%s)", process.pid)

    async def init(self, embeddings: Union[bytearray, bytes], manifest: Manifest) -> int:
        """
        Hand the vector blob to the engine and wait for readiness.

        A ``bytearray`` is moved: it is emptied once sent, so callers that
        need the blob afterwards must pass a copy.

        Returns:
            Number of vectors the engine deserialized

        Raises:
            WorkerTimeoutError: If the engine is not ready within ``init_timeout``
            WorkerError: If the engine rejected the blob or is not running
        """
        request = InitRequest(id=self._new_id("init"), embeddings=bytes(embeddings), manifest=manifest)
        if isinstance(embeddings, bytearray):
            embeddings.clear()

        response = await self._request(request, self.init_timeout, "Worker initialization timeout")
        if isinstance(response, ReadyResponse):
            self.ready = True
            logger.info("Search worker ready: %d vectors", response.count)
            return response.count
        raise WorkerError(self._error_text(response))

    async def search(self, query: np.ndarray, top_k: int = DEFAULT_TOP_K) -> List[SearchHit]:
        """
        Similarity search for an already normalized query vector.

        Raises:
            WorkerTimeoutError: If no answer arrives within ``search_timeout``
            WorkerError: If the engine answered with an error
        """
        request = SearchRequest(id=self._new_id("search"), query_embedding=encode_query(query), top_k=top_k)
        response = await self._request(request, self.search_timeout, "Worker search timeout")
        if isinstance(response, SearchResultsResponse):
            return response.results
        raise WorkerError(self._error_text(response))

    async def send(self, message: object, timeout: Optional[float] = None) -> Response:
        """Send an arbitrary request carrying an ``id`` and return the raw response."""
        return await self._request(message, self.search_timeout if timeout is None else timeout, "Worker timeout")

    async def close(self) -> None:
        """Stop the process; pending requests fail with :class:`WorkerError`."""
        process, conn = self._process, self._conn
        if process is None:
            return
        loop = asyncio.get_running_loop()
        if conn is not None:
            try:
                self._send(ShutdownRequest())
            except (OSError, ValueError):
                logger.debug("Search worker already gone")
        await loop.run_in_executor(None, process.join, 2.0)
        if process.is_alive():
            process.terminate()
            await loop.run_in_executor(None, process.join, 2.0)
        if self._reader is not None:
            await loop.run_in_executor(None, self._reader.join, 2.0)
        if conn is not None:
            conn.close()
        self._fail_pending("Search worker closed")
        self._process = None
        self._conn = None
        self._reader = None
        self.ready = False
        logger.info("Search worker stopped")

    async def __aenter__(self) -> "SearchWorkerClient":
        await self.start()
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.close()

    async def _request(self, message: Request, timeout: float, timeout_message: str) -> Response:
        if not self.running or self._conn is None or self._loop is None:
            raise WorkerError("Search worker is not running")

        request_id = getattr(message, "id")
        future = self._loop.create_future()
        self._pending[request_id] = future
        try:
            await self._loop.run_in_executor(None, self._send, message)
        except (OSError, ValueError) as exc:
            self._pending.pop(request_id, None)
            raise WorkerError(f"Could not reach search worker: {exc}") from exc

        try:
            return await asyncio.wait_for(future, timeout)
        except asyncio.TimeoutError:
            self._pending.pop(request_id, None)
            raise WorkerTimeoutError(timeout_message) from None

    def _send(self, message: object) -> None:
        if self._conn is None:
            raise OSError("search worker connection closed")
        with self._send_lock:
            self._conn.send(message)

    def _read_loop(self) -> None:
        conn, loop = self._conn, self._loop
        while conn is not None and loop is not None:
            try:
                message = conn.recv()
            except (EOFError, OSError):
                break
            if loop.is_closed():
                return
            loop.call_soon_threadsafe(self._dispatch, message)
        if loop is not None and not loop.is_closed():
            try:
                loop.call_soon_threadsafe(self._fail_pending, "Search worker exited")
            except RuntimeError:
                logger.debug("Event loop closed before worker exit was reported")

    def _dispatch(self, message: Response) -> None:
        request_id = getattr(message, "id", None)
        future = self._pending.pop(request_id, None) if request_id is not None else None
        if future is None:
            logger.debug("Dropping unmatched response %s (%s)", request_id, getattr(message, "type", "?"))
            return
        if not future.done():
            future.set_result(message)

    def _fail_pending(self, reason: str) -> None:
        pending, self._pending = self._pending, {}
        for future in pending.values():
            if not future.done():
                future.set_exception(WorkerError(reason))

    @staticmethod
    def _new_id(prefix: str) -> str:
        return f"{prefix}-{uuid.uuid4().hex}"

    @staticmethod
    def _error_text(response: Response) -> str:
        if isinstance(response, ErrorResponse):
            return response.error
        return f"Unexpected response: {getattr(response, 'type', type(response).__name__)}"
