"""Messages exchanged with the search engine.

Requests and responses are tagged by class; every message carries the
correlation id of the request it belongs to, except an error raised for an
unidentifiable request.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import List, Optional, Union

from .schemas import Manifest, SearchHit

DEFAULT_TOP_K = 50


@dataclass
class InitRequest:
    id: str
    embeddings: bytes
    manifest: Manifest
    type: str = field(default="init", init=False)


@dataclass
class SearchRequest:
    id: str
    query_embedding: bytes
    top_k: int = DEFAULT_TOP_K
    type: str = field(default="search", init=False)


@dataclass
class ShutdownRequest:
    type: str = field(default="shutdown", init=False)


@dataclass
class ReadyResponse:
    id: str
    count: int
    type: str = field(default="ready", init=False)


@dataclass
class SearchResultsResponse:
    id: str
    results: List[SearchHit]
    type: str = field(default="search-results", init=False)


@dataclass
class ErrorResponse:
    id: Optional[str]
    error: str
    type: str = field(default="error", init=False)


Request = Union[InitRequest, SearchRequest, ShutdownRequest]
Response = Union[ReadyResponse, SearchResultsResponse, ErrorResponse]
