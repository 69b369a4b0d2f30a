"""KB Retrieval - Hybrid semantic and lexical retrieval for RAG applications."""

from .builder import build_kb
from .errors import ErrorKind, RetrievalError
from .initialization import Initializer, RetrievalContext
from .loader import ArtifactLoader, load_local_artifacts
from .retrieval import Retriever, build_sources, format_context
from .schemas import Chunk, ContentItem, Manifest, RetrievedChunk

__version__ = "0.1.0"

__all__ = [
    "build_kb",
    "ErrorKind",
    "RetrievalError",
    "Initializer",
    "RetrievalContext",
    "ArtifactLoader",
    "load_local_artifacts",
    "Retriever",
    "build_sources",
    "format_context",
    "Chunk",
    "ContentItem",
    "Manifest",
    "RetrievedChunk",
]
