"""Binary codecs for the corpus artifacts.

Vector blob: half-precision little-endian floats, ``dimensions`` values per
vector, vectors concatenated in manifest order. Decoding widens to float32;
similarity accumulates in float64.

Text blob: one ``[u32 little-endian length][UTF-8 bytes]`` record per chunk,
in manifest order.
"""

from __future__ import annotations

import logging
import struct
from typing import List, Optional, Sequence, Union

import numpy as np

from .errors import DimensionMismatchError, MalformedArtifactError

logger = logging.getLogger(__name__)

STORAGE_DTYPE = np.dtype("<f2")
QUERY_DTYPE = np.dtype("<f4")
_LENGTH_PREFIX = struct.Struct("<I")

BufferLike = Union[bytes, bytearray, memoryview]


def vector_stride(dimensions: int) -> int:
    """Bytes occupied by one stored vector."""
    return dimensions * STORAGE_DTYPE.itemsize


def encode_vectors(vectors: Union[np.ndarray, Sequence[Sequence[float]]]) -> bytes:
    """Serialize a 2-D array of unit vectors to the half-precision layout."""
    array = np.asarray(vectors, dtype=np.float32)
    if array.ndim != 2:
        raise ValueError(f"expected a 2-D array of vectors, got shape {array.shape}")
    return array.astype(STORAGE_DTYPE).tobytes()


def decode_vectors(
    buffer: BufferLike,
    dimensions: int,
    count: Optional[int] = None,
) -> np.ndarray:
    """
    Deserialize a whole vector blob into a ``(count, dimensions)`` float32 array.

    Raises:
        MalformedArtifactError: If the buffer length is not a multiple of the
            per-vector stride, or does not hold exactly ``count`` vectors.
    """
    if dimensions <= 0:
        raise ValueError(f"dimensions must be positive, got {dimensions}")
    stride = vector_stride(dimensions)
    size = len(buffer)
    if size % stride:
        raise MalformedArtifactError(
            f"Malformed embeddings.bin: {size} bytes is not a multiple of the {stride}-byte stride"
        )
    found = size // stride
    if count is not None and found != count:
        raise MalformedArtifactError(
            f"Malformed embeddings.bin: expected {count} vectors, found {found}"
        )
    half = np.frombuffer(buffer, dtype=STORAGE_DTYPE)
    return half.astype(np.float32).reshape(found, dimensions)


def decode_vector(buffer: BufferLike, index: int, dimensions: int) -> np.ndarray:
    """Deserialize the ``index``-th vector of a blob."""
    stride = vector_stride(dimensions)
    start = index * stride
    if index < 0 or start + stride > len(buffer):
        raise MalformedArtifactError(
            f"Malformed embeddings.bin: vector {index} lies outside a {len(buffer)}-byte buffer"
        )
    half = np.frombuffer(buffer, dtype=STORAGE_DTYPE, count=dimensions, offset=start)
    return half.astype(np.float32)


def dot_product(a: np.ndarray, b: np.ndarray) -> float:
    """Dot product with float64 accumulation; cosine similarity for unit vectors."""
    a = np.asarray(a)
    b = np.asarray(b)
    if a.shape != b.shape:
        raise DimensionMismatchError(f"Dimension mismatch: {a.shape} != {b.shape}")
    return float(np.dot(a.astype(np.float64), b.astype(np.float64)))


def similarity_scores(matrix: np.ndarray, query: np.ndarray) -> np.ndarray:
    """Score ``query`` against every row of ``matrix`` in float64."""
    query = np.asarray(query)
    if query.ndim != 1 or matrix.shape[1] != query.shape[0]:
        raise DimensionMismatchError(
            f"Dimension mismatch: corpus has {matrix.shape[1]} dims, query has shape {query.shape}"
        )
    return matrix.astype(np.float64, copy=False) @ query.astype(np.float64)


def l2_normalize(vector: Union[np.ndarray, Sequence[float]]) -> np.ndarray:
    """Return ``vector`` scaled to unit length as float32."""
    array = np.asarray(vector, dtype=np.float32)
    norm = np.sqrt(dot_product(array, array))
    if norm == 0:
        raise ValueError("Cannot normalize zero vector")
    return (array.astype(np.float64) / norm).astype(np.float32)


def encode_query(vector: np.ndarray) -> bytes:
    """Query vectors travel as float32 little-endian bytes."""
    return np.asarray(vector, dtype=QUERY_DTYPE).tobytes()


def decode_query(buffer: BufferLike, dimensions: int) -> np.ndarray:
    expected = dimensions * QUERY_DTYPE.itemsize
    if len(buffer) != expected:
        raise DimensionMismatchError(
            f"Dimension mismatch: query has {len(buffer) // QUERY_DTYPE.itemsize} values, expected {dimensions}"
        )
    return np.frombuffer(buffer, dtype=QUERY_DTYPE).astype(np.float32)


def encode_text_blob(texts: Sequence[str]) -> bytes:
    """Serialize chunk texts as length-prefixed UTF-8 records."""
    parts: List[bytes] = []
    for text in texts:
        data = text.encode("utf-8")
        parts.append(_LENGTH_PREFIX.pack(len(data)))
        parts.append(data)
    return b"".join(parts)


def parse_text_blob(buffer: BufferLike, count: int) -> List[str]:
    """
    Parse ``count`` length-prefixed UTF-8 records.

    Raises:
        MalformedArtifactError: On a truncated prefix, truncated record or
            invalid UTF-8. Trailing bytes after ``count`` records are logged.
    """
    view = memoryview(buffer)
    size = len(view)
    texts: List[str] = []
    offset = 0

    for i in range(count):
        if offset + _LENGTH_PREFIX.size > size:
            raise MalformedArtifactError(
                f"Malformed chunks.bin: incomplete length prefix at chunk {i}"
            )
        (length,) = _LENGTH_PREFIX.unpack_from(view, offset)
        offset += _LENGTH_PREFIX.size

        if offset + length > size:
            raise MalformedArtifactError(
                f"Malformed chunks.bin: incomplete text at chunk {i} (expected {length} bytes)"
            )
        try:
            texts.append(bytes(view[offset : offset + length]).decode("utf-8"))
        except UnicodeDecodeError as exc:
            raise MalformedArtifactError(f"Malformed chunks.bin: invalid UTF-8 at chunk {i}") from exc
        offset += length

    if offset != size:
        logger.warning("chunks.bin has extra bytes: %d remaining", size - offset)

    return texts
