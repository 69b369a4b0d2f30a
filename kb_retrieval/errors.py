"""Error taxonomy for the retrieval core."""

from __future__ import annotations

from enum import Enum
from typing import Dict


class ErrorKind(str, Enum):
    """Closed set of failure conditions surfaced to callers."""
    OFFLINE = "offline"
    ARTIFACTS_FETCH_FAILED = "artifacts-fetch-failed"
    QUOTA_EXCEEDED = "quota-exceeded"
    MALFORMED_ARTIFACT = "malformed-artifact"
    WORKER_TIMEOUT = "worker-timeout"
    WORKER_ERROR = "worker-error"
    NO_RELEVANT_CONTENT = "no-relevant-content"
    MODEL_LOAD_FAILED = "model-load-failed"


_RECOVERABLE: Dict[ErrorKind, bool] = {
    ErrorKind.OFFLINE: False,
    ErrorKind.ARTIFACTS_FETCH_FAILED: True,
    ErrorKind.QUOTA_EXCEEDED: False,
    ErrorKind.MALFORMED_ARTIFACT: False,
    ErrorKind.WORKER_TIMEOUT: True,
    ErrorKind.WORKER_ERROR: True,
    ErrorKind.NO_RELEVANT_CONTENT: True,
    ErrorKind.MODEL_LOAD_FAILED: True,
}

ERROR_MESSAGES: Dict[ErrorKind, str] = {
    ErrorKind.OFFLINE: "No internet connection. Search requires network access on first load.",
    ErrorKind.ARTIFACTS_FETCH_FAILED: "Failed to download the search index. Please try again.",
    ErrorKind.QUOTA_EXCEEDED: "Local storage is full. Clear the cache directory and retry.",
    ErrorKind.MALFORMED_ARTIFACT: "The search index is corrupted. Please reload.",
    ErrorKind.WORKER_TIMEOUT: "The search engine took too long to respond. Please try again.",
    ErrorKind.WORKER_ERROR: "The search engine failed to start. Please try again.",
    ErrorKind.NO_RELEVANT_CONTENT: "No relevant content found for your query.",
    ErrorKind.MODEL_LOAD_FAILED: "Failed to load the embedding model. Please try again.",
}


def _check_exhaustive(recoverable: Dict[ErrorKind, bool], messages: Dict[ErrorKind, str]) -> None:
    missing_recoverable = set(ErrorKind) - set(recoverable)
    missing_messages = set(ErrorKind) - set(messages)
    if missing_recoverable or missing_messages:
        raise RuntimeError(
            "Unhandled error kinds: "
            f"recoverability={sorted(k.value for k in missing_recoverable)} "
            f"messages={sorted(k.value for k in missing_messages)}"
        )


_check_exhaustive(_RECOVERABLE, ERROR_MESSAGES)


def is_recoverable(kind: ErrorKind) -> bool:
    """Whether a condition of this kind may be retried."""
    return _RECOVERABLE[kind]


def user_action(kind: ErrorKind) -> str:
    """Action offered to the user: ``"retry"`` or ``"reload"``."""
    return "retry" if _RECOVERABLE[kind] else "reload"


class RetrievalError(Exception):
    """Base class for every typed failure raised by this package."""

    kind: ErrorKind

    def __init__(self, message: str = "") -> None:
        super().__init__(message or ERROR_MESSAGES[self.kind])
        self.message = message or ERROR_MESSAGES[self.kind]

    @property
    def recoverable(self) -> bool:
        return is_recoverable(self.kind)

    def __repr__(self) -> str:
        return f"{type(self).__name__}(kind={self.kind.value!r}, message={self.message!r})"


class OfflineError(RetrievalError):
    """No connectivity detected before fetching artifacts."""
    kind = ErrorKind.OFFLINE


class ArtifactsFetchError(RetrievalError):
    """Network or HTTP failure fetching one of the three artifacts."""
    kind = ErrorKind.ARTIFACTS_FETCH_FAILED


class QuotaExceededError(RetrievalError):
    """Persistent storage rejected a cache write for lack of space."""
    kind = ErrorKind.QUOTA_EXCEEDED


class MalformedArtifactError(RetrievalError):
    """Binary or manifest parse failure."""
    kind = ErrorKind.MALFORMED_ARTIFACT


class WorkerTimeoutError(RetrievalError):
    """The search engine did not answer within the caller's timeout."""
    kind = ErrorKind.WORKER_TIMEOUT


class WorkerError(RetrievalError):
    """The search engine failed or answered with an error."""
    kind = ErrorKind.WORKER_ERROR


class NoRelevantContentError(RetrievalError):
    """Fusion produced nothing for a query."""
    kind = ErrorKind.NO_RELEVANT_CONTENT


class ModelLoadError(RetrievalError):
    """The embedding source could not be made ready."""
    kind = ErrorKind.MODEL_LOAD_FAILED


class DimensionMismatchError(ValueError):
    """Two vectors of different lengths were compared."""
    pass
