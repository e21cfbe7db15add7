"""Error taxonomy for the document synchronisation pipeline.

Hierarchy:
  SyncError                 - base class for every pipeline error.
  FatalSyncError            - retrying cannot help; the owning entity goes dead.
  RetryableSyncError        - transient; retried with backoff up to max retries.
  NotFound / ConflictError  - surfaced to the caller immediately, never retried.
  BatchRollbackError        - raised by a transactional batch after compensation.
"""


class SyncError(Exception):
    """Base class for all synchronisation errors."""


class FatalSyncError(SyncError):
    """A non-retryable error. Moves the document straight to dead."""


class RetryableSyncError(SyncError):
    """A transient error (network, timeout, 5xx). Retried with backoff."""


class ChunkingError(FatalSyncError):
    """Raised when a document's text is empty or cannot be split."""


class ParseError(FatalSyncError):
    """Raised when raw bytes cannot be turned into text."""


class UnsupportedFormat(FatalSyncError):
    """Raised when no parser handles the given mime type."""


class ContentTooLarge(FatalSyncError):
    """Raised when the embedding provider rejects an oversized input."""


class InvalidInput(FatalSyncError):
    """Raised when the embedding provider rejects the input as invalid."""


class IndexRequestError(FatalSyncError):
    """Raised when the vector index rejects a request (4xx other than 404/429)."""


class EmbeddingTransportError(RetryableSyncError):
    """Raised on embedding transport failures, timeouts and 5xx responses."""


class IndexUnavailable(RetryableSyncError):
    """Raised when the vector index cannot be reached or answers 429/5xx."""


class NotFound(SyncError):
    """Raised when a document, collection or batch does not exist."""


class ConflictError(SyncError):
    """Raised on duplicate names or when an entity is busy with an active job."""


class BatchRollbackError(SyncError):
    """Raised by a transactional batch once every prior success was undone.

    Attributes:
        results (list): Per-item outcomes as recorded before the rollback.
        undo_errors (list[str]): Messages of compensation steps that failed.
    """

    def __init__(self, message: str, results: list | None = None, undo_errors: list[str] | None = None) -> None:
        super().__init__(message)
        self.results = results or []
        self.undo_errors = undo_errors or []


def is_retryable(exc: BaseException) -> bool:
    """Classify an exception for the retry policy.

    Args:
        exc (BaseException): The raised exception.

    Returns:
        bool: False for fatal, not-found and conflict errors, True otherwise.
    """
    if isinstance(exc, (FatalSyncError, NotFound, ConflictError)):
        return False
    return True
