"""Pydantic models for batch operations and their progress."""

from datetime import datetime
from enum import Enum

from pydantic import BaseModel

from shared.models.document import DocumentPatch


class BatchKind(str, Enum):
    UPLOAD = "upload"
    DELETE = "delete"
    SYNC = "sync"
    UPDATE = "update"


class BatchStatus(str, Enum):
    PROCESSING = "processing"
    COMPLETED = "completed"
    COMPLETED_WITH_ERRORS = "completed_with_errors"
    FAILED = "failed"
    CANCELLED = "cancelled"


class BatchItemResult(BaseModel):
    """Outcome of one item of a batch."""

    id: str
    success: bool
    error: str | None = None


class BatchOperationResult(BaseModel):
    """Aggregated outcome of a batch.

    Invariants: successful + failed == total, success == (failed == 0).
    """

    batch_id: str | None = None
    total: int
    successful: int
    failed: int
    success: bool
    cancelled: bool = False
    results: list[BatchItemResult]

    @classmethod
    def from_results(cls, results: list[BatchItemResult], batch_id: str | None = None, cancelled: bool = False) -> "BatchOperationResult":
        failed = sum(1 for r in results if not r.success)
        return cls(
            batch_id=batch_id,
            total=len(results),
            successful=len(results) - failed,
            failed=failed,
            success=failed == 0,
            cancelled=cancelled,
            results=results,
        )


class BatchProgress(BaseModel):
    """Point-in-time snapshot of a running or finished batch."""

    batch_id: str
    kind: BatchKind
    status: BatchStatus
    total: int
    processed: int
    successful: int
    failed: int
    percentage: float
    started_at: datetime
    finished_at: datetime | None = None


class BatchHistoryEntry(BaseModel):
    """Persisted summary of a finished batch."""

    batch_id: str
    kind: BatchKind
    status: BatchStatus
    total: int
    successful: int
    failed: int
    started_at: datetime
    finished_at: datetime | None = None


##########################################
############ REQUEST SHAPES ##############
##########################################

class UploadItem(BaseModel):
    """One document of a batch upload."""

    name: str
    mime: str = "text/plain"
    content: bytes
    key: str | None = None


class UpdateItem(BaseModel):
    """One document patch of a batch update."""

    doc_id: str
    patch: DocumentPatch
