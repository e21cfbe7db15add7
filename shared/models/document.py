"""Pydantic models for the relational bookkeeping of the sync pipeline.

Hierarchy:
  Collection      - a named group of documents, scoped in the vector index.
  Document        - one ingested file and its synchronisation status.
  Chunk           - a content-addressed slice of a document, the unit of embedding.
  SyncJob         - one unit of work driving a document through the state machine.
  DocumentPatch   - the fields an explicit update request may change.
"""

import uuid
from datetime import datetime, timezone
from enum import Enum

from pydantic import BaseModel, Field


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def new_id() -> str:
    return str(uuid.uuid4())


class DocumentStatus(str, Enum):
    NEW = "new"
    SPLIT_OK = "split_ok"
    EMBED_OK = "embed_ok"
    SYNCED = "synced"
    FAILED = "failed"
    RETRYING = "retrying"
    DEAD = "dead"


class ChunkStatus(str, Enum):
    NEW = "new"
    EMBEDDING_GENERATED = "embedding_generated"
    SYNCED = "synced"
    FAILED = "failed"


class SyncJobStatus(str, Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"


ACTIVE_JOB_STATUSES = (SyncJobStatus.PENDING, SyncJobStatus.PROCESSING)


class Collection(BaseModel):
    """A named collection of documents."""

    collection_id: str = Field(default_factory=new_id)
    name: str
    description: str | None = None
    created_at: datetime = Field(default_factory=utc_now)


class Document(BaseModel):
    """A document and its synchronisation state.

    error_message is only populated while status is failed or dead.
    content holds the extracted text so a resync can re-split without the raw bytes.
    """

    doc_id: str = Field(default_factory=new_id)
    collection_id: str
    name: str
    key: str | None = None
    size_bytes: int = 0
    mime: str = "text/plain"
    status: DocumentStatus = DocumentStatus.NEW
    error_message: str | None = None
    content: str | None = None
    created_at: datetime = Field(default_factory=utc_now)
    updated_at: datetime = Field(default_factory=utc_now)

    def touch(self) -> None:
        self.updated_at = utc_now()


class Chunk(BaseModel):
    """A chunk of document text.

    point_id is derived from (doc_id, chunk_index) and doubles as the vector index point id.
    """

    point_id: str
    doc_id: str
    collection_id: str
    chunk_index: int
    content: str
    content_hash: str
    title_chain: list[str] = []
    embedding: list[float] | None = None
    status: ChunkStatus = ChunkStatus.NEW

    def is_reusable(self) -> bool:
        """Whether a resync may skip this chunk's embedding call.

        A chunk that failed at the upsert step keeps its embedding and is reusable too.
        """
        if self.status == ChunkStatus.SYNCED:
            return True
        return self.embedding is not None and self.status in (ChunkStatus.EMBEDDING_GENERATED, ChunkStatus.FAILED)


class SyncJob(BaseModel):
    """One synchronisation run for a document."""

    job_id: str = Field(default_factory=new_id)
    doc_id: str
    collection_id: str
    status: SyncJobStatus = SyncJobStatus.PENDING
    retry_count: int = 0
    created_at: datetime = Field(default_factory=utc_now)
    completed_at: datetime | None = None
    error: str | None = None

    def is_active(self) -> bool:
        return self.status in ACTIVE_JOB_STATUSES


class DocumentPatch(BaseModel):
    """Fields of a document that an update request may change.

    A new content value triggers a resync of the document.
    """

    name: str | None = None
    key: str | None = None
    mime: str | None = None
    content: str | None = None
