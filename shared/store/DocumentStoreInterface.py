from abc import ABC, abstractmethod

from pydantic import BaseModel

from shared.helper.HelperConfig import HelperConfig
from shared.models.batch import BatchHistoryEntry
from shared.models.document import Chunk, Collection, Document, DocumentStatus, SyncJob


class StoreSnapshot(BaseModel):
    """Copy of the rows owned by a collection or a document, used to undo deletes."""

    collection: Collection | None = None
    documents: list[Document] = []
    chunks: list[Chunk] = []
    sync_jobs: list[SyncJob] = []


class DocumentStoreInterface(ABC):
    """Relational bookkeeping for collections, documents, chunks and sync jobs.

    Getters return copies; callers persist changes with the matching save method.
    Deleting a collection cascades to its documents, deleting a document cascades
    to its chunks and sync jobs.
    """

    def __init__(self, helper_config: HelperConfig):
        self.logging = helper_config.get_logger()
        self._helper_config = helper_config

    ##########################################
    ################ GETTER ##################
    ##########################################

    def get_engine_name(self) -> str:
        """
        Returns the name of the store engine in lowercase. E.g. "sqlite"
        """
        return self._get_engine_name().lower()

    @abstractmethod
    def _get_engine_name(self) -> str:
        pass

    ##########################################
    ############### LIFECYCLE ################
    ##########################################

    async def boot(self) -> None:
        """Prepare the backing storage (e.g. create the schema)."""

    async def close(self) -> None:
        """Release any resources held by the store."""

    ##########################################
    ############## COLLECTIONS ###############
    ##########################################

    @abstractmethod
    async def save_collection(self, collection: Collection) -> None:
        """Insert or overwrite a collection. Raises ConflictError if another collection has the name."""

    @abstractmethod
    async def get_collection(self, collection_id: str) -> Collection | None:
        pass

    @abstractmethod
    async def get_collection_by_name(self, name: str) -> Collection | None:
        pass

    @abstractmethod
    async def list_collections(self) -> list[Collection]:
        pass

    @abstractmethod
    async def delete_collection(self, collection_id: str) -> None:
        """Delete a collection row together with its documents, chunks and jobs."""
        pass

    ##########################################
    ############### DOCUMENTS ################
    ##########################################

    @abstractmethod
    async def save_document(self, document: Document) -> None:
        """Insert or overwrite a document.

        Raises:
            NotFound: If its collection does not exist.
            ConflictError: If another document in the collection has the name.
        """

    @abstractmethod
    async def get_document(self, doc_id: str) -> Document | None:
        pass

    @abstractmethod
    async def get_document_by_name(self, collection_id: str, name: str) -> Document | None:
        pass

    @abstractmethod
    async def list_documents(self, collection_id: str | None = None, status: DocumentStatus | None = None) -> list[Document]:
        """List documents ordered by creation time, optionally filtered."""
        pass

    @abstractmethod
    async def delete_document(self, doc_id: str) -> None:
        """Delete a document row together with its chunks and jobs."""
        pass

    ##########################################
    ################ CHUNKS ##################
    ##########################################

    @abstractmethod
    async def save_chunks(self, chunks: list[Chunk]) -> None:
        """Insert or replace chunks keyed by point_id."""
        pass

    @abstractmethod
    async def get_chunks(self, doc_id: str) -> list[Chunk]:
        """Return a document's chunks ordered by chunk_index."""
        pass

    @abstractmethod
    async def get_chunks_by_point_ids(self, point_ids: list[str]) -> list[Chunk]:
        pass

    @abstractmethod
    async def delete_chunks(self, point_ids: list[str]) -> None:
        pass

    @abstractmethod
    async def list_point_ids(self, collection_id: str) -> list[str]:
        """Return the point ids of every chunk row in a collection."""
        pass

    ##########################################
    ############### SYNC JOBS ################
    ##########################################

    @abstractmethod
    async def save_sync_job(self, job: SyncJob) -> None:
        pass

    @abstractmethod
    async def list_sync_jobs(self, doc_id: str | None = None) -> list[SyncJob]:
        """List sync jobs, newest first."""
        pass

    ##########################################
    ############ BATCH HISTORY ###############
    ##########################################

    @abstractmethod
    async def save_batch_history(self, entry: BatchHistoryEntry) -> None:
        pass

    @abstractmethod
    async def list_batch_history(self, limit: int = 50) -> list[BatchHistoryEntry]:
        """List finished batches, newest first."""
        pass

    ##########################################
    ############### SNAPSHOTS ################
    ##########################################

    async def snapshot_document(self, doc_id: str) -> StoreSnapshot:
        """Capture a document with its chunks and jobs."""
        document = await self.get_document(doc_id)
        if document is None:
            return StoreSnapshot()
        return StoreSnapshot(
            documents=[document],
            chunks=await self.get_chunks(doc_id),
            sync_jobs=await self.list_sync_jobs(doc_id),
        )

    async def snapshot_collection(self, collection_id: str) -> StoreSnapshot:
        """Capture a collection with every document, chunk and job it owns."""
        collection = await self.get_collection(collection_id)
        if collection is None:
            return StoreSnapshot()
        snapshot = StoreSnapshot(collection=collection)
        for document in await self.list_documents(collection_id=collection_id):
            doc_snapshot = await self.snapshot_document(document.doc_id)
            snapshot.documents.extend(doc_snapshot.documents)
            snapshot.chunks.extend(doc_snapshot.chunks)
            snapshot.sync_jobs.extend(doc_snapshot.sync_jobs)
        return snapshot

    async def restore_snapshot(self, snapshot: StoreSnapshot) -> None:
        """Write every row of a snapshot back. Parents are restored before children."""
        if snapshot.collection is not None:
            await self.save_collection(snapshot.collection)
        for document in snapshot.documents:
            await self.save_document(document)
        if snapshot.chunks:
            await self.save_chunks(snapshot.chunks)
        for job in snapshot.sync_jobs:
            await self.save_sync_job(job)

    ##########################################
    ################# STATS ##################
    ##########################################

    async def count_documents_by_status(self, collection_id: str | None = None) -> dict[str, int]:
        """Count documents per status, every status present with zero as default."""
        counts = {status.value: 0 for status in DocumentStatus}
        for document in await self.list_documents(collection_id=collection_id):
            counts[document.status.value] += 1
        return counts
