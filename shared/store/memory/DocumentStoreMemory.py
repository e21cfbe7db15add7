import asyncio

from shared.errors import ConflictError, NotFound
from shared.helper.HelperConfig import HelperConfig
from shared.models.batch import BatchHistoryEntry
from shared.models.document import Chunk, Collection, Document, DocumentStatus, SyncJob
from shared.store.DocumentStoreInterface import DocumentStoreInterface


class DocumentStoreMemory(DocumentStoreInterface):
    """Process-local store. State is lost on restart."""

    def __init__(self, helper_config: HelperConfig):
        super().__init__(helper_config=helper_config)
        self._lock = asyncio.Lock()
        self._collections: dict[str, Collection] = {}
        self._documents: dict[str, Document] = {}
        self._chunks: dict[str, Chunk] = {}
        self._jobs: dict[str, SyncJob] = {}
        self._history: list[BatchHistoryEntry] = []

    def _get_engine_name(self) -> str:
        return "Memory"

    ##########################################
    ############## COLLECTIONS ###############
    ##########################################

    async def save_collection(self, collection: Collection) -> None:
        async with self._lock:
            if any(c.name == collection.name and c.collection_id != collection.collection_id for c in self._collections.values()):
                raise ConflictError(f"Collection '{collection.name}' already exists.")
            self._collections[collection.collection_id] = collection.model_copy(deep=True)

    async def get_collection(self, collection_id: str) -> Collection | None:
        async with self._lock:
            collection = self._collections.get(collection_id)
            return collection.model_copy(deep=True) if collection else None

    async def get_collection_by_name(self, name: str) -> Collection | None:
        async with self._lock:
            for collection in self._collections.values():
                if collection.name == name:
                    return collection.model_copy(deep=True)
            return None

    async def list_collections(self) -> list[Collection]:
        async with self._lock:
            collections = sorted(self._collections.values(), key=lambda c: c.created_at)
            return [c.model_copy(deep=True) for c in collections]

    async def delete_collection(self, collection_id: str) -> None:
        async with self._lock:
            for doc_id in [d.doc_id for d in self._documents.values() if d.collection_id == collection_id]:
                self._delete_document_rows(doc_id)
            self._collections.pop(collection_id, None)

    ##########################################
    ############### DOCUMENTS ################
    ##########################################

    async def save_document(self, document: Document) -> None:
        async with self._lock:
            if document.collection_id not in self._collections:
                raise NotFound(f"Collection {document.collection_id} not found.")
            if any(
                d.collection_id == document.collection_id and d.name == document.name and d.doc_id != document.doc_id
                for d in self._documents.values()
            ):
                raise ConflictError(f"Document '{document.name}' already exists in collection {document.collection_id}.")
            self._documents[document.doc_id] = document.model_copy(deep=True)

    async def get_document(self, doc_id: str) -> Document | None:
        async with self._lock:
            document = self._documents.get(doc_id)
            return document.model_copy(deep=True) if document else None

    async def get_document_by_name(self, collection_id: str, name: str) -> Document | None:
        async with self._lock:
            for document in self._documents.values():
                if document.collection_id == collection_id and document.name == name:
                    return document.model_copy(deep=True)
            return None

    async def list_documents(self, collection_id: str | None = None, status: DocumentStatus | None = None) -> list[Document]:
        async with self._lock:
            documents = [
                d for d in self._documents.values()
                if (collection_id is None or d.collection_id == collection_id) and (status is None or d.status == status)
            ]
            documents.sort(key=lambda d: d.created_at)
            return [d.model_copy(deep=True) for d in documents]

    async def delete_document(self, doc_id: str) -> None:
        async with self._lock:
            self._delete_document_rows(doc_id)

    def _delete_document_rows(self, doc_id: str) -> None:
        # caller holds the lock
        for point_id in [c.point_id for c in self._chunks.values() if c.doc_id == doc_id]:
            del self._chunks[point_id]
        for job_id in [j.job_id for j in self._jobs.values() if j.doc_id == doc_id]:
            del self._jobs[job_id]
        self._documents.pop(doc_id, None)

    ##########################################
    ################ CHUNKS ##################
    ##########################################

    async def save_chunks(self, chunks: list[Chunk]) -> None:
        async with self._lock:
            for chunk in chunks:
                if chunk.doc_id not in self._documents:
                    raise NotFound(f"Document {chunk.doc_id} not found.")
                self._chunks[chunk.point_id] = chunk.model_copy(deep=True)

    async def get_chunks(self, doc_id: str) -> list[Chunk]:
        async with self._lock:
            chunks = sorted((c for c in self._chunks.values() if c.doc_id == doc_id), key=lambda c: c.chunk_index)
            return [c.model_copy(deep=True) for c in chunks]

    async def get_chunks_by_point_ids(self, point_ids: list[str]) -> list[Chunk]:
        async with self._lock:
            return [self._chunks[p].model_copy(deep=True) for p in point_ids if p in self._chunks]

    async def delete_chunks(self, point_ids: list[str]) -> None:
        async with self._lock:
            for point_id in point_ids:
                self._chunks.pop(point_id, None)

    async def list_point_ids(self, collection_id: str) -> list[str]:
        async with self._lock:
            return [c.point_id for c in self._chunks.values() if c.collection_id == collection_id]

    ##########################################
    ############### SYNC JOBS ################
    ##########################################

    async def save_sync_job(self, job: SyncJob) -> None:
        async with self._lock:
            if job.doc_id not in self._documents:
                raise NotFound(f"Document {job.doc_id} not found.")
            self._jobs[job.job_id] = job.model_copy(deep=True)

    async def list_sync_jobs(self, doc_id: str | None = None) -> list[SyncJob]:
        async with self._lock:
            jobs = [j for j in self._jobs.values() if doc_id is None or j.doc_id == doc_id]
            jobs.sort(key=lambda j: j.created_at, reverse=True)
            return [j.model_copy(deep=True) for j in jobs]

    ##########################################
    ############ BATCH HISTORY ###############
    ##########################################

    async def save_batch_history(self, entry: BatchHistoryEntry) -> None:
        async with self._lock:
            self._history = [e for e in self._history if e.batch_id != entry.batch_id]
            self._history.append(entry.model_copy(deep=True))

    async def list_batch_history(self, limit: int = 50) -> list[BatchHistoryEntry]:
        async with self._lock:
            entries = sorted(self._history, key=lambda e: e.started_at, reverse=True)
            return [e.model_copy(deep=True) for e in entries[:limit]]
