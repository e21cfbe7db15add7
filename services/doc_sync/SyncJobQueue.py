import asyncio
from contextlib import asynccontextmanager
from typing import AsyncIterator

from shared.errors import ConflictError
from shared.helper.HelperConfig import HelperConfig
from shared.models.document import SyncJob, SyncJobStatus, utc_now
from shared.store.DocumentStoreInterface import DocumentStoreInterface


class SyncJobQueue:
    """Registry of active sync jobs, at most one per document.

    A request for a document that already has an active job either waits until
    that job is released or is rejected with ConflictError. Deletes and patches
    hold a document or a whole collection for their duration; sync requests
    treat a hold like an active job.
    """

    def __init__(self, helper_config: HelperConfig, store: DocumentStoreInterface):
        self.logging = helper_config.get_logger()
        self.store = store
        self._active: dict[str, SyncJob] = {}
        self._held_documents: dict[str, str] = {}
        self._held_collections: set[str] = set()
        self._condition = asyncio.Condition()

    ##########################################
    ################ GETTER ##################
    ##########################################

    def get_active_job(self, doc_id: str) -> SyncJob | None:
        return self._active.get(doc_id)

    def has_active_job(self, doc_id: str) -> bool:
        return doc_id in self._active

    def has_active_job_in_collection(self, collection_id: str) -> bool:
        return any(job.collection_id == collection_id for job in self._active.values())

    def active_jobs(self) -> list[SyncJob]:
        return list(self._active.values())

    def _is_busy(self, doc_id: str, collection_id: str) -> bool:
        return doc_id in self._active or doc_id in self._held_documents or collection_id in self._held_collections

    def _busy_reason(self, doc_id: str) -> str:
        if doc_id in self._active:
            return f"already has an active sync job {self._active[doc_id].job_id}"
        return "is being modified"

    ##########################################
    ############### ACQUIRE ##################
    ##########################################

    async def acquire(self, doc_id: str, collection_id: str, wait: bool = True) -> SyncJob:
        """Register a new pending job for a document.

        Args:
            doc_id (str): The document to sync.
            collection_id (str): The document's collection.
            wait (bool): Queue behind an active job instead of failing.

        Returns:
            SyncJob: The registered job in status pending.

        Raises:
            ConflictError: If wait is False and the document already has an active job.
        """
        async with self._condition:
            if self._is_busy(doc_id, collection_id):
                if not wait:
                    raise ConflictError(f"Document {doc_id} {self._busy_reason(doc_id)}.")
                self.logging.debug("Sync request for document %s queued: document %s", doc_id, self._busy_reason(doc_id))
                await self._condition.wait_for(lambda: not self._is_busy(doc_id, collection_id))
            job = SyncJob(doc_id=doc_id, collection_id=collection_id)
            self._active[doc_id] = job
        try:
            await self.store.save_sync_job(job)
        except Exception:
            await self._forget(job)
            raise
        return job

    async def start(self, job: SyncJob) -> None:
        job.status = SyncJobStatus.PROCESSING
        await self.store.save_sync_job(job)

    async def release(self, job: SyncJob, error: BaseException | None = None) -> None:
        """Finish a job and wake up requests queued behind it."""
        job.status = SyncJobStatus.FAILED if error is not None else SyncJobStatus.COMPLETED
        if error is not None:
            job.error = str(error) or type(error).__name__
        job.completed_at = utc_now()
        try:
            await self.store.save_sync_job(job)
        except Exception as exc:
            # the document may have been removed together with its jobs
            self.logging.warning("Could not persist final state of sync job %s: %s", job.job_id, exc)
        finally:
            await self._forget(job)

    async def _forget(self, job: SyncJob) -> None:
        async with self._condition:
            if self._active.get(job.doc_id) is job:
                del self._active[job.doc_id]
            self._condition.notify_all()

    @asynccontextmanager
    async def job(self, doc_id: str, collection_id: str, wait: bool = True) -> AsyncIterator[SyncJob]:
        """Acquire, start and release a job around a block of work."""
        job = await self.acquire(doc_id, collection_id, wait=wait)
        try:
            await self.start(job)
            yield job
        except BaseException as exc:
            await self.release(job, exc)
            raise
        else:
            await self.release(job)

    ##########################################
    ################# HOLDS ##################
    ##########################################

    @asynccontextmanager
    async def hold_document(self, doc_id: str, collection_id: str) -> AsyncIterator[None]:
        """Keep sync jobs away from a document while it is patched or deleted.

        Sync requests arriving during the hold queue behind it or are rejected,
        exactly as if a job were active.

        Raises:
            ConflictError: If the document has an active job or is already held.
        """
        async with self._condition:
            if self._is_busy(doc_id, collection_id):
                raise ConflictError(f"Document {doc_id} {self._busy_reason(doc_id)}.")
            self._held_documents[doc_id] = collection_id
        try:
            yield
        finally:
            async with self._condition:
                self._held_documents.pop(doc_id, None)
                self._condition.notify_all()

    @asynccontextmanager
    async def hold_collection(self, collection_id: str) -> AsyncIterator[None]:
        """Keep sync jobs away from every document of a collection while it is deleted.

        Raises:
            ConflictError: If any of its documents has an active job or is held.
        """
        async with self._condition:
            if (
                collection_id in self._held_collections
                or self.has_active_job_in_collection(collection_id)
                or collection_id in self._held_documents.values()
            ):
                raise ConflictError(f"Collection {collection_id} has documents with active sync jobs.")
            self._held_collections.add(collection_id)
        try:
            yield
        finally:
            async with self._condition:
                self._held_collections.discard(collection_id)
                self._condition.notify_all()
