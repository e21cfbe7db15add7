"""Tests for the one-active-job-per-document queue."""

import asyncio

import pytest

from services.doc_sync.SyncJobQueue import SyncJobQueue
from shared.errors import ConflictError, IndexUnavailable, NotFound
from shared.models.document import Collection, Document, SyncJobStatus


@pytest.fixture
def queue(helper_config, store) -> SyncJobQueue:
    return SyncJobQueue(helper_config, store)


@pytest.fixture
def create_document(store):
    """Factory storing a collection with one document."""

    async def _create() -> Document:
        collection = Collection(name="queue-tests")
        await store.save_collection(collection)
        doc = Document(collection_id=collection.collection_id, name="a.md", content="text")
        await store.save_document(doc)
        return doc

    return _create


class TestAcquireRelease:
    """Tests for registering and finishing jobs."""

    @pytest.mark.asyncio
    async def test_release_completes_job(self, queue, store, create_document):
        """Test a released job is persisted as completed and no longer active."""
        doc = await create_document()

        job = await queue.acquire(doc.doc_id, doc.collection_id)
        assert queue.has_active_job(doc.doc_id)
        assert job.status == SyncJobStatus.PENDING

        await queue.start(job)
        await queue.release(job)

        assert not queue.has_active_job(doc.doc_id)
        [stored] = await store.list_sync_jobs(doc.doc_id)
        assert stored.status == SyncJobStatus.COMPLETED
        assert stored.completed_at is not None

    @pytest.mark.asyncio
    async def test_second_request_is_rejected_without_wait(self, queue, create_document):
        """Test a document cannot get a second active job when waiting is not allowed."""
        doc = await create_document()
        await queue.acquire(doc.doc_id, doc.collection_id)

        with pytest.raises(ConflictError):
            await queue.acquire(doc.doc_id, doc.collection_id, wait=False)

    @pytest.mark.asyncio
    async def test_second_request_waits_for_release(self, queue, create_document):
        """Test a waiting request is admitted only after the active job is released."""
        doc = await create_document()
        first = await queue.acquire(doc.doc_id, doc.collection_id)

        waiter = asyncio.create_task(queue.acquire(doc.doc_id, doc.collection_id))
        await asyncio.sleep(0.01)
        assert not waiter.done()
        assert queue.get_active_job(doc.doc_id) is first

        await queue.release(first)
        second = await asyncio.wait_for(waiter, timeout=1)

        assert second.job_id != first.job_id
        assert queue.get_active_job(doc.doc_id) is second
        assert len(queue.active_jobs()) == 1

    @pytest.mark.asyncio
    async def test_collection_lookup(self, queue, create_document):
        """Test active jobs are found by collection."""
        doc = await create_document()
        job = await queue.acquire(doc.doc_id, doc.collection_id)

        assert queue.has_active_job_in_collection(doc.collection_id)
        assert not queue.has_active_job_in_collection("other")
        await queue.release(job)
        assert not queue.has_active_job_in_collection(doc.collection_id)


class TestJobContext:
    """Tests for the job context manager."""

    @pytest.mark.asyncio
    async def test_failure_marks_job_failed(self, queue, store, create_document):
        """Test an exception inside the block fails the job and propagates."""
        doc = await create_document()

        with pytest.raises(IndexUnavailable):
            async with queue.job(doc.doc_id, doc.collection_id) as job:
                assert job.status == SyncJobStatus.PROCESSING
                raise IndexUnavailable("index down")

        [stored] = await store.list_sync_jobs(doc.doc_id)
        assert stored.status == SyncJobStatus.FAILED
        assert stored.error == "index down"
        assert not queue.has_active_job(doc.doc_id)

    @pytest.mark.asyncio
    async def test_release_survives_deleted_document(self, queue, store, create_document):
        """Test releasing a job whose document vanished still frees the slot."""
        doc = await create_document()

        async with queue.job(doc.doc_id, doc.collection_id):
            await store.delete_document(doc.doc_id)

        assert not queue.has_active_job(doc.doc_id)


class TestHolds:
    """Tests for holding documents and collections away from sync jobs."""

    @pytest.mark.asyncio
    async def test_sync_waits_for_document_hold(self, queue, create_document):
        """Test a sync request queues behind a held document and runs once it is released."""
        doc = await create_document()

        async with queue.hold_document(doc.doc_id, doc.collection_id):
            waiter = asyncio.create_task(queue.acquire(doc.doc_id, doc.collection_id))
            await asyncio.sleep(0.01)
            assert not waiter.done()
            with pytest.raises(ConflictError):
                await queue.acquire(doc.doc_id, doc.collection_id, wait=False)

        job = await asyncio.wait_for(waiter, timeout=1)
        assert queue.get_active_job(doc.doc_id) is job

    @pytest.mark.asyncio
    async def test_hold_rejected_while_job_active(self, queue, create_document):
        """Test neither the document nor its collection can be held during an active job."""
        doc = await create_document()
        job = await queue.acquire(doc.doc_id, doc.collection_id)

        with pytest.raises(ConflictError):
            async with queue.hold_document(doc.doc_id, doc.collection_id):
                pass
        with pytest.raises(ConflictError):
            async with queue.hold_collection(doc.collection_id):
                pass
        await queue.release(job)

        async with queue.hold_document(doc.doc_id, doc.collection_id):
            pass

    @pytest.mark.asyncio
    async def test_collection_hold_covers_every_document(self, queue, create_document):
        """Test a held collection turns away sync requests and holds for its documents."""
        doc = await create_document()

        async with queue.hold_collection(doc.collection_id):
            with pytest.raises(ConflictError):
                await queue.acquire(doc.doc_id, doc.collection_id, wait=False)
            with pytest.raises(ConflictError):
                async with queue.hold_document(doc.doc_id, doc.collection_id):
                    pass
            assert queue.active_jobs() == []

    @pytest.mark.asyncio
    async def test_waiting_sync_fails_when_document_was_deleted(self, queue, store, create_document):
        """Test a request queued behind a delete fails with NotFound and frees the slot."""
        doc = await create_document()

        async with queue.hold_document(doc.doc_id, doc.collection_id):
            waiter = asyncio.create_task(queue.acquire(doc.doc_id, doc.collection_id))
            await asyncio.sleep(0.01)
            await store.delete_document(doc.doc_id)

        with pytest.raises(NotFound):
            await asyncio.wait_for(waiter, timeout=1)
        assert not queue.has_active_job(doc.doc_id)
