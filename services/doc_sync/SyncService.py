"""Document synchronisation service.

Entry point for everything the HTTP surface and the runner do: creating
collections, ingesting and resyncing documents, cascading deletes, batch
operations with progress and rollback, similarity search and reconciliation
of the vector index against the relational store.
"""

import asyncio
from datetime import datetime
from typing import Any, Awaitable, Callable, Coroutine, Sequence

from services.doc_sync.BatchOperationEngine import BatchOperationEngine, BatchOptions, CancelToken
from services.doc_sync.Chunker import Chunker
from services.doc_sync.ProgressTracker import ProgressRegistry, ProgressTracker
from services.doc_sync.RetryPolicy import RetryPolicy
from services.doc_sync.SyncJobQueue import SyncJobQueue
from services.doc_sync.SyncStateMachine import SyncStateMachine
from shared.clients.embed.EmbedClientInterface import EmbedClientInterface
from shared.clients.rag.RAGClientInterface import RAGClientInterface
from shared.clients.rag.models.VectorPoint import build_point
from shared.errors import ConflictError, FatalSyncError, InvalidInput, NotFound
from shared.helper.HelperConfig import HelperConfig
from shared.models.batch import (
    BatchHistoryEntry,
    BatchKind,
    BatchOperationResult,
    BatchProgress,
    UpdateItem,
    UploadItem,
)
from shared.models.document import (
    Chunk,
    ChunkStatus,
    Collection,
    Document,
    DocumentPatch,
    DocumentStatus,
    SyncJob,
    utc_now,
)
from shared.models.pagination import PaginatedResponse
from shared.models.search import SearchResultItem
from shared.parsers.DocumentParserManager import DocumentParserManager
from shared.store.DocumentStoreInterface import DocumentStoreInterface, StoreSnapshot


class SyncService:
    """Orchestrates ingestion, synchronisation and batch operations."""

    def __init__(
        self,
        helper_config: HelperConfig,
        store: DocumentStoreInterface,
        rag_client: RAGClientInterface,
        embed_client: EmbedClientInterface,
        parser: DocumentParserManager,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self.logging = helper_config.get_logger()
        self.store = store
        self.rag_client = rag_client
        self.embed_client = embed_client
        self.parser = parser

        self.chunker = Chunker(helper_config)
        self.retry_policy = RetryPolicy(helper_config)
        self.queue = SyncJobQueue(helper_config, store)
        self.state_machine = SyncStateMachine(
            helper_config,
            store=store,
            embed_client=embed_client,
            rag_client=rag_client,
            chunker=self.chunker,
            retry_policy=self.retry_policy,
            sleep=sleep,
        )
        self.engine = BatchOperationEngine(helper_config)
        self.progress = ProgressRegistry(helper_config, clock=clock)

        self._cancel_tokens: dict[str, CancelToken] = {}
        self._tasks: set[asyncio.Task] = set()

    ##########################################
    ############## COLLECTIONS ###############
    ##########################################

    async def create_collection(self, name: str, description: str | None = None) -> Collection:
        """Create a named collection.

        Raises:
            InvalidInput: If the name is empty.
            ConflictError: If a collection with the same name exists.
        """
        name = (name or "").strip()
        if not name:
            raise InvalidInput("Collection name must not be empty.")
        if await self.store.get_collection_by_name(name) is not None:
            raise ConflictError(f"Collection '{name}' already exists.")
        collection = Collection(name=name, description=description)
        await self.store.save_collection(collection)
        self.logging.info("Created collection '%s' (%s)", name, collection.collection_id)
        return collection

    async def list_collections(self) -> list[Collection]:
        return await self.store.list_collections()

    async def get_collection(self, collection_id: str) -> Collection:
        collection = await self.store.get_collection(collection_id)
        if collection is None:
            raise NotFound(f"Collection {collection_id} not found.")
        return collection

    async def delete_collection(self, collection_id: str) -> None:
        """Delete a collection, its points and every row it owns.

        Points are removed before rows so a failure never leaves points without rows.

        Raises:
            NotFound: If the collection does not exist.
            ConflictError: If any of its documents has an active sync job.
        """
        await self.get_collection(collection_id)
        async with self.queue.hold_collection(collection_id):
            await self.rag_client.delete_points_by_collection(collection_id)
            await self.store.delete_collection(collection_id)
        self.logging.info("Deleted collection %s", collection_id)

    ##########################################
    ############### DOCUMENTS ################
    ##########################################

    async def submit_document(
        self,
        collection_id: str,
        raw_bytes: bytes,
        mime: str,
        name: str,
        key: str | None = None,
        wait: bool = True,
    ) -> Document:
        """Ingest a document and synchronise it.

        Args:
            collection_id (str): The target collection.
            raw_bytes (bytes): The uploaded file content.
            mime (str): The declared mime type.
            name (str): Unique name inside the collection.
            key (str | None): Optional external key.
            wait (bool): Run the sync inline; otherwise it runs as a background task.

        Returns:
            Document: The synced document when wait is True, the freshly created one otherwise.

        Raises:
            NotFound: If the collection does not exist.
            ConflictError: If the name is already taken in the collection.
            FatalSyncError: On parse, chunking or fatal embedding errors; the document is dead.
            RetryableSyncError: When retries are exhausted; the document is dead.
        """
        return await self._ingest(collection_id, raw_bytes, mime, name, key, wait=wait)

    async def _ingest(
        self,
        collection_id: str,
        raw_bytes: bytes,
        mime: str,
        name: str,
        key: str | None,
        wait: bool = True,
        cleanup_on_failure: bool = False,
    ) -> Document:
        document, parse_error = await self._create_document(collection_id, raw_bytes, mime, name, key)
        if not wait and parse_error is None:
            self._spawn(self._sync(document.doc_id), f"sync of document {document.doc_id}")
            return document
        try:
            if parse_error is not None:
                raise parse_error
            return await self._sync(document.doc_id)
        except Exception:
            if cleanup_on_failure:
                await self._remove_document(document.doc_id, document.collection_id)
            raise

    async def _create_document(
        self, collection_id: str, raw_bytes: bytes, mime: str, name: str, key: str | None
    ) -> tuple[Document, FatalSyncError | None]:
        await self.get_collection(collection_id)
        name = (name or "").strip()
        if not name:
            raise InvalidInput("Document name must not be empty.")
        if await self.store.get_document_by_name(collection_id, name) is not None:
            raise ConflictError(f"Document '{name}' already exists in collection {collection_id}.")

        document = Document(collection_id=collection_id, name=name, key=key, size_bytes=len(raw_bytes), mime=mime)
        parse_error: FatalSyncError | None = None
        try:
            document.content = self.parser.extract_text(raw_bytes, mime)
        except FatalSyncError as exc:
            # kept as a dead document so the failure stays visible
            parse_error = exc
            document.status = DocumentStatus.DEAD
            document.error_message = str(exc)
            self.logging.error("Could not extract text from '%s': %s", name, exc)
        await self.store.save_document(document)
        return document, parse_error

    async def _sync(self, doc_id: str, reject_if_busy: bool = False) -> Document:
        document = await self.get_document(doc_id)
        async with self.queue.job(doc_id, document.collection_id, wait=not reject_if_busy) as job:
            return await self.state_machine.run(job)

    async def resync_document(self, doc_id: str, wait: bool = True, reject_if_busy: bool = False) -> Document:
        """Re-drive a document through the state machine.

        Unchanged chunks that already hold an embedding or a point are skipped, so
        resyncing a synced and unchanged document makes no external calls.

        Raises:
            NotFound: If the document does not exist.
            ConflictError: If reject_if_busy is set and the document has an active job.
        """
        document = await self.get_document(doc_id)
        if reject_if_busy and self.queue.has_active_job(doc_id):
            raise ConflictError(f"Document {doc_id} already has an active sync job.")
        if not wait:
            self._spawn(self._sync(doc_id, reject_if_busy=reject_if_busy), f"resync of document {doc_id}")
            return document
        return await self._sync(doc_id, reject_if_busy=reject_if_busy)

    async def update_document(self, doc_id: str, patch: DocumentPatch) -> Document:
        """Apply a patch. A content or name change triggers a resync.

        Raises:
            NotFound: If the document does not exist.
            ConflictError: If the document is being synced or the new name is taken.
        """
        document = await self.get_document(doc_id)
        async with self.queue.hold_document(doc_id, document.collection_id):
            document = await self.get_document(doc_id)
            needs_resync = False
            if patch.name is not None and patch.name.strip() != document.name:
                new_name = patch.name.strip()
                if not new_name:
                    raise InvalidInput("Document name must not be empty.")
                if await self.store.get_document_by_name(document.collection_id, new_name) is not None:
                    raise ConflictError(f"Document '{new_name}' already exists in collection {document.collection_id}.")
                document.name = new_name
                needs_resync = True
            if patch.key is not None:
                document.key = patch.key
            if patch.mime is not None:
                document.mime = patch.mime
            if patch.content is not None and patch.content != document.content:
                document.content = patch.content
                document.size_bytes = len(patch.content.encode("utf-8"))
                needs_resync = True

            document.touch()
            await self.store.save_document(document)
        if needs_resync:
            return await self._sync(doc_id)
        return document

    async def delete_document(self, doc_id: str) -> None:
        """Delete a document's points, then its rows.

        Raises:
            NotFound: If the document does not exist.
            ConflictError: If the document has an active sync job.
        """
        document = await self.get_document(doc_id)
        async with self.queue.hold_document(doc_id, document.collection_id):
            await self._remove_document(doc_id, document.collection_id)

    async def _remove_document(self, doc_id: str, collection_id: str) -> None:
        await self.rag_client.delete_points_by_doc(doc_id)
        await self.store.delete_document(doc_id)
        self.logging.info("Deleted document %s from collection %s", doc_id, collection_id)

    async def get_document(self, doc_id: str) -> Document:
        document = await self.store.get_document(doc_id)
        if document is None:
            raise NotFound(f"Document {doc_id} not found.")
        return document

    async def list_documents(
        self,
        collection_id: str | None = None,
        status: DocumentStatus | None = None,
        page: int = 1,
        limit: int = 20,
    ) -> PaginatedResponse[Document]:
        if collection_id is not None:
            await self.get_collection(collection_id)
        documents = await self.store.list_documents(collection_id=collection_id, status=status)
        return PaginatedResponse[Document].from_items(documents, page=page, limit=limit)

    async def list_chunks(self, doc_id: str) -> list[Chunk]:
        await self.get_document(doc_id)
        return await self.store.get_chunks(doc_id)

    async def list_sync_jobs(self, doc_id: str | None = None) -> list[SyncJob]:
        return await self.store.list_sync_jobs(doc_id)

    ##########################################
    ################ BATCHES #################
    ##########################################

    async def batch_upload(
        self,
        collection_id: str,
        items: Sequence[UploadItem],
        transactional: bool = False,
        cancel_token: CancelToken | None = None,
        concurrency: int | None = None,
        tracker: ProgressTracker | None = None,
    ) -> BatchOperationResult:
        """Upload and sync many documents into one collection.

        Result ids are the document names. In transactional mode every created
        document is deleted again when any item fails.
        """
        await self.get_collection(collection_id)

        async def _upload(item: UploadItem) -> str:
            document = await self._ingest(
                collection_id, item.content, item.mime, item.name, item.key,
                wait=True, cleanup_on_failure=transactional,
            )
            return document.doc_id

        async def _undo(item: UploadItem, doc_id: str) -> None:
            await self._remove_document(doc_id, collection_id)

        return await self._run_batch(
            BatchKind.UPLOAD, items, _upload,
            BatchOptions(
                concurrency=concurrency, transactional=transactional, undo=_undo,
                cancel_token=cancel_token, item_id=lambda item: item.name,
            ),
            tracker,
        )

    async def batch_delete(
        self,
        doc_ids: Sequence[str] | None = None,
        collection_ids: Sequence[str] | None = None,
        transactional: bool = False,
        cancel_token: CancelToken | None = None,
        concurrency: int | None = None,
        tracker: ProgressTracker | None = None,
    ) -> BatchOperationResult:
        """Delete many documents or many collections.

        Each item snapshots its rows before deleting; the undo step writes the
        rows back and re-upserts the points from the stored chunk embeddings.

        Raises:
            InvalidInput: Unless exactly one of doc_ids and collection_ids is given.
        """
        if bool(doc_ids) == bool(collection_ids):
            raise InvalidInput("Provide either doc_ids or collection_ids.")

        if doc_ids:
            async def _delete(doc_id: str) -> StoreSnapshot:
                snapshot = await self.store.snapshot_document(doc_id)
                await self.delete_document(doc_id)
                return snapshot
            items = list(doc_ids)
        else:
            async def _delete(collection_id: str) -> StoreSnapshot:
                snapshot = await self.store.snapshot_collection(collection_id)
                await self.delete_collection(collection_id)
                return snapshot
            items = list(collection_ids)

        async def _undo(item: str, snapshot: StoreSnapshot) -> None:
            await self._restore_snapshot(snapshot)

        return await self._run_batch(
            BatchKind.DELETE, items, _delete,
            BatchOptions(concurrency=concurrency, transactional=transactional, undo=_undo, cancel_token=cancel_token),
            tracker,
        )

    async def batch_sync(
        self,
        doc_ids: Sequence[str],
        transactional: bool = False,
        cancel_token: CancelToken | None = None,
        concurrency: int | None = None,
        tracker: ProgressTracker | None = None,
    ) -> BatchOperationResult:
        """Resync many documents. The undo step reverts rows and points to their state before the batch."""

        async def _resync(doc_id: str) -> StoreSnapshot:
            snapshot = await self.store.snapshot_document(doc_id)
            await self.resync_document(doc_id, wait=True)
            return snapshot

        async def _undo(doc_id: str, snapshot: StoreSnapshot) -> None:
            await self._revert_document(snapshot)

        return await self._run_batch(
            BatchKind.SYNC, list(doc_ids), _resync,
            BatchOptions(concurrency=concurrency, transactional=transactional, undo=_undo, cancel_token=cancel_token),
            tracker,
        )

    async def batch_update(
        self,
        items: Sequence[UpdateItem],
        transactional: bool = False,
        cancel_token: CancelToken | None = None,
        concurrency: int | None = None,
        tracker: ProgressTracker | None = None,
    ) -> BatchOperationResult:
        """Patch many documents. The undo step restores the previous fields, chunks and points."""

        async def _update(item: UpdateItem) -> StoreSnapshot:
            snapshot = await self.store.snapshot_document(item.doc_id)
            await self.update_document(item.doc_id, item.patch)
            return snapshot

        async def _undo(item: UpdateItem, snapshot: StoreSnapshot) -> None:
            await self._revert_document(snapshot)

        return await self._run_batch(
            BatchKind.UPDATE, items, _update,
            BatchOptions(
                concurrency=concurrency, transactional=transactional, undo=_undo,
                cancel_token=cancel_token, item_id=lambda item: item.doc_id,
            ),
            tracker,
        )

    async def _run_batch(
        self,
        kind: BatchKind,
        items: Sequence[Any],
        operation: Callable[[Any], Awaitable[Any]],
        options: BatchOptions,
        tracker: ProgressTracker | None,
    ) -> BatchOperationResult:
        tracker = tracker or self.progress.create(len(items), kind)
        options.tracker = tracker
        self.logging.info("Starting %s batch %s with %d items", kind.value, tracker.batch_id, len(items))
        try:
            return await self.engine.run(items, operation, options)
        finally:
            self._cancel_tokens.pop(tracker.batch_id, None)
            await self.store.save_batch_history(tracker.history_entry())

    ################ START + POLL ##################

    def _start_batch(self, kind: BatchKind, total: int, runner: Callable[[ProgressTracker, CancelToken], Coroutine]) -> BatchProgress:
        tracker = self.progress.create(total, kind)
        token = CancelToken()
        self._cancel_tokens[tracker.batch_id] = token
        self._spawn(runner(tracker, token), f"{kind.value} batch {tracker.batch_id}")
        return tracker.snapshot()

    async def start_batch_upload(self, collection_id: str, items: Sequence[UploadItem], transactional: bool = False) -> BatchProgress:
        await self.get_collection(collection_id)
        return self._start_batch(
            BatchKind.UPLOAD, len(items),
            lambda tracker, token: self.batch_upload(collection_id, items, transactional, cancel_token=token, tracker=tracker),
        )

    async def start_batch_delete(
        self, doc_ids: Sequence[str] | None = None, collection_ids: Sequence[str] | None = None, transactional: bool = False
    ) -> BatchProgress:
        if bool(doc_ids) == bool(collection_ids):
            raise InvalidInput("Provide either doc_ids or collection_ids.")
        total = len(doc_ids or collection_ids)
        return self._start_batch(
            BatchKind.DELETE, total,
            lambda tracker, token: self.batch_delete(doc_ids, collection_ids, transactional, cancel_token=token, tracker=tracker),
        )

    async def start_batch_sync(self, doc_ids: Sequence[str], transactional: bool = False) -> BatchProgress:
        return self._start_batch(
            BatchKind.SYNC, len(doc_ids),
            lambda tracker, token: self.batch_sync(doc_ids, transactional, cancel_token=token, tracker=tracker),
        )

    async def start_batch_update(self, items: Sequence[UpdateItem], transactional: bool = False) -> BatchProgress:
        return self._start_batch(
            BatchKind.UPDATE, len(items),
            lambda tracker, token: self.batch_update(items, transactional, cancel_token=token, tracker=tracker),
        )

    def get_batch_progress(self, batch_id: str) -> BatchProgress:
        return self.progress.snapshot(batch_id)

    def cancel_batch(self, batch_id: str) -> BatchProgress:
        """Stop scheduling the remaining items of a running batch.

        Raises:
            NotFound: If the batch is unknown or expired.
            ConflictError: If the batch already finished.
        """
        tracker = self.progress.get(batch_id)
        token = self._cancel_tokens.get(batch_id)
        if tracker.is_finished() or token is None:
            raise ConflictError(f"Batch {batch_id} is not running.")
        token.cancel()
        self.logging.info("Cancellation requested for batch %s", batch_id)
        return tracker.snapshot()

    async def list_batch_history(self, limit: int = 50) -> list[BatchHistoryEntry]:
        return await self.store.list_batch_history(limit)

    ################ COMPENSATION ##################

    async def _restore_snapshot(self, snapshot: StoreSnapshot) -> None:
        """Write snapshot rows back and re-upsert the points of its synced chunks."""
        await self.store.restore_snapshot(snapshot)
        points_by_collection: dict[str, list[dict]] = {}
        for chunk in snapshot.chunks:
            if chunk.status == ChunkStatus.SYNCED and chunk.embedding is not None:
                points_by_collection.setdefault(chunk.collection_id, []).append(build_point(chunk))
        for collection_id, points in points_by_collection.items():
            await self.rag_client.upsert_collection(collection_id, points)

    async def _revert_document(self, snapshot: StoreSnapshot) -> None:
        """Bring a document back to a snapshot taken before it was changed."""
        if not snapshot.documents:
            return
        document = snapshot.documents[0]
        kept = {chunk.point_id for chunk in snapshot.chunks}
        extra = [chunk.point_id for chunk in await self.store.get_chunks(document.doc_id) if chunk.point_id not in kept]
        if extra:
            await self.rag_client.delete_points(document.collection_id, extra)
            await self.store.delete_chunks(extra)
        await self._restore_snapshot(snapshot)

    ##########################################
    ################# SEARCH #################
    ##########################################

    async def search(
        self,
        collection_id: str,
        query_vector: list[float],
        limit: int | None = None,
        filter: dict[str, Any] | None = None,
    ) -> list[SearchResultItem]:
        """Similarity search restricted to chunks whose row is synced.

        Raises:
            NotFound: If the collection does not exist.
        """
        await self.get_collection(collection_id)
        hits = await self.rag_client.search(collection_id, query_vector, limit=limit, filter=filter)
        if not hits:
            return []
        chunks = await self.store.get_chunks_by_point_ids([hit.point_id for hit in hits])
        synced = {chunk.point_id for chunk in chunks if chunk.status == ChunkStatus.SYNCED}
        return [hit for hit in hits if hit.point_id in synced]

    async def search_text(
        self, collection_id: str, query: str, limit: int | None = None, filter: dict[str, Any] | None = None
    ) -> list[SearchResultItem]:
        """Embed a natural language query and search with the resulting vector."""
        if not (query or "").strip():
            raise InvalidInput("Query must not be empty.")
        await self.get_collection(collection_id)
        vectors = await self.embed_client.do_embed([query])
        return await self.search(collection_id, vectors[0], limit=limit, filter=filter)

    ##########################################
    ############## MAINTENANCE ###############
    ##########################################

    async def reconcile_collection(self, collection_id: str) -> int:
        """Delete points of a collection that have no chunk row.

        Returns:
            int: The number of points removed.
        """
        await self.get_collection(collection_id)
        index_ids = set(await self.rag_client.get_all_point_ids_in_collection(collection_id))
        row_ids = set(await self.store.list_point_ids(collection_id))
        orphans = sorted(index_ids - row_ids)
        if orphans:
            await self.rag_client.delete_points(collection_id, orphans)
        self.logging.info("Reconciled collection %s: removed %d orphan points", collection_id, len(orphans))
        return len(orphans)

    async def get_sync_stats(self, collection_id: str | None = None) -> dict:
        if collection_id is not None:
            await self.get_collection(collection_id)
        return {
            "documents_by_status": await self.store.count_documents_by_status(collection_id),
            "active_jobs": len(self.queue.active_jobs()),
            "active_batches": len(self.progress.list_active()),
            "retries": self.retry_policy.stats.as_dict(),
        }

    ##########################################
    ########### BACKGROUND TASKS #############
    ##########################################

    def _spawn(self, coro: Coroutine, description: str) -> asyncio.Task:
        task = asyncio.create_task(coro)
        self._tasks.add(task)

        def _done(finished: asyncio.Task) -> None:
            self._tasks.discard(finished)
            if finished.cancelled():
                return
            exc = finished.exception()
            if exc is not None:
                self.logging.error("Background %s failed: %s", description, exc)

        task.add_done_callback(_done)
        return task

    async def shutdown(self) -> None:
        """Cancel background work and wait for it to unwind."""
        tasks = list(self._tasks)
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
