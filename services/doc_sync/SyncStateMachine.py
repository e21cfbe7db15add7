import asyncio
from typing import Awaitable, Callable

from services.doc_sync.Chunker import Chunker
from services.doc_sync.RetryPolicy import RetryPolicy
from shared.clients.embed.EmbedClientInterface import EmbedClientInterface
from shared.clients.rag.RAGClientInterface import RAGClientInterface
from shared.clients.rag.models.VectorPoint import build_point
from shared.errors import (
    ChunkingError,
    EmbeddingTransportError,
    FatalSyncError,
    IndexUnavailable,
    NotFound,
    is_retryable,
)
from shared.helper.HelperConfig import HelperConfig
from shared.models.document import Chunk, ChunkStatus, Document, DocumentStatus, SyncJob
from shared.store.DocumentStoreInterface import DocumentStoreInterface


class SyncStateMachine:
    """Drives one document through split, embed and upsert.

    Document states: new -> split_ok -> embed_ok -> synced, with failed and
    retrying between attempts and dead as the terminal failure state. Every
    attempt re-splits the text and reuses chunks whose hash is unchanged and
    which already hold an embedding, so a retry only redoes missing work.
    """

    def __init__(
        self,
        helper_config: HelperConfig,
        store: DocumentStoreInterface,
        embed_client: EmbedClientInterface,
        rag_client: RAGClientInterface,
        chunker: Chunker,
        retry_policy: RetryPolicy,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self.logging = helper_config.get_logger()
        self.store = store
        self.embed_client = embed_client
        self.rag_client = rag_client
        self.chunker = chunker
        self.retry_policy = retry_policy
        self._sleep = sleep
        self.chunk_concurrency = int(helper_config.get_number_val("SYNC_CHUNK_CONCURRENCY", default=4))
        self.call_timeout = float(helper_config.get_number_val("SYNC_CALL_TIMEOUT", default=60))

    ##########################################
    ################## RUN ###################
    ##########################################

    async def run(self, job: SyncJob) -> Document:
        """Synchronise the job's document, retrying retryable failures with backoff.

        Args:
            job (SyncJob): The active job for the document. retry_count and error are updated in place.

        Returns:
            Document: The document in status synced.

        Raises:
            NotFound: If the document no longer exists.
            FatalSyncError: If a fatal error occurred; the document is dead.
            Exception: The last retryable error once retries are exhausted; the document is dead.
        """
        document = await self._load(job.doc_id)
        retried = False
        while True:
            try:
                await self._run_stages(document)
                self.retry_policy.record_outcome(retried=retried, succeeded=True)
                return document
            except Exception as exc:
                error_message = str(exc) or type(exc).__name__
                job.error = error_message
                if not is_retryable(exc):
                    self.retry_policy.record_outcome(retried=retried, succeeded=False, fatal=True)
                    await self._mark_dead(document, error_message)
                    self.logging.error("Document %s failed with a fatal error: %s", document.doc_id, error_message)
                    raise

                await self._set_status(document, DocumentStatus.FAILED, error_message)
                if not self.retry_policy.should_retry(exc, job.retry_count):
                    self.retry_policy.record_outcome(retried=retried, succeeded=False)
                    await self._mark_dead(document, error_message)
                    self.logging.error(
                        "Document %s is dead after %d retries: %s", document.doc_id, job.retry_count, error_message
                    )
                    raise

                job.retry_count += 1
                await self.store.save_sync_job(job)
                self.retry_policy.record_retry(exc)
                retried = True
                delay = self.retry_policy.delay(job.retry_count)
                self.logging.warning(
                    "Sync of document %s failed (%s), retry %d/%d in %.2fs",
                    document.doc_id, error_message, job.retry_count, self.retry_policy.max_retries, delay,
                )
                await self._set_status(document, DocumentStatus.RETRYING)
                await self._sleep(delay)

    async def _run_stages(self, document: Document) -> None:
        chunks = await self._split_stage(document)
        await self._embed_stage(document, chunks)
        await self._upsert_stage(document, chunks)

    ##########################################
    ################# STAGES #################
    ##########################################

    async def _split_stage(self, document: Document) -> list[Chunk]:
        """Re-split the text and merge with stored chunks. Ends in split_ok."""
        if document.content is None:
            raise ChunkingError(f"Document {document.doc_id} has no extracted text.")
        fresh = self.chunker.split(document.doc_id, document.collection_id, document.content, name=document.name)
        existing = {chunk.chunk_index: chunk for chunk in await self.store.get_chunks(document.doc_id)}

        chunks: list[Chunk] = []
        for chunk in fresh:
            previous = existing.get(chunk.chunk_index)
            if previous is not None and previous.content_hash == chunk.content_hash and previous.is_reusable():
                if previous.title_chain != chunk.title_chain:
                    # payload changed, the stored embedding is still valid
                    previous.title_chain = chunk.title_chain
                    previous.status = ChunkStatus.EMBEDDING_GENERATED
                chunks.append(previous)
            else:
                chunks.append(chunk)

        # a shrinking document leaves chunk positions behind
        stale = [chunk.point_id for index, chunk in existing.items() if index >= len(fresh)]
        if stale:
            await self._call(
                self.rag_client.delete_points(document.collection_id, stale), IndexUnavailable, "stale point delete"
            )
            await self.store.delete_chunks(stale)
            self.logging.info("Removed %d stale chunks of document %s", len(stale), document.doc_id)

        await self.store.save_chunks(chunks)
        await self._set_status(document, DocumentStatus.SPLIT_OK)
        return chunks

    async def _embed_stage(self, document: Document, chunks: list[Chunk]) -> None:
        """Embed every chunk lacking a current embedding. Ends in embed_ok once all are embedded."""
        pending = [chunk for chunk in chunks if not chunk.is_reusable()]
        if pending:
            semaphore = asyncio.Semaphore(self.chunk_concurrency)

            async def _embed(chunk: Chunk) -> Exception | None:
                async with semaphore:
                    try:
                        vectors = await self._call(
                            self.embed_client.do_embed([chunk.content]), EmbeddingTransportError, "embedding"
                        )
                    except Exception as exc:
                        chunk.status = ChunkStatus.FAILED
                        chunk.embedding = None
                        return exc
                    chunk.embedding = vectors[0]
                    chunk.status = ChunkStatus.EMBEDDING_GENERATED
                    return None

            outcomes = await asyncio.gather(*(_embed(chunk) for chunk in pending))
            await self.store.save_chunks(pending)
            errors = [outcome for outcome in outcomes if outcome is not None]
            if errors:
                self.logging.warning(
                    "Embedding failed for %d of %d chunks of document %s", len(errors), len(pending), document.doc_id
                )
                raise self._pick_error(errors)
            self.logging.debug("Embedded %d chunks of document %s", len(pending), document.doc_id)

        await self._set_status(document, DocumentStatus.EMBED_OK)

    async def _upsert_stage(self, document: Document, chunks: list[Chunk]) -> None:
        """Upsert every chunk not yet synced. Ends in synced only when all chunks are synced."""
        pending = [chunk for chunk in chunks if chunk.status != ChunkStatus.SYNCED]
        if pending:
            points = [build_point(chunk) for chunk in pending]
            try:
                await self._call(
                    self.rag_client.upsert_collection(document.collection_id, points), IndexUnavailable, "upsert"
                )
            except Exception:
                for chunk in pending:
                    chunk.status = ChunkStatus.FAILED
                await self.store.save_chunks(pending)
                raise
            for chunk in pending:
                chunk.status = ChunkStatus.SYNCED
            await self.store.save_chunks(pending)

        if not all(chunk.status == ChunkStatus.SYNCED for chunk in chunks):
            raise IndexUnavailable(f"Document {document.doc_id} has chunks that were not upserted.")
        await self._set_status(document, DocumentStatus.SYNCED)
        self.logging.info(
            "Document %s synced (%d chunks, %d upserted)", document.doc_id, len(chunks), len(pending)
        )

    ##########################################
    ################ HELPERS #################
    ##########################################

    async def _call(self, awaitable: Awaitable, timeout_error: type[Exception], what: str):
        try:
            return await asyncio.wait_for(awaitable, timeout=self.call_timeout)
        except asyncio.TimeoutError as exc:
            raise timeout_error(f"{what} timed out after {self.call_timeout:.1f}s") from exc

    @staticmethod
    def _pick_error(errors: list[Exception]) -> Exception:
        # a fatal chunk error decides the outcome of the whole document
        for error in errors:
            if isinstance(error, FatalSyncError):
                return error
        return errors[0]

    async def _load(self, doc_id: str) -> Document:
        document = await self.store.get_document(doc_id)
        if document is None:
            raise NotFound(f"Document {doc_id} not found.")
        return document

    async def _set_status(self, document: Document, status: DocumentStatus, error_message: str | None = None) -> None:
        document.status = status
        document.error_message = error_message if status in (DocumentStatus.FAILED, DocumentStatus.DEAD) else None
        document.touch()
        await self.store.save_document(document)

    async def _mark_dead(self, document: Document, error_message: str) -> None:
        await self._set_status(document, DocumentStatus.DEAD, error_message)
