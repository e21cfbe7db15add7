import asyncio
import os
import sqlite3
from contextlib import closing
from typing import Any, Callable, TypeVar

from shared.errors import ConflictError, NotFound
from shared.helper.HelperConfig import HelperConfig
from shared.models.batch import BatchHistoryEntry
from shared.models.document import Chunk, Collection, Document, DocumentStatus, SyncJob
from shared.store.DocumentStoreInterface import DocumentStoreInterface

T = TypeVar("T")

_SCHEMA = """
CREATE TABLE IF NOT EXISTS collections (
    collection_id TEXT PRIMARY KEY,
    name          TEXT NOT NULL UNIQUE,
    created_at    TEXT NOT NULL,
    data          TEXT NOT NULL
);
CREATE TABLE IF NOT EXISTS documents (
    doc_id        TEXT PRIMARY KEY,
    collection_id TEXT NOT NULL REFERENCES collections(collection_id) ON DELETE CASCADE,
    name          TEXT NOT NULL,
    status        TEXT NOT NULL,
    created_at    TEXT NOT NULL,
    data          TEXT NOT NULL,
    UNIQUE (collection_id, name)
);
CREATE TABLE IF NOT EXISTS chunks (
    point_id      TEXT PRIMARY KEY,
    doc_id        TEXT NOT NULL REFERENCES documents(doc_id) ON DELETE CASCADE,
    collection_id TEXT NOT NULL,
    chunk_index   INTEGER NOT NULL,
    data          TEXT NOT NULL
);
CREATE INDEX IF NOT EXISTS idx_chunks_doc ON chunks(doc_id);
CREATE INDEX IF NOT EXISTS idx_chunks_collection ON chunks(collection_id);
CREATE TABLE IF NOT EXISTS sync_jobs (
    job_id        TEXT PRIMARY KEY,
    doc_id        TEXT NOT NULL REFERENCES documents(doc_id) ON DELETE CASCADE,
    created_at    TEXT NOT NULL,
    data          TEXT NOT NULL
);
CREATE INDEX IF NOT EXISTS idx_sync_jobs_doc ON sync_jobs(doc_id);
CREATE TABLE IF NOT EXISTS batch_history (
    batch_id      TEXT PRIMARY KEY,
    started_at    TEXT NOT NULL,
    data          TEXT NOT NULL
);
"""


class DocumentStoreSqlite(DocumentStoreInterface):
    """SQLite backed store.

    Every model is kept as JSON in a data column; the other columns exist for
    lookups, uniqueness and cascading deletes. Each operation opens its own
    connection in a worker thread so the event loop never blocks.
    """

    def __init__(self, helper_config: HelperConfig):
        super().__init__(helper_config=helper_config)
        self.db_path = helper_config.get_string_val("STORE_SQLITE_PATH", default=os.path.join(os.getenv("ROOT_DIR", os.getcwd()), "data", "doc_sync.sqlite3"))

    def _get_engine_name(self) -> str:
        return "Sqlite"

    ##########################################
    ############### LIFECYCLE ################
    ##########################################

    async def boot(self) -> None:
        directory = os.path.dirname(self.db_path)
        if directory:
            os.makedirs(directory, exist_ok=True)

        def _create(conn: sqlite3.Connection) -> None:
            conn.executescript(_SCHEMA)

        await self._run(_create)
        self.logging.info("SQLite store ready at %s", self.db_path)

    ##########################################
    ################ HELPERS #################
    ##########################################

    def _connect(self) -> sqlite3.Connection:
        connection = sqlite3.connect(self.db_path)
        connection.row_factory = sqlite3.Row
        connection.execute("PRAGMA foreign_keys = ON")
        return connection

    async def _run(self, fn: Callable[[sqlite3.Connection], T]) -> T:
        def _work() -> T:
            with closing(self._connect()) as conn:
                with conn:
                    return fn(conn)

        return await asyncio.to_thread(_work)

    async def _fetch(self, sql: str, params: tuple | list = ()) -> list[sqlite3.Row]:
        return await self._run(lambda conn: conn.execute(sql, params).fetchall())

    async def _execute(self, sql: str, params: tuple | list = ()) -> None:
        await self._run(lambda conn: conn.execute(sql, params))

    @staticmethod
    def _placeholders(values: list[Any]) -> str:
        return ",".join("?" for _ in values)

    ##########################################
    ############## COLLECTIONS ###############
    ##########################################

    async def save_collection(self, collection: Collection) -> None:
        try:
            await self._execute(
                "INSERT INTO collections (collection_id, name, created_at, data) VALUES (?, ?, ?, ?) "
                "ON CONFLICT(collection_id) DO UPDATE SET name = excluded.name, data = excluded.data",
                (collection.collection_id, collection.name, collection.created_at.isoformat(), collection.model_dump_json()),
            )
        except sqlite3.IntegrityError as exc:
            raise ConflictError(f"Collection '{collection.name}' already exists.") from exc

    async def get_collection(self, collection_id: str) -> Collection | None:
        rows = await self._fetch("SELECT data FROM collections WHERE collection_id = ?", (collection_id,))
        return Collection.model_validate_json(rows[0]["data"]) if rows else None

    async def get_collection_by_name(self, name: str) -> Collection | None:
        rows = await self._fetch("SELECT data FROM collections WHERE name = ?", (name,))
        return Collection.model_validate_json(rows[0]["data"]) if rows else None

    async def list_collections(self) -> list[Collection]:
        rows = await self._fetch("SELECT data FROM collections ORDER BY created_at")
        return [Collection.model_validate_json(row["data"]) for row in rows]

    async def delete_collection(self, collection_id: str) -> None:
        await self._execute("DELETE FROM collections WHERE collection_id = ?", (collection_id,))

    ##########################################
    ############### DOCUMENTS ################
    ##########################################

    async def save_document(self, document: Document) -> None:
        try:
            await self._execute(
                "INSERT INTO documents (doc_id, collection_id, name, status, created_at, data) VALUES (?, ?, ?, ?, ?, ?) "
                "ON CONFLICT(doc_id) DO UPDATE SET name = excluded.name, status = excluded.status, data = excluded.data",
                (
                    document.doc_id,
                    document.collection_id,
                    document.name,
                    document.status.value,
                    document.created_at.isoformat(),
                    document.model_dump_json(),
                ),
            )
        except sqlite3.IntegrityError as exc:
            if "FOREIGN KEY" in str(exc):
                raise NotFound(f"Collection {document.collection_id} not found.") from exc
            raise ConflictError(f"Document '{document.name}' already exists in collection {document.collection_id}.") from exc

    async def get_document(self, doc_id: str) -> Document | None:
        rows = await self._fetch("SELECT data FROM documents WHERE doc_id = ?", (doc_id,))
        return Document.model_validate_json(rows[0]["data"]) if rows else None

    async def get_document_by_name(self, collection_id: str, name: str) -> Document | None:
        rows = await self._fetch("SELECT data FROM documents WHERE collection_id = ? AND name = ?", (collection_id, name))
        return Document.model_validate_json(rows[0]["data"]) if rows else None

    async def list_documents(self, collection_id: str | None = None, status: DocumentStatus | None = None) -> list[Document]:
        clauses: list[str] = []
        params: list[Any] = []
        if collection_id is not None:
            clauses.append("collection_id = ?")
            params.append(collection_id)
        if status is not None:
            clauses.append("status = ?")
            params.append(status.value)
        where = f" WHERE {' AND '.join(clauses)}" if clauses else ""
        rows = await self._fetch(f"SELECT data FROM documents{where} ORDER BY created_at", params)
        return [Document.model_validate_json(row["data"]) for row in rows]

    async def delete_document(self, doc_id: str) -> None:
        await self._execute("DELETE FROM documents WHERE doc_id = ?", (doc_id,))

    ##########################################
    ################ CHUNKS ##################
    ##########################################

    async def save_chunks(self, chunks: list[Chunk]) -> None:
        if not chunks:
            return
        params = [
            (c.point_id, c.doc_id, c.collection_id, c.chunk_index, c.model_dump_json())
            for c in chunks
        ]
        try:
            await self._run(lambda conn: conn.executemany(
                "INSERT INTO chunks (point_id, doc_id, collection_id, chunk_index, data) VALUES (?, ?, ?, ?, ?) "
                "ON CONFLICT(point_id) DO UPDATE SET chunk_index = excluded.chunk_index, data = excluded.data",
                params,
            ))
        except sqlite3.IntegrityError as exc:
            raise NotFound(f"Document {chunks[0].doc_id} not found.") from exc

    async def get_chunks(self, doc_id: str) -> list[Chunk]:
        rows = await self._fetch("SELECT data FROM chunks WHERE doc_id = ? ORDER BY chunk_index", (doc_id,))
        return [Chunk.model_validate_json(row["data"]) for row in rows]

    async def get_chunks_by_point_ids(self, point_ids: list[str]) -> list[Chunk]:
        if not point_ids:
            return []
        rows = await self._fetch(f"SELECT data FROM chunks WHERE point_id IN ({self._placeholders(point_ids)})", point_ids)
        return [Chunk.model_validate_json(row["data"]) for row in rows]

    async def delete_chunks(self, point_ids: list[str]) -> None:
        if not point_ids:
            return
        await self._execute(f"DELETE FROM chunks WHERE point_id IN ({self._placeholders(point_ids)})", point_ids)

    async def list_point_ids(self, collection_id: str) -> list[str]:
        rows = await self._fetch("SELECT point_id FROM chunks WHERE collection_id = ?", (collection_id,))
        return [row["point_id"] for row in rows]

    ##########################################
    ############### SYNC JOBS ################
    ##########################################

    async def save_sync_job(self, job: SyncJob) -> None:
        try:
            await self._execute(
                "INSERT INTO sync_jobs (job_id, doc_id, created_at, data) VALUES (?, ?, ?, ?) "
                "ON CONFLICT(job_id) DO UPDATE SET data = excluded.data",
                (job.job_id, job.doc_id, job.created_at.isoformat(), job.model_dump_json()),
            )
        except sqlite3.IntegrityError as exc:
            raise NotFound(f"Document {job.doc_id} not found.") from exc

    async def list_sync_jobs(self, doc_id: str | None = None) -> list[SyncJob]:
        if doc_id is None:
            rows = await self._fetch("SELECT data FROM sync_jobs ORDER BY created_at DESC")
        else:
            rows = await self._fetch("SELECT data FROM sync_jobs WHERE doc_id = ? ORDER BY created_at DESC", (doc_id,))
        return [SyncJob.model_validate_json(row["data"]) for row in rows]

    ##########################################
    ############ BATCH HISTORY ###############
    ##########################################

    async def save_batch_history(self, entry: BatchHistoryEntry) -> None:
        await self._execute(
            "INSERT INTO batch_history (batch_id, started_at, data) VALUES (?, ?, ?) "
            "ON CONFLICT(batch_id) DO UPDATE SET data = excluded.data",
            (entry.batch_id, entry.started_at.isoformat(), entry.model_dump_json()),
        )

    async def list_batch_history(self, limit: int = 50) -> list[BatchHistoryEntry]:
        rows = await self._fetch("SELECT data FROM batch_history ORDER BY started_at DESC LIMIT ?", (limit,))
        return [BatchHistoryEntry.model_validate_json(row["data"]) for row in rows]
