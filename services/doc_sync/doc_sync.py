"""Folder sync runner entry point.

Mirrors a local folder into one collection: new files are uploaded, files
whose text changed are updated and resynced, and orphan points are
reconciled at the end.

Usage:
    SYNC_SOURCE_DIR=./docs SYNC_COLLECTION=handbook python -m services.doc_sync.doc_sync
"""

import asyncio
import mimetypes
import os

from services.doc_sync.SyncService import SyncService
from shared.clients.embed.EmbedClientManager import EmbedClientManager
from shared.clients.rag.RAGClientManager import RAGClientManager
from shared.errors import SyncError
from shared.helper.HelperConfig import HelperConfig
from shared.logging.logging_setup import setup_logging
from shared.models.batch import UpdateItem, UploadItem
from shared.models.document import DocumentPatch
from shared.parsers.DocumentParserManager import DocumentParserManager
from shared.store.DocumentStoreManager import DocumentStoreManager


def collect_files(source_dir: str, extensions: list[str]) -> list[tuple[str, str]]:
    """List files below source_dir as (relative name, absolute path), sorted by name."""
    files: list[tuple[str, str]] = []
    for root, _, names in os.walk(source_dir):
        for file_name in names:
            if extensions and os.path.splitext(file_name)[1].lower() not in extensions:
                continue
            path = os.path.join(root, file_name)
            files.append((os.path.relpath(path, source_dir).replace(os.sep, "/"), path))
    return sorted(files)


def guess_mime(path: str) -> str:
    if path.lower().endswith(".md"):
        return "text/markdown"
    return mimetypes.guess_type(path)[0] or "text/plain"


async def sync_folder(service: SyncService, config: HelperConfig, source_dir: str, collection_name: str) -> None:
    """Upload new files, update changed ones and reconcile the collection."""
    logger = config.get_logger()
    transactional = config.get_bool_val("SYNC_TRANSACTIONAL", default=False)
    extensions = [e.lower() for e in config.get_list_val("SYNC_SOURCE_EXTENSIONS", default=[".md", ".txt"])]

    collection = next((c for c in await service.list_collections() if c.name == collection_name), None)
    if collection is None:
        collection = await service.create_collection(collection_name, description=f"Mirror of {source_dir}")

    existing = {d.name: d for d in (await service.list_documents(collection.collection_id, limit=1_000_000)).data}
    uploads: list[UploadItem] = []
    updates: list[UpdateItem] = []
    for name, path in collect_files(source_dir, extensions):
        with open(path, "rb") as f:
            raw = f.read()
        mime = guess_mime(path)
        document = existing.get(name)
        if document is None:
            uploads.append(UploadItem(name=name, mime=mime, content=raw, key=path))
            continue
        try:
            text = service.parser.extract_text(raw, mime)
        except SyncError as e:
            logger.warning("Skipping %s: %s", name, e)
            continue
        if text != document.content:
            updates.append(UpdateItem(doc_id=document.doc_id, patch=DocumentPatch(content=text)))

    logger.info("Folder %s: %d new, %d changed, %d known files", source_dir, len(uploads), len(updates), len(existing), color="cyan")
    if uploads:
        result = await service.batch_upload(collection.collection_id, uploads, transactional=transactional)
        logger.info("Upload batch: %d/%d successful", result.successful, result.total, color="green" if result.success else "yellow")
        for item in result.results:
            if not item.success:
                logger.warning("Upload of %s failed: %s", item.id, item.error)
    if updates:
        result = await service.batch_update(updates, transactional=transactional)
        logger.info("Update batch: %d/%d successful", result.successful, result.total, color="green" if result.success else "yellow")

    removed = await service.reconcile_collection(collection.collection_id)
    logger.info("Sync of '%s' done, %d orphan points removed", collection_name, removed, color="green")


async def main() -> None:
    """Run the folder synchronisation."""
    logger = setup_logging(logger_name="doc_sync.runner", log_file="doc_sync_runner.log")
    config = HelperConfig(logger=logger)
    source_dir = config.get_string_val("SYNC_SOURCE_DIR")
    collection_name = config.get_string_val("SYNC_COLLECTION")

    rag_client = RAGClientManager(helper_config=config).get_client()
    embed_client = EmbedClientManager(helper_config=config).get_client()
    store = DocumentStoreManager(helper_config=config).get_store()
    parser = DocumentParserManager(helper_config=config)

    try:
        # embed client and rag client are both required
        try:
            await embed_client.boot()
            await embed_client.do_healthcheck()
        except Exception as e:
            logger.error("Error booting Embed client %s: %s. Aborting.", embed_client.get_engine_name(), e)
            return
        try:
            await rag_client.boot()
            await rag_client.do_healthcheck()
        except Exception as e:
            logger.error("Error booting RAG client %s: %s. Aborting.", rag_client.get_engine_name(), e)
            return

        try:
            vector_size, _ = await embed_client.do_fetch_embedding_vector_size()
            if vector_size != rag_client.get_vector_size():
                logger.error(
                    "Embedding model produces %d dimensions but the index expects %d. Aborting.",
                    vector_size, rag_client.get_vector_size(),
                )
                return
        except Exception as e:
            logger.warning("Could not verify embedding vector size: %s", e)

        await store.boot()
        service = SyncService(
            helper_config=config,
            store=store,
            rag_client=rag_client,
            embed_client=embed_client,
            parser=parser,
        )
        await sync_folder(service, config, source_dir, collection_name)
    finally:
        await embed_client.close()
        await rag_client.close()
        await store.close()


if __name__ == "__main__":
    asyncio.run(main())
