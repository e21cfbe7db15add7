"""FastAPI application entry point for the document sync API."""

from contextlib import asynccontextmanager
from typing import AsyncGenerator, Callable

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
import os
from server.api.routers.BatchRouter import batch_router
from server.api.routers.CollectionRouter import collection_router
from server.api.routers.DocumentRouter import document_router
from server.api.routers.QueryRouter import query_router
from services.doc_sync.SyncService import SyncService
from shared.clients.embed.EmbedClientManager import EmbedClientManager
from shared.clients.rag.RAGClientManager import RAGClientManager
from shared.errors import (
    BatchRollbackError,
    ConflictError,
    FatalSyncError,
    NotFound,
    RetryableSyncError,
)
from shared.helper.HelperConfig import HelperConfig
from shared.logging.logging_setup import setup_logging
from shared.parsers.DocumentParserManager import DocumentParserManager
from shared.store.DocumentStoreManager import DocumentStoreManager

app_version = os.getenv("APP_VERSION", "unknown")


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """Manage application startup and shutdown."""
    app.state.logging = setup_logging(logger_name="doc_sync.api", log_file="doc_sync_api.log")
    app.state.config = HelperConfig(logger=app.state.logging)

    # Initialise clients
    rag_client = RAGClientManager(helper_config=app.state.config).get_client()
    embed_client = EmbedClientManager(helper_config=app.state.config).get_client()
    store = DocumentStoreManager(helper_config=app.state.config).get_store()
    await rag_client.boot()
    await embed_client.boot()
    await store.boot()

    # Health checks
    await rag_client.do_healthcheck()
    await embed_client.do_healthcheck()
    await rag_client.ensure_collection()

    # Wire up services
    app.state.sync_service = SyncService(
        helper_config=app.state.config,
        store=store,
        rag_client=rag_client,
        embed_client=embed_client,
        parser=DocumentParserManager(helper_config=app.state.config),
    )

    app.state.logging.info("Document sync API ready (store=%s, index=%s).", store.get_engine_name(), rag_client.get_engine_name())
    yield

    # Shutdown
    await app.state.sync_service.shutdown()
    await rag_client.close()
    await embed_client.close()
    await store.close()
    app.state.logging.info("Document sync API shut down.")


def _error(status_code: int, exc: Exception, **extra) -> JSONResponse:
    return JSONResponse(status_code=status_code, content={"error": type(exc).__name__, "detail": str(exc), **extra})


def register_exception_handlers(app: FastAPI) -> None:
    """Map the domain error taxonomy to HTTP status codes."""

    @app.exception_handler(NotFound)
    async def _not_found(request: Request, exc: NotFound) -> JSONResponse:
        return _error(404, exc)

    @app.exception_handler(ConflictError)
    async def _conflict(request: Request, exc: ConflictError) -> JSONResponse:
        return _error(409, exc)

    @app.exception_handler(FatalSyncError)
    async def _fatal(request: Request, exc: FatalSyncError) -> JSONResponse:
        return _error(422, exc)

    @app.exception_handler(RetryableSyncError)
    async def _unavailable(request: Request, exc: RetryableSyncError) -> JSONResponse:
        request.app.state.logging.error("Upstream unavailable while handling %s: %s", request.url.path, exc)
        return _error(503, exc)

    @app.exception_handler(BatchRollbackError)
    async def _rolled_back(request: Request, exc: BatchRollbackError) -> JSONResponse:
        return _error(409, exc, results=[r.model_dump() for r in exc.results], undo_errors=exc.undo_errors)


def create_app(lifespan_handler: Callable = lifespan) -> FastAPI:
    """Build the FastAPI application.

    Args:
        lifespan_handler (Callable): Startup/shutdown context manager that populates app.state.
    """
    app = FastAPI(
        title="Document Sync API",
        description="Collection-scoped document ingestion and synchronisation into a vector index.",
        version=app_version,
        lifespan=lifespan_handler,
    )

    app.add_middleware(
        CORSMiddleware,
        allow_origins=HelperConfig(logger=None).get_list_val("APP_CORS_ORIGINS", default=["*"]),
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    register_exception_handlers(app)
    app.include_router(collection_router)
    app.include_router(document_router)
    app.include_router(batch_router)
    app.include_router(query_router)

    @app.get("/health", tags=["Health"])
    async def health() -> JSONResponse:
        return JSONResponse(content={"status": "ok", "version": app_version})

    return app


app = create_app()


# Server Start
if __name__ == "__main__":
    # start server
    import uvicorn
    logging = setup_logging(logger_name="doc_sync.api", log_file="doc_sync_api.log")
    port = int(os.getenv("APP_PORT", "8000"))
    logging.info(f"Starting Document Sync API Server v{app_version} from root dir: {os.getenv('ROOT_DIR', os.getcwd())} on port {port}...")
    uvicorn.run(app, host="0.0.0.0", port=port)
