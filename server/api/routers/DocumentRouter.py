"""Document router: inspect, patch, delete and resync single documents."""

from fastapi import APIRouter, Depends, Query, Request
from fastapi.responses import JSONResponse

from shared.dependencies.auth import verify_api_key
from shared.models.document import DocumentPatch, DocumentStatus

document_router = APIRouter(tags=["Documents"])


@document_router.get("/documents", dependencies=[Depends(verify_api_key)])
async def list_documents(
    request: Request,
    collection_id: str | None = None,
    status: DocumentStatus | None = None,
    page: int = Query(default=1, ge=1),
    limit: int = Query(default=20, ge=1, le=500),
) -> JSONResponse:
    documents = await request.app.state.sync_service.list_documents(collection_id, status, page=page, limit=limit)
    return JSONResponse(content=documents.model_dump(mode="json", exclude={"data": {"__all__": {"content"}}}))


@document_router.get("/documents/{doc_id}", dependencies=[Depends(verify_api_key)])
async def get_document(request: Request, doc_id: str) -> JSONResponse:
    document = await request.app.state.sync_service.get_document(doc_id)
    return JSONResponse(content=document.model_dump(mode="json"))


@document_router.get("/documents/{doc_id}/chunks", dependencies=[Depends(verify_api_key)])
async def list_chunks(request: Request, doc_id: str) -> JSONResponse:
    chunks = await request.app.state.sync_service.list_chunks(doc_id)
    return JSONResponse(content=[c.model_dump(mode="json", exclude={"embedding"}) for c in chunks])


@document_router.patch("/documents/{doc_id}", dependencies=[Depends(verify_api_key)])
async def update_document(request: Request, doc_id: str, body: DocumentPatch) -> JSONResponse:
    """Patch a document. A changed name or content triggers a resync before responding."""
    document = await request.app.state.sync_service.update_document(doc_id, body)
    return JSONResponse(content=document.model_dump(mode="json", exclude={"content"}))


@document_router.delete("/documents/{doc_id}", dependencies=[Depends(verify_api_key)])
async def delete_document(request: Request, doc_id: str) -> JSONResponse:
    await request.app.state.sync_service.delete_document(doc_id)
    return JSONResponse(content={"status": "deleted", "doc_id": doc_id})


@document_router.post("/documents/{doc_id}/resync", dependencies=[Depends(verify_api_key)])
async def resync_document(request: Request, doc_id: str, wait: bool = False, reject_if_busy: bool = False) -> JSONResponse:
    """Re-drive a document through the sync pipeline.

    Args:
        request (Request): The incoming FastAPI request (carries app state).
        doc_id (str): The document to resync.
        wait (bool): Respond after the sync finished instead of immediately.
        reject_if_busy (bool): Answer 409 instead of queueing behind an active job.
    """
    document = await request.app.state.sync_service.resync_document(doc_id, wait=wait, reject_if_busy=reject_if_busy)
    return JSONResponse(
        status_code=200 if wait else 202,
        content=document.model_dump(mode="json", exclude={"content"}),
    )


@document_router.get("/sync/jobs", dependencies=[Depends(verify_api_key)])
async def list_sync_jobs(request: Request, doc_id: str | None = None) -> JSONResponse:
    jobs = await request.app.state.sync_service.list_sync_jobs(doc_id)
    return JSONResponse(content=[j.model_dump(mode="json") for j in jobs])


@document_router.get("/sync/stats", dependencies=[Depends(verify_api_key)])
async def get_sync_stats(request: Request, collection_id: str | None = None) -> JSONResponse:
    stats = await request.app.state.sync_service.get_sync_stats(collection_id)
    return JSONResponse(content=stats)
