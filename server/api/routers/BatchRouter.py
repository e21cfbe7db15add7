"""Batch router: start batch operations and poll or cancel them.

Every start endpoint returns 202 with the initial progress snapshot; the
batch itself runs as a background task on the service.
"""

from fastapi import APIRouter, Depends, Query, Request
from fastapi.responses import JSONResponse

from server.api.models.requests import BatchDeleteRequest, BatchSyncRequest, BatchUpdateRequest, BatchUploadRequest
from shared.dependencies.auth import verify_api_key

batch_router = APIRouter(prefix="/batch", tags=["Batch"])


@batch_router.post("/upload", dependencies=[Depends(verify_api_key)], status_code=202)
async def start_batch_upload(request: Request, body: BatchUploadRequest) -> JSONResponse:
    items = [document.to_upload_item() for document in body.documents]
    progress = await request.app.state.sync_service.start_batch_upload(body.collection_id, items, transactional=body.transactional)
    request.app.state.logging.info("Batch upload %s started with %d documents", progress.batch_id, progress.total)
    return JSONResponse(status_code=202, content=progress.model_dump(mode="json"))


@batch_router.post("/delete", dependencies=[Depends(verify_api_key)], status_code=202)
async def start_batch_delete(request: Request, body: BatchDeleteRequest) -> JSONResponse:
    progress = await request.app.state.sync_service.start_batch_delete(
        doc_ids=body.doc_ids or None,
        collection_ids=body.collection_ids or None,
        transactional=body.transactional,
    )
    return JSONResponse(status_code=202, content=progress.model_dump(mode="json"))


@batch_router.post("/sync", dependencies=[Depends(verify_api_key)], status_code=202)
async def start_batch_sync(request: Request, body: BatchSyncRequest) -> JSONResponse:
    progress = await request.app.state.sync_service.start_batch_sync(body.doc_ids, transactional=body.transactional)
    return JSONResponse(status_code=202, content=progress.model_dump(mode="json"))


@batch_router.post("/update", dependencies=[Depends(verify_api_key)], status_code=202)
async def start_batch_update(request: Request, body: BatchUpdateRequest) -> JSONResponse:
    progress = await request.app.state.sync_service.start_batch_update(body.items, transactional=body.transactional)
    return JSONResponse(status_code=202, content=progress.model_dump(mode="json"))


# declared before /{batch_id} so "history" is not taken for an id
@batch_router.get("/history", dependencies=[Depends(verify_api_key)])
async def list_batch_history(request: Request, limit: int = Query(default=50, ge=1, le=500)) -> JSONResponse:
    entries = await request.app.state.sync_service.list_batch_history(limit)
    return JSONResponse(content=[e.model_dump(mode="json") for e in entries])


@batch_router.get("/{batch_id}", dependencies=[Depends(verify_api_key)])
async def get_batch_progress(request: Request, batch_id: str) -> JSONResponse:
    progress = request.app.state.sync_service.get_batch_progress(batch_id)
    return JSONResponse(content=progress.model_dump(mode="json"))


@batch_router.post("/{batch_id}/cancel", dependencies=[Depends(verify_api_key)])
async def cancel_batch(request: Request, batch_id: str) -> JSONResponse:
    progress = request.app.state.sync_service.cancel_batch(batch_id)
    return JSONResponse(content=progress.model_dump(mode="json"))
