"""Collection router: create, list, delete and reconcile collections, and upload single documents."""

from fastapi import APIRouter, Depends, Request
from fastapi.responses import JSONResponse

from server.api.models.requests import CollectionCreateRequest, DocumentCreateRequest
from shared.dependencies.auth import verify_api_key

collection_router = APIRouter(prefix="/collections", tags=["Collections"])


@collection_router.post("", dependencies=[Depends(verify_api_key)], status_code=201)
async def create_collection(request: Request, body: CollectionCreateRequest) -> JSONResponse:
    collection = await request.app.state.sync_service.create_collection(body.name, body.description)
    return JSONResponse(status_code=201, content=collection.model_dump(mode="json"))


@collection_router.get("", dependencies=[Depends(verify_api_key)])
async def list_collections(request: Request) -> JSONResponse:
    collections = await request.app.state.sync_service.list_collections()
    return JSONResponse(content=[c.model_dump(mode="json") for c in collections])


@collection_router.get("/{collection_id}", dependencies=[Depends(verify_api_key)])
async def get_collection(request: Request, collection_id: str) -> JSONResponse:
    collection = await request.app.state.sync_service.get_collection(collection_id)
    return JSONResponse(content=collection.model_dump(mode="json"))


@collection_router.delete("/{collection_id}", dependencies=[Depends(verify_api_key)])
async def delete_collection(request: Request, collection_id: str) -> JSONResponse:
    """Delete a collection with all its documents, chunks and points."""
    await request.app.state.sync_service.delete_collection(collection_id)
    request.app.state.logging.info("Collection %s deleted via API", collection_id)
    return JSONResponse(content={"status": "deleted", "collection_id": collection_id})


@collection_router.post("/{collection_id}/reconcile", dependencies=[Depends(verify_api_key)])
async def reconcile_collection(request: Request, collection_id: str) -> JSONResponse:
    removed = await request.app.state.sync_service.reconcile_collection(collection_id)
    return JSONResponse(content={"collection_id": collection_id, "removed_points": removed})


@collection_router.post("/{collection_id}/documents", dependencies=[Depends(verify_api_key)], status_code=201)
async def upload_document(request: Request, collection_id: str, body: DocumentCreateRequest, wait: bool = True) -> JSONResponse:
    """Upload one document and sync it.

    With wait=false the sync runs in the background and 202 is returned with the new document.

    Args:
        request (Request): The incoming FastAPI request (carries app state).
        collection_id (str): Target collection.
        body (DocumentCreateRequest): Name, content and mime type of the document.
        wait (bool): Whether to sync before responding.
    """
    document = await request.app.state.sync_service.submit_document(
        collection_id, body.raw_bytes(), body.mime, body.name, key=body.key, wait=wait
    )
    return JSONResponse(status_code=201 if wait else 202, content=document.model_dump(mode="json", exclude={"content"}))
