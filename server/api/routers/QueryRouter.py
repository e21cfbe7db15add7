"""Query router: natural language search within one collection."""

from fastapi import APIRouter, Depends, Request
from fastapi.responses import JSONResponse

from shared.dependencies.auth import verify_api_key
from shared.models.search import SearchRequest, SearchResponse

query_router = APIRouter()


@query_router.post(
    "/query",
    dependencies=[Depends(verify_api_key)],
    tags=["Query"],
)
async def handle_query(request: Request, body: SearchRequest) -> JSONResponse:
    """Handle a natural language search request.

    Only chunks whose document rows are synced are returned.

    Args:
        request (Request): The incoming FastAPI request (carries app state).
        body (SearchRequest): Collection, query text, optional limit and payload filter.

    Returns:
        JSONResponse: Matching chunks ordered by descending score.
    """
    request.app.state.logging.info(
        "Query received for collection_id=%s query=%r", body.collection_id, body.query[:80]
    )
    results = await request.app.state.sync_service.search_text(
        body.collection_id, body.query, limit=body.limit, filter=body.filter
    )
    response = SearchResponse(query=body.query, results=results, total=len(results))
    return JSONResponse(content=response.model_dump(mode="json"))
