"""Pydantic models for search requests and responses."""

from pydantic import BaseModel


class SearchRequest(BaseModel):
    """Incoming natural language search query."""

    collection_id: str
    query: str
    limit: int | None = None
    filter: dict | None = None


class SearchResultItem(BaseModel):
    """A single chunk returned from the vector index."""

    point_id: str
    content: str
    score: float
    doc_id: str
    collection_id: str
    chunk_index: int
    title_chain: list[str] = []


class SearchResponse(BaseModel):
    """Response payload returned after a search."""

    query: str
    results: list[SearchResultItem]
    total: int
