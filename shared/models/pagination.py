"""Canonical paginated list shape returned by list endpoints."""

import math
from typing import Generic, TypeVar

from pydantic import BaseModel

T = TypeVar("T")


class Pagination(BaseModel):
    page: int
    limit: int
    total: int
    total_pages: int
    has_next: bool
    has_prev: bool


class PaginatedResponse(BaseModel, Generic[T]):
    data: list[T]
    pagination: Pagination

    @classmethod
    def from_items(cls, items: list[T], page: int, limit: int) -> "PaginatedResponse[T]":
        """Slice a full item list into one page. page starts at 1."""
        page = max(page, 1)
        limit = max(limit, 1)
        total = len(items)
        total_pages = math.ceil(total / limit) if total else 0
        start = (page - 1) * limit
        return cls(
            data=items[start: start + limit],
            pagination=Pagination(
                page=page,
                limit=limit,
                total=total,
                total_pages=total_pages,
                has_next=page < total_pages,
                has_prev=page > 1,
            ),
        )
