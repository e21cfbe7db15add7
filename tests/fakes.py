"""In-memory stand-ins for the embedding client and the vector index gateway."""

import asyncio
import copy
import hashlib
import math

from shared.errors import IndexRequestError
from shared.models.search import SearchResultItem


def vector_for(text: str, dimension: int = 4) -> list[float]:
    """Deterministic non-zero vector for a text."""
    digest = hashlib.sha256(text.encode("utf-8")).digest()
    return [(b + 1) / 256.0 for b in digest[:dimension]]


def cosine(a: list[float], b: list[float]) -> float:
    dot = sum(x * y for x, y in zip(a, b))
    norm = math.sqrt(sum(x * x for x in a)) * math.sqrt(sum(y * y for y in b))
    return dot / norm if norm else 0.0


class FakeEmbedClient:
    """Embedding client returning hash-derived vectors.

    errors:  consumed one per call, None entries let the call through.
    fail_on: any text containing a key raises the mapped exception on every call.
    hang:    number of upcoming calls that block far beyond any test timeout.
    """

    def __init__(self, dimension: int = 4):
        self.dimension = dimension
        self.calls: list[list[str]] = []
        self.errors: list[Exception | None] = []
        self.fail_on: dict[str, Exception] = {}
        self.hang = 0

    async def do_embed(self, texts):
        texts = [texts] if isinstance(texts, str) else list(texts)
        self.calls.append(texts)
        if self.hang > 0:
            self.hang -= 1
            await asyncio.sleep(30)
        if self.errors:
            error = self.errors.pop(0)
            if error is not None:
                raise error
        for marker, error in self.fail_on.items():
            if any(marker in text for text in texts):
                raise error
        return [vector_for(text, self.dimension) for text in texts]

    @property
    def call_count(self) -> int:
        return len(self.calls)


class FakeIndex:
    """Vector index gateway keeping points in a dict, scored by cosine similarity.

    delete_latency: seconds a delete by document or collection keeps running after
    its points are gone, like a slow index response.
    """

    def __init__(self):
        self.points: dict[str, dict] = {}
        self.upsert_errors: list[Exception | None] = []
        self.upsert_calls = 0
        self.deleted: list[str] = []
        self.delete_latency = 0.0

    async def upsert_collection(self, collection_id: str, points: list[dict]) -> None:
        self.upsert_calls += 1
        if self.upsert_errors:
            error = self.upsert_errors.pop(0)
            if error is not None:
                raise error
        for point in points:
            if point["payload"]["collection_id"] != collection_id:
                raise IndexRequestError(f"Point {point['id']} does not belong to collection {collection_id}.")
            self.points[point["id"]] = copy.deepcopy(point)

    async def delete_points(self, collection_id: str, point_ids: list[str]) -> None:
        for point_id in point_ids:
            if self.points.pop(point_id, None) is not None:
                self.deleted.append(point_id)

    async def delete_points_by_doc(self, doc_id: str) -> None:
        await self.delete_points("", [p for p, point in self.points.items() if point["payload"]["doc_id"] == doc_id])
        await self._respond_slowly()

    async def delete_points_by_collection(self, collection_id: str) -> None:
        await self.delete_points(
            collection_id, [p for p, point in self.points.items() if point["payload"]["collection_id"] == collection_id]
        )
        await self._respond_slowly()

    async def _respond_slowly(self) -> None:
        if self.delete_latency:
            await asyncio.sleep(self.delete_latency)

    async def get_all_point_ids_in_collection(self, collection_id: str) -> list[str]:
        return [p for p, point in self.points.items() if point["payload"]["collection_id"] == collection_id]

    async def search(self, collection_id: str, vector: list[float], limit: int | None = None, filter: dict | None = None) -> list[SearchResultItem]:
        conditions = dict(filter or {})
        conditions["collection_id"] = collection_id
        hits = []
        for point_id, point in self.points.items():
            payload = point["payload"]
            if all(payload.get(key) == value for key, value in conditions.items()):
                hits.append(SearchResultItem(
                    point_id=point_id,
                    content=payload["content"],
                    score=cosine(vector, point["vector"]),
                    doc_id=payload["doc_id"],
                    collection_id=payload["collection_id"],
                    chunk_index=payload["chunk_index"],
                    title_chain=payload["title_chain"],
                ))
        hits.sort(key=lambda hit: hit.score, reverse=True)
        return hits[: limit or 20]

    def point_ids_for_doc(self, doc_id: str) -> set[str]:
        return {p for p, point in self.points.items() if point["payload"]["doc_id"] == doc_id}


class RecordingSleep:
    """Replacement for asyncio.sleep that records requested delays and yields once."""

    def __init__(self):
        self.delays: list[float] = []

    async def __call__(self, delay: float) -> None:
        self.delays.append(delay)
        await asyncio.sleep(0)


