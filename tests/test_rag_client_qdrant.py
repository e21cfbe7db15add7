"""Tests for the Qdrant vector index gateway against a mocked HTTP transport."""

import json

import httpx
import pytest

from shared.clients.rag.RAGClientManager import RAGClientManager
from shared.clients.rag.qdrant.RAGClientQdrant import RAGClientQdrant
from shared.errors import IndexRequestError, IndexUnavailable, is_retryable

BASE = "/collections/doc_sync_chunks"


class QdrantStub:
    """Mock transport handler answering Qdrant REST calls.

    routes maps (method, path) to a JSON body or an httpx.Response; unknown
    routes answer 404.
    """

    def __init__(self, routes: dict | None = None):
        self.routes = routes or {}
        self.requests: list[httpx.Request] = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        answer = self.routes.get((request.method, request.url.path))
        if callable(answer):
            answer = answer(request)
        if answer is None:
            return httpx.Response(404, json={"status": {"error": "Not found"}})
        if isinstance(answer, httpx.Response):
            return answer
        return httpx.Response(200, json=answer)

    def calls(self, method: str, path: str) -> list[httpx.Request]:
        return [r for r in self.requests if r.method == method and r.url.path == path]


def body(request: httpx.Request) -> dict:
    return json.loads(request.content)


def point(point_id: str, collection_id: str = "col-1") -> dict:
    return {
        "id": point_id,
        "vector": [0.1, 0.2, 0.3, 0.4],
        "payload": {"doc_id": "doc-1", "collection_id": collection_id, "chunk_index": 0, "content": "x", "content_hash": "h", "title_chain": []},
    }


async def booted(helper_config, stub: QdrantStub) -> RAGClientQdrant:
    client = RAGClientQdrant(helper_config)
    await client.boot(transport=httpx.MockTransport(stub))
    return client


class TestCollectionLifecycle:
    """Tests for creating the backend collection on demand."""

    @pytest.mark.asyncio
    async def test_missing_collection_is_created_with_indexes(self, helper_config):
        """Test the collection and its payload indexes are created once."""
        stub = QdrantStub({
            ("GET", f"{BASE}/exists"): {"result": {"exists": False}},
            ("PUT", BASE): {"result": True},
            ("PUT", f"{BASE}/index"): {"result": {"status": "acknowledged"}},
        })
        client = await booted(helper_config, stub)

        await client.ensure_collection("col-1")
        await client.ensure_collection("col-1")

        [create] = stub.calls("PUT", BASE)
        assert body(create) == {"vectors": {"size": 4, "distance": "Cosine"}}
        assert [body(r)["field_name"] for r in stub.calls("PUT", f"{BASE}/index")] == ["collection_id", "doc_id"]
        assert len(stub.calls("GET", f"{BASE}/exists")) == 1
        await client.close()

    def test_manager_resolves_qdrant(self, helper_config):
        """Test the manager builds the client named by RAG_ENGINE."""
        client = RAGClientManager(helper_config).get_client()

        assert isinstance(client, RAGClientQdrant)
        assert client.get_engine_name() == "qdrant"

    def test_manager_rejects_unknown_engine(self, helper_config, monkeypatch):
        """Test an unknown engine name is a configuration error."""
        monkeypatch.setenv("RAG_ENGINE", "pinecone")
        with pytest.raises(ValueError, match="Unsupported RAG engine"):
            RAGClientManager(helper_config)


class TestUpsert:
    """Tests for batched point upserts."""

    @pytest.mark.asyncio
    async def test_points_are_sent_in_batches(self, helper_config, monkeypatch):
        """Test upserts are split by UPSERT_BATCH_SIZE and wait for persistence."""
        monkeypatch.setenv("UPSERT_BATCH_SIZE", "2")
        stub = QdrantStub({
            ("GET", f"{BASE}/exists"): {"result": {"exists": True}},
            ("PUT", f"{BASE}/points"): {"result": {"status": "completed"}},
        })
        client = await booted(helper_config, stub)

        await client.upsert_collection("col-1", [point(f"p{i}") for i in range(5)])

        upserts = stub.calls("PUT", f"{BASE}/points")
        assert [len(body(r)["points"]) for r in upserts] == [2, 2, 1]
        assert all(r.url.params["wait"] == "true" for r in upserts)

    @pytest.mark.asyncio
    async def test_foreign_points_are_rejected(self, helper_config):
        """Test a point tagged with another collection is never sent."""
        stub = QdrantStub()
        client = await booted(helper_config, stub)

        with pytest.raises(IndexRequestError) as exc_info:
            await client.upsert_collection("col-1", [point("p1", collection_id="col-2")])
        assert not is_retryable(exc_info.value)
        assert stub.requests == []

    @pytest.mark.asyncio
    @pytest.mark.parametrize("status, error", [(503, IndexUnavailable), (429, IndexUnavailable), (400, IndexRequestError)])
    async def test_error_statuses_are_mapped(self, helper_config, status, error):
        """Test service errors are retryable and request errors are fatal."""
        stub = QdrantStub({
            ("GET", f"{BASE}/exists"): {"result": {"exists": True}},
            ("PUT", f"{BASE}/points"): httpx.Response(status, text="boom"),
        })
        client = await booted(helper_config, stub)

        with pytest.raises(error):
            await client.upsert_collection("col-1", [point("p1")])

    @pytest.mark.asyncio
    async def test_unreachable_index(self, helper_config):
        """Test a connection failure surfaces as IndexUnavailable."""

        def _refuse(request):
            raise httpx.ConnectError("connection refused", request=request)

        client = RAGClientQdrant(helper_config)
        await client.boot(transport=httpx.MockTransport(_refuse))

        with pytest.raises(IndexUnavailable):
            await client.upsert_collection("col-1", [point("p1")])


class TestSearchAndDelete:
    """Tests for scoped search, deletes and point listing."""

    @pytest.mark.asyncio
    async def test_search_is_scoped_and_ordered(self, helper_config):
        """Test search filters by collection and returns hits by descending score."""
        hits = [
            {"id": "p1", "score": 0.2, "payload": {"doc_id": "d1", "collection_id": "col-1", "chunk_index": 1, "content": "low", "title_chain": ["A"]}},
            {"id": "p2", "score": 0.9, "payload": {"doc_id": "d1", "collection_id": "col-1", "chunk_index": 0, "content": "high", "title_chain": ["A", "B"]}},
        ]
        stub = QdrantStub({("POST", f"{BASE}/points/search"): {"result": hits}})
        client = await booted(helper_config, stub)

        results = await client.search("col-1", [0.1, 0.2, 0.3, 0.4], filter={"doc_id": "d1"})

        assert [r.content for r in results] == ["high", "low"]
        assert results[0].title_chain == ["A", "B"]
        [request] = stub.requests
        sent = body(request)
        assert sent["limit"] == 20
        assert {"key": "collection_id", "match": {"value": "col-1"}} in sent["filter"]["must"]
        assert {"key": "doc_id", "match": {"value": "d1"}} in sent["filter"]["must"]

    @pytest.mark.asyncio
    async def test_search_without_collection_is_empty(self, helper_config):
        """Test searching before anything was indexed returns no hits."""
        client = await booted(helper_config, QdrantStub())

        assert await client.search("col-1", [0.1, 0.2, 0.3, 0.4], limit=5) == []

    @pytest.mark.asyncio
    async def test_deletes_are_idempotent(self, helper_config):
        """Test deletes send the right selector and tolerate a missing collection."""
        stub = QdrantStub({("POST", f"{BASE}/points/delete"): {"result": {"status": "completed"}}})
        client = await booted(helper_config, stub)

        await client.delete_points_by_doc("doc-1")
        await client.delete_points("col-1", ["p1", "p2"])
        await client.delete_points("col-1", [])

        first, second = stub.requests
        assert body(first) == {"filter": {"must": [{"key": "doc_id", "match": {"value": "doc-1"}}]}}
        assert body(second) == {"points": ["p1", "p2"]}

        missing = await booted(helper_config, QdrantStub())
        await missing.delete_points_by_collection("col-1")

    @pytest.mark.asyncio
    async def test_point_listing_follows_pages(self, helper_config):
        """Test all point ids of a collection are collected across scroll pages."""
        pages = iter([
            {"result": {"points": [{"id": "p1"}, {"id": "p2"}], "next_page_offset": "p3"}},
            {"result": {"points": [{"id": "p3"}], "next_page_offset": None}},
        ])
        stub = QdrantStub({
            ("GET", f"{BASE}/exists"): {"result": {"exists": True}},
            ("POST", f"{BASE}/points/count"): {"result": {"count": 3}},
            ("POST", f"{BASE}/points/scroll"): lambda request: next(pages),
        })
        client = await booted(helper_config, stub)

        assert await client.get_all_point_ids_in_collection("col-1") == ["p1", "p2", "p3"]
        scrolls = stub.calls("POST", f"{BASE}/points/scroll")
        assert "offset" not in body(scrolls[0])
        assert body(scrolls[1])["offset"] == "p3"
