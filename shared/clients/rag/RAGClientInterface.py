from abc import abstractmethod
from typing import Any
import math

import httpx
from shared.clients.rag.models.Scroll import ScrollResult
from shared.clients.ClientInterface import ClientInterface
import json

from shared.errors import IndexRequestError, IndexUnavailable
from shared.helper.HelperConfig import HelperConfig
from shared.models.search import SearchResultItem


class RAGClientInterface(ClientInterface):
    """Vector index gateway.

    All logical collections live in one backend collection and are scoped by
    the collection_id payload field. The gateway never retries; transport
    failures surface as IndexUnavailable so the caller's retry policy applies.
    """

    def __init__(self, helper_config: HelperConfig):
        super().__init__(helper_config=helper_config)
        self.upsert_batch_size = int(helper_config.get_number_val("UPSERT_BATCH_SIZE", default=100))
        self.search_default_limit = int(helper_config.get_number_val("SEARCH_DEFAULT_LIMIT", default=20))
        self._collection_ready = False

    ##########################################
    ################ GETTER ##################
    ##########################################

    ################ GENERAL ##################
    def _get_client_type(self) -> str:
        """
        Returns the type of the client. E.g. "rag"
        """
        return "rag"

    @abstractmethod
    def get_vector_size(self) -> int:
        """
        Returns the dimension of the vectors stored in the backend collection.
        """
        pass

    @abstractmethod
    def get_distance(self) -> str:
        """
        Returns the distance metric of the backend collection. E.g. "Cosine"
        """
        pass

    ################ ENDPOINTS ##################
    @abstractmethod
    def _get_endpoint_scroll(self) -> str:
        """
        Returns the endpoint path for scroll requests.

        Returns:
            str: The endpoint path for scroll requests (e.g. "/scroll")

        Raises:
            NotImplementedError: If the method is not implemented in a subclass.
        """
        pass

    @abstractmethod
    def _get_endpoint_points(self) -> str:
        """
        Returns the endpoint path for points upsert requests.

        Returns:
            str: The endpoint path for points requests (e.g. "/points")

        Raises:
            NotImplementedError: If the method is not implemented in a subclass.
        """
        pass

    @abstractmethod
    def _get_endpoint_search(self) -> str:
        """
        Returns the endpoint path for vector similarity search.

        Returns:
            str: The endpoint path (e.g. "/collections/my_col/points/search")

        Raises:
            NotImplementedError: If the method is not implemented in a subclass.
        """
        pass

    @abstractmethod
    def _get_endpoint_delete_points(self) -> str:
        """
        Returns the endpoint path for deleting points by filter or id.

        Returns:
            str: The endpoint path (e.g. "/collections/my_col/points/delete")

        Raises:
            NotImplementedError: If the method is not implemented in a subclass.
        """
        pass

    @abstractmethod
    def _get_endpoint_check_collection_existence(self) -> str:
        """
        Returns the endpoint path for collection existence check requests.

        Raises:
            NotImplementedError: If the method is not implemented in a subclass.
        """
        pass

    @abstractmethod
    def _get_endpoint_create_collection(self) -> str:
        """
        Returns the endpoint path for create collection requests.

        Raises:
            NotImplementedError: If the method is not implemented in a subclass.
        """
        pass

    @abstractmethod
    def _get_endpoint_payload_index(self) -> str:
        """
        Returns the endpoint path for creating a payload field index.

        Raises:
            NotImplementedError: If the method is not implemented in a subclass.
        """
        pass

    @abstractmethod
    def _get_endpoint_count(self) -> str:
        """Returns the endpoint path for counting points matching a filter.

        Returns:
            str: The endpoint path (e.g. "/collections/my_col/points/count")

        Raises:
            NotImplementedError: If the method is not implemented in a subclass.
        """
        pass

    ################ PAYLOAD BUILDER ##################
    @abstractmethod
    def get_match_filter(self, conditions: dict[str, Any]) -> dict:
        """
        Builds a backend-specific filter requiring every payload field to equal the given value.

        Args:
            conditions (dict[str, Any]): Payload field name → required value.

        Returns:
            dict: The filter object.
        """
        pass

    @abstractmethod
    def get_scroll_payload(self, filter: dict, with_payload: bool | list | dict, with_vector: bool | list, limit: int | None = None, offset: str | int | None = None) -> dict:
        """
        Returns the payload template for scroll requests to the RAG backend.

        Args:
            filter (dict): The filter to apply to the scroll request.
            with_payload (bool | list | dict): Whether to include the payload, or which payload fields to include.
            with_vector (bool | list): Whether to include the vector in the scroll request.
            limit (int | None): The maximum number of results to return.
            offset (str | int | None): Pagination cursor returned by the previous scroll page.

        Returns:
            dict: The payload for the scroll request.
        """
        pass

    @abstractmethod
    def extract_next_page_offset(self, raw_response: dict) -> str | int | None:
        """
        Extracts the pagination cursor for the next scroll page from a raw response.

        Return None when the backend signals that no further pages exist.
        """
        pass

    @abstractmethod
    def get_count_payload(self, filter: dict) -> dict:
        """Builds the backend-specific request payload for a point count."""
        pass

    @abstractmethod
    def get_delete_payload(self, filter: dict | None = None, point_ids: list[str] | None = None) -> dict:
        """
        Builds the backend-specific request payload for a delete by filter or by point ids.
        """
        pass

    @abstractmethod
    def get_search_payload(self, vector: list[float], limit: int, filter: dict) -> dict:
        """
        Builds the backend-specific request payload for a similarity search.
        """
        pass

    @abstractmethod
    def extract_scroll_content(self, raw_response: dict) -> dict:
        """
        Extracts the relevant content from a raw scroll response.

        Returns:
            dict: A dict with keys "result", "status", "time".
        """
        pass

    @abstractmethod
    def extract_search_hits(self, raw_response: dict) -> list[dict]:
        """
        Extracts the scored hits from a raw search response.

        Returns:
            list[dict]: Hits with "id", "score" and "payload" keys.
        """
        pass

    ################ ERRORS ##################
    def _map_transport_error(self, url: str, exc: httpx.TransportError) -> Exception:
        return IndexUnavailable(f"{self.get_engine_name()} unreachable at {url}: {exc}")

    def _map_status_error(self, url: str, response: httpx.Response) -> Exception:
        if response.status_code == 429 or response.status_code >= 500:
            return IndexUnavailable(f"{self.get_engine_name()} request to {url} failed with status {response.status_code}")
        return IndexRequestError(
            f"{self.get_engine_name()} rejected request to {url} with status {response.status_code}: {response.text[:200]}"
        )

    ##########################################
    ############### REQUESTS #################
    ##########################################

    async def do_existence_check(self) -> bool:
        """Check if the backend collection exists.

        Returns:
            bool: True if the collection exists, False otherwise.
        """
        resp = await self.do_request(method="GET", endpoint=self._get_endpoint_check_collection_existence(), raise_on_error=True)
        return bool(resp.json().get("result", {}).get("exists"))

    async def do_create_collection(self) -> httpx.Response:
        """Create the backend collection with the configured vector size and distance.

        Returns:
            httpx.Response: The response from the create collection request.
        """
        return await self.do_request(
            method="PUT",
            json={
                "vectors": {
                    "size": self.get_vector_size(),
                    "distance": self.get_distance()}},
            endpoint=self._get_endpoint_create_collection(),
            raise_on_error=True)

    async def do_create_payload_index(self, field_name: str) -> httpx.Response:
        """Create a keyword index on a payload field so filtered operations stay fast.

        Args:
            field_name (str): The payload field to index.
        """
        return await self.do_request(
            method="PUT",
            json={"field_name": field_name, "field_schema": "keyword"},
            params={"wait": "true"},
            endpoint=self._get_endpoint_payload_index(),
            raise_on_error=True)

    async def ensure_collection(self, collection_id: str | None = None) -> None:
        """Make sure the backend collection exists. Idempotent.

        Args:
            collection_id (str | None): The logical collection about to be written to, for logging.

        Raises:
            IndexUnavailable: On transport or service errors.
        """
        if self._collection_ready:
            return
        if not await self.do_existence_check():
            self.logging.info("Creating %s backend collection for collection_id=%s", self.get_engine_name(), collection_id)
            await self.do_create_collection()
            for field_name in ("collection_id", "doc_id"):
                await self.do_create_payload_index(field_name)
        self._collection_ready = True

    async def upsert_collection(self, collection_id: str, points: list[dict[str, Any]]) -> None:
        """Upsert points of one logical collection. Points with an existing id are overwritten.

        Args:
            collection_id (str): The logical collection the points belong to.
            points (list[dict[str, Any]]): Points as {"id", "vector", "payload"} dicts.

        Raises:
            IndexUnavailable: On transport or service errors.
            IndexRequestError: If a point belongs to another collection or the backend rejects the points.
        """
        if not points:
            return
        foreign = [p["id"] for p in points if (p.get("payload") or {}).get("collection_id") != collection_id]
        if foreign:
            raise IndexRequestError(f"Points {foreign[:5]} do not belong to collection {collection_id}.")

        await self.ensure_collection(collection_id)
        for batch_start in range(0, len(points), self.upsert_batch_size):
            batch = points[batch_start: batch_start + self.upsert_batch_size]
            resp = await self.do_request(
                method="PUT",
                content=json.dumps({"points": batch}),
                params={"wait": "true"},
                endpoint=self._get_endpoint_points(),
                additional_headers={"Content-Type": "application/json"})
            if resp.status_code == 404:
                # backend collection vanished underneath us, recreate on the next attempt
                self._collection_ready = False
                raise IndexUnavailable(f"{self.get_engine_name()} collection missing during upsert for collection_id={collection_id}")
            if resp.status_code >= 300:
                raise self._map_status_error(self._get_endpoint_points(), resp)
        self.logging.debug("Upserted %d points into collection_id=%s", len(points), collection_id)

    async def search(self, collection_id: str, vector: list[float], limit: int | None = None, filter: dict[str, Any] | None = None) -> list[SearchResultItem]:
        """Similarity search within one logical collection.

        Args:
            collection_id (str): The logical collection to search.
            vector (list[float]): The query vector.
            limit (int | None): Maximum number of hits, defaults to SEARCH_DEFAULT_LIMIT.
            filter (dict[str, Any] | None): Extra payload equality conditions, e.g. {"doc_id": "..."}.

        Returns:
            list[SearchResultItem]: Hits ordered by descending score.
        """
        conditions = dict(filter or {})
        conditions["collection_id"] = collection_id
        resp = await self.do_request(
            method="POST",
            content=json.dumps(self.get_search_payload(vector, limit or self.search_default_limit, self.get_match_filter(conditions))),
            endpoint=self._get_endpoint_search(),
            additional_headers={"Content-Type": "application/json"})
        if resp.status_code == 404:
            return []
        if resp.status_code >= 300:
            raise self._map_status_error(self._get_endpoint_search(), resp)

        items: list[SearchResultItem] = []
        for hit in self.extract_search_hits(resp.json()):
            payload = hit.get("payload") or {}
            items.append(SearchResultItem(
                point_id=str(hit.get("id")),
                content=payload.get("content", ""),
                score=float(hit.get("score", 0.0)),
                doc_id=payload.get("doc_id", ""),
                collection_id=payload.get("collection_id", collection_id),
                chunk_index=int(payload.get("chunk_index", 0)),
                title_chain=payload.get("title_chain") or [],
            ))
        items.sort(key=lambda item: item.score, reverse=True)
        return items

    async def _do_delete(self, payload: dict) -> None:
        resp = await self.do_request(
            method="POST",
            content=json.dumps(payload),
            params={"wait": "true"},
            endpoint=self._get_endpoint_delete_points(),
            additional_headers={"Content-Type": "application/json"})
        # a missing backend collection means there is nothing to delete
        if resp.status_code == 404:
            return
        if resp.status_code >= 300:
            raise self._map_status_error(self._get_endpoint_delete_points(), resp)

    async def delete_points_by_doc(self, doc_id: str) -> None:
        """Delete every point of a document. Idempotent."""
        await self._do_delete(self.get_delete_payload(filter=self.get_match_filter({"doc_id": doc_id})))

    async def delete_points_by_collection(self, collection_id: str) -> None:
        """Delete every point of a logical collection. Idempotent."""
        await self._do_delete(self.get_delete_payload(filter=self.get_match_filter({"collection_id": collection_id})))

    async def delete_points(self, collection_id: str, point_ids: list[str]) -> None:
        """Delete specific points of a logical collection. Absent ids are ignored.

        Args:
            collection_id (str): The logical collection, used for logging only; ids are global.
            point_ids (list[str]): The point ids to delete.
        """
        if not point_ids:
            return
        await self._do_delete(self.get_delete_payload(point_ids=point_ids))
        self.logging.debug("Deleted %d points from collection_id=%s", len(point_ids), collection_id)

    async def get_all_point_ids_in_collection(self, collection_id: str) -> list[str]:
        """List every point id stored for a logical collection.

        Used by reconciliation sweeps to find points with no chunk row.
        """
        if not await self.do_existence_check():
            return []
        scroll = await self.do_scroll_all(
            filter=self.get_match_filter({"collection_id": collection_id}),
            with_payload=False,
            with_vector=False,
        )
        return scroll.point_ids()

    async def do_scroll(self, filter: dict, with_payload: bool | list | dict, with_vector: bool | list, limit: int | None = None, offset: str | int | None = None) -> ScrollResult:
        """Scroll a single page from the backend collection.

        To retrieve all matching points across an arbitrary number of pages use
        do_scroll_all() instead.

        Returns:
            ScrollResult: The result from the scroll request, including next_page_offset
                          when further pages are available.
        """
        resp = await self.do_request(
            method="POST",
            content=json.dumps(self.get_scroll_payload(filter, with_payload, with_vector, limit, offset)),
            endpoint=self._get_endpoint_scroll(),
            additional_headers={"Content-Type": "application/json"},
            raise_on_error=True,
        )
        raw_response = resp.json()
        scroll_content = self.extract_scroll_content(raw_response=raw_response)
        return ScrollResult(
            result=scroll_content.get("result", []),
            status=scroll_content.get("status", "ok"),
            time=scroll_content.get("time", 0),
            next_page_offset=self.extract_next_page_offset(raw_response),
        )

    async def do_count(self, filter: dict) -> int:
        """Count the total number of points matching the given filter."""
        resp = await self.do_request(
            method="POST",
            content=json.dumps(self.get_count_payload(filter)),
            endpoint=self._get_endpoint_count(),
            additional_headers={"Content-Type": "application/json"},
            raise_on_error=True,
        )
        return resp.json().get("result", {}).get("count", 0)

    async def do_scroll_all(self, filter: dict, with_payload: bool | list | dict, with_vector: bool | list) -> ScrollResult:
        """Scroll through ALL points matching the filter, paginating automatically.

        Runs a loop driven by next_page_offset until the backend signals there are no more pages.

        Returns:
            ScrollResult: All matching points collected across all pages.
                          next_page_offset is always None on the returned result.
        """
        page_size = 1000
        all_points: list[dict] = []
        offset: str | int | None = None
        page = 1
        total_points = await self.do_count(filter)
        total_pages = math.ceil(total_points / page_size) if total_points > 0 else 1
        while True:
            page_result = await self.do_scroll(
                filter=filter,
                with_payload=with_payload,
                with_vector=with_vector,
                limit=page_size,
                offset=offset,
            )
            all_points.extend(page_result.result)
            self.logging.debug(
                "Fetched RAG points page %d of %d from %s, total points so far: %d of %d",
                page, total_pages, self.get_engine_name(), len(all_points), total_points,
            )
            offset = page_result.next_page_offset
            if offset is None:
                break
            page += 1
        return ScrollResult(result=all_points, status="ok", time=0)
