from typing import Any

from shared.helper.HelperConfig import HelperConfig
from shared.clients.rag.RAGClientInterface import RAGClientInterface
from shared.models.config import EnvConfig


class RAGClientQdrant(RAGClientInterface):
    def __init__(self, helper_config: HelperConfig):
        super().__init__(helper_config=helper_config)
        self._base_url = self.get_config_val("BASE_URL", default=None, val_type="string")
        self._api_key = self.get_config_val("API_KEY", default="", val_type="string")
        self._collection_name = self.get_config_val("COLLECTION", default="doc_sync_chunks", val_type="string")
        self._vector_size = int(self.get_config_val("VECTOR_SIZE", default=768, val_type="number"))
        self._distance = self.get_config_val("DISTANCE", default="Cosine", val_type="string")

    ##########################################
    ################ GETTER ##################
    ##########################################

    ################ GENERAL ##################
    def _get_engine_name(self) -> str:
        return "Qdrant"

    def get_vector_size(self) -> int:
        return self._vector_size

    def get_distance(self) -> str:
        return self._distance

    ################ CONFIG ##################
    def _get_required_config(self) -> list[EnvConfig]:
        return [
            EnvConfig(env_key="BASE_URL", val_type="string", default=None),
            EnvConfig(env_key="API_KEY", val_type="string", default=""),
            EnvConfig(env_key="COLLECTION", val_type="string", default="doc_sync_chunks"),
            EnvConfig(env_key="VECTOR_SIZE", val_type="number", default=768),
            EnvConfig(env_key="DISTANCE", val_type="string", default="Cosine"),
        ]

    ################ AUTH ##################
    def _get_auth_header(self) -> dict:
        if self._api_key:
            return {"api-key": f"{self._api_key}"}
        else:
            return {}

    ################ ENDPOINTS ##################
    def _get_base_url(self) -> str:
        return self._base_url

    def _get_endpoint_healthcheck(self) -> str:
        return "/healthz"

    def _get_endpoint_scroll(self) -> str:
        return f"/collections/{self._collection_name}/points/scroll"

    def _get_endpoint_points(self) -> str:
        return f"/collections/{self._collection_name}/points"

    def _get_endpoint_search(self) -> str:
        return f"/collections/{self._collection_name}/points/search"

    def _get_endpoint_delete_points(self) -> str:
        return f"/collections/{self._collection_name}/points/delete"

    def _get_endpoint_check_collection_existence(self) -> str:
        return f"/collections/{self._collection_name}/exists"

    def _get_endpoint_create_collection(self) -> str:
        return f"/collections/{self._collection_name}"

    def _get_endpoint_payload_index(self) -> str:
        return f"/collections/{self._collection_name}/index"

    def _get_endpoint_count(self) -> str:
        return f"/collections/{self._collection_name}/points/count"

    ##########################################
    ########### PAYLOAD BUILDER ##############
    ##########################################

    def get_match_filter(self, conditions: dict[str, Any]) -> dict:
        return {"must": [{"key": key, "match": {"value": value}} for key, value in conditions.items()]}

    def get_scroll_payload(self, filter: dict, with_payload: bool | list | dict, with_vector: bool | list, limit: int | None = None, offset: str | int | None = None) -> dict:
        payload = {
            "filter": filter,
            "limit": limit,
            "with_payload": with_payload,
            "with_vector": with_vector,
        }
        if offset is not None:
            payload["offset"] = offset
        return payload

    def get_count_payload(self, filter: dict) -> dict:
        return {"filter": filter, "exact": True}

    def get_delete_payload(self, filter: dict | None = None, point_ids: list[str] | None = None) -> dict:
        if point_ids is not None:
            return {"points": point_ids}
        return {"filter": filter}

    def get_search_payload(self, vector: list[float], limit: int, filter: dict) -> dict:
        return {
            "vector": vector,
            "limit": limit,
            "filter": filter,
            "with_payload": True,
        }

    ##########################################
    ########### RESPONSE PARSER ##############
    ##########################################

    def extract_scroll_content(self, raw_response: dict) -> dict:
        result = raw_response.get("result", {})
        return {
            "result": result.get("points", []),
            "status": raw_response.get("status", "ok"),
            "time": raw_response.get("time", 0),
        }

    def extract_next_page_offset(self, raw_response: dict) -> str | int | None:
        return raw_response.get("result", {}).get("next_page_offset")

    def extract_search_hits(self, raw_response: dict) -> list[dict]:
        return raw_response.get("result", []) or []
