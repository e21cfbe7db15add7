"""Request bodies of the HTTP surface, normalised into service inputs here."""

import base64
import binascii
from typing import Literal

from pydantic import BaseModel, Field, model_validator

from shared.errors import InvalidInput
from shared.models.batch import UpdateItem, UploadItem


class CollectionCreateRequest(BaseModel):
    name: str
    description: str | None = None


class DocumentCreateRequest(BaseModel):
    """One document upload. content is plain text, or base64 when encoding says so."""

    name: str
    content: str
    mime: str = "text/plain"
    key: str | None = None
    encoding: Literal["utf-8", "base64"] = "utf-8"

    def raw_bytes(self) -> bytes:
        if self.encoding == "base64":
            try:
                return base64.b64decode(self.content, validate=True)
            except (binascii.Error, ValueError) as e:
                raise InvalidInput(f"Content of '{self.name}' is not valid base64: {e}") from e
        return self.content.encode("utf-8")

    def to_upload_item(self) -> UploadItem:
        return UploadItem(name=self.name, mime=self.mime, content=self.raw_bytes(), key=self.key)


class BatchUploadRequest(BaseModel):
    collection_id: str
    documents: list[DocumentCreateRequest] = Field(min_length=1)
    transactional: bool = False


class BatchDeleteRequest(BaseModel):
    """Delete many documents or collections.

    Also accepts {"ids": [...], "type": "document" | "collection"}.
    """

    doc_ids: list[str] = []
    collection_ids: list[str] = []
    transactional: bool = False

    @model_validator(mode="before")
    @classmethod
    def _normalise_ids(cls, data):
        if isinstance(data, dict) and "ids" in data:
            data = dict(data)
            ids = data.pop("ids") or []
            target = data.pop("type", "document")
            data["collection_ids" if target == "collection" else "doc_ids"] = ids
        return data

    @model_validator(mode="after")
    def _exactly_one_target(self):
        if bool(self.doc_ids) == bool(self.collection_ids):
            raise ValueError("Provide either doc_ids or collection_ids.")
        return self


class BatchSyncRequest(BaseModel):
    doc_ids: list[str] = Field(min_length=1)
    transactional: bool = False


class BatchUpdateRequest(BaseModel):
    items: list[UpdateItem] = Field(min_length=1)
    transactional: bool = False
