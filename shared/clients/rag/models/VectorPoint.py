"""VectorPoint model - metadata stored alongside each chunk vector in a RAG backend."""

from pydantic import BaseModel

from shared.models.document import Chunk


class VectorPoint(BaseModel):
    """Payload stored alongside each chunk vector in a RAG backend.

    The relational chunk row is the source of truth; the point is a derived
    projection and can always be rebuilt from it.

    Attributes:
        doc_id:        Document the chunk belongs to.
        collection_id: Logical collection; every query and delete is scoped by it.
        chunk_index:   Zero-based position of this chunk within the document.
        content:       Raw text content of this chunk.
        content_hash:  SHA-256 hex digest of content.
        title_chain:   Heading path leading to the chunk.
    """

    doc_id: str
    collection_id: str
    chunk_index: int
    content: str
    content_hash: str
    title_chain: list[str] = []

    @classmethod
    def from_chunk(cls, chunk: Chunk) -> "VectorPoint":
        return cls(
            doc_id=chunk.doc_id,
            collection_id=chunk.collection_id,
            chunk_index=chunk.chunk_index,
            content=chunk.content,
            content_hash=chunk.content_hash,
            title_chain=chunk.title_chain,
        )


def build_point(chunk: Chunk) -> dict:
    """Build the upsert body entry for a chunk that carries an embedding.

    Args:
        chunk (Chunk): The chunk to project.

    Returns:
        dict: {"id": ..., "vector": [...], "payload": {...}}

    Raises:
        ValueError: If the chunk has no embedding yet.
    """
    if chunk.embedding is None:
        raise ValueError(f"Chunk {chunk.point_id} has no embedding.")
    return {
        "id": chunk.point_id,
        "vector": chunk.embedding,
        "payload": VectorPoint.from_chunk(chunk).model_dump(),
    }
