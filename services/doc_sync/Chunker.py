import hashlib
import re
import uuid
from dataclasses import dataclass

from shared.errors import ChunkingError
from shared.helper.HelperConfig import HelperConfig
from shared.models.document import Chunk

# fixed namespace so point ids stay stable across processes and releases
POINT_ID_NAMESPACE = uuid.UUID("8f5c2a4e-3b1d-5e7f-9a0c-6d4b2e1f7a93")

_ATX_HEADING = re.compile(r"^(#{1,6})\s+(.+?)\s*#*\s*$")
_SETEXT_H1 = re.compile(r"^={3,}\s*$")
_SETEXT_H2 = re.compile(r"^-{3,}\s*$")
_FENCE = re.compile(r"^\s*(```|~~~)")


def make_point_id(doc_id: str, chunk_index: int) -> str:
    """Deterministic point id for a chunk position of a document."""
    return str(uuid.uuid5(POINT_ID_NAMESPACE, f"{doc_id}:{chunk_index}"))


def content_hash(content: str) -> str:
    return hashlib.sha256(content.encode("utf-8")).hexdigest()


@dataclass
class _Heading:
    offset: int
    level: int
    title: str


class Chunker:
    """Splits document text into ordered, content-addressed chunks.

    Two strategies are supported via CHUNK_STRATEGY:
      markdown  sections start at ATX and setext headings, long sections are windowed
      fixed     the whole text is windowed, headings only feed the title chain

    The output is a pure function of (doc_id, text, name) and the configuration.
    """

    STRATEGIES = ("markdown", "fixed")

    def __init__(self, helper_config: HelperConfig):
        self.logging = helper_config.get_logger()
        self.max_size = int(helper_config.get_number_val("CHUNK_MAX_SIZE", default=1000))
        self.overlap = int(helper_config.get_number_val("CHUNK_OVERLAP", default=100))
        self.strategy = helper_config.get_string_val("CHUNK_STRATEGY", default="markdown").lower()
        if self.max_size <= 0:
            raise ValueError("CHUNK_MAX_SIZE must be > 0")
        if self.overlap < 0 or self.overlap >= self.max_size:
            raise ValueError("CHUNK_OVERLAP must satisfy 0 <= overlap < CHUNK_MAX_SIZE")
        if self.strategy not in self.STRATEGIES:
            raise ValueError(f"Unsupported CHUNK_STRATEGY '{self.strategy}', expected one of {self.STRATEGIES}")

    ##########################################
    ################# SPLIT ##################
    ##########################################

    def split(self, doc_id: str, collection_id: str, text: str, name: str | None = None) -> list[Chunk]:
        """Split a document into chunks.

        Args:
            doc_id (str): The owning document.
            collection_id (str): The owning collection.
            text (str): The extracted document text.
            name (str | None): Document name; its basename is prepended to every title chain.

        Returns:
            list[Chunk]: Chunks ordered by chunk_index, all with status new.

        Raises:
            ChunkingError: If the text is empty, whitespace only, contains NUL bytes or yields no chunk.
        """
        if text is None or not text.strip():
            raise ChunkingError("Document text is empty.")
        if "\x00" in text:
            raise ChunkingError("Document text contains NUL bytes and cannot be split.")

        text = text.replace("\r\n", "\n").replace("\r", "\n")
        headings = self._collect_headings(text)
        base_name = self._base_name(name)

        if self.strategy == "markdown":
            pieces = self._split_markdown(text, headings)
        else:
            pieces = self._split_window(text, 0)

        chunks: list[Chunk] = []
        for offset, content in pieces:
            chain = self._title_chain_at(headings, offset)
            if base_name:
                chain = [base_name, *chain]
            index = len(chunks)
            chunks.append(Chunk(
                point_id=make_point_id(doc_id, index),
                doc_id=doc_id,
                collection_id=collection_id,
                chunk_index=index,
                content=content,
                content_hash=content_hash(content),
                title_chain=chain,
            ))
        if not chunks:
            raise ChunkingError("Document text did not yield any chunk.")

        self.logging.debug("Split document %s into %d chunks (%s strategy)", doc_id, len(chunks), self.strategy)
        return chunks

    ##########################################
    ############### STRATEGIES ###############
    ##########################################

    def _split_markdown(self, text: str, headings: list[_Heading]) -> list[tuple[int, str]]:
        boundaries = [h.offset for h in headings if h.offset > 0]
        starts = [0, *boundaries]
        ends = [*boundaries, len(text)]
        pieces: list[tuple[int, str]] = []
        for start, end in zip(starts, ends):
            section = text[start:end]
            for _, content in self._split_window(section, start):
                # windows inside a section share the section's heading chain
                pieces.append((start, content))
        return pieces

    def _split_window(self, text: str, base_offset: int) -> list[tuple[int, str]]:
        """Cut text into windows of at most max_size characters overlapping by overlap."""
        pieces: list[tuple[int, str]] = []
        n = len(text)
        start = 0
        while start < n:
            end = min(start + self.max_size, n)
            if end < n:
                end = self._find_break(text, start, end)
            content = text[start:end].strip()
            if content:
                pieces.append((base_offset + start, content))
            if end >= n:
                break
            start = end - self.overlap
        return pieces

    def _find_break(self, text: str, start: int, end: int) -> int:
        # the break must leave more than `overlap` characters so the next window advances
        lower = start + self.overlap + 1
        for separator in ("\n\n", "\n", " "):
            idx = text.rfind(separator, lower, end)
            if idx != -1:
                return idx + len(separator)
        return end

    ##########################################
    ################ HEADINGS ################
    ##########################################

    def _collect_headings(self, text: str) -> list[_Heading]:
        lines = text.split("\n")
        headings: list[_Heading] = []
        in_fence = False
        offset = 0
        for i, line in enumerate(lines):
            if _FENCE.match(line):
                in_fence = not in_fence
            elif not in_fence:
                atx = _ATX_HEADING.match(line)
                if atx:
                    headings.append(_Heading(offset, len(atx.group(1)), atx.group(2).strip()))
                elif i + 1 < len(lines) and line.strip() and not line.lstrip().startswith("#"):
                    following = lines[i + 1]
                    if _SETEXT_H1.match(following):
                        headings.append(_Heading(offset, 1, line.strip()))
                    elif _SETEXT_H2.match(following):
                        headings.append(_Heading(offset, 2, line.strip()))
            offset += len(line) + 1
        return headings

    @staticmethod
    def _title_chain_at(headings: list[_Heading], position: int) -> list[str]:
        stack: list[str] = []
        for heading in headings:
            if heading.offset > position:
                break
            stack = stack[: heading.level - 1]
            stack.append(heading.title)
        return stack

    @staticmethod
    def _base_name(name: str | None) -> str | None:
        if not name:
            return None
        return re.split(r"[/\\]", name)[-1] or None
