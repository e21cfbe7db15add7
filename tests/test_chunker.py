"""Tests for the markdown aware chunker."""

import pytest

from services.doc_sync.Chunker import Chunker, content_hash, make_point_id
from shared.errors import ChunkingError
from shared.models.document import ChunkStatus

from tests.samples import GUIDE


@pytest.fixture
def chunker(helper_config) -> Chunker:
    return Chunker(helper_config)


class TestMarkdownSplit:
    """Tests for heading based sections and title chains."""

    def test_sections_follow_headings(self, chunker):
        """Test each heading starts a chunk carrying its heading path."""
        chunks = chunker.split("doc-1", "col-1", GUIDE)

        assert [c.content for c in chunks] == [
            "# Guide\nIntro text.",
            "## Install\nRun the installer.",
            "## Usage\nCall the tool.",
        ]
        assert [c.title_chain for c in chunks] == [
            ["Guide"],
            ["Guide", "Install"],
            ["Guide", "Usage"],
        ]

    def test_indexes_ids_and_hashes(self, chunker):
        """Test chunk indexes are dense and ids and hashes derive from position and content."""
        chunks = chunker.split("doc-1", "col-1", GUIDE)

        assert [c.chunk_index for c in chunks] == [0, 1, 2]
        for chunk in chunks:
            assert chunk.point_id == make_point_id("doc-1", chunk.chunk_index)
            assert chunk.content_hash == content_hash(chunk.content)
            assert chunk.doc_id == "doc-1"
            assert chunk.collection_id == "col-1"
            assert chunk.status == ChunkStatus.NEW
            assert chunk.embedding is None

    def test_split_is_deterministic(self, chunker):
        """Test splitting the same text twice yields identical chunks."""
        first = chunker.split("doc-1", "col-1", GUIDE, name="guide.md")
        second = chunker.split("doc-1", "col-1", GUIDE, name="guide.md")

        assert [c.model_dump() for c in first] == [c.model_dump() for c in second]

    def test_point_ids_differ_between_documents(self, chunker):
        """Test the same text in two documents never shares point ids."""
        first = chunker.split("doc-1", "col-1", GUIDE)
        second = chunker.split("doc-2", "col-1", GUIDE)

        assert not {c.point_id for c in first} & {c.point_id for c in second}

    def test_document_name_prefixes_title_chain(self, chunker):
        """Test the basename of the document name leads every title chain."""
        chunks = chunker.split("doc-1", "col-1", "Preface\n\n# One\ntext", name="notes/2024/notes.md")

        assert [c.title_chain for c in chunks] == [["notes.md"], ["notes.md", "One"]]

    def test_setext_headings(self, chunker):
        """Test underlined headings are recognised with their level."""
        chunks = chunker.split("doc-1", "col-1", "Title\n=====\nBody\n\nSub\n---\nMore")

        assert [c.title_chain for c in chunks] == [["Title"], ["Title", "Sub"]]
        assert chunks[1].content == "Sub\n---\nMore"

    def test_headings_inside_code_fences_are_ignored(self, chunker):
        """Test a hash line inside a fenced block is not a heading."""
        chunks = chunker.split("doc-1", "col-1", "# Real\n```\n# not a heading\n```\nafter")

        assert len(chunks) == 1
        assert chunks[0].title_chain == ["Real"]

    def test_line_endings_are_normalised(self, chunker):
        """Test CRLF and CR line endings produce the same chunks as LF."""
        lf = chunker.split("doc-1", "col-1", "# A\nline one\nline two")
        crlf = chunker.split("doc-1", "col-1", "# A\r\nline one\r\nline two")

        assert [c.content_hash for c in lf] == [c.content_hash for c in crlf]


class TestWindowing:
    """Tests for size bounded windows with overlap."""

    def test_long_text_respects_max_size_and_overlaps(self, chunker):
        """Test windows stay under the size limit and share text with their predecessor."""
        text = "word " * 200
        chunks = chunker.split("doc-1", "col-1", text)

        assert len(chunks) > 1
        assert all(len(c.content) <= chunker.max_size for c in chunks)
        for previous, current in zip(chunks, chunks[1:]):
            assert current.content[:10] in previous.content
        assert chunks[-1].content.endswith("word")

    def test_fixed_strategy_ignores_heading_boundaries(self, helper_config, monkeypatch):
        """Test the fixed strategy windows the whole text but still fills title chains."""
        monkeypatch.setenv("CHUNK_STRATEGY", "fixed")
        chunker = Chunker(helper_config)

        chunks = chunker.split("doc-1", "col-1", GUIDE)

        assert len(chunks) == 1
        assert chunks[0].content == GUIDE.strip()
        assert chunks[0].title_chain == ["Guide"]

    def test_unbroken_text_is_cut_hard(self, chunker):
        """Test text without whitespace is still split at the size limit."""
        chunks = chunker.split("doc-1", "col-1", "x" * 450)

        assert [len(c.content) for c in chunks] == [200, 200, 90]


class TestInvalidInput:
    """Tests for rejected texts and configuration."""

    @pytest.mark.parametrize("text", ["", "   \n\t  "])
    def test_empty_text_raises(self, chunker, text):
        """Test empty and whitespace-only text cannot be chunked."""
        with pytest.raises(ChunkingError):
            chunker.split("doc-1", "col-1", text)

    def test_nul_bytes_raise(self, chunker):
        """Test text with NUL bytes is rejected."""
        with pytest.raises(ChunkingError, match="NUL"):
            chunker.split("doc-1", "col-1", "abc\x00def")

    def test_overlap_must_be_smaller_than_size(self, helper_config, monkeypatch):
        """Test an overlap not smaller than the chunk size is a configuration error."""
        monkeypatch.setenv("CHUNK_OVERLAP", "200")
        with pytest.raises(ValueError, match="CHUNK_OVERLAP"):
            Chunker(helper_config)

    def test_unknown_strategy(self, helper_config, monkeypatch):
        """Test an unknown strategy name is a configuration error."""
        monkeypatch.setenv("CHUNK_STRATEGY", "semantic")
        with pytest.raises(ValueError, match="CHUNK_STRATEGY"):
            Chunker(helper_config)
