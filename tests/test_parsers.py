"""Tests for mime based text extraction."""

import pytest

from shared.errors import ParseError, UnsupportedFormat
from shared.parsers.DocumentParserManager import DocumentParserManager


@pytest.fixture
def parser(helper_config) -> DocumentParserManager:
    return DocumentParserManager(helper_config=helper_config)


class TestDocumentParser:
    """Tests for parser resolution and decoding."""

    @pytest.mark.parametrize("mime", ["text/plain", "text/markdown", "TEXT/PLAIN; charset=utf-8", "application/json"])
    def test_text_family_is_supported(self, parser, mime):
        """Test text mime types are decoded."""
        assert parser.extract_text("Grüße".encode("utf-8"), mime) == "Grüße"

    def test_byte_order_mark_is_dropped(self, parser):
        """Test a leading UTF-8 byte order mark does not reach the chunker."""
        assert parser.extract_text(b"\xef\xbb\xbf# Title", "text/markdown") == "# Title"

    def test_unsupported_mime(self, parser):
        """Test binary formats without a parser are rejected."""
        with pytest.raises(UnsupportedFormat):
            parser.extract_text(b"%PDF-1.7", "application/pdf")

    def test_undecodable_bytes(self, parser):
        """Test invalid UTF-8 raises ParseError."""
        with pytest.raises(ParseError):
            parser.extract_text(b"\xff\xfe\xfa", "text/plain")

    def test_unknown_engine(self, helper_config, monkeypatch):
        """Test configuring an unknown parser engine fails at startup."""
        monkeypatch.setenv("PARSER_ENGINES", "[text,docx]")
        with pytest.raises(ValueError, match="Unsupported parser engine"):
            DocumentParserManager(helper_config=helper_config)
