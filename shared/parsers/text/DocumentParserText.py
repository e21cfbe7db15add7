from shared.errors import ParseError, UnsupportedFormat
from shared.helper.HelperConfig import HelperConfig
from shared.parsers.DocumentParserInterface import DocumentParserInterface


class DocumentParserText(DocumentParserInterface):
    def __init__(self, helper_config: HelperConfig):
        super().__init__(helper_config=helper_config)
        self.encoding = helper_config.get_string_val("PARSER_TEXT_ENCODING", default="utf-8")

    def _get_engine_name(self) -> str:
        return "Text"

    def get_supported_mimes(self) -> list[str]:
        return ["text/*", "application/json", "application/x-markdown"]

    def extract_text(self, raw_bytes: bytes, mime: str) -> str:
        if not self.supports(mime):
            raise UnsupportedFormat(f"Mime type '{mime}' is not supported by the {self.get_engine_name()} parser.")
        try:
            text = raw_bytes.decode(self.encoding)
        except UnicodeDecodeError as e:
            raise ParseError(f"Could not decode document as {self.encoding}: {e}") from e
        # strip a leading byte order mark
        return text.lstrip("﻿")
