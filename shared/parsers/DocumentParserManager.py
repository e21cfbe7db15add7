from shared.errors import UnsupportedFormat
from shared.helper.HelperConfig import HelperConfig
from shared.parsers.DocumentParserInterface import DocumentParserInterface


class DocumentParserManager:
    """
    Manager class to resolve a document parser by mime type.
    """

    def __init__(self, helper_config: HelperConfig):
        self.helper_config = helper_config
        self.logging = helper_config.get_logger()
        self.parsers = self._initialize_parsers()

    def _get_engines_from_env(self) -> list[str]:
        """
        Reads the list of parser engines from ENV configuration.

        Returns:
            list[str]: Parser engine names, e.g. ["Text"].
        """
        engines = self.helper_config.get_list_val("PARSER_ENGINES", default=["text"])
        return [engine.strip().lower().capitalize() for engine in engines]

    def _initialize_parsers(self) -> list[DocumentParserInterface]:
        """
        Instantiates a parser for every configured engine.

        Raises:
            ValueError: If an engine is not supported or none is configured.
        """
        parsers = []
        for engine in self._get_engines_from_env():
            className = f"DocumentParser{engine}"
            try:
                module = __import__(
                    f"shared.parsers.{engine.lower()}.{className}",
                    fromlist=[className],
                )
                parser_class = getattr(module, className)
            except (ImportError, AttributeError) as e:
                raise ValueError(f"Unsupported parser engine specified: '{engine}'. Error: {e}")
            parsers.append(parser_class(helper_config=self.helper_config))
            self.logging.debug("Instantiated document parser for engine: %s", engine)
        if not parsers:
            raise ValueError("No document parsers configured.")
        return parsers

    def extract_text(self, raw_bytes: bytes, mime: str) -> str:
        """Extract text with the first parser supporting the mime type.

        Raises:
            UnsupportedFormat: If no configured parser handles the mime type.
            ParseError: If the selected parser cannot decode the bytes.
        """
        for parser in self.parsers:
            if parser.supports(mime):
                return parser.extract_text(raw_bytes, mime)
        raise UnsupportedFormat(f"No parser available for mime type '{mime}'.")
