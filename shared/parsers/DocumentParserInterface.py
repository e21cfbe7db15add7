from abc import ABC, abstractmethod

from shared.helper.HelperConfig import HelperConfig


class DocumentParserInterface(ABC):
    """Turns raw uploaded bytes into plain text for the chunker."""

    def __init__(self, helper_config: HelperConfig):
        self.logging = helper_config.get_logger()
        self._helper_config = helper_config

    ##########################################
    ################ GETTER ##################
    ##########################################

    def get_engine_name(self) -> str:
        """
        Returns the name of the parser engine in lowercase. E.g. "text"
        """
        return self._get_engine_name().lower()

    @abstractmethod
    def _get_engine_name(self) -> str:
        pass

    @abstractmethod
    def get_supported_mimes(self) -> list[str]:
        """
        Returns the mime types this parser handles. A trailing "/*" matches a whole family.
        """
        pass

    ##########################################
    ############### CHECKER ##################
    ##########################################

    def supports(self, mime: str) -> bool:
        """Whether this parser can extract text from the given mime type."""
        mime = (mime or "").split(";")[0].strip().lower()
        for supported in self.get_supported_mimes():
            if supported.endswith("/*") and mime.startswith(supported[:-1]):
                return True
            if mime == supported:
                return True
        return False

    ##########################################
    ################ PARSING #################
    ##########################################

    @abstractmethod
    def extract_text(self, raw_bytes: bytes, mime: str) -> str:
        """Extract plain text from raw bytes.

        Args:
            raw_bytes (bytes): The uploaded file content.
            mime (str): The declared mime type.

        Returns:
            str: The extracted text.

        Raises:
            UnsupportedFormat: If the mime type is not handled by this parser.
            ParseError: If the bytes cannot be decoded.
        """
        pass
