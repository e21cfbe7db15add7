from shared.helper.HelperConfig import HelperConfig
from shared.clients.embed.EmbedClientInterface import EmbedClientInterface

class EmbedClientManager:
    """
    Manager class to handle Embed client based on configuration.
    """

    def __init__(self, helper_config: HelperConfig):
        self.helper_config = helper_config
        self.logging = helper_config.get_logger()
        self.client = self._initialize_client()

    def _get_engine_from_env(self) -> str:
        """
        Reads the Embed engine from ENV configuration.

        Returns:
            str: The name of the Embed engine.

        Raises:
            ValueError: If no Embed engine is specified in the configuration.
        """
        engine = self.helper_config.get_string_val("EMBED_ENGINE", default="ollama")
        if not engine:
            raise ValueError("No Embed engine specified in configuration.")
        return engine.strip().lower().capitalize()

    def _initialize_client(self) -> EmbedClientInterface:
        """
        Initializes the Embed client based on the engine specified in the configuration.

        Returns:
            EmbedClientInterface: An instance of the Embed client.

        Raises:
            ValueError: If the engine is not supported.
        """
        engine = self._get_engine_from_env()
        className = f"EmbedClient{engine}"
        try:
            module = __import__(
                f"shared.clients.embed.{engine.lower()}.{className}",
                fromlist=[className],
            )
            client_class = getattr(module, className)
        except (ImportError, AttributeError) as e:
            raise ValueError(f"Unsupported Embed engine specified: '{engine}'. Error: {e}")
        self.logging.debug("Instantiated Embed client for engine: %s", engine)
        return client_class(helper_config=self.helper_config)

    def get_client(self) -> EmbedClientInterface:
        """
        Returns the instantiated Embed client.

        Returns:
            EmbedClientInterface: The Embed client instance.
        """
        return self.client
