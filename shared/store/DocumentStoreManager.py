from shared.helper.HelperConfig import HelperConfig
from shared.store.DocumentStoreInterface import DocumentStoreInterface


class DocumentStoreManager:
    """
    Manager class to resolve the relational store from configuration.
    """

    def __init__(self, helper_config: HelperConfig):
        self.helper_config = helper_config
        self.logging = helper_config.get_logger()
        self.store = self._initialize_store()

    def _get_engine_from_env(self) -> str:
        engine = self.helper_config.get_string_val("STORE_ENGINE", default="sqlite")
        return engine.strip().lower().capitalize()

    def _initialize_store(self) -> DocumentStoreInterface:
        """
        Instantiates the store for the configured engine.

        Raises:
            ValueError: If the engine is not supported.
        """
        engine = self._get_engine_from_env()
        className = f"DocumentStore{engine}"
        try:
            module = __import__(
                f"shared.store.{engine.lower()}.{className}",
                fromlist=[className],
            )
            store_class = getattr(module, className)
        except (ImportError, AttributeError) as e:
            raise ValueError(f"Unsupported store engine specified: '{engine}'. Error: {e}")
        self.logging.debug("Instantiated document store for engine: %s", engine)
        return store_class(helper_config=self.helper_config)

    def get_store(self) -> DocumentStoreInterface:
        return self.store
