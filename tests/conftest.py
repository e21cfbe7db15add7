"""Pytest configuration and shared fixtures for the test suite."""

import logging

import pytest

from services.doc_sync.SyncService import SyncService
from shared.helper.HelperConfig import HelperConfig
from shared.parsers.DocumentParserManager import DocumentParserManager
from shared.store.memory.DocumentStoreMemory import DocumentStoreMemory

from tests.fakes import FakeEmbedClient, FakeIndex, RecordingSleep


TEST_ENV = {
    "CHUNK_MAX_SIZE": "200",
    "CHUNK_OVERLAP": "20",
    "CHUNK_STRATEGY": "markdown",
    "SYNC_MAX_RETRIES": "3",
    "SYNC_RETRY_BASE_DELAY": "0.5",
    "SYNC_RETRY_JITTER": "0",
    "SYNC_CALL_TIMEOUT": "5",
    "BATCH_CONCURRENCY": "4",
    "RAG_QDRANT_BASE_URL": "http://qdrant.test:6333",
    "RAG_QDRANT_VECTOR_SIZE": "4",
    "EMBED_OLLAMA_BASE_URL": "http://ollama.test:11434",
    "EMBED_MODEL": "nomic-embed-text",
    "APP_API_KEY": "test-key",
    "LOG_TO_FILE": "false",
}


# Environment fixtures
@pytest.fixture
def env(monkeypatch) -> dict:
    """Apply the test environment and return it for per-test overrides."""
    for key, value in TEST_ENV.items():
        monkeypatch.setenv(key, value)
    return dict(TEST_ENV)


@pytest.fixture
def helper_config(env) -> HelperConfig:
    return HelperConfig(logger=logging.getLogger("doc_sync.tests"))


# Collaborator fixtures
@pytest.fixture
def embed_client() -> FakeEmbedClient:
    return FakeEmbedClient()


@pytest.fixture
def index() -> FakeIndex:
    return FakeIndex()


@pytest.fixture
def sleep() -> RecordingSleep:
    return RecordingSleep()


@pytest.fixture
def store(helper_config) -> DocumentStoreMemory:
    return DocumentStoreMemory(helper_config=helper_config)


@pytest.fixture
def service(helper_config, store, index, embed_client, sleep) -> SyncService:
    return SyncService(
        helper_config=helper_config,
        store=store,
        rag_client=index,
        embed_client=embed_client,
        parser=DocumentParserManager(helper_config=helper_config),
        sleep=sleep,
    )
