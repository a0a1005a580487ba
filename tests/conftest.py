"""Common test fixtures for the Super Bookmarks tests."""

import tempfile
from pathlib import Path

import pytest

from super_bookmarks.config import SearchSettings, config
from super_bookmarks.services.embedding_client import EmbeddingClient
from super_bookmarks.services.note_service import NoteService
from super_bookmarks.services.search_service import SearchService
from super_bookmarks.storage.async_store import AsyncNoteStore
from super_bookmarks.storage.note_repository import NoteRepository
from tests.fakes import FakeEmbeddingProvider, FakeRecordStore

# Vector length used by the fakes throughout the tests
TEST_DIM = 8


@pytest.fixture(params=["asyncio"])
def anyio_backend(request):
    """Restrict anyio tests to asyncio only (trio is not installed)."""
    return request.param


@pytest.fixture
def temp_db_dir():
    """Create a temporary directory for the database."""
    with tempfile.TemporaryDirectory() as db_dir:
        yield Path(db_dir)


@pytest.fixture
def test_config(temp_db_dir, monkeypatch):
    """Configure with test paths (auto-restored even on crash)."""
    monkeypatch.setattr(config, "database_path", temp_db_dir / "test_bookmarks.db")
    monkeypatch.setattr(config, "embeddings_enabled", False)
    yield config


@pytest.fixture
def note_repository(test_config):
    """Create a test note repository on a temporary SQLite file."""
    repository = NoteRepository(db_url=test_config.get_db_url())
    yield repository
    repository.close()


@pytest.fixture
def async_store(note_repository):
    """AsyncNoteStore wrapping the test repository."""
    store = AsyncNoteStore(note_repository)
    yield store
    store.close()


@pytest.fixture
def fake_store():
    return FakeRecordStore()


@pytest.fixture
def settings():
    return SearchSettings()


# =============================================================================
# Shared Embedding Test Fixtures
# =============================================================================


@pytest.fixture
def fake_provider():
    """Deterministic embedding provider with TEST_DIM-length vectors."""
    return FakeEmbeddingProvider(dim=TEST_DIM)


@pytest.fixture
def embedding_client(fake_provider):
    """EmbeddingClient running the fake provider on its worker thread."""
    client = EmbeddingClient(fake_provider, model_version="fake-v1")
    yield client
    client.terminate()


@pytest.fixture
def disabled_client():
    """EmbeddingClient with embeddings turned off."""
    client = EmbeddingClient(None, model_version="fake-v1")
    yield client
    client.terminate()


@pytest.fixture
def search_service(fake_store, embedding_client, settings):
    return SearchService(fake_store, embedding_client, settings=settings, dimension=TEST_DIM)


@pytest.fixture
def note_service(fake_store, embedding_client, search_service):
    return NoteService(fake_store, embedding_client, search_service.engine)
