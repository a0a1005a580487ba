"""Tests for the asyncio embedding client and its worker thread."""
import asyncio
import logging
import threading

import numpy as np
import pytest

from super_bookmarks.config import BookmarksConfig
from super_bookmarks.services.embedding_client import EmbeddingClient
from tests.fakes import FakeEmbeddingProvider, hash_vector


@pytest.fixture
def make_client():
    """Factory for clients that are always terminated after the test."""
    clients = []

    def _make(provider=None, **kwargs):
        client = EmbeddingClient(provider, **kwargs)
        clients.append(client)
        return client

    yield _make
    for client in clients:
        client.terminate()


class TestEmbed:
    """Tests for EmbeddingClient.embed."""

    @pytest.mark.anyio
    async def test_returns_float32_vector(self, embedding_client, fake_provider):
        vector = await embedding_client.embed("hello world")
        assert vector.dtype == np.float32
        np.testing.assert_allclose(vector, hash_vector("hello world", fake_provider.dimension))

    @pytest.mark.anyio
    async def test_loads_model_on_first_use(self, embedding_client, fake_provider):
        assert embedding_client.is_loaded is False
        await embedding_client.embed("hello")
        await embedding_client.embed("again")
        assert embedding_client.is_loaded is True
        assert fake_provider.load_count == 1

    @pytest.mark.anyio
    async def test_runs_provider_off_the_event_loop_thread(self, embedding_client, fake_provider):
        await embedding_client.embed("hello")
        assert fake_provider.threads
        assert threading.get_ident() not in fake_provider.threads

    @pytest.mark.anyio
    async def test_truncates_long_text(self, make_client):
        provider = FakeEmbeddingProvider()
        client = make_client(provider, max_tokens=16)
        await client.embed("x" * 500)
        assert provider.embedded_texts == ["x" * 64]

    @pytest.mark.anyio
    async def test_disabled_returns_none(self, disabled_client):
        assert disabled_client.enabled is False
        assert disabled_client.dimension is None
        assert await disabled_client.embed("hello") is None

    @pytest.mark.anyio
    async def test_load_failure_returns_none(self, make_client):
        client = make_client(FakeEmbeddingProvider(fail_on_load=True))
        assert await client.embed("hello") is None
        assert client.is_loaded is False

    @pytest.mark.anyio
    async def test_inference_failure_returns_none(self, make_client):
        provider = FakeEmbeddingProvider(fail_on_embed=True)
        client = make_client(provider)
        assert await client.embed("hello") is None
        assert client.is_loaded is True

    @pytest.mark.anyio
    async def test_concurrent_embeds_keep_their_own_results(self, embedding_client, fake_provider):
        texts = [f"text {i}" for i in range(10)]
        vectors = await asyncio.gather(*(embedding_client.embed(t) for t in texts))
        for text, vector in zip(texts, vectors):
            np.testing.assert_allclose(vector, hash_vector(text, fake_provider.dimension))


class TestLoadModel:
    """Tests for EmbeddingClient.load_model."""

    @pytest.mark.anyio
    async def test_concurrent_loads_share_one_load(self, make_client):
        provider = FakeEmbeddingProvider(load_delay=0.1)
        client = make_client(provider)

        results = await asyncio.gather(*(client.load_model() for _ in range(5)))

        assert results == [True] * 5
        assert provider.load_count == 1

    @pytest.mark.anyio
    async def test_is_loading_while_in_flight(self, make_client):
        client = make_client(FakeEmbeddingProvider(load_delay=0.1))
        task = asyncio.ensure_future(client.load_model())
        await asyncio.sleep(0.02)
        assert client.is_loading is True
        assert await task is True
        assert client.is_loading is False
        assert client.is_loaded is True

    @pytest.mark.anyio
    async def test_already_loaded_returns_immediately(self, embedding_client, fake_provider):
        await embedding_client.load_model()
        assert await embedding_client.load_model() is True
        assert fake_provider.load_count == 1

    @pytest.mark.anyio
    async def test_failed_load_can_be_retried(self, make_client):
        provider = FakeEmbeddingProvider(fail_on_load=True)
        client = make_client(provider)

        assert await client.load_model() is False
        provider.fail_on_load = False
        assert await client.load_model() is True
        assert provider.load_count == 2

    @pytest.mark.anyio
    async def test_disabled_client_never_loads(self, disabled_client):
        assert await disabled_client.load_model() is False
        assert disabled_client.is_loaded is False

    @pytest.mark.anyio
    async def test_disabled_client_is_quiet_and_threadless(self, disabled_client, caplog):
        caplog.set_level(logging.DEBUG, logger="super_bookmarks")

        for _ in range(3):
            assert await disabled_client.embed("hello") is None
        assert await disabled_client.ping() == {"loaded": False}

        assert [r for r in caplog.records if r.levelno >= logging.ERROR] == []
        assert disabled_client._worker is None

    @pytest.mark.anyio
    async def test_real_load_failure_is_logged(self, make_client, caplog):
        client = make_client(FakeEmbeddingProvider(fail_on_load=True))
        assert await client.load_model() is False
        assert any(
            r.levelno == logging.ERROR and "Failed to load embedding model" in r.getMessage()
            for r in caplog.records
        )

    @pytest.mark.anyio
    async def test_progress_events(self, embedding_client):
        events = []
        assert await embedding_client.load_model(progress_callback=events.append)
        statuses = [e["status"] for e in events]
        assert statuses == ["loading", "downloading", "ready"]
        assert events[-1]["message"] == "Model ready!"

    @pytest.mark.anyio
    async def test_failing_progress_callback_does_not_break_load(self, embedding_client):
        def explode(event):
            raise RuntimeError("callback bug")

        assert await embedding_client.load_model(progress_callback=explode) is True


class TestEmbedBatch:
    """Tests for EmbeddingClient.embed_batch."""

    @pytest.mark.anyio
    async def test_preserves_order(self, embedding_client, fake_provider):
        texts = ["one", "two", "three"]
        vectors = await embedding_client.embed_batch(texts)
        assert len(vectors) == 3
        for text, vector in zip(texts, vectors):
            np.testing.assert_allclose(vector, hash_vector(text, fake_provider.dimension))

    @pytest.mark.anyio
    async def test_empty_input(self, embedding_client, fake_provider):
        assert await embedding_client.embed_batch([]) == []
        assert fake_provider.load_count == 0

    @pytest.mark.anyio
    async def test_batch_progress(self, make_client):
        client = make_client(FakeEmbeddingProvider(), batch_size=2)
        events = []

        await client.embed_batch([f"t{i}" for i in range(5)], progress_callback=events.append)

        batches = [e for e in events if e["status"] == "batch"]
        assert [(e["completed"], e["total"]) for e in batches] == [(2, 5), (4, 5), (5, 5)]
        assert batches[-1]["message"] == "Processing 5/5"

    @pytest.mark.anyio
    async def test_disabled_returns_list_of_none(self, disabled_client):
        assert await disabled_client.embed_batch(["a", "b"]) == [None, None]

    @pytest.mark.anyio
    async def test_inference_failure_returns_list_of_none(self, make_client):
        client = make_client(FakeEmbeddingProvider(fail_on_embed=True))
        assert await client.embed_batch(["a", "b", "c"]) == [None, None, None]


class TestLifecycle:
    """Tests for ping, terminate and construction from config."""

    @pytest.mark.anyio
    async def test_ping(self, embedding_client):
        assert await embedding_client.ping() == {"loaded": False}
        await embedding_client.load_model()
        assert await embedding_client.ping() == {"loaded": True}

    @pytest.mark.anyio
    async def test_terminate_unloads_and_resets(self, embedding_client, fake_provider):
        await embedding_client.load_model()

        embedding_client.terminate()

        assert fake_provider.unload_count == 1
        assert embedding_client.is_loaded is False
        assert embedding_client.is_loading is False

    @pytest.mark.anyio
    async def test_usable_after_terminate(self, embedding_client, fake_provider):
        await embedding_client.embed("before")
        embedding_client.terminate()

        vector = await embedding_client.embed("after")

        assert vector is not None
        assert fake_provider.load_count == 2

    def test_terminate_without_worker(self, disabled_client):
        disabled_client.terminate()
        disabled_client.terminate()

    def test_from_config_disabled(self):
        client = EmbeddingClient.from_config(
            BookmarksConfig(embeddings_enabled=False, model_version="v-test")
        )
        assert client.enabled is False
        assert client.model_version == "v-test"

    def test_from_config_enabled_builds_onnx_provider(self):
        from super_bookmarks.services.onnx_provider import OnnxEmbeddingProvider

        client = EmbeddingClient.from_config(
            BookmarksConfig(embeddings_enabled=True, embedding_dim=384, embedding_max_tokens=256)
        )
        assert isinstance(client._provider, OnnxEmbeddingProvider)
        assert client.dimension == 384
        assert client.max_chars == 1024
