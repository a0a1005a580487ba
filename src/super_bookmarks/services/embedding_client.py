"""Asynchronous client for the embedding worker.

The embedding model runs on one dedicated worker thread so inference never
blocks the event loop. Callers talk to it through EmbeddingClient: every
request gets the next integer id and a pending future, and the worker posts
the outcome back to the caller's loop.

Model failures never escape the client. ``embed`` returns None and
``embed_batch`` returns a list of None when no vector can be produced, so
callers can fall back to keyword search.

Usage:
    client = EmbeddingClient(OnnxEmbeddingProvider())
    vector = await client.embed("some text")
    client.terminate()  # Stop the worker on exit
"""

from __future__ import annotations

import asyncio
import itertools
import logging
import queue
import threading
from dataclasses import dataclass, field
from enum import Enum
from typing import TYPE_CHECKING, Any, Callable, Dict, List, Optional, Sequence, Tuple

import numpy as np

from super_bookmarks.exceptions import EmbeddingError, ErrorCode
from super_bookmarks.models.schema import DEFAULT_MODEL_VERSION

if TYPE_CHECKING:
    from super_bookmarks.config import BookmarksConfig
    from super_bookmarks.services.embedding_types import EmbeddingProvider

logger = logging.getLogger(__name__)

# Characters per token used to bound text before tokenization
CHARS_PER_TOKEN = 4
DEFAULT_MAX_TOKENS = 512

ProgressCallback = Callable[[Dict[str, Any]], None]


class MessageType(str, Enum):
    """Requests understood by the worker."""

    LOAD_MODEL = "LOAD_MODEL"
    EMBED = "EMBED"
    EMBED_BATCH = "EMBED_BATCH"
    PING = "PING"


@dataclass
class _Request:
    type: MessageType
    id: int
    loop: asyncio.AbstractEventLoop
    payload: Dict[str, Any] = field(default_factory=dict)


_STOP = object()


class _EmbeddingWorker(threading.Thread):
    """Thread that owns the provider and serves requests one at a time."""

    def __init__(self, client: "EmbeddingClient", provider: "EmbeddingProvider"):
        super().__init__(name="bookmarks-embedding-worker", daemon=True)
        self._client = client
        self._provider = provider
        self.inbox: "queue.Queue[Any]" = queue.Queue()
        self._current_loop: Optional[asyncio.AbstractEventLoop] = None

    def run(self) -> None:
        logger.debug("Embedding worker ready")
        while True:
            request = self.inbox.get()
            if request is _STOP:
                break
            self._current_loop = request.loop
            try:
                result = self._handle(request)
            except EmbeddingError as e:
                self._client._post(request, error=e)
            except Exception as e:
                logger.error(f"Embedding worker error on {request.type.value}: {e}")
                self._client._post(
                    request,
                    error=EmbeddingError(
                        f"Embedding worker failed: {e}",
                        operation=request.type.value.lower(),
                        original_error=e,
                    ),
                )
            else:
                self._client._post(request, result=result)
            finally:
                self._current_loop = None

        if self._provider is not None and self._provider.is_loaded:
            self._provider.unload()
        logger.debug("Embedding worker stopped")

    def _progress(self, payload: Dict[str, Any]) -> None:
        if self._current_loop is not None:
            self._client._post_progress(self._current_loop, payload)

    def _handle(self, request: _Request) -> Any:
        if request.type is MessageType.PING:
            return {"loaded": self._provider is not None and self._provider.is_loaded}
        if request.type is MessageType.LOAD_MODEL:
            self._load()
            return True
        if request.type is MessageType.EMBED:
            self._load()
            return self._embed_one(request.payload["text"])
        if request.type is MessageType.EMBED_BATCH:
            self._load()
            return self._embed_many(request.payload["texts"], request.payload["batch_size"])
        raise EmbeddingError(f"Unknown message type: {request.type}")

    def _load(self) -> None:
        if self._provider.is_loaded:
            return

        self._progress({"status": "loading", "message": "Loading embedding model..."})
        if hasattr(self._provider, "status_callback"):
            self._provider.status_callback = lambda status, info: self._progress(
                {"status": status, **info}
            )
        try:
            self._provider.load()
        except Exception as e:
            raise EmbeddingError(
                f"Failed to load embedding model: {e}",
                code=ErrorCode.EMBEDDING_MODEL_LOAD_FAILED,
                operation="load_model",
                original_error=e,
            )
        self._progress({"status": "ready", "message": "Model ready!"})

    def _embed_one(self, text: str) -> np.ndarray:
        try:
            return np.asarray(self._provider.embed(text), dtype=np.float32)
        except Exception as e:
            raise EmbeddingError(
                f"Embedding inference failed: {e}",
                operation="embed",
                original_error=e,
            )

    def _embed_many(self, texts: Sequence[str], batch_size: int) -> List[np.ndarray]:
        results: List[np.ndarray] = []
        for start in range(0, len(texts), batch_size):
            chunk = texts[start : start + batch_size]
            try:
                vectors = self._provider.embed_batch(chunk, batch_size)
            except Exception as e:
                raise EmbeddingError(
                    f"Batch embedding failed: {e}",
                    operation="embed_batch",
                    original_error=e,
                )
            results.extend(np.asarray(v, dtype=np.float32) for v in vectors)
            self._progress(
                {
                    "status": "batch",
                    "completed": len(results),
                    "total": len(texts),
                    "message": f"Processing {len(results)}/{len(texts)}",
                }
            )
        return results


class EmbeddingClient:
    """Asyncio-facing interface to the embedding worker thread.

    Args:
        provider: An EmbeddingProvider, or None when embeddings are disabled
            (every request then resolves to "unavailable").
        model_version: Version label stored alongside produced vectors.
        max_tokens: Model token budget; text is cut to ``max_tokens * 4``
            characters before it is sent to the worker.
        batch_size: Texts per provider call in ``embed_batch``.
    """

    def __init__(
        self,
        provider: Optional["EmbeddingProvider"] = None,
        model_version: str = DEFAULT_MODEL_VERSION,
        max_tokens: int = DEFAULT_MAX_TOKENS,
        batch_size: int = 32,
    ) -> None:
        self._provider = provider
        self.model_version = model_version
        self.max_chars = max_tokens * CHARS_PER_TOKEN
        self.batch_size = batch_size

        self._worker: Optional[_EmbeddingWorker] = None
        self._ids = itertools.count(1)
        self._pending: Dict[int, Tuple[asyncio.AbstractEventLoop, asyncio.Future]] = {}
        self._pending_lock = threading.Lock()
        self._progress_callback: Optional[ProgressCallback] = None
        self._load_task: Optional[asyncio.Future] = None
        self._is_loaded = False
        self._is_loading = False

    @classmethod
    def from_config(cls, cfg: "BookmarksConfig") -> "EmbeddingClient":
        """Build a client with an ONNX provider, or a disabled one."""
        if not cfg.embeddings_enabled:
            logger.info("Embeddings disabled; search will use keywords only")
            return cls(None, model_version=cfg.model_version)

        from super_bookmarks.services.onnx_provider import OnnxEmbeddingProvider

        provider = OnnxEmbeddingProvider(
            model_id=cfg.embedding_model,
            max_length=cfg.embedding_max_tokens,
            cache_dir=cfg.embedding_model_cache_dir,
            providers=cfg.onnx_providers,
            dimension=cfg.embedding_dim,
        )
        return cls(
            provider,
            model_version=cfg.model_version,
            max_tokens=cfg.embedding_max_tokens,
        )

    @property
    def is_loaded(self) -> bool:
        return self._is_loaded

    @property
    def is_loading(self) -> bool:
        return self._is_loading

    @property
    def enabled(self) -> bool:
        return self._provider is not None

    @property
    def dimension(self) -> Optional[int]:
        return self._provider.dimension if self._provider is not None else None

    # =========================================================================
    # Worker plumbing
    # =========================================================================

    def _init_worker(self) -> _EmbeddingWorker:
        if self._worker is None:
            self._worker = _EmbeddingWorker(self, self._provider)
            self._worker.start()
        return self._worker

    async def _send(self, message_type: MessageType, **payload: Any) -> Any:
        """Queue a request for the worker and wait for its result."""
        worker = self._init_worker()
        loop = asyncio.get_running_loop()
        future = loop.create_future()
        request_id = next(self._ids)
        with self._pending_lock:
            self._pending[request_id] = (loop, future)
        worker.inbox.put(_Request(message_type, request_id, loop, payload))
        return await future

    def _post(self, request: _Request, result: Any = None, error: Optional[Exception] = None) -> None:
        """Called from the worker thread with the outcome of a request."""
        with self._pending_lock:
            entry = self._pending.pop(request.id, None)
        if entry is None:
            return
        loop, future = entry
        try:
            loop.call_soon_threadsafe(self._resolve, future, result, error)
        except RuntimeError:
            logger.debug(f"Dropping result of request {request.id}: event loop closed")

    @staticmethod
    def _resolve(future: asyncio.Future, result: Any, error: Optional[Exception]) -> None:
        if future.done():
            return
        if error is not None:
            future.set_exception(error)
        else:
            future.set_result(result)

    def _post_progress(self, loop: asyncio.AbstractEventLoop, payload: Dict[str, Any]) -> None:
        if self._progress_callback is None:
            return
        try:
            loop.call_soon_threadsafe(self._emit_progress, payload)
        except RuntimeError:
            logger.debug("Dropping progress event: event loop closed")

    def _emit_progress(self, payload: Dict[str, Any]) -> None:
        callback = self._progress_callback
        if callback is None:
            return
        try:
            callback(payload)
        except Exception as e:
            logger.warning(f"Progress callback failed: {e}")

    def _truncate(self, text: str) -> str:
        return text[: self.max_chars] if len(text) > self.max_chars else text

    # =========================================================================
    # Public API
    # =========================================================================

    async def load_model(self, progress_callback: Optional[ProgressCallback] = None) -> bool:
        """Load the model on the worker.

        Returns True immediately when already loaded. While a load is in
        flight, every caller awaits that same load.
        A disabled client returns False without starting the worker.

        Returns:
            Whether the model is loaded.
        """
        if self._is_loaded:
            return True
        if self._provider is None:
            return False
        if progress_callback is not None:
            self._progress_callback = progress_callback
        if self._load_task is None:
            self._load_task = asyncio.ensure_future(self._load())
        return await asyncio.shield(self._load_task)

    async def _load(self) -> bool:
        self._is_loading = True
        try:
            await self._send(MessageType.LOAD_MODEL)
            self._is_loaded = True
            logger.info("Embedding model loaded")
            return True
        except EmbeddingError as e:
            logger.error(f"Failed to load embedding model: {e}")
            return False
        finally:
            self._is_loading = False
            self._load_task = None

    async def embed(self, text: str) -> Optional[np.ndarray]:
        """Embed one text.

        Returns:
            A float32 vector, or None when the model is unavailable or
            inference fails.
        """
        if not self._is_loaded:
            if not await self.load_model():
                return None
        try:
            return await self._send(MessageType.EMBED, text=self._truncate(text))
        except EmbeddingError as e:
            logger.error(f"Embed error: {e}")
            return None

    async def embed_batch(
        self,
        texts: Sequence[str],
        progress_callback: Optional[ProgressCallback] = None,
    ) -> List[Optional[np.ndarray]]:
        """Embed several texts, reporting "batch" progress events.

        Returns:
            One vector per text in order, or a list of None on failure.
        """
        texts = list(texts)
        if not texts:
            return []
        if not self._is_loaded:
            if not await self.load_model():
                return [None] * len(texts)
        if progress_callback is not None:
            self._progress_callback = progress_callback
        try:
            return await self._send(
                MessageType.EMBED_BATCH,
                texts=[self._truncate(t) for t in texts],
                batch_size=self.batch_size,
            )
        except EmbeddingError as e:
            logger.error(f"Batch embed error: {e}")
            return [None] * len(texts)

    async def ping(self) -> Dict[str, bool]:
        """Ask the worker whether the model is loaded."""
        if self._provider is None:
            return {"loaded": False}
        try:
            return await self._send(MessageType.PING)
        except EmbeddingError:
            return {"loaded": False}

    def terminate(self) -> None:
        """Stop the worker, fail pending requests and reset state."""
        worker, self._worker = self._worker, None
        if worker is not None:
            worker.inbox.put(_STOP)
            worker.join(timeout=10)

        with self._pending_lock:
            pending, self._pending = self._pending, {}
        for request_id, (loop, future) in pending.items():
            error = EmbeddingError(
                "Embedding worker stopped",
                code=ErrorCode.EMBEDDING_WORKER_STOPPED,
                operation="terminate",
            )
            try:
                loop.call_soon_threadsafe(self._resolve, future, None, error)
            except RuntimeError:
                logger.debug(f"Request {request_id} abandoned: event loop closed")

        self._is_loaded = False
        self._is_loading = False
        self._load_task = None
