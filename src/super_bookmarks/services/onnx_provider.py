"""ONNX Runtime embedding provider for all-MiniLM-L6-v2.

Runs the sentence-transformers MiniLM model exported to ONNX directly with
onnxruntime and the Hugging Face tokenizers library: mean pooling over the
attention mask followed by L2 normalization, giving 384-dim unit vectors.
"""

from __future__ import annotations

import logging
import time as _time
from pathlib import Path
from typing import Callable, List, Optional, Sequence

import numpy as np

from super_bookmarks.exceptions import ConfigurationError

logger = logging.getLogger(__name__)

# Lazy imports, these are optional dependencies.
# Populated by _ensure_imports()
_ort = None
_tokenizers = None
_hf_hub = None

DEFAULT_MODEL_ID = "Xenova/all-MiniLM-L6-v2"
DEFAULT_DIMENSION = 384


def _ensure_imports() -> None:
    """Import optional dependencies, raising a clear error if missing."""
    global _ort, _tokenizers, _hf_hub
    if _ort is None:
        try:
            import onnxruntime as ort

            _ort = ort
        except ImportError:
            raise ImportError(
                "onnxruntime is required for embeddings. "
                "Install with: pip install super-bookmarks[semantic]"
            )
    if _tokenizers is None:
        try:
            import tokenizers as tok

            _tokenizers = tok
        except ImportError:
            raise ImportError(
                "tokenizers is required for embeddings. "
                "Install with: pip install super-bookmarks[semantic]"
            )
    if _hf_hub is None:
        try:
            import huggingface_hub as hfh

            _hf_hub = hfh
        except ImportError:
            raise ImportError(
                "huggingface-hub is required for embeddings. "
                "Install with: pip install super-bookmarks[semantic]"
            )


def _resolve_providers(preference: str = "auto") -> List[str]:
    """Resolve ONNX execution providers from a preference string.

    Args:
        preference: "auto" (CUDA if available, then CPU), "cpu", or a
            comma-separated list of provider names.

    Raises:
        ConfigurationError: If an explicitly listed provider is not
            available in this onnxruntime build.
    """
    _ensure_imports()

    pref = preference.strip().lower()

    if pref == "cpu":
        return ["CPUExecutionProvider"]

    if pref == "auto":
        available = _ort.get_available_providers()
        providers = []
        if "CUDAExecutionProvider" in available:
            providers.append("CUDAExecutionProvider")
        providers.append("CPUExecutionProvider")
        return providers

    requested = [p.strip() for p in preference.split(",") if p.strip()]
    available = set(_ort.get_available_providers())
    unknown = [p for p in requested if p not in available]
    if unknown or not requested:
        raise ConfigurationError(
            f"Unavailable ONNX execution providers: {', '.join(unknown) or preference!r}. "
            f"Available: {', '.join(sorted(available))}",
            config_key="onnx_providers",
        )
    return requested


def _download_model_files(
    model_id: str,
    filenames: List[str],
    cache_dir: Optional[Path] = None,
) -> Path:
    """Download model files from the Hugging Face Hub.

    Returns:
        Path to the snapshot directory containing the downloaded files.
    """
    _ensure_imports()
    snapshot_dir = _hf_hub.snapshot_download(
        repo_id=model_id,
        allow_patterns=filenames,
        cache_dir=str(cache_dir) if cache_dir else None,
    )
    return Path(snapshot_dir)


def mean_pool(hidden_states: np.ndarray, attention_mask: np.ndarray) -> np.ndarray:
    """Average token embeddings, ignoring padding positions.

    Args:
        hidden_states: (batch, seq_len, hidden) array.
        attention_mask: (batch, seq_len) array of 0/1.

    Returns:
        (batch, hidden) array.
    """
    mask = attention_mask[..., np.newaxis].astype(hidden_states.dtype)
    summed = (hidden_states * mask).sum(axis=1)
    counts = np.maximum(mask.sum(axis=1), 1e-9)
    return summed / counts


def l2_normalize(embeddings: np.ndarray) -> np.ndarray:
    norms = np.linalg.norm(embeddings, axis=1, keepdims=True)
    norms = np.maximum(norms, 1e-12)
    return embeddings / norms


class OnnxEmbeddingProvider:
    """Embedding provider using direct ONNX Runtime inference.

    Args:
        model_id: Hugging Face model ID of an ONNX export with
            ``onnx/model.onnx`` and ``tokenizer.json``.
        onnx_filename: Path to the ONNX model file within the repo.
        max_length: Maximum token length for truncation.
        cache_dir: Optional custom cache directory for model files.
        providers: Provider preference string ("auto", "cpu", or comma-separated).
        dimension: Expected output dimension, corrected from the model's
            output shape once loaded.
        status_callback: Optional ``callback(status, info)`` called from the
            loading thread with "downloading" and "loading" updates.
    """

    def __init__(
        self,
        model_id: str = DEFAULT_MODEL_ID,
        onnx_filename: str = "onnx/model.onnx",
        max_length: int = 512,
        cache_dir: Optional[Path] = None,
        providers: str = "auto",
        dimension: int = DEFAULT_DIMENSION,
        status_callback: Optional[Callable[[str, dict], None]] = None,
    ) -> None:
        self._model_id = model_id
        self._onnx_filename = onnx_filename
        self._max_length = max_length
        self._cache_dir = cache_dir
        self._providers_pref = providers
        self._session: Optional[object] = None  # ort.InferenceSession
        self._tokenizer: Optional[object] = None  # tokenizers.Tokenizer
        self._dim = dimension
        self.status_callback = status_callback

    @property
    def dimension(self) -> int:
        return self._dim

    @property
    def model_id(self) -> str:
        return self._model_id

    def _notify(self, status: str, **info) -> None:
        if self.status_callback is not None:
            self.status_callback(status, info)

    def load(self) -> None:
        """Download and load the ONNX model and tokenizer."""
        if self._session is not None:
            return

        _ensure_imports()
        t0 = _time.perf_counter()
        logger.info(f"Loading embedding model: {self._model_id} [{self._onnx_filename}]")

        self._notify("downloading", model=self._model_id)
        model_dir = _download_model_files(
            self._model_id,
            [self._onnx_filename, "tokenizer.json", "tokenizer_config.json"],
            self._cache_dir,
        )

        self._notify("loading", model=self._model_id)
        tokenizer_path = model_dir / "tokenizer.json"
        self._tokenizer = _tokenizers.Tokenizer.from_file(str(tokenizer_path))
        self._tokenizer.enable_truncation(max_length=self._max_length)
        self._tokenizer.enable_padding(length=None)  # Dynamic padding per batch

        onnx_path = model_dir / self._onnx_filename
        if not onnx_path.exists():
            raise FileNotFoundError(
                f"ONNX model not found at {onnx_path}. "
                f"Check that {self._model_id} has an ONNX model at {self._onnx_filename}"
            )

        sess_options = _ort.SessionOptions()
        sess_options.graph_optimization_level = (
            _ort.GraphOptimizationLevel.ORT_ENABLE_ALL
        )
        providers = _resolve_providers(self._providers_pref)
        if providers == ["CPUExecutionProvider"]:
            sess_options.enable_cpu_mem_arena = False

        self._session = _ort.InferenceSession(
            str(onnx_path),
            sess_options=sess_options,
            providers=providers,
        )

        outputs = self._session.get_outputs()
        if outputs and len(outputs[0].shape) >= 3 and isinstance(outputs[0].shape[-1], int):
            self._dim = outputs[0].shape[-1]

        logger.info(
            f"Embedding model loaded in {_time.perf_counter() - t0:.1f}s: "
            f"dim={self._dim}, max_tokens={self._max_length}, "
            f"providers={self._session.get_providers()}"
        )

    def unload(self) -> None:
        """Release model from memory."""
        if self._session is None:
            return
        self._session = None
        self._tokenizer = None
        logger.info(f"Embedding model unloaded: {self._model_id}")

    @property
    def is_loaded(self) -> bool:
        return self._session is not None

    def _tokenize(self, texts: Sequence[str]) -> dict:
        """Tokenize texts and return numpy arrays for ONNX input."""
        encodings = self._tokenizer.encode_batch(list(texts))
        max_len = max(len(e.ids) for e in encodings)

        input_ids = np.zeros((len(texts), max_len), dtype=np.int64)
        attention_mask = np.zeros((len(texts), max_len), dtype=np.int64)

        for i, encoding in enumerate(encodings):
            length = len(encoding.ids)
            input_ids[i, :length] = encoding.ids
            attention_mask[i, :length] = encoding.attention_mask

        return {"input_ids": input_ids, "attention_mask": attention_mask}

    def _forward(self, inputs: dict) -> np.ndarray:
        """Run inference, mean-pool and L2-normalize."""
        input_names = {inp.name for inp in self._session.get_inputs()}
        feed = {}
        if "input_ids" in input_names:
            feed["input_ids"] = inputs["input_ids"]
        if "attention_mask" in input_names:
            feed["attention_mask"] = inputs["attention_mask"]
        if "token_type_ids" in input_names:
            # BERT-family exports expect token_type_ids (all zeros for one sequence)
            feed["token_type_ids"] = np.zeros_like(inputs["input_ids"])

        hidden_states = self._session.run(None, feed)[0]
        pooled = mean_pool(hidden_states, inputs["attention_mask"])
        return l2_normalize(pooled).astype(np.float32)

    def embed(self, text: str) -> np.ndarray:
        """Embed a single text into a normalized dense vector."""
        if not self.is_loaded:
            self.load()

        return self._forward(self._tokenize([text]))[0]

    def embed_batch(
        self, texts: Sequence[str], batch_size: int = 32
    ) -> List[np.ndarray]:
        """Embed multiple texts, processing in fixed-size batches."""
        if not self.is_loaded:
            self.load()
        if not texts:
            return []

        total_batches = (len(texts) + batch_size - 1) // batch_size
        results: List[np.ndarray] = []
        t0 = _time.perf_counter()

        for i in range(0, len(texts), batch_size):
            batch = texts[i : i + batch_size]
            embeddings = self._forward(self._tokenize(batch))
            results.extend(embeddings[j] for j in range(len(batch)))
            logger.debug(f"  batch {i // batch_size + 1}/{total_batches}: {len(batch)} texts")

        logger.info(
            f"embed_batch complete: {len(texts)} texts in {_time.perf_counter() - t0:.1f}s"
        )
        return results
