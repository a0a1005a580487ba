"""Type protocol for embedding providers.

Both the ONNX provider and test fakes satisfy this contract structurally;
implementations don't need to inherit from it.

This module is importable without numpy installed (annotations are
deferred via __future__).
"""
from __future__ import annotations

from typing import TYPE_CHECKING, List, Protocol, Sequence, runtime_checkable

if TYPE_CHECKING:
    import numpy as np


@runtime_checkable
class EmbeddingProvider(Protocol):
    """Contract for embedding text into dense vectors.

    Providers are synchronous and are only ever driven from the embedding
    client's worker thread.
    """

    @property
    def dimension(self) -> int:
        """Dimensionality of produced vectors."""
        ...

    def load(self) -> None:
        """Load model into memory. Idempotent."""
        ...

    def unload(self) -> None:
        """Release model from memory. Idempotent."""
        ...

    @property
    def is_loaded(self) -> bool:
        ...

    def embed(self, text: str) -> np.ndarray:
        """Embed a single text into a 1-D, L2-normalized vector."""
        ...

    def embed_batch(
        self, texts: Sequence[str], batch_size: int = 32
    ) -> List[np.ndarray]:
        """Embed multiple texts, returning one vector per text in order."""
        ...
