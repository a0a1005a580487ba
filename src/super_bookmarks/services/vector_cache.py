"""In-memory mirror of the stored note embeddings."""
import datetime
import logging
from dataclasses import dataclass
from typing import Any, Dict, Optional

import numpy as np

from super_bookmarks.storage.base import RecordStore

logger = logging.getLogger(__name__)

# Bytes per stored float (float32)
BYTES_PER_FLOAT = 4
DEFAULT_DIMENSION = 384


@dataclass(frozen=True)
class CacheEntry:
    """One cached embedding."""

    vector: np.ndarray
    model_version: str
    computed_at: datetime.datetime


class VectorCache:
    """Embedding cache rebuilt wholesale from the record store.

    The cache starts empty and invalid. ``refresh`` replaces the whole
    mapping and ``invalidate`` only marks it stale; the next read through
    ``ensure_fresh`` rebuilds it. Those two are the only mutations.

    Args:
        store: Record store to read embeddings from. Never written to.
        dimension: Vector length used for the memory estimate.
    """

    def __init__(self, store: RecordStore, dimension: int = DEFAULT_DIMENSION):
        self._store = store
        self._dimension = dimension
        self._entries: Optional[Dict[str, CacheEntry]] = None
        self._valid = False

    @property
    def is_valid(self) -> bool:
        return self._valid and self._entries is not None

    @property
    def entries(self) -> Dict[str, CacheEntry]:
        """Current mapping, possibly stale. Empty before the first refresh."""
        return self._entries if self._entries is not None else {}

    async def refresh(self) -> Dict[str, CacheEntry]:
        """Reload every embedding from the store and mark the cache valid."""
        records = await self._store.get_all_embeddings()
        self._entries = {
            note_id: CacheEntry(
                vector=np.asarray(record.vector, dtype=np.float32),
                model_version=record.model_version,
                computed_at=record.computed_at,
            )
            for note_id, record in records.items()
        }
        self._valid = True
        logger.debug(f"Vector cache refreshed: {len(self._entries)} embeddings")
        return self._entries

    def invalidate(self) -> None:
        """Mark the cache stale; the next read rebuilds it."""
        self._valid = False

    async def ensure_fresh(self) -> Dict[str, CacheEntry]:
        """Return the mapping, refreshing first if it is stale or unloaded."""
        if not self.is_valid:
            return await self.refresh()
        return self._entries

    async def warm_up(self) -> None:
        """Load the cache ahead of the first search. No-op when valid."""
        if not self.is_valid:
            await self.refresh()

    def stats(self) -> Dict[str, Any]:
        size = len(self._entries) if self._entries is not None else 0
        return {
            "is_valid": self.is_valid,
            "size": size,
            "memory_estimate_bytes": size * self._dimension * BYTES_PER_FLOAT,
        }
