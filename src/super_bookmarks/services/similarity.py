"""Cosine-similarity search over the vector cache."""
import logging
from typing import Any, Dict, Iterable, List, Optional, Sequence, Union

import numpy as np

from super_bookmarks.config import SearchSettings
from super_bookmarks.exceptions import DimensionMismatchError
from super_bookmarks.models.schema import Note, ScoredNote
from super_bookmarks.services.vector_cache import DEFAULT_DIMENSION, VectorCache
from super_bookmarks.storage.base import RecordStore

logger = logging.getLogger(__name__)

Vector = Union[np.ndarray, Sequence[float]]


def cosine_similarity(a: Vector, b: Vector) -> float:
    """Cosine of the angle between two vectors.

    Returns 0.0 when either vector has zero norm.

    Raises:
        DimensionMismatchError: If the vectors differ in length.
    """
    va = np.asarray(a, dtype=np.float64)
    vb = np.asarray(b, dtype=np.float64)
    if va.shape[0] != vb.shape[0]:
        raise DimensionMismatchError(va.shape[0], vb.shape[0])

    denominator = np.linalg.norm(va) * np.linalg.norm(vb)
    if denominator == 0:
        return 0.0
    return float(np.dot(va, vb) / denominator)


def matches_tag_filter(note: Note, tag_filter: Optional[Iterable[str]]) -> bool:
    """True if any note tag equals any filter term, ignoring case.

    An empty or missing filter accepts every note.
    """
    if not tag_filter:
        return True
    wanted = {t.lower() for t in tag_filter}
    return any(tag.lower() in wanted for tag in note.tags)


class SimilarityEngine:
    """Ranks cached note embeddings against a query vector.

    The engine owns exactly one VectorCache. Code that changes embeddings
    must call ``invalidate_cache`` on the engine it was given.
    """

    def __init__(
        self,
        store: RecordStore,
        settings: Optional[SearchSettings] = None,
        dimension: int = DEFAULT_DIMENSION,
    ):
        self.store = store
        self.settings = settings or SearchSettings()
        self.cache = VectorCache(store, dimension=dimension)

    async def search(
        self,
        query_vector: Vector,
        limit: Optional[int] = None,
        threshold: Optional[float] = None,
        tag_filter: Optional[Sequence[str]] = None,
        exclude_ids: Iterable[str] = (),
    ) -> List[ScoredNote]:
        """Semantic search against every cached embedding.

        Args:
            query_vector: Vector to compare against.
            limit: Maximum results (default from settings, 20).
            threshold: Minimum similarity kept (default from settings, 0.3).
            tag_filter: Keep only notes with a tag equal to one of these.
            exclude_ids: Note IDs never returned.

        Returns:
            Scored notes, best first. Ids whose note no longer exists are
            dropped.

        Raises:
            DimensionMismatchError: If a cached vector's length differs
                from the query's.
        """
        limit = self.settings.limit if limit is None else limit
        threshold = self.settings.threshold if threshold is None else threshold
        excluded = set(exclude_ids)

        entries = await self.cache.ensure_fresh()
        query = np.asarray(query_vector, dtype=np.float32)

        scored = []
        for note_id, entry in entries.items():
            if note_id in excluded:
                continue
            score = cosine_similarity(query, entry.vector)
            if score >= threshold:
                scored.append((note_id, score))

        # sorted() is stable, ties keep cache iteration order
        scored = sorted(scored, key=lambda item: item[1], reverse=True)[:limit]

        results: List[ScoredNote] = []
        for note_id, score in scored:
            note = await self.store.get_note(note_id)
            if note is None:
                logger.debug(f"Dropping {note_id}: embedding cached but note missing")
                continue
            if not matches_tag_filter(note, tag_filter):
                continue
            results.append(ScoredNote.from_note(note, score))
        return results

    async def find_similar(self, note_id: str, limit: int = 5) -> List[ScoredNote]:
        """Notes whose embeddings are closest to the given note's.

        Returns an empty list when the note has no embedding.
        """
        embedding = await self.store.get_embedding(note_id)
        if embedding is None:
            return []

        results = await self.search(
            embedding.vector,
            limit=limit + 1,
            threshold=self.settings.similar_threshold,
            exclude_ids=[note_id],
        )
        return results[:limit]

    def invalidate_cache(self) -> None:
        self.cache.invalidate()

    async def warm_up(self) -> None:
        await self.cache.warm_up()

    def get_cache_stats(self) -> Dict[str, Any]:
        return self.cache.stats()
