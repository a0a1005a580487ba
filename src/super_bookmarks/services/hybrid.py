"""Merges semantic and keyword rankings into one result list."""
import logging
from typing import Dict, List, Optional, Sequence

from super_bookmarks.config import SearchSettings
from super_bookmarks.models.schema import ScoredNote
from super_bookmarks.services.lexical import LexicalSearch
from super_bookmarks.services.similarity import SimilarityEngine, Vector

logger = logging.getLogger(__name__)


class HybridRanker:
    """Weighted merge of similarity and keyword results.

    Semantic hits contribute ``score * semantic_weight``, damped by their
    rank through ``positional_boost``. Keyword hits contribute by rank only:
    ``(1 - i / n) * keyword_weight``. A note found by both signals gets the
    sum.
    """

    def __init__(
        self,
        engine: SimilarityEngine,
        lexical: LexicalSearch,
        settings: Optional[SearchSettings] = None,
    ):
        self.engine = engine
        self.lexical = lexical
        self.settings = settings or SearchSettings()

    async def hybrid_search(
        self,
        query_vector: Vector,
        keyword_terms: Sequence[str],
        limit: Optional[int] = None,
        semantic_weight: Optional[float] = None,
        keyword_weight: Optional[float] = None,
        threshold: Optional[float] = None,
    ) -> List[ScoredNote]:
        limit = self.settings.limit if limit is None else limit
        semantic_weight = (
            self.settings.semantic_weight if semantic_weight is None else semantic_weight
        )
        keyword_weight = (
            self.settings.keyword_weight if keyword_weight is None else keyword_weight
        )
        threshold = self.settings.threshold if threshold is None else threshold
        boost = self.settings.positional_boost

        semantic = await self.engine.search(
            query_vector, limit=limit * 2, threshold=threshold
        )
        keyword = await self.lexical.keyword_search(keyword_terms, limit * 2)

        # Insertion order is the tie-break: semantic hits first, then new keyword hits
        merged: Dict[str, ScoredNote] = {}
        scores: Dict[str, float] = {}

        n_sem = len(semantic)
        for i, note in enumerate(semantic):
            scores[note.id] = note.score * semantic_weight * (1 - (i / n_sem) * boost)
            merged[note.id] = note

        n_kw = len(keyword)
        for i, note in enumerate(keyword):
            contribution = (1 - i / n_kw) * keyword_weight
            if note.id in scores:
                scores[note.id] += contribution
            else:
                scores[note.id] = contribution
                merged[note.id] = note

        ranked = sorted(merged, key=lambda note_id: scores[note_id], reverse=True)[:limit]
        logger.debug(
            f"Hybrid merge: {n_sem} semantic + {n_kw} keyword -> {len(ranked)} results"
        )
        return [
            ScoredNote.from_note(merged[note_id].to_note(), scores[note_id])
            for note_id in ranked
        ]
