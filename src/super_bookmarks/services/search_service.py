"""Service for searching notes and bookmarks."""

import logging
from typing import Any, Dict, List, Optional, Sequence

from super_bookmarks.config import SearchSettings
from super_bookmarks.models.schema import ScoredNote, SearchResponse
from super_bookmarks.observability import traced
from super_bookmarks.services.embedding_client import EmbeddingClient
from super_bookmarks.services.hybrid import HybridRanker
from super_bookmarks.services.lexical import LexicalSearch
from super_bookmarks.services.query_router import QueryRouter
from super_bookmarks.services.similarity import SimilarityEngine, Vector
from super_bookmarks.services.vector_cache import DEFAULT_DIMENSION
from super_bookmarks.storage.base import RecordStore

logger = logging.getLogger(__name__)


class SearchService:
    """Entry point for every search the caller layer performs.

    Wires one SimilarityEngine (and so one vector cache), the lexical
    scorer, the hybrid ranker and the query router around a single record
    store and embedding client.
    """

    def __init__(
        self,
        store: RecordStore,
        embeddings: EmbeddingClient,
        settings: Optional[SearchSettings] = None,
        dimension: int = DEFAULT_DIMENSION,
    ):
        """Initialize the search service.

        Args:
            store: Record store holding notes and embeddings.
            embeddings: Client used to embed query text.
            settings: Ranking constants; defaults when None.
            dimension: Embedding length, used for cache statistics.
        """
        self.store = store
        self.embeddings = embeddings
        self.settings = settings or SearchSettings()
        self.engine = SimilarityEngine(store, self.settings, dimension=dimension)
        self.lexical = LexicalSearch(store, self.settings)
        self.ranker = HybridRanker(self.engine, self.lexical, self.settings)
        self.router = QueryRouter(embeddings, self.ranker, self.lexical)

    @traced("query")
    async def query(self, text: str, limit: Optional[int] = None) -> SearchResponse:
        """Parse raw query text and run the matching search."""
        return await self.router.route(text, limit=limit)

    @traced("search")
    async def search(
        self,
        query_vector: Vector,
        limit: Optional[int] = None,
        threshold: Optional[float] = None,
        tag_filter: Optional[Sequence[str]] = None,
        exclude_ids: Sequence[str] = (),
    ) -> List[ScoredNote]:
        return await self.engine.search(
            query_vector,
            limit=limit,
            threshold=threshold,
            tag_filter=tag_filter,
            exclude_ids=exclude_ids,
        )

    @traced("hybrid_search")
    async def hybrid_search(
        self,
        query_vector: Vector,
        keyword_terms: Sequence[str],
        limit: Optional[int] = None,
        semantic_weight: Optional[float] = None,
        keyword_weight: Optional[float] = None,
        threshold: Optional[float] = None,
    ) -> List[ScoredNote]:
        return await self.ranker.hybrid_search(
            query_vector,
            keyword_terms,
            limit=limit,
            semantic_weight=semantic_weight,
            keyword_weight=keyword_weight,
            threshold=threshold,
        )

    @traced("keyword_search")
    async def keyword_search(self, terms: Sequence[str], limit: int = 20) -> List[ScoredNote]:
        return await self.lexical.keyword_search(terms, limit)

    @traced("tag_search")
    async def tag_search(self, terms: Sequence[str], limit: int = 20) -> List[ScoredNote]:
        return await self.lexical.tag_search(terms, limit)

    @traced("find_similar")
    async def find_similar(self, note_id: str, limit: int = 5) -> List[ScoredNote]:
        return await self.engine.find_similar(note_id, limit)

    def invalidate_cache(self) -> None:
        self.engine.invalidate_cache()

    async def warm_up(self) -> None:
        """Pre-load the vector cache before the first search."""
        await self.engine.warm_up()

    def get_cache_stats(self) -> Dict[str, Any]:
        return self.engine.get_cache_stats()
