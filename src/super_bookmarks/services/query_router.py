"""Turns raw query text into the right kind of search."""
import logging
import re
from typing import Optional

from super_bookmarks.exceptions import BookmarksError
from super_bookmarks.models.schema import ParsedQuery, QueryType, SearchResponse
from super_bookmarks.services.embedding_client import EmbeddingClient
from super_bookmarks.services.hybrid import HybridRanker
from super_bookmarks.services.lexical import LexicalSearch

logger = logging.getLogger(__name__)

_TAG_QUERY = re.compile(r"^tag:\s*(.+)$", re.IGNORECASE)

# Queries shorter than this are ignored
MIN_QUERY_LENGTH = 2

TAG_ONLY_NOTICE = "Searching tags only"
KEYWORD_FALLBACK_NOTICE = "Using keyword search (AI model loading...)"
SEMANTIC_DISABLED_NOTICE = "Using keyword search (semantic search disabled)"


def parse_query(text: str) -> ParsedQuery:
    """Classify a query.

    ``tag: a b`` becomes a tag query for ``["a", "b"]``. Anything else is a
    keyword query whose terms are the whitespace-separated tokens longer
    than one character.
    """
    query = text.strip()
    match = _TAG_QUERY.match(query)
    if match:
        return ParsedQuery(query_type=QueryType.TAG, terms=match.group(1).split())
    return ParsedQuery(
        query_type=QueryType.KEYWORD,
        terms=[word for word in query.split() if len(word) > 1],
    )


class QueryRouter:
    """Dispatches parsed queries to tag, hybrid or keyword search.

    Keyword queries are embedded whole; when no vector is available the
    router falls back to keyword search and says so in the notice, which
    differs when embeddings are switched off rather than still loading.
    """

    def __init__(
        self,
        embeddings: EmbeddingClient,
        ranker: HybridRanker,
        lexical: LexicalSearch,
    ):
        self.embeddings = embeddings
        self.ranker = ranker
        self.lexical = lexical

    async def route(self, text: str, limit: Optional[int] = None) -> SearchResponse:
        query = (text or "").strip()
        if len(query) < MIN_QUERY_LENGTH:
            return SearchResponse(query=query)
        limit = self.lexical.settings.limit if limit is None else limit

        parsed = parse_query(query)
        try:
            if parsed.query_type is QueryType.TAG:
                results = await self.lexical.tag_search(parsed.terms, limit)
                return SearchResponse(
                    query=query,
                    query_type=parsed.query_type,
                    results=results,
                    notice=TAG_ONLY_NOTICE,
                )

            vector = await self.embeddings.embed(query)
            if vector is not None:
                results = await self.ranker.hybrid_search(vector, parsed.terms, limit=limit)
                return SearchResponse(
                    query=query, query_type=parsed.query_type, results=results
                )

            results = await self.lexical.keyword_search(parsed.terms, limit)
            return SearchResponse(
                query=query,
                query_type=parsed.query_type,
                results=results,
                notice=(
                    KEYWORD_FALLBACK_NOTICE
                    if self.embeddings.enabled
                    else SEMANTIC_DISABLED_NOTICE
                ),
            )
        except BookmarksError as e:
            logger.error(f"Search failed for {query!r}: {e}")
            notice = f"Search failed: {e.message}"
        except Exception as e:
            logger.exception(f"Unexpected error searching for {query!r}: {e}")
            notice = "Search failed due to an internal error. See the log for details."
        return SearchResponse(
            query=query, query_type=parsed.query_type, notice=notice, failed=True
        )
