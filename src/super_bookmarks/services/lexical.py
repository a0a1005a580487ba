"""Keyword and tag matching over stored notes."""
import logging
import re
from typing import List, Optional, Sequence, Tuple

from super_bookmarks.config import SearchSettings
from super_bookmarks.models.schema import Note, ScoredNote
from super_bookmarks.storage.base import RecordStore

logger = logging.getLogger(__name__)


def _search_blob(note: Note) -> str:
    return f"{note.title} {note.content} {' '.join(note.tags)}".lower()


def _rank(scored: List[Tuple[Note, float]], limit: int) -> List[Tuple[Note, float]]:
    """Keep positive scores, best first, ties in scan order."""
    positive = [item for item in scored if item[1] > 0]
    return sorted(positive, key=lambda item: item[1], reverse=True)[:limit]


class LexicalSearch:
    """Keyword and tag scoring that needs no embedding model."""

    def __init__(self, store: RecordStore, settings: Optional[SearchSettings] = None):
        self.store = store
        self.settings = settings or SearchSettings()

    async def _scan_notes(self) -> List[Note]:
        """Most recently updated notes, up to the scan ceiling."""
        ceiling = self.settings.keyword_scan_limit
        notes = await self.store.get_all_notes(
            limit=ceiling, order_by="updated_at", order="desc"
        )
        if len(notes) >= ceiling:
            total = await self.store.get_notes_count()
            if total > ceiling:
                logger.warning(
                    f"Lexical search scanned the {ceiling} most recent notes; "
                    f"{total - ceiling} older notes were not searched"
                )
        return notes

    def score_keywords(self, note: Note, terms: Sequence[str]) -> float:
        """Raw keyword score of one note for lowercased terms."""
        blob = _search_blob(note)
        title = note.title.lower()
        score = 0.0
        for term in terms:
            score += len(re.findall(re.escape(term), blob))
            if term in title:
                score += self.settings.title_bonus
            if any(term in tag.lower() for tag in note.tags):
                score += self.settings.tag_bonus
        return score

    def score_tags(self, note: Note, terms: Sequence[str]) -> float:
        """Tag score of one note for lowercased terms."""
        score = 0.0
        for term in terms:
            for tag in note.tags:
                tag_lower = tag.lower()
                if tag_lower == term:
                    score += self.settings.exact_tag_score
                elif term in tag_lower:
                    score += self.settings.partial_tag_score
        return score

    async def keyword_search(self, terms: Sequence[str], limit: int = 20) -> List[ScoredNote]:
        """Rank notes by keyword occurrences.

        Each term scores its occurrence count in title, content and tags,
        plus a bonus when it appears in the title and another when a tag
        contains it. Scores are divided by the number of terms.
        """
        if not terms:
            return []
        lowered = [t.lower() for t in terms]

        notes = await self._scan_notes()
        scored = [(note, self.score_keywords(note, lowered)) for note in notes]
        return [
            ScoredNote.from_note(note, score / len(lowered))
            for note, score in _rank(scored, limit)
        ]

    async def tag_search(self, terms: Sequence[str], limit: int = 20) -> List[ScoredNote]:
        """Rank notes by tag matches only.

        Exact tag matches score more than tags that merely contain a term.
        Scores are not normalized.
        """
        if not terms:
            return []
        lowered = [t.lower() for t in terms]

        notes = await self._scan_notes()
        scored = [(note, self.score_tags(note, lowered)) for note in notes]
        return [ScoredNote.from_note(note, score) for note, score in _rank(scored, limit)]
