"""Service layer for creating, changing and deleting notes.

Every write that touches note content keeps the stored embedding in step
with it and invalidates the similarity engine's cache afterwards.
"""

import logging
from typing import Any, Dict, List, Optional, Sequence

from super_bookmarks.exceptions import NoteNotFoundError, ValidationError
from super_bookmarks.models.schema import (
    Note,
    NoteMetadata,
    TagRecord,
    tag_display_names,
    utc_now,
)
from super_bookmarks.observability import traced
from super_bookmarks.services.embedding_client import EmbeddingClient, ProgressCallback
from super_bookmarks.services.similarity import SimilarityEngine
from super_bookmarks.storage.base import RecordStore

logger = logging.getLogger(__name__)

# Placed between existing content and text appended to the same URL
APPEND_SEPARATOR = "\n\n---\n\n"

# Notes read per page while reindexing
REINDEX_PAGE_SIZE = 200

LAST_REINDEX_META_KEY = "last_reindex"


class NoteService:
    """Write path for notes.

    Args:
        store: Record store notes and embeddings are written to.
        embeddings: Client used to embed note content.
        engine: The similarity engine whose cache must be invalidated after
            embedding changes.
    """

    def __init__(
        self,
        store: RecordStore,
        embeddings: EmbeddingClient,
        engine: SimilarityEngine,
    ):
        self.store = store
        self.embeddings = embeddings
        self.engine = engine

    async def get_note(self, note_id: str) -> Note:
        """Get a note by ID.

        Raises:
            NoteNotFoundError: If no note has this ID.
        """
        note = await self.store.get_note(note_id)
        if note is None:
            raise NoteNotFoundError(note_id)
        return note

    async def list_tags(self, prefix: Optional[str] = None) -> List[TagRecord]:
        """All tags by usage, or those starting with prefix."""
        if prefix:
            return await self.store.search_tags(prefix)
        return await self.store.get_all_tags()

    @traced("save_note")
    async def save_note(
        self,
        title: str = "",
        content: str = "",
        url: Optional[str] = None,
        tags: Optional[Sequence[str]] = None,
        favicon: Optional[str] = None,
        has_highlights: bool = False,
    ) -> Note:
        """Save a captured note.

        When a note from the same URL already exists the capture is merged
        into it: the new text is appended to its content, new tags are
        added, and its title is only replaced while it is still
        "Untitled".

        Raises:
            ValidationError: If title, content and URL are all empty.
        """
        if not (title or "").strip() and not (content or "").strip() and not (url or "").strip():
            raise ValidationError("A note needs a title, content or URL", field="content")

        tags = list(tags or [])
        existing = await self.store.get_note_by_url(url.strip()) if url and url.strip() else None

        if existing is not None:
            text = content or ""
            if text:
                separator = APPEND_SEPARATOR if existing.content else ""
                new_content = existing.content + separator + text
            else:
                new_content = existing.content
            new_title = title if existing.title == "Untitled" and title else existing.title
            note = Note(
                id=existing.id,
                url=existing.url,
                created_at=existing.created_at,
                title=new_title,
                content=new_content,
                tags=existing.tags + tags,
                favicon=existing.favicon or favicon,
                metadata=NoteMetadata(
                    has_highlights=existing.metadata.has_highlights or has_highlights
                ),
                updated_at=utc_now(),
            )
            logger.info(f"Appending capture to existing note {note.id} ({url})")
        else:
            note = Note(
                title=title,
                content=content or "",
                url=url,
                tags=tags,
                favicon=favicon,
                metadata=NoteMetadata(has_highlights=has_highlights),
            )

        await self.store.save_note(note, tag_display_names(tags))
        await self._sync_embedding(note)
        return note

    @traced("update_note")
    async def update_note(self, note_id: str, **changes: Any) -> Note:
        """Change fields of an existing note.

        Accepts title, url, content, tags, favicon and has_highlights.
        Content changes regenerate (or remove) the embedding.

        Raises:
            NoteNotFoundError: If no note has this ID.
        """
        updates = {k: v for k, v in changes.items() if v is not None}
        existing = await self.store.get_note(note_id)
        if existing is None:
            raise NoteNotFoundError(note_id)
        if not updates:
            return existing

        updated = await self.store.update_note(note_id, updates)
        if "content" in updates and updated.content != existing.content:
            await self._sync_embedding(updated)
        return updated

    @traced("delete_note")
    async def delete_note(self, note_id: str) -> bool:
        """Delete a note and its embedding.

        Returns:
            True if the note existed.
        """
        deleted = await self.store.delete_note(note_id)
        if deleted:
            self.engine.invalidate_cache()
            logger.info(f"Deleted note {note_id}")
        return deleted

    @traced("reindex")
    async def reindex(
        self,
        force: bool = False,
        progress_callback: Optional[ProgressCallback] = None,
    ) -> Dict[str, int]:
        """Bring every embedding up to date.

        Embeds notes with content but no embedding, or an embedding from a
        different model version. With ``force`` every note with content is
        re-embedded. Embeddings of notes without content are removed.

        Returns:
            Counts: total, embedded, skipped, failed, removed.
        """
        counts = {"total": 0, "embedded": 0, "skipped": 0, "failed": 0, "removed": 0}
        to_embed: List[Note] = []

        offset = 0
        while True:
            page = await self.store.get_all_notes(
                limit=REINDEX_PAGE_SIZE, offset=offset, order_by="created_at", order="asc"
            )
            if not page:
                break
            offset += len(page)
            for note in page:
                counts["total"] += 1
                if not note.embedding_text().strip():
                    if await self.store.delete_embedding(note.id):
                        counts["removed"] += 1
                    continue
                if not force:
                    current = await self.store.get_embedding(note.id)
                    if current is not None and current.model_version == self.embeddings.model_version:
                        counts["skipped"] += 1
                        continue
                to_embed.append(note)

        if to_embed:
            logger.info(f"Reindexing {len(to_embed)} of {counts['total']} notes")
            vectors = await self.embeddings.embed_batch(
                [note.embedding_text() for note in to_embed],
                progress_callback=progress_callback,
            )
            for note, vector in zip(to_embed, vectors):
                if vector is None:
                    counts["failed"] += 1
                    continue
                await self.store.save_embedding(
                    note.id, vector.tolist(), self.embeddings.model_version
                )
                counts["embedded"] += 1

        self.engine.invalidate_cache()
        await self.store.set_meta(
            LAST_REINDEX_META_KEY,
            {"at": utc_now().isoformat(), "force": force, **counts},
        )
        logger.info(f"Reindex complete: {counts}")
        return counts

    async def _sync_embedding(self, note: Note) -> None:
        """Make the stored embedding match the note's current content."""
        text = note.embedding_text()
        try:
            if not text.strip():
                await self.store.delete_embedding(note.id)
                return

            vector = await self.embeddings.embed(text)
            if vector is None:
                # A stale vector would rank the note by its old content
                await self.store.delete_embedding(note.id)
                logger.warning(
                    f"Note {note.id} saved without embedding (model unavailable); "
                    f"run reindex once the model loads"
                )
                return

            await self.store.save_embedding(note.id, vector.tolist(), self.embeddings.model_version)
        finally:
            self.engine.invalidate_cache()

