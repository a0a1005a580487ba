"""Repository for note, embedding and tag storage in SQLite."""

import json
import logging
from typing import Any, Dict, List, Optional, Sequence

import numpy as np
from sqlalchemy import delete, func, insert, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session, selectinload

from super_bookmarks.exceptions import ErrorCode, NoteNotFoundError, StorageError
from super_bookmarks.models.db_models import (
    DBEmbedding,
    DBMeta,
    DBNote,
    DBTag,
    get_session_factory,
    init_db,
    note_tags,
)
from super_bookmarks.models.schema import (
    EmbeddingRecord,
    Note,
    NoteMetadata,
    TagRecord,
    ensure_timezone_aware,
    normalize_tag,
    normalize_tags,
    tag_display_names,
    utc_now,
)

logger = logging.getLogger(__name__)

# Columns get_all_notes() may order by
_ORDER_COLUMNS = {
    "updated_at": DBNote.updated_at,
    "created_at": DBNote.created_at,
    "title": DBNote.title,
}

# Fields update_note() accepts
_UPDATABLE_FIELDS = {"title", "url", "content", "tags", "favicon", "has_highlights"}


def _escape_like(value: str) -> str:
    """Escape SQL LIKE wildcards so they match literally."""
    return value.replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")


class NoteRepository:
    """Synchronous SQLite store for notes, embeddings, tags and metadata.

    Every public method opens its own session. SQLAlchemy failures are
    wrapped in StorageError and never retried here.
    """

    def __init__(self, engine: Optional[Any] = None, db_url: Optional[str] = None):
        """Initialize the repository.

        Args:
            engine: Pre-configured SQLAlchemy engine. When None, one is
                created from db_url (or the configured database path).
            db_url: Database URL used when no engine is given.
        """
        self.engine = engine if engine is not None else init_db(db_url)
        self.session_factory = get_session_factory(self.engine)

    # =========================================================================
    # Conversion helpers
    # =========================================================================

    @staticmethod
    def _to_note(db_note: DBNote) -> Note:
        return Note(
            id=db_note.id,
            title=db_note.title,
            url=db_note.url,
            content=db_note.content or "",
            excerpt=db_note.excerpt or "",
            tags=[tag.name for tag in db_note.tags],
            created_at=ensure_timezone_aware(db_note.created_at),
            updated_at=ensure_timezone_aware(db_note.updated_at),
            favicon=db_note.favicon,
            metadata=NoteMetadata(has_highlights=bool(db_note.has_highlights)),
        )

    @staticmethod
    def _to_embedding(db_embedding: DBEmbedding) -> EmbeddingRecord:
        vector = np.frombuffer(db_embedding.vector, dtype=np.float32)
        return EmbeddingRecord(
            note_id=db_embedding.note_id,
            vector=vector.tolist(),
            model_version=db_embedding.model_version,
            computed_at=ensure_timezone_aware(db_embedding.computed_at),
        )

    @staticmethod
    def _to_tag(db_tag: DBTag) -> TagRecord:
        return TagRecord(
            name=db_tag.name,
            display_name=db_tag.display_name,
            usage_count=db_tag.usage_count,
        )

    def _load_note(self, session: Session, note_id: str) -> Optional[DBNote]:
        return session.scalar(
            select(DBNote)
            .options(selectinload(DBNote.tags))
            .where(DBNote.id == note_id)
        )

    def _bump_tags(
        self,
        session: Session,
        names: Sequence[str],
        display_names: Optional[Dict[str, str]] = None,
    ) -> None:
        """Create missing tag records and increment usage for the given names."""
        display_names = display_names or {}
        for name in names:
            db_tag = session.get(DBTag, name)
            if db_tag is None:
                session.add(
                    DBTag(
                        name=name,
                        display_name=display_names.get(name, name),
                        usage_count=1,
                    )
                )
            else:
                db_tag.usage_count += 1
        session.flush()

    def _replace_note_tags(self, session: Session, note_id: str, names: Sequence[str]) -> None:
        session.execute(delete(note_tags).where(note_tags.c.note_id == note_id))
        if names:
            session.execute(
                insert(note_tags),
                [
                    {"note_id": note_id, "tag_name": name, "position": i}
                    for i, name in enumerate(names)
                ],
            )

    # =========================================================================
    # Note Operations
    # =========================================================================

    def save_note(self, note: Note, display_names: Optional[Dict[str, str]] = None) -> Note:
        """Create or overwrite a note.

        Usage counts are bumped only for tags the stored note did not
        already carry, so re-saving a note does not inflate them.

        Args:
            note: The note to store.
            display_names: Optional mapping of normalized tag name to the
                spelling the user typed, used when a tag is first created.

        Returns:
            The note as stored.
        """
        try:
            with self.session_factory() as session:
                db_note = self._load_note(session, note.id)
                if db_note is None:
                    previous = set()
                    db_note = DBNote(id=note.id)
                    session.add(db_note)
                else:
                    previous = {tag.name for tag in db_note.tags}
                db_note.title = note.title
                db_note.url = note.url
                db_note.content = note.content
                db_note.excerpt = note.excerpt
                db_note.favicon = note.favicon
                db_note.has_highlights = int(note.metadata.has_highlights)
                db_note.created_at = note.created_at
                db_note.updated_at = note.updated_at
                session.flush()

                self._bump_tags(
                    session, [t for t in note.tags if t not in previous], display_names
                )
                self._replace_note_tags(session, note.id, note.tags)
                session.commit()
        except SQLAlchemyError as e:
            raise StorageError(
                f"Failed to save note {note.id}",
                operation="save_note",
                code=ErrorCode.STORAGE_WRITE_FAILED,
                original_error=e,
            )
        logger.debug(f"Saved note {note.id} ({len(note.tags)} tags)")
        return note

    def get_note(self, note_id: str) -> Optional[Note]:
        """Get a note by ID, or None."""
        try:
            with self.session_factory() as session:
                db_note = self._load_note(session, note_id)
                return self._to_note(db_note) if db_note else None
        except SQLAlchemyError as e:
            raise StorageError(
                f"Failed to read note {note_id}", operation="get_note", original_error=e
            )

    def get_note_by_url(self, url: str) -> Optional[Note]:
        """Get the first note saved from the given URL, or None."""
        if not url:
            return None
        try:
            with self.session_factory() as session:
                db_note = session.scalar(
                    select(DBNote)
                    .options(selectinload(DBNote.tags))
                    .where(DBNote.url == url)
                    .order_by(DBNote.created_at)
                    .limit(1)
                )
                return self._to_note(db_note) if db_note else None
        except SQLAlchemyError as e:
            raise StorageError(
                "Failed to look up note by URL",
                operation="get_note_by_url",
                original_error=e,
            )

    def update_note(self, note_id: str, updates: Dict[str, Any]) -> Note:
        """Apply field updates to an existing note.

        ID and creation time never change; updated_at is refreshed. Tags
        that were not on the note before have their usage count bumped.

        Raises:
            NoteNotFoundError: If no note has this ID.
        """
        unknown = set(updates) - _UPDATABLE_FIELDS
        if unknown:
            raise ValueError(f"Cannot update fields: {', '.join(sorted(unknown))}")

        try:
            with self.session_factory() as session:
                db_note = self._load_note(session, note_id)
                if db_note is None:
                    raise NoteNotFoundError(note_id)

                current = self._to_note(db_note)
                if "content" in updates:
                    current = current.with_content(updates["content"] or "")
                fields = {
                    k: v for k, v in updates.items() if k not in ("content", "has_highlights")
                }
                merged = current.model_dump()
                merged.update(fields)
                if "has_highlights" in updates:
                    merged["metadata"]["has_highlights"] = bool(updates["has_highlights"])
                merged["updated_at"] = utc_now()
                updated = Note(**merged)

                db_note.title = updated.title
                db_note.url = updated.url
                db_note.content = updated.content
                db_note.excerpt = updated.excerpt
                db_note.favicon = updated.favicon
                db_note.has_highlights = int(updated.metadata.has_highlights)
                db_note.updated_at = updated.updated_at

                if "tags" in updates:
                    old = set(current.tags)
                    self._bump_tags(
                        session,
                        [t for t in updated.tags if t not in old],
                        tag_display_names(updates["tags"] or []),
                    )
                    self._replace_note_tags(session, note_id, updated.tags)
                session.commit()
                return updated
        except SQLAlchemyError as e:
            raise StorageError(
                f"Failed to update note {note_id}",
                operation="update_note",
                code=ErrorCode.STORAGE_WRITE_FAILED,
                original_error=e,
            )

    def delete_note(self, note_id: str) -> bool:
        """Delete a note together with its embedding.

        Returns:
            True if a note was deleted, False if it did not exist.
        """
        try:
            with self.session_factory() as session:
                session.execute(delete(DBEmbedding).where(DBEmbedding.note_id == note_id))
                session.execute(delete(note_tags).where(note_tags.c.note_id == note_id))
                result = session.execute(delete(DBNote).where(DBNote.id == note_id))
                session.commit()
                return result.rowcount > 0
        except SQLAlchemyError as e:
            raise StorageError(
                f"Failed to delete note {note_id}",
                operation="delete_note",
                code=ErrorCode.STORAGE_DELETE_FAILED,
                original_error=e,
            )

    def get_all_notes(
        self,
        limit: int = 50,
        offset: int = 0,
        order_by: str = "updated_at",
        order: str = "desc",
    ) -> List[Note]:
        """Get a page of notes.

        Args:
            limit: Maximum notes to return.
            offset: Notes to skip.
            order_by: One of updated_at, created_at, title.
            order: "asc" or "desc".
        """
        column = _ORDER_COLUMNS.get(order_by)
        if column is None:
            raise ValueError(
                f"Invalid order_by: {order_by}. Valid: {', '.join(_ORDER_COLUMNS)}"
            )
        ordering = column.desc() if order == "desc" else column.asc()
        try:
            with self.session_factory() as session:
                db_notes = session.scalars(
                    select(DBNote)
                    .options(selectinload(DBNote.tags))
                    .order_by(ordering, DBNote.id)
                    .offset(offset)
                    .limit(limit)
                ).all()
                return [self._to_note(n) for n in db_notes]
        except SQLAlchemyError as e:
            raise StorageError(
                "Failed to list notes", operation="get_all_notes", original_error=e
            )

    def search_by_tags(self, tags: Sequence[str]) -> List[Note]:
        """Notes carrying any of the given tags (exact, normalized match)."""
        names = normalize_tags(tags)
        if not names:
            return []
        try:
            with self.session_factory() as session:
                note_ids = select(note_tags.c.note_id).where(
                    note_tags.c.tag_name.in_(names)
                )
                db_notes = session.scalars(
                    select(DBNote)
                    .options(selectinload(DBNote.tags))
                    .where(DBNote.id.in_(note_ids))
                    .order_by(DBNote.updated_at.desc())
                ).all()
                return [self._to_note(n) for n in db_notes]
        except SQLAlchemyError as e:
            raise StorageError(
                "Failed to search by tags", operation="search_by_tags", original_error=e
            )

    def get_notes_count(self) -> int:
        """Total number of notes."""
        try:
            with self.session_factory() as session:
                return session.scalar(select(func.count()).select_from(DBNote)) or 0
        except SQLAlchemyError as e:
            raise StorageError(
                "Failed to count notes", operation="get_notes_count", original_error=e
            )

    # =========================================================================
    # Embedding Operations
    # =========================================================================

    def save_embedding(
        self, note_id: str, vector: Sequence[float], model_version: str
    ) -> EmbeddingRecord:
        """Store or replace the embedding of a note as a float32 blob."""
        array = np.asarray(vector, dtype=np.float32)
        if array.ndim != 1:
            raise ValueError(f"Embedding must be 1-D, got shape {array.shape}")
        computed_at = utc_now()
        try:
            with self.session_factory() as session:
                db_embedding = session.get(DBEmbedding, note_id)
                if db_embedding is None:
                    db_embedding = DBEmbedding(note_id=note_id)
                    session.add(db_embedding)
                db_embedding.vector = array.tobytes()
                db_embedding.dimension = int(array.shape[0])
                db_embedding.model_version = model_version
                db_embedding.computed_at = computed_at
                session.commit()
        except SQLAlchemyError as e:
            raise StorageError(
                f"Failed to save embedding for {note_id}",
                operation="save_embedding",
                code=ErrorCode.STORAGE_WRITE_FAILED,
                original_error=e,
            )
        return EmbeddingRecord(
            note_id=note_id,
            vector=array.tolist(),
            model_version=model_version,
            computed_at=computed_at,
        )

    def get_embedding(self, note_id: str) -> Optional[EmbeddingRecord]:
        """Get the embedding of a note, or None."""
        try:
            with self.session_factory() as session:
                db_embedding = session.get(DBEmbedding, note_id)
                return self._to_embedding(db_embedding) if db_embedding else None
        except SQLAlchemyError as e:
            raise StorageError(
                f"Failed to read embedding for {note_id}",
                operation="get_embedding",
                original_error=e,
            )

    def get_all_embeddings(self) -> Dict[str, EmbeddingRecord]:
        """Every stored embedding, keyed by note ID."""
        try:
            with self.session_factory() as session:
                rows = session.scalars(select(DBEmbedding)).all()
                return {row.note_id: self._to_embedding(row) for row in rows}
        except SQLAlchemyError as e:
            raise StorageError(
                "Failed to scan embeddings",
                operation="get_all_embeddings",
                original_error=e,
            )

    def delete_embedding(self, note_id: str) -> bool:
        """Delete the embedding of a note. Returns True if one existed."""
        try:
            with self.session_factory() as session:
                result = session.execute(
                    delete(DBEmbedding).where(DBEmbedding.note_id == note_id)
                )
                session.commit()
                return result.rowcount > 0
        except SQLAlchemyError as e:
            raise StorageError(
                f"Failed to delete embedding for {note_id}",
                operation="delete_embedding",
                code=ErrorCode.STORAGE_DELETE_FAILED,
                original_error=e,
            )

    # =========================================================================
    # Tag Operations
    # =========================================================================

    def get_all_tags(self) -> List[TagRecord]:
        """All tags, most used first."""
        try:
            with self.session_factory() as session:
                db_tags = session.scalars(
                    select(DBTag).order_by(DBTag.usage_count.desc(), DBTag.name)
                ).all()
                return [self._to_tag(t) for t in db_tags]
        except SQLAlchemyError as e:
            raise StorageError(
                "Failed to list tags", operation="get_all_tags", original_error=e
            )

    def search_tags(self, prefix: str) -> List[TagRecord]:
        """Tags whose name starts with prefix, most used first."""
        name = normalize_tag(prefix)
        try:
            with self.session_factory() as session:
                db_tags = session.scalars(
                    select(DBTag)
                    .where(DBTag.name.like(f"{_escape_like(name)}%", escape="\\"))
                    .order_by(DBTag.usage_count.desc(), DBTag.name)
                ).all()
                return [self._to_tag(t) for t in db_tags]
        except SQLAlchemyError as e:
            raise StorageError(
                "Failed to search tags", operation="search_tags", original_error=e
            )

    # =========================================================================
    # Meta Operations
    # =========================================================================

    def get_meta(self, key: str) -> Any:
        """Read a JSON-encoded metadata value, or None."""
        try:
            with self.session_factory() as session:
                row = session.get(DBMeta, key)
                if row is None or row.value is None:
                    return None
                return json.loads(row.value)
        except SQLAlchemyError as e:
            raise StorageError(
                f"Failed to read meta key {key}", operation="get_meta", original_error=e
            )

    def set_meta(self, key: str, value: Any) -> None:
        """Write a JSON-encodable metadata value."""
        try:
            with self.session_factory() as session:
                row = session.get(DBMeta, key)
                if row is None:
                    row = DBMeta(key=key)
                    session.add(row)
                row.value = json.dumps(value)
                session.commit()
        except SQLAlchemyError as e:
            raise StorageError(
                f"Failed to write meta key {key}",
                operation="set_meta",
                code=ErrorCode.STORAGE_WRITE_FAILED,
                original_error=e,
            )

    def close(self) -> None:
        """Dispose of the engine's connection pool."""
        self.engine.dispose()
