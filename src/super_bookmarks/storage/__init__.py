"""Storage layer for Super Bookmarks."""

from super_bookmarks.storage.async_store import AsyncNoteStore
from super_bookmarks.storage.base import RecordStore
from super_bookmarks.storage.note_repository import NoteRepository

__all__ = [
    "RecordStore",
    "NoteRepository",
    "AsyncNoteStore",
]
