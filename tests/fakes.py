"""Fake embedding provider and record store for testing.

These produce deterministic, controlled outputs without loading real models
or touching disk. FakeEmbeddingProvider uses small vectors derived from text
hashing, so identical inputs always produce identical vectors; tests can
also pin exact vectors for chosen texts. FakeRecordStore keeps notes and
embeddings in dictionaries behind the async RecordStore interface.

Design principles:
- Fake providers produce real numpy arrays of controlled dimensionality
- Deterministic: same input -> same output, always
- Inspectable: call counters let tests assert how often things ran
"""
import hashlib
import threading
import time
from typing import Any, Dict, List, Optional, Sequence

import numpy as np

from super_bookmarks.exceptions import NoteNotFoundError
from super_bookmarks.models.schema import (
    EmbeddingRecord,
    Note,
    TagRecord,
    normalize_tag,
    normalize_tags,
    tag_display_names,
    utc_now,
)


def hash_vector(text: str, dim: int = 8) -> np.ndarray:
    """Deterministic L2-normalized vector derived from a hash of text."""
    chunks: list = []
    needed = dim
    seed = text.encode("utf-8")
    while needed > 0:
        seed = hashlib.sha256(seed).digest()
        chunks.append(seed)
        needed -= len(seed)
    all_bytes = b"".join(chunks)[:dim]

    raw = np.frombuffer(all_bytes, dtype=np.uint8).astype(np.float64)
    raw = (raw / 127.5) - 1.0  # Map [0, 255] -> [-1, 1]
    norm = np.linalg.norm(raw)
    if norm > 0:
        raw = raw / norm
    return raw.astype(np.float32)


def unit(*components: float) -> List[float]:
    """Normalize the given components into a unit vector."""
    v = np.asarray(components, dtype=np.float64)
    return (v / np.linalg.norm(v)).tolist()


class FakeEmbeddingProvider:
    """Deterministic embedding provider for testing.

    Args:
        dim: Vector length.
        vectors: Optional fixed vectors for exact texts; other texts get a
            hash-derived vector.
        fail_on_load: Make load() raise RuntimeError.
        fail_on_embed: Make embed()/embed_batch() raise RuntimeError.
        load_delay: Seconds load() sleeps, to widen race windows.
    """

    def __init__(
        self,
        dim: int = 8,
        vectors: Optional[Dict[str, Sequence[float]]] = None,
        fail_on_load: bool = False,
        fail_on_embed: bool = False,
        load_delay: float = 0.0,
    ) -> None:
        self._dim = dim
        self._loaded = False
        self.vectors = {k: np.asarray(v, dtype=np.float32) for k, v in (vectors or {}).items()}
        self.fail_on_load = fail_on_load
        self.fail_on_embed = fail_on_embed
        self.load_delay = load_delay
        self.load_count = 0
        self.unload_count = 0
        self.embed_count = 0
        self.embedded_texts: List[str] = []
        self.threads = set()
        self.status_callback = None

    @property
    def dimension(self) -> int:
        return self._dim

    def load(self) -> None:
        self.threads.add(threading.get_ident())
        self.load_count += 1
        if self.load_delay:
            time.sleep(self.load_delay)
        if self.fail_on_load:
            raise RuntimeError("model download failed")
        if self.status_callback is not None:
            self.status_callback("downloading", {"model": "fake"})
        self._loaded = True

    def unload(self) -> None:
        self._loaded = False
        self.unload_count += 1

    @property
    def is_loaded(self) -> bool:
        return self._loaded

    def embed(self, text: str) -> np.ndarray:
        self.threads.add(threading.get_ident())
        if self.fail_on_embed:
            raise RuntimeError("inference failed")
        self.embed_count += 1
        self.embedded_texts.append(text)
        if text in self.vectors:
            return self.vectors[text]
        return hash_vector(text, self._dim)

    def embed_batch(self, texts: Sequence[str], batch_size: int = 32) -> List[np.ndarray]:
        return [self.embed(text) for text in texts]


class FakeRecordStore:
    """In-memory async record store.

    Mirrors the SQLite store's observable behaviour: tag usage counts are
    bumped on save, deleting a note deletes its embedding, and notes are
    listed by updated_at descending by default.
    """

    def __init__(self) -> None:
        self.notes: Dict[str, Note] = {}
        self.embeddings: Dict[str, EmbeddingRecord] = {}
        self.tags: Dict[str, TagRecord] = {}
        self.meta: Dict[str, Any] = {}
        self.get_all_embeddings_calls = 0
        self.get_all_notes_calls: List[Dict[str, Any]] = []
        self.fail_reads: Optional[Exception] = None

    # Helpers for tests

    def add(
        self,
        title: str = "Untitled",
        content: str = "",
        tags: Sequence[str] = (),
        vector: Optional[Sequence[float]] = None,
        model_version: str = "all-MiniLM-L6-v2",
        **fields: Any,
    ) -> Note:
        """Insert a note (and optionally its embedding) without side effects."""
        note = Note(title=title, content=content, tags=list(tags), **fields)
        self.notes[note.id] = note
        if vector is not None:
            self.embeddings[note.id] = EmbeddingRecord(
                note_id=note.id, vector=list(vector), model_version=model_version
            )
        return note

    def _check(self) -> None:
        if self.fail_reads is not None:
            raise self.fail_reads

    # RecordStore interface

    async def get_note(self, note_id: str) -> Optional[Note]:
        self._check()
        return self.notes.get(note_id)

    async def get_note_by_url(self, url: str) -> Optional[Note]:
        for note in self.notes.values():
            if url and note.url == url:
                return note
        return None

    async def get_all_notes(
        self,
        limit: int = 50,
        offset: int = 0,
        order_by: str = "updated_at",
        order: str = "desc",
    ) -> List[Note]:
        self._check()
        self.get_all_notes_calls.append(
            {"limit": limit, "offset": offset, "order_by": order_by, "order": order}
        )
        notes = sorted(
            self.notes.values(),
            key=lambda n: getattr(n, order_by),
            reverse=(order == "desc"),
        )
        return notes[offset : offset + limit]

    async def get_notes_count(self) -> int:
        return len(self.notes)

    def _bump(self, names: Sequence[str], display_names: Optional[Dict[str, str]] = None) -> None:
        for name in names:
            if name in self.tags:
                self.tags[name].usage_count += 1
            else:
                self.tags[name] = TagRecord.create(name, (display_names or {}).get(name))

    async def save_note(self, note: Note, display_names: Optional[Dict[str, str]] = None) -> Note:
        previous = self.notes[note.id].tags if note.id in self.notes else []
        self._bump([t for t in note.tags if t not in previous], display_names)
        self.notes[note.id] = note
        return note

    async def update_note(self, note_id: str, updates: Dict[str, Any]) -> Note:
        existing = self.notes.get(note_id)
        if existing is None:
            raise NoteNotFoundError(note_id)
        data = existing.model_dump()
        for key, value in updates.items():
            if key == "has_highlights":
                data["metadata"]["has_highlights"] = value
            else:
                data[key] = value
        if "content" in updates:
            data["excerpt"] = ""
        data["updated_at"] = utc_now()
        updated = Note(**data)
        self._bump(
            [t for t in updated.tags if t not in existing.tags],
            tag_display_names(updates.get("tags") or []),
        )
        self.notes[note_id] = updated
        return updated

    async def delete_note(self, note_id: str) -> bool:
        self.embeddings.pop(note_id, None)
        return self.notes.pop(note_id, None) is not None

    async def search_by_tags(self, tags: Sequence[str]) -> List[Note]:
        wanted = set(normalize_tags(tags))
        return [n for n in self.notes.values() if wanted & set(n.tags)]

    async def get_embedding(self, note_id: str) -> Optional[EmbeddingRecord]:
        return self.embeddings.get(note_id)

    async def get_all_embeddings(self) -> Dict[str, EmbeddingRecord]:
        self._check()
        self.get_all_embeddings_calls += 1
        return dict(self.embeddings)

    async def save_embedding(
        self, note_id: str, vector: Sequence[float], model_version: str
    ) -> EmbeddingRecord:
        record = EmbeddingRecord(
            note_id=note_id, vector=list(vector), model_version=model_version
        )
        self.embeddings[note_id] = record
        return record

    async def delete_embedding(self, note_id: str) -> bool:
        return self.embeddings.pop(note_id, None) is not None

    async def get_all_tags(self) -> List[TagRecord]:
        return sorted(self.tags.values(), key=lambda t: (-t.usage_count, t.name))

    async def search_tags(self, prefix: str) -> List[TagRecord]:
        prefix = normalize_tag(prefix)
        return [t for t in await self.get_all_tags() if t.name.startswith(prefix)]

    async def get_meta(self, key: str) -> Any:
        return self.meta.get(key)

    async def set_meta(self, key: str, value: Any) -> None:
        self.meta[key] = value
