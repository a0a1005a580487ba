"""Tests for the SQLite note repository and its async adapter."""
import datetime

import numpy as np
import pytest

from super_bookmarks.exceptions import NoteNotFoundError
from super_bookmarks.models.schema import Note, NoteMetadata
from super_bookmarks.storage.async_store import AsyncNoteStore
from super_bookmarks.storage.base import RecordStore


def _note(**fields):
    fields.setdefault("title", "Test Note")
    fields.setdefault("content", "Some content")
    return Note(**fields)


class TestNoteOperations:
    """Tests for note CRUD."""

    def test_save_and_get(self, note_repository):
        note = _note(
            url="https://example.com/a",
            tags=["Python", "async"],
            favicon="https://example.com/favicon.ico",
            metadata=NoteMetadata(has_highlights=True),
        )
        note_repository.save_note(note)

        loaded = note_repository.get_note(note.id)

        assert loaded.id == note.id
        assert loaded.title == "Test Note"
        assert loaded.url == "https://example.com/a"
        assert loaded.tags == ["python", "async"]
        assert loaded.favicon == "https://example.com/favicon.ico"
        assert loaded.metadata.has_highlights is True
        assert loaded.metadata.word_count == 2
        assert loaded.created_at.tzinfo is not None

    def test_get_missing_note(self, note_repository):
        assert note_repository.get_note("missing") is None

    def test_tag_order_is_preserved(self, note_repository):
        note = _note(tags=["zeta", "alpha", "mid"])
        note_repository.save_note(note)
        assert note_repository.get_note(note.id).tags == ["zeta", "alpha", "mid"]

    def test_get_note_by_url_returns_earliest(self, note_repository):
        now = datetime.datetime.now(datetime.timezone.utc)
        later = _note(url="https://x.example", created_at=now)
        earlier = _note(url="https://x.example", created_at=now - datetime.timedelta(days=1))
        note_repository.save_note(later)
        note_repository.save_note(earlier)

        assert note_repository.get_note_by_url("https://x.example").id == earlier.id
        assert note_repository.get_note_by_url("https://other.example") is None
        assert note_repository.get_note_by_url("") is None

    def test_update_note(self, note_repository):
        note = _note(tags=["a"])
        note_repository.save_note(note)

        updated = note_repository.update_note(
            note.id, {"title": "New", "content": "fresh words here", "tags": ["a", "b"]}
        )

        assert updated.title == "New"
        assert updated.excerpt == "fresh words here"
        assert updated.metadata.word_count == 3
        assert updated.created_at == note.created_at
        assert updated.updated_at >= note.updated_at
        loaded = note_repository.get_note(note.id)
        assert loaded.tags == ["a", "b"]
        assert loaded.content == "fresh words here"

    def test_update_has_highlights(self, note_repository):
        note = _note()
        note_repository.save_note(note)
        note_repository.update_note(note.id, {"has_highlights": True})
        assert note_repository.get_note(note.id).metadata.has_highlights is True

    def test_update_missing_note(self, note_repository):
        with pytest.raises(NoteNotFoundError):
            note_repository.update_note("missing", {"title": "x"})

    def test_update_rejects_unknown_fields(self, note_repository):
        note = _note()
        note_repository.save_note(note)
        with pytest.raises(ValueError):
            note_repository.update_note(note.id, {"id": "other"})

    def test_delete_note_removes_embedding(self, note_repository):
        note = _note(tags=["a"])
        note_repository.save_note(note)
        note_repository.save_embedding(note.id, [0.1, 0.2], "m1")

        assert note_repository.delete_note(note.id) is True

        assert note_repository.get_note(note.id) is None
        assert note_repository.get_embedding(note.id) is None
        assert note_repository.delete_note(note.id) is False

    def test_get_all_notes_paging_and_order(self, note_repository):
        base = datetime.datetime(2024, 1, 1, tzinfo=datetime.timezone.utc)
        notes = [
            _note(title=f"n{i}", updated_at=base + datetime.timedelta(minutes=i),
                  created_at=base - datetime.timedelta(minutes=i))
            for i in range(5)
        ]
        for note in notes:
            note_repository.save_note(note)

        newest_first = note_repository.get_all_notes(limit=2)
        assert [n.title for n in newest_first] == ["n4", "n3"]
        page_two = note_repository.get_all_notes(limit=2, offset=2)
        assert [n.title for n in page_two] == ["n2", "n1"]
        oldest_created = note_repository.get_all_notes(order_by="created_at", order="asc")
        assert [n.title for n in oldest_created] == ["n4", "n3", "n2", "n1", "n0"]
        by_title = note_repository.get_all_notes(order_by="title", order="asc")
        assert [n.title for n in by_title] == ["n0", "n1", "n2", "n3", "n4"]

    def test_get_all_notes_rejects_unknown_column(self, note_repository):
        with pytest.raises(ValueError):
            note_repository.get_all_notes(order_by="content")

    def test_notes_count(self, note_repository):
        assert note_repository.get_notes_count() == 0
        note_repository.save_note(_note())
        note_repository.save_note(_note())
        assert note_repository.get_notes_count() == 2

    def test_search_by_tags(self, note_repository):
        a = _note(tags=["python"])
        b = _note(tags=["rust"])
        note_repository.save_note(a)
        note_repository.save_note(b)
        found = note_repository.search_by_tags(["PYTHON", "go"])
        assert [n.id for n in found] == [a.id]
        assert note_repository.search_by_tags([]) == []


class TestEmbeddingOperations:
    """Tests for embedding storage."""

    def test_round_trip_as_float32(self, note_repository):
        note = _note()
        note_repository.save_note(note)
        vector = np.linspace(-1, 1, 384).astype(np.float32)

        saved = note_repository.save_embedding(note.id, vector.tolist(), "all-MiniLM-L6-v2")
        loaded = note_repository.get_embedding(note.id)

        assert saved.dimension == 384
        assert loaded.model_version == "all-MiniLM-L6-v2"
        np.testing.assert_array_equal(np.asarray(loaded.vector, dtype=np.float32), vector)

    def test_save_replaces_existing(self, note_repository):
        note = _note()
        note_repository.save_note(note)
        note_repository.save_embedding(note.id, [1.0, 0.0], "old")
        note_repository.save_embedding(note.id, [0.0, 1.0], "new")

        loaded = note_repository.get_embedding(note.id)
        assert loaded.vector == [0.0, 1.0]
        assert loaded.model_version == "new"
        assert len(note_repository.get_all_embeddings()) == 1

    def test_rejects_non_flat_vectors(self, note_repository):
        with pytest.raises(ValueError):
            note_repository.save_embedding("x", [[1.0, 2.0]], "m")

    def test_get_all_and_delete(self, note_repository):
        a, b = _note(), _note()
        note_repository.save_note(a)
        note_repository.save_note(b)
        note_repository.save_embedding(a.id, [1.0], "m")
        note_repository.save_embedding(b.id, [2.0], "m")

        assert set(note_repository.get_all_embeddings()) == {a.id, b.id}
        assert note_repository.delete_embedding(a.id) is True
        assert note_repository.delete_embedding(a.id) is False
        assert set(note_repository.get_all_embeddings()) == {b.id}


class TestTagAndMetaOperations:
    """Tests for tag usage records and metadata."""

    def test_usage_counts(self, note_repository):
        note_repository.save_note(_note(tags=["python", "rust"]))
        note_repository.save_note(_note(tags=["python"]))

        tags = note_repository.get_all_tags()

        assert [(t.name, t.usage_count) for t in tags] == [("python", 2), ("rust", 1)]

    def test_update_bumps_only_new_tags(self, note_repository):
        note = _note(tags=["python"])
        note_repository.save_note(note)
        note_repository.update_note(note.id, {"tags": ["python", "async"]})

        counts = {t.name: t.usage_count for t in note_repository.get_all_tags()}
        assert counts == {"python": 1, "async": 1}

    def test_display_names(self, note_repository):
        note_repository.save_note(_note(tags=["ml"]), display_names={"ml": "ML"})
        [tag] = note_repository.get_all_tags()
        assert tag.name == "ml"
        assert tag.display_name == "ML"

    def test_resave_does_not_inflate_usage(self, note_repository):
        note = _note(tags=["python"])
        note_repository.save_note(note)
        note_repository.save_note(note.model_copy(update={"tags": ["python", "rust"]}))

        counts = {t.name: t.usage_count for t in note_repository.get_all_tags()}
        assert counts == {"python": 1, "rust": 1}

    def test_update_keeps_typed_spelling_of_new_tags(self, note_repository):
        note = _note(tags=["python"])
        note_repository.save_note(note)
        note_repository.update_note(note.id, {"tags": ["python", "AsyncIO"]})

        names = {t.name: t.display_name for t in note_repository.get_all_tags()}
        assert names == {"python": "python", "asyncio": "AsyncIO"}

    def test_search_tags_by_prefix(self, note_repository):
        note_repository.save_note(_note(tags=["python", "pytest", "rust", "py_lib"]))
        assert [t.name for t in note_repository.search_tags("Py")] == ["py_lib", "pytest", "python"]
        # "_" is matched literally, not as a LIKE wildcard
        assert [t.name for t in note_repository.search_tags("py_")] == ["py_lib"]

    def test_meta_round_trip(self, note_repository):
        assert note_repository.get_meta("last_reindex") is None
        note_repository.set_meta("last_reindex", {"at": "2024-01-01", "embedded": 3})
        note_repository.set_meta("last_reindex", {"at": "2024-01-02", "embedded": 4})
        assert note_repository.get_meta("last_reindex") == {"at": "2024-01-02", "embedded": 4}


class TestAsyncNoteStore:
    """Tests for the async adapter."""

    def test_satisfies_record_store_protocol(self, async_store):
        assert isinstance(async_store, RecordStore)

    @pytest.mark.anyio
    async def test_round_trip(self, async_store):
        note = _note(tags=["a"])
        await async_store.save_note(note)
        await async_store.save_embedding(note.id, [0.5, 0.5], "m")

        assert (await async_store.get_note(note.id)).title == "Test Note"
        assert (await async_store.get_embedding(note.id)).vector == [0.5, 0.5]
        assert await async_store.get_notes_count() == 1
        assert [n.id for n in await async_store.get_all_notes()] == [note.id]
        assert [t.name for t in await async_store.search_tags("a")] == ["a"]

    @pytest.mark.anyio
    async def test_errors_propagate(self, async_store):
        with pytest.raises(NoteNotFoundError):
            await async_store.update_note("missing", {"title": "x"})

    @pytest.mark.anyio
    async def test_closed_store_rejects_calls(self, note_repository):
        store = AsyncNoteStore(note_repository)
        store.close()
        store.close()
        with pytest.raises(RuntimeError):
            await store.get_note("x")

    def test_in_memory_database(self):
        store = AsyncNoteStore(db_url="sqlite://")
        try:
            assert store.repository.get_notes_count() == 0
        finally:
            store.close()
