"""Async adapter over the synchronous SQLite repository."""
import asyncio
import functools
import logging
from concurrent.futures import ThreadPoolExecutor
from typing import Any, Callable, Dict, List, Optional, Sequence, TypeVar

from super_bookmarks.models.schema import EmbeddingRecord, Note, TagRecord
from super_bookmarks.storage.note_repository import NoteRepository

logger = logging.getLogger(__name__)

T = TypeVar("T")


class AsyncNoteStore:
    """RecordStore implementation backed by NoteRepository.

    Every repository call runs on a single dedicated thread, so the SQLite
    connection is never used from two threads at once and calls are applied
    in submission order.
    """

    def __init__(self, repository: Optional[NoteRepository] = None, db_url: Optional[str] = None):
        self.repository = repository if repository is not None else NoteRepository(db_url=db_url)
        self._executor = ThreadPoolExecutor(max_workers=1, thread_name_prefix="bookmarks-store")
        self._closed = False

    async def _run(self, func: Callable[..., T], *args: Any, **kwargs: Any) -> T:
        if self._closed:
            raise RuntimeError("AsyncNoteStore is closed")
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(
            self._executor, functools.partial(func, *args, **kwargs)
        )

    async def get_note(self, note_id: str) -> Optional[Note]:
        return await self._run(self.repository.get_note, note_id)

    async def get_note_by_url(self, url: str) -> Optional[Note]:
        return await self._run(self.repository.get_note_by_url, url)

    async def get_all_notes(
        self,
        limit: int = 50,
        offset: int = 0,
        order_by: str = "updated_at",
        order: str = "desc",
    ) -> List[Note]:
        return await self._run(
            self.repository.get_all_notes,
            limit=limit,
            offset=offset,
            order_by=order_by,
            order=order,
        )

    async def get_notes_count(self) -> int:
        return await self._run(self.repository.get_notes_count)

    async def save_note(
        self, note: Note, display_names: Optional[Dict[str, str]] = None
    ) -> Note:
        return await self._run(self.repository.save_note, note, display_names)

    async def update_note(self, note_id: str, updates: Dict[str, Any]) -> Note:
        return await self._run(self.repository.update_note, note_id, updates)

    async def delete_note(self, note_id: str) -> bool:
        return await self._run(self.repository.delete_note, note_id)

    async def search_by_tags(self, tags: Sequence[str]) -> List[Note]:
        return await self._run(self.repository.search_by_tags, list(tags))

    async def get_embedding(self, note_id: str) -> Optional[EmbeddingRecord]:
        return await self._run(self.repository.get_embedding, note_id)

    async def get_all_embeddings(self) -> Dict[str, EmbeddingRecord]:
        return await self._run(self.repository.get_all_embeddings)

    async def save_embedding(
        self, note_id: str, vector: Sequence[float], model_version: str
    ) -> EmbeddingRecord:
        return await self._run(
            self.repository.save_embedding, note_id, vector, model_version
        )

    async def delete_embedding(self, note_id: str) -> bool:
        return await self._run(self.repository.delete_embedding, note_id)

    async def get_all_tags(self) -> List[TagRecord]:
        return await self._run(self.repository.get_all_tags)

    async def search_tags(self, prefix: str) -> List[TagRecord]:
        return await self._run(self.repository.search_tags, prefix)

    async def get_meta(self, key: str) -> Any:
        return await self._run(self.repository.get_meta, key)

    async def set_meta(self, key: str, value: Any) -> None:
        await self._run(self.repository.set_meta, key, value)

    def close(self) -> None:
        """Stop the store thread and release database connections."""
        if self._closed:
            return
        self._closed = True
        self._executor.shutdown(wait=True)
        self.repository.close()
        logger.debug("Record store closed")
