"""Record store contract consumed by the search core."""
from __future__ import annotations

from typing import Any, Dict, List, Optional, Protocol, Sequence, runtime_checkable

from super_bookmarks.models.schema import EmbeddingRecord, Note, TagRecord


@runtime_checkable
class RecordStore(Protocol):
    """Asynchronous note and embedding store.

    The search core only reads through this interface; the note write path
    also uses the mutating methods. Implementations must not retry failed
    operations on their own; errors propagate to the caller.
    """

    async def get_note(self, note_id: str) -> Optional[Note]:
        ...

    async def get_note_by_url(self, url: str) -> Optional[Note]:
        ...

    async def get_all_notes(
        self,
        limit: int = 50,
        offset: int = 0,
        order_by: str = "updated_at",
        order: str = "desc",
    ) -> List[Note]:
        ...

    async def get_notes_count(self) -> int:
        ...

    async def save_note(
        self, note: Note, display_names: Optional[Dict[str, str]] = None
    ) -> Note:
        ...

    async def update_note(self, note_id: str, updates: Dict[str, Any]) -> Note:
        ...

    async def delete_note(self, note_id: str) -> bool:
        ...

    async def search_by_tags(self, tags: Sequence[str]) -> List[Note]:
        ...

    async def get_embedding(self, note_id: str) -> Optional[EmbeddingRecord]:
        ...

    async def get_all_embeddings(self) -> Dict[str, EmbeddingRecord]:
        ...

    async def save_embedding(
        self, note_id: str, vector: Sequence[float], model_version: str
    ) -> EmbeddingRecord:
        ...

    async def delete_embedding(self, note_id: str) -> bool:
        ...

    async def get_all_tags(self) -> List[TagRecord]:
        ...

    async def search_tags(self, prefix: str) -> List[TagRecord]:
        ...

    async def get_meta(self, key: str) -> Any:
        ...

    async def set_meta(self, key: str, value: Any) -> None:
        ...
