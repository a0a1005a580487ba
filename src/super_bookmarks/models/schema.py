"""Data models for Super Bookmarks."""

import datetime
import uuid
from datetime import timezone
from enum import Enum
from typing import Any, Dict, Iterable, List, Optional

from pydantic import BaseModel, Field, field_validator, model_validator

EXCERPT_LENGTH = 200
DEFAULT_MODEL_VERSION = "all-MiniLM-L6-v2"


def utc_now() -> datetime.datetime:
    """Get current UTC time as timezone-aware datetime."""
    return datetime.datetime.now(timezone.utc)


def ensure_timezone_aware(dt_value: Optional[datetime.datetime]) -> datetime.datetime:
    """Ensure a datetime is timezone-aware, treating naive datetimes as UTC.

    SQLite drops tzinfo on the way back out, so every datetime read from the
    database passes through here.
    """
    if dt_value is None:
        return utc_now()
    if dt_value.tzinfo is None:
        return dt_value.replace(tzinfo=timezone.utc)
    return dt_value


def generate_id() -> str:
    """Generate a random UUID4 note identifier."""
    return str(uuid.uuid4())


def normalize_tag(name: str) -> str:
    """Canonical form of a tag name: trimmed and lowercase."""
    return name.strip().lower()


def normalize_tags(tags: Iterable[str]) -> List[str]:
    """Normalize tag names, dropping blanks and duplicates but keeping order."""
    seen = set()
    result = []
    for tag in tags:
        name = normalize_tag(tag)
        if name and name not in seen:
            seen.add(name)
            result.append(name)
    return result


def tag_display_names(tags: Iterable[str]) -> Dict[str, str]:
    """Map each normalized tag to the first spelling it was given in."""
    names: Dict[str, str] = {}
    for tag in tags:
        name = normalize_tag(tag)
        if name and name not in names:
            names[name] = tag.strip()
    return names


def count_words(content: str) -> int:
    """Number of whitespace-separated words in content."""
    return len(content.split())


class NoteMetadata(BaseModel):
    """Metadata derived from a note's content."""

    word_count: int = Field(default=0, ge=0)
    char_count: int = Field(default=0, ge=0)
    has_highlights: bool = False

    @classmethod
    def from_content(cls, content: str, has_highlights: bool = False) -> "NoteMetadata":
        return cls(
            word_count=count_words(content),
            char_count=len(content),
            has_highlights=has_highlights,
        )


class Note(BaseModel):
    """A captured note or bookmark."""

    id: str = Field(default_factory=generate_id, description="Unique ID of the note")
    title: str = Field(default="Untitled", description="Title of the note")
    url: Optional[str] = Field(
        default=None, description="Source URL; acts as a natural dedup key"
    )
    content: str = Field(default="", description="Free-text content of the note")
    excerpt: str = Field(default="", description="Leading slice of the content")
    tags: List[str] = Field(default_factory=list, description="Normalized tag names")
    created_at: datetime.datetime = Field(
        default_factory=utc_now, description="When the note was created (UTC)"
    )
    updated_at: datetime.datetime = Field(
        default_factory=utc_now, description="When the note was last updated (UTC)"
    )
    favicon: Optional[str] = Field(default=None, description="Favicon URL")
    metadata: NoteMetadata = Field(default_factory=NoteMetadata)

    model_config = {"validate_assignment": True, "extra": "forbid"}

    @field_validator("id")
    @classmethod
    def validate_id(cls, v: str) -> str:
        """Validate that the ID is not blank."""
        if not v or not v.strip():
            raise ValueError("Note ID cannot be empty")
        return v

    @field_validator("title")
    @classmethod
    def validate_title(cls, v: str) -> str:
        """Fall back to 'Untitled' for blank titles."""
        if not v or not v.strip():
            return "Untitled"
        return v

    @field_validator("url")
    @classmethod
    def validate_url(cls, v: Optional[str]) -> Optional[str]:
        """Treat blank URLs as absent."""
        if v is None or not v.strip():
            return None
        return v.strip()

    @field_validator("tags")
    @classmethod
    def validate_tags(cls, v: List[str]) -> List[str]:
        return normalize_tags(v)

    @field_validator("created_at", "updated_at")
    @classmethod
    def validate_timestamps(cls, v: datetime.datetime) -> datetime.datetime:
        return ensure_timezone_aware(v)

    @model_validator(mode="before")
    @classmethod
    def derive_content_fields(cls, data: Any) -> Any:
        """Derive excerpt and counts from content when building a note."""
        if not isinstance(data, dict):
            return data
        content = data.get("content") or ""
        data = dict(data)
        if not data.get("excerpt"):
            data["excerpt"] = content[:EXCERPT_LENGTH]
        metadata = data.get("metadata")
        has_highlights = False
        if isinstance(metadata, NoteMetadata):
            has_highlights = metadata.has_highlights
        elif isinstance(metadata, dict):
            has_highlights = bool(metadata.get("has_highlights", False))
        data["metadata"] = NoteMetadata.from_content(content, has_highlights)
        return data

    def with_content(self, content: str) -> "Note":
        """Return a copy with new content and recomputed derived fields."""
        return self.model_copy(
            update={
                "content": content,
                "excerpt": content[:EXCERPT_LENGTH],
                "metadata": NoteMetadata.from_content(
                    content, self.metadata.has_highlights
                ),
            }
        )

    def embedding_text(self) -> str:
        """Text fed to the embedding model for this note."""
        return self.content


class ScoredNote(Note):
    """A note with the relevance score it earned for a query."""

    score: float = Field(..., description="Relevance score (higher is better)")

    @classmethod
    def from_note(cls, note: Note, score: float) -> "ScoredNote":
        return cls(**note.model_dump(), score=score)

    def to_note(self) -> Note:
        return Note(**self.model_dump(exclude={"score"}))


class EmbeddingRecord(BaseModel):
    """A stored embedding for one note."""

    note_id: str
    vector: List[float]
    model_version: str = DEFAULT_MODEL_VERSION
    computed_at: datetime.datetime = Field(default_factory=utc_now)

    @field_validator("computed_at")
    @classmethod
    def validate_computed_at(cls, v: datetime.datetime) -> datetime.datetime:
        return ensure_timezone_aware(v)

    @property
    def dimension(self) -> int:
        return len(self.vector)


class TagRecord(BaseModel):
    """Usage record for a tag."""

    name: str
    display_name: str
    usage_count: int = Field(default=1, ge=0)

    @classmethod
    def create(cls, name: str, display_name: Optional[str] = None) -> "TagRecord":
        return cls(
            name=normalize_tag(name),
            display_name=(display_name or name).strip(),
        )


class QueryType(str, Enum):
    """How a raw query is interpreted."""

    TAG = "tag"  # "tag:" prefix, tag matching only
    KEYWORD = "keyword"  # semantic + keyword hybrid, keyword-only fallback


class ParsedQuery(BaseModel):
    """A raw query split into its type and search terms."""

    query_type: QueryType
    terms: List[str] = Field(default_factory=list)

    model_config = {"frozen": True}


class SearchResponse(BaseModel):
    """What a routed query returns to the caller."""

    query: str
    query_type: Optional[QueryType] = None
    results: List[ScoredNote] = Field(default_factory=list)
    notice: Optional[str] = None
    failed: bool = False

    def to_dict(self) -> Dict[str, Any]:
        return self.model_dump(mode="json")
