"""Configuration module for Super Bookmarks."""

import logging
import os
from pathlib import Path
from typing import Optional

from dotenv import load_dotenv
from pydantic import BaseModel, Field, model_validator

from super_bookmarks import __version__

# Load environment variables from the project root .env file.
# Anchored to __file__ so it works regardless of the process CWD.
_PROJECT_ROOT = Path(__file__).resolve().parent.parent.parent
load_dotenv(_PROJECT_ROOT / ".env")

# User-level config lives alongside the default database
_USER_ENV = Path.home() / ".super_bookmarks" / ".env"
load_dotenv(_USER_ENV)


logger = logging.getLogger(__name__)

_ENV_PREFIX = "SUPER_BOOKMARKS_"


def _env(name: str, default: str) -> str:
    return os.getenv(_ENV_PREFIX + name, default)


def _env_bool(name: str, default: str) -> bool:
    return _env(name, default).lower() in ("true", "1", "yes")


class SearchSettings(BaseModel):
    """Ranking constants shared by the search services.

    The defaults reproduce the behaviour users are used to; they are tuning
    knobs, not fixed parts of the algorithm.
    """

    limit: int = 20
    threshold: float = 0.3
    similar_threshold: float = 0.5
    semantic_weight: float = 0.7
    keyword_weight: float = 0.3
    positional_boost: float = 0.1
    keyword_scan_limit: int = 1000
    title_bonus: float = 2.0
    tag_bonus: float = 1.5
    exact_tag_score: float = 2.0
    partial_tag_score: float = 1.0

    model_config = {"frozen": True}

    @model_validator(mode="after")
    def _validate_ranges(self) -> "SearchSettings":
        """Reject weights and limits that would break ranking."""
        for name in ("semantic_weight", "keyword_weight", "positional_boost"):
            value = getattr(self, name)
            if not 0.0 <= value <= 1.0:
                raise ValueError(f"{name} must be within [0, 1], got {value}")
        if not -1.0 <= self.threshold <= 1.0:
            raise ValueError("threshold must be within [-1, 1]")
        if self.limit < 1:
            raise ValueError("limit must be >= 1")
        if self.keyword_scan_limit < 1:
            raise ValueError("keyword_scan_limit must be >= 1")
        return self


class BookmarksConfig(BaseModel):
    """Configuration for Super Bookmarks."""

    # Base directory for relative paths
    base_dir: Path = Field(default_factory=lambda: Path(_env("BASE_DIR", ".")))
    # Database configuration (":memory:" keeps everything in process)
    database_path: Path = Field(
        default_factory=lambda: Path(_env("DATABASE_PATH", "data/db/bookmarks.db"))
    )
    # Server configuration
    server_name: str = Field(
        default_factory=lambda: _env("SERVER_NAME", "super-bookmarks")
    )
    server_version: str = Field(default=__version__)
    # Embedding configuration
    embeddings_enabled: bool = Field(
        default_factory=lambda: _env_bool("EMBEDDINGS_ENABLED", "true")
    )
    embedding_model: str = Field(
        default_factory=lambda: _env("EMBEDDING_MODEL", "Xenova/all-MiniLM-L6-v2")
    )
    model_version: str = Field(
        default_factory=lambda: _env("MODEL_VERSION", "all-MiniLM-L6-v2")
    )
    embedding_dim: int = Field(
        default_factory=lambda: int(_env("EMBEDDING_DIM", "384"))
    )
    embedding_max_tokens: int = Field(
        default_factory=lambda: int(_env("EMBEDDING_MAX_TOKENS", "512"))
    )
    embedding_model_cache_dir: Optional[Path] = Field(
        default_factory=lambda: (
            Path(_env("EMBEDDING_CACHE_DIR", ""))
            if _env("EMBEDDING_CACHE_DIR", "")
            else None
        )
    )
    # ONNX execution provider preference: "auto", "cpu", or a
    # comma-separated list like "CUDAExecutionProvider,CPUExecutionProvider"
    onnx_providers: str = Field(default_factory=lambda: _env("ONNX_PROVIDERS", "auto"))

    # Search tuning
    search_limit: int = Field(default_factory=lambda: int(_env("SEARCH_LIMIT", "20")))
    search_threshold: float = Field(
        default_factory=lambda: float(_env("SEARCH_THRESHOLD", "0.3"))
    )
    similar_threshold: float = Field(
        default_factory=lambda: float(_env("SIMILAR_THRESHOLD", "0.5"))
    )
    semantic_weight: float = Field(
        default_factory=lambda: float(_env("SEMANTIC_WEIGHT", "0.7"))
    )
    keyword_weight: float = Field(
        default_factory=lambda: float(_env("KEYWORD_WEIGHT", "0.3"))
    )
    positional_boost: float = Field(
        default_factory=lambda: float(_env("POSITIONAL_BOOST", "0.1"))
    )
    keyword_scan_limit: int = Field(
        default_factory=lambda: int(_env("KEYWORD_SCAN_LIMIT", "1000"))
    )

    @model_validator(mode="after")
    def _validate_embedding_config(self) -> "BookmarksConfig":
        """Validate embedding settings."""
        if self.embedding_dim < 1:
            raise ValueError("embedding_dim must be >= 1")
        if self.embedding_max_tokens < 16:
            raise ValueError("embedding_max_tokens must be >= 16")
        # Builds (and thereby validates) the ranking constants
        self.search_settings()
        return self

    @property
    def embedding_max_chars(self) -> int:
        """Character budget for text sent to the model (about 4 chars/token)."""
        return self.embedding_max_tokens * 4

    def search_settings(self) -> SearchSettings:
        """Collect the search tuning values into a SearchSettings."""
        return SearchSettings(
            limit=self.search_limit,
            threshold=self.search_threshold,
            similar_threshold=self.similar_threshold,
            semantic_weight=self.semantic_weight,
            keyword_weight=self.keyword_weight,
            positional_boost=self.positional_boost,
            keyword_scan_limit=self.keyword_scan_limit,
        )

    def get_absolute_path(self, path: Path) -> Path:
        """Convert a relative path to an absolute path based on base_dir."""
        if path.is_absolute():
            return path
        return self.base_dir / path

    def get_db_url(self) -> str:
        """Get the database URL for SQLite."""
        if str(self.database_path) == ":memory:":
            return "sqlite://"
        db_path = self.get_absolute_path(self.database_path)
        db_path.parent.mkdir(parents=True, exist_ok=True)
        return f"sqlite:///{db_path}"


# Create a global config instance
config = BookmarksConfig()
