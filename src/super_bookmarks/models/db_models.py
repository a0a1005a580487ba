"""SQLAlchemy database models for Super Bookmarks."""
import datetime

from sqlalchemy import (Column, DateTime, ForeignKey, Integer, LargeBinary,
                        String, Table, Text, create_engine, event)
from sqlalchemy.orm import declarative_base, relationship, sessionmaker
from sqlalchemy.pool import StaticPool

from super_bookmarks.config import config

# Create base class for SQLAlchemy models
Base = declarative_base()


def _utcnow() -> datetime.datetime:
    return datetime.datetime.now(datetime.timezone.utc)


# Association table for tags and notes; position keeps the note's tag order
note_tags = Table(
    "note_tags",
    Base.metadata,
    Column("note_id", String(64), ForeignKey("notes.id", ondelete="CASCADE"), primary_key=True),
    Column("tag_name", String(255), ForeignKey("tags.name"), primary_key=True),
    Column("position", Integer, nullable=False, default=0),
)


class DBNote(Base):
    """Database model for a note."""
    __tablename__ = "notes"
    id = Column(String(64), primary_key=True, index=True)
    title = Column(String(1024), nullable=False)
    url = Column(Text, nullable=True, index=True)
    content = Column(Text, nullable=False, default="")
    excerpt = Column(Text, nullable=False, default="")
    favicon = Column(Text, nullable=True)
    has_highlights = Column(Integer, nullable=False, default=0)
    created_at = Column(DateTime, default=_utcnow, nullable=False, index=True)
    updated_at = Column(DateTime, default=_utcnow, nullable=False, index=True)

    # Relationships
    # note_tags rows are written by the repository so tag order is kept
    tags = relationship(
        "DBTag",
        secondary=note_tags,
        order_by=note_tags.c.position,
        viewonly=True,
    )
    embedding = relationship(
        "DBEmbedding",
        back_populates="note",
        uselist=False,
        cascade="all, delete-orphan",
    )

    def __repr__(self) -> str:
        """Return string representation of note."""
        return f"<Note(id='{self.id}', title='{self.title}')>"


class DBTag(Base):
    """Database model for a tag and its usage count."""
    __tablename__ = "tags"
    name = Column(String(255), primary_key=True)
    display_name = Column(String(255), nullable=False)
    usage_count = Column(Integer, nullable=False, default=1, index=True)

    # Relationships
    notes = relationship("DBNote", secondary=note_tags, viewonly=True)

    def __repr__(self) -> str:
        """Return string representation of tag."""
        return f"<Tag(name='{self.name}', usage_count={self.usage_count})>"


class DBEmbedding(Base):
    """Database model for a note embedding (float32 blob)."""
    __tablename__ = "embeddings"
    note_id = Column(String(64), ForeignKey("notes.id", ondelete="CASCADE"), primary_key=True)
    vector = Column(LargeBinary, nullable=False)
    dimension = Column(Integer, nullable=False)
    model_version = Column(String(255), nullable=False)
    computed_at = Column(DateTime, default=_utcnow, nullable=False)

    note = relationship("DBNote", back_populates="embedding")

    def __repr__(self) -> str:
        return (
            f"<Embedding(note_id='{self.note_id}', dim={self.dimension}, "
            f"model='{self.model_version}')>"
        )


class DBMeta(Base):
    """Key/value store for application metadata (JSON-encoded values)."""
    __tablename__ = "meta"
    key = Column(String(255), primary_key=True)
    value = Column(Text, nullable=True)


def init_db(db_url=None):
    """Create the engine and schema.

    File databases get the usual SQLite hardening:
    - WAL (Write-Ahead Logging) mode for atomic writes
    - NORMAL synchronous mode (good balance of safety vs speed)
    - foreign keys on, so deleting a note cascades to its embedding
    In-memory databases share a single connection (StaticPool), otherwise
    every new connection would see an empty database.
    """
    url = db_url or config.get_db_url()
    in_memory = url in ("sqlite://", "sqlite:///:memory:")

    if in_memory:
        engine = create_engine(
            url,
            connect_args={"check_same_thread": False},
            poolclass=StaticPool,
        )
    else:
        engine = create_engine(
            url,
            connect_args={"check_same_thread": False},
            pool_pre_ping=True,
        )

    @event.listens_for(engine, "connect")
    def set_sqlite_pragma(dbapi_connection, connection_record):
        cursor = dbapi_connection.cursor()
        if not in_memory:
            cursor.execute("PRAGMA journal_mode=WAL")
            cursor.execute("PRAGMA synchronous=NORMAL")
        cursor.execute("PRAGMA foreign_keys=ON")
        cursor.close()

    Base.metadata.create_all(engine)
    return engine


def get_session_factory(engine=None):
    """Get a session factory for the database."""
    if engine is None:
        engine = init_db()
    return sessionmaker(bind=engine, expire_on_commit=False)
