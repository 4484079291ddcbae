"""SQLAlchemy database models for the Quillnote server."""
import logging
from typing import Optional

from sqlalchemy import (Boolean, Column, DateTime, ForeignKey, Integer, String,
                        Table, Text, UniqueConstraint, create_engine, event)
from sqlalchemy.orm import declarative_base, relationship, sessionmaker
from sqlalchemy.pool import QueuePool, StaticPool

from quillnote.config import config
from quillnote.models.schema import MediaKind, utc_now

logger = logging.getLogger(__name__)

# Create base class for SQLAlchemy models
Base = declarative_base()

# Association table for tags and notes
note_tags = Table(
    "note_tags",
    Base.metadata,
    Column("note_id", String(64), ForeignKey("notes.id", ondelete="CASCADE"), primary_key=True),
    Column("tag_id", String(64), ForeignKey("tags.id", ondelete="CASCADE"), primary_key=True),
    Column("created_at", DateTime(timezone=True), default=utc_now, nullable=False),
)


class DBNote(Base):
    """Database model for a note."""
    __tablename__ = "notes"
    id = Column(String(64), primary_key=True, index=True)
    user_id = Column(String(255), nullable=False, index=True)
    title = Column(String(500), nullable=True)
    content = Column(Text, nullable=True)
    is_pinned = Column(Boolean, default=False, nullable=False)
    color = Column(String(32), nullable=True)
    created_at = Column(DateTime(timezone=True), default=utc_now, nullable=False)
    updated_at = Column(DateTime(timezone=True), default=utc_now, nullable=False)
    deleted_at = Column(DateTime(timezone=True), nullable=True, index=True)

    # Relationships
    tags = relationship("DBTag", secondary=note_tags, back_populates="notes")
    media = relationship(
        "DBMedia", back_populates="note", cascade="all, delete-orphan", passive_deletes=True
    )
    versions = relationship(
        "DBNoteVersion", back_populates="note", cascade="all, delete-orphan", passive_deletes=True
    )
    shared_links = relationship(
        "DBSharedLink", back_populates="note", cascade="all, delete-orphan", passive_deletes=True
    )

    def __repr__(self) -> str:
        return f"<Note(id='{self.id}', title='{self.title}')>"


class DBMedia(Base):
    """Database model for a media attachment."""
    __tablename__ = "note_media"
    id = Column(String(64), primary_key=True)
    note_id = Column(
        String(64), ForeignKey("notes.id", ondelete="CASCADE"), nullable=False, index=True
    )
    media_type = Column(String(16), default=MediaKind.IMAGE.value, nullable=False)
    storage_path = Column(String(1024), nullable=False)
    created_at = Column(DateTime(timezone=True), default=utc_now, nullable=False)

    note = relationship("DBNote", back_populates="media")

    def __repr__(self) -> str:
        return f"<Media(id='{self.id}', type='{self.media_type}')>"


class DBTag(Base):
    """Database model for a tag."""
    __tablename__ = "tags"
    id = Column(String(64), primary_key=True)
    user_id = Column(String(255), nullable=False, index=True)
    name = Column(String(64), nullable=False)
    color = Column(String(32), nullable=True)
    created_at = Column(DateTime(timezone=True), default=utc_now, nullable=False)

    notes = relationship("DBNote", secondary=note_tags, back_populates="tags")

    __table_args__ = (
        UniqueConstraint("user_id", "name", name="unique_tag_name_per_owner"),
    )

    def __repr__(self) -> str:
        return f"<Tag(id='{self.id}', name='{self.name}')>"


class DBNoteVersion(Base):
    """Database model for an immutable note snapshot."""
    __tablename__ = "note_versions"
    id = Column(String(64), primary_key=True)
    note_id = Column(
        String(64), ForeignKey("notes.id", ondelete="CASCADE"), nullable=False, index=True
    )
    title = Column(String(500), nullable=True)
    content = Column(Text, nullable=True)
    version_number = Column(Integer, nullable=False)
    created_at = Column(DateTime(timezone=True), default=utc_now, nullable=False)

    note = relationship("DBNote", back_populates="versions")

    # Two writers computing the same max+1 collide here instead of
    # silently producing a duplicate number
    __table_args__ = (
        UniqueConstraint("note_id", "version_number", name="unique_version_number"),
    )

    def __repr__(self) -> str:
        return f"<NoteVersion(note='{self.note_id}', number={self.version_number})>"


class DBSharedLink(Base):
    """Database model for a public share link."""
    __tablename__ = "shared_notes"
    id = Column(String(64), primary_key=True)
    note_id = Column(
        String(64), ForeignKey("notes.id", ondelete="CASCADE"), nullable=False, index=True
    )
    share_token = Column(String(128), nullable=False, unique=True, index=True)
    password_hash = Column(String(128), nullable=True)
    expires_at = Column(DateTime(timezone=True), nullable=True)
    created_at = Column(DateTime(timezone=True), default=utc_now, nullable=False)
    created_by = Column(String(255), nullable=False)
    is_active = Column(Boolean, default=True, nullable=False)
    view_count = Column(Integer, default=0, nullable=False)

    note = relationship("DBNote", back_populates="shared_links")

    def __repr__(self) -> str:
        return f"<SharedLink(id='{self.id}', note='{self.note_id}', active={self.is_active})>"


def init_db(db_url: Optional[str] = None):
    """Create the engine, apply connection settings and create all tables.

    File databases get a small QueuePool with WAL journaling. In-memory
    databases use a StaticPool so every session sees the same connection
    (and therefore the same data). Foreign keys are switched on for every
    connection so deleting a note cascades to its media rows, versions,
    tag associations and share links.

    Args:
        db_url: SQLAlchemy URL. Defaults to ``config.get_db_url()``.

    Returns:
        The configured engine.
    """
    url = db_url or config.get_db_url()
    in_memory = url in ("sqlite://", "sqlite:///:memory:")

    if in_memory:
        engine = create_engine(
            url,
            poolclass=StaticPool,
            connect_args={"check_same_thread": False},
        )
    else:
        # SQLite is single-writer, so a small pool is ideal
        engine = create_engine(
            url,
            poolclass=QueuePool,
            pool_size=5,
            max_overflow=10,
            pool_timeout=30,
            pool_recycle=3600,
            pool_pre_ping=True,
            connect_args={"check_same_thread": False},
        )

    @event.listens_for(engine, "connect")
    def set_sqlite_pragma(dbapi_connection, connection_record):
        cursor = dbapi_connection.cursor()
        cursor.execute("PRAGMA foreign_keys=ON")
        if not in_memory:
            cursor.execute("PRAGMA journal_mode=WAL")
            cursor.execute("PRAGMA synchronous=NORMAL")
        cursor.close()

    Base.metadata.create_all(engine)
    logger.debug(f"Database initialized ({'memory' if in_memory else url})")
    return engine


def get_session_factory(engine=None):
    """Get a session factory for the database."""
    if engine is None:
        engine = init_db()
    return sessionmaker(bind=engine, expire_on_commit=False)
