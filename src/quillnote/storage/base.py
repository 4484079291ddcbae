"""Shared plumbing for the owner-scoped repositories."""
import logging
from typing import Iterable, Optional

from sqlalchemy.orm import Session

from quillnote.exceptions import AuthenticationError, AuthorizationError, NoteNotFoundError
from quillnote.models.db_models import (DBMedia, DBNote, DBNoteVersion, DBSharedLink,
                                        DBTag, get_session_factory, init_db)
from quillnote.models.schema import (CallerIdentity, MediaItem, MediaKind, Note,
                                     NoteVersion, SharedLink, Tag,
                                     ensure_timezone_aware)

logger = logging.getLogger(__name__)


def require_caller(caller: Optional[CallerIdentity]) -> CallerIdentity:
    """Return the caller or raise AuthenticationError if there is none."""
    if caller is None or not getattr(caller, "user_id", None):
        raise AuthenticationError()
    return caller


class Repository:
    """Base class holding the engine and session factory.

    Repositories built from the same engine share one database; pass the
    engine from ``init_db()`` to every repository in a process.
    """

    def __init__(self, engine=None):
        self.engine = engine or init_db()
        self.session_factory = get_session_factory(self.engine)


def load_owned_note(
    session: Session,
    caller: CallerIdentity,
    note_id: str,
    include_deleted: bool = True,
) -> DBNote:
    """Fetch a note row the caller owns.

    Raises:
        NoteNotFoundError: The note does not exist, or it is in the trash
            and ``include_deleted`` is False.
        AuthorizationError: The note belongs to someone else. Reported with
            the same message as a missing note.
    """
    db_note = session.get(DBNote, note_id) if note_id else None
    if db_note is None:
        raise NoteNotFoundError(note_id)
    if db_note.user_id != caller.user_id:
        logger.warning(f"Denied access to note {note_id} for user {caller.user_id}")
        raise AuthorizationError(note_id, owner_hint=db_note.user_id)
    if not include_deleted and db_note.deleted_at is not None:
        raise NoteNotFoundError(note_id)
    return db_note


def tag_to_model(db_tag: DBTag) -> Tag:
    return Tag(
        id=db_tag.id,
        user_id=db_tag.user_id,
        name=db_tag.name,
        color=db_tag.color,
        created_at=ensure_timezone_aware(db_tag.created_at),
    )


def note_to_model(db_note: DBNote, tags: Optional[Iterable[DBTag]] = None) -> Note:
    """Convert a DBNote to a domain Note.

    Args:
        db_note: The row to convert.
        tags: Tag rows to attach. When None the relationship is loaded.
    """
    tag_rows = db_note.tags if tags is None else tags
    return Note(
        id=db_note.id,
        user_id=db_note.user_id,
        title=db_note.title,
        content=db_note.content,
        is_pinned=bool(db_note.is_pinned),
        color=db_note.color,
        created_at=ensure_timezone_aware(db_note.created_at),
        updated_at=ensure_timezone_aware(db_note.updated_at),
        deleted_at=(
            ensure_timezone_aware(db_note.deleted_at) if db_note.deleted_at else None
        ),
        tags=sorted((tag_to_model(t) for t in tag_rows), key=lambda t: t.name.lower()),
    )


def media_to_model(db_media: DBMedia) -> MediaItem:
    return MediaItem(
        id=db_media.id,
        note_id=db_media.note_id,
        media_type=MediaKind(db_media.media_type),
        storage_path=db_media.storage_path,
        created_at=ensure_timezone_aware(db_media.created_at),
    )


def version_to_model(db_version: DBNoteVersion) -> NoteVersion:
    return NoteVersion(
        id=db_version.id,
        note_id=db_version.note_id,
        title=db_version.title,
        content=db_version.content,
        version_number=db_version.version_number,
        created_at=ensure_timezone_aware(db_version.created_at),
    )


def link_to_model(db_link: DBSharedLink) -> SharedLink:
    return SharedLink(
        id=db_link.id,
        note_id=db_link.note_id,
        share_token=db_link.share_token,
        password_hash=db_link.password_hash,
        expires_at=(
            ensure_timezone_aware(db_link.expires_at) if db_link.expires_at else None
        ),
        created_at=ensure_timezone_aware(db_link.created_at),
        created_by=db_link.created_by,
        is_active=bool(db_link.is_active),
        view_count=db_link.view_count or 0,
    )
