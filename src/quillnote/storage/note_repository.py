"""Repository for note storage and the note lifecycle.

A note is active while ``deleted_at`` is null. Soft delete moves it to the
trash, restore brings it back untouched, and permanent delete removes its
media blobs and then the row; versions, tag associations, share links
and media rows go with it through the foreign-key cascade.
"""
import logging
from typing import Any, Dict, List, Optional

from sqlalchemy import func, or_, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import selectinload

from quillnote.exceptions import (ErrorCode, NoteNotFoundError, NoteValidationError,
                                  StorageError)
from quillnote.models.db_models import DBNote, note_tags
from quillnote.models.schema import BatchResult, CallerIdentity, Note, utc_now
from quillnote.storage.base import (Repository, load_owned_note, note_to_model,
                                    require_caller)
from quillnote.storage.media_store import MediaStore
from quillnote.storage.version_log import VersionLog
from quillnote.utils import escape_like_pattern

logger = logging.getLogger(__name__)

MAX_TITLE_LENGTH = 500
MAX_CONTENT_LENGTH = 1_000_000  # 1 MB

# Fields ``update`` accepts
UPDATABLE_FIELDS = ("title", "content", "is_pinned", "color")
# Changing any of these records a version first
VERSIONED_FIELDS = ("title", "content")


def _validate_lengths(title: Optional[str], content: Optional[str]) -> None:
    if title and len(title) > MAX_TITLE_LENGTH:
        raise NoteValidationError(
            f"Title exceeds maximum length of {MAX_TITLE_LENGTH} characters",
            field="title",
        )
    if content and len(content) > MAX_CONTENT_LENGTH:
        raise NoteValidationError(
            f"Content exceeds maximum length of {MAX_CONTENT_LENGTH} characters",
            field="content",
        )


def _has_content(value: Optional[str]) -> bool:
    return bool(value and value.strip())


def _commit(session, operation: str,
            code: ErrorCode = ErrorCode.STORAGE_WRITE_FAILED) -> None:
    """Commit, rolling back and raising StorageError on a database failure."""
    try:
        session.commit()
    except SQLAlchemyError as e:
        session.rollback()
        raise StorageError(
            f"Failed to {operation.replace('_', ' ')} note",
            operation=operation,
            code=code,
            original_error=e,
        ) from e


class NoteRepository(Repository):
    """Owner-scoped CRUD and lifecycle operations for notes."""

    def __init__(
        self,
        engine=None,
        version_log: Optional[VersionLog] = None,
        media_store: Optional[MediaStore] = None,
    ):
        """Initialize the repository.

        Args:
            engine: SQLAlchemy engine shared with the other repositories.
            version_log: Snapshot writer used by ``update``.
            media_store: Blob remover used by ``permanently_delete``.
        """
        super().__init__(engine)
        self.version_log = version_log or VersionLog(self.engine)
        self.media_store = media_store or MediaStore(self.engine)

    def create(
        self,
        caller: CallerIdentity,
        title: Optional[str] = None,
        content: Optional[str] = None,
        pinned: bool = False,
        color: Optional[str] = None,
    ) -> Note:
        """Create a note owned by the caller."""
        caller = require_caller(caller)
        _validate_lengths(title, content)
        try:
            note = Note(
                user_id=caller.user_id,
                title=title,
                content=content or None,
                is_pinned=pinned,
                color=color,
            )
        except ValueError as e:
            raise NoteValidationError(str(e)) from e

        with self.session_factory() as session:
            session.add(DBNote(
                id=note.id,
                user_id=note.user_id,
                title=note.title,
                content=note.content,
                is_pinned=note.is_pinned,
                color=note.color,
                created_at=note.created_at,
                updated_at=note.updated_at,
            ))
            _commit(session, "create")

        logger.info(f"Created note {note.id} for user {caller.user_id}")
        return note

    def get(self, caller: CallerIdentity, note_id: str, include_deleted: bool = False) -> Note:
        """Get a note by ID.

        Raises:
            NoteNotFoundError: If the note is missing, not the caller's, or
                in the trash (unless ``include_deleted``).
        """
        caller = require_caller(caller)
        with self.session_factory() as session:
            db_note = load_owned_note(session, caller, note_id, include_deleted)
            return note_to_model(db_note)

    def list_active(
        self,
        caller: CallerIdentity,
        query: Optional[str] = None,
        tag_id: Optional[str] = None,
    ) -> List[Note]:
        """List active notes, pinned first, then most recently updated.

        Args:
            caller: The owner.
            query: Optional case-insensitive substring of title or content.
            tag_id: Optional tag the notes must carry.
        """
        caller = require_caller(caller)
        stmt = (
            select(DBNote)
            .options(selectinload(DBNote.tags))
            .where(DBNote.user_id == caller.user_id, DBNote.deleted_at.is_(None))
        )
        if query and query.strip():
            pattern = f"%{escape_like_pattern(query.strip())}%"
            stmt = stmt.where(or_(
                DBNote.title.ilike(pattern, escape="\\"),
                DBNote.content.ilike(pattern, escape="\\"),
            ))
        if tag_id:
            stmt = stmt.where(DBNote.id.in_(
                select(note_tags.c.note_id).where(note_tags.c.tag_id == tag_id)
            ))
        stmt = stmt.order_by(DBNote.is_pinned.desc(), DBNote.updated_at.desc())

        with self.session_factory() as session:
            return [note_to_model(row) for row in session.scalars(stmt).all()]

    def list_deleted(self, caller: CallerIdentity) -> List[Note]:
        """List notes in the trash, most recently deleted first."""
        caller = require_caller(caller)
        with self.session_factory() as session:
            rows = session.scalars(
                select(DBNote)
                .options(selectinload(DBNote.tags))
                .where(DBNote.user_id == caller.user_id, DBNote.deleted_at.is_not(None))
                .order_by(DBNote.deleted_at.desc())
            ).all()
            return [note_to_model(row) for row in rows]

    def update(self, caller: CallerIdentity, note_id: str, fields: Dict[str, Any]) -> Note:
        """Apply field changes to an active note.

        When the change touches title or content and the note already has
        content, a snapshot of the current title and content is written
        first, in the same transaction. If the snapshot cannot be written
        the update is abandoned.

        Raises:
            NoteValidationError: For unknown fields or invalid values.
            NoteNotFoundError: If the note is missing, not the caller's or trashed.
            VersionSnapshotError: If the snapshot failed.
        """
        caller = require_caller(caller)
        unknown = set(fields) - set(UPDATABLE_FIELDS)
        if unknown:
            raise NoteValidationError(
                f"Cannot update field(s): {', '.join(sorted(unknown))}",
                field=sorted(unknown)[0],
            )
        _validate_lengths(fields.get("title"), fields.get("content"))

        with self.session_factory() as session:
            db_note = load_owned_note(session, caller, note_id, include_deleted=False)
            current = note_to_model(db_note)
            try:
                changed = current.model_copy(update=fields)
                # model_copy skips validation; re-validate the merged note
                changed = Note.model_validate(changed.model_dump())
            except ValueError as e:
                raise NoteValidationError(str(e)) from e

            touches_history = any(f in fields for f in VERSIONED_FIELDS)
            if touches_history and _has_content(db_note.content):
                self.version_log.append(session, db_note)

            db_note.title = changed.title
            db_note.content = changed.content or None
            db_note.is_pinned = changed.is_pinned
            db_note.color = changed.color
            db_note.updated_at = utc_now()
            _commit(session, "update")
            logger.debug(f"Updated note {note_id} ({', '.join(sorted(fields))})")
            return note_to_model(db_note)

    def soft_delete(self, caller: CallerIdentity, note_id: str) -> Note:
        """Move an active note to the trash."""
        caller = require_caller(caller)
        with self.session_factory() as session:
            db_note = load_owned_note(session, caller, note_id, include_deleted=False)
            db_note.deleted_at = utc_now()
            _commit(session, "soft_delete")
            logger.info(f"Moved note {note_id} to trash")
            return note_to_model(db_note)

    def restore(self, caller: CallerIdentity, note_id: str) -> Note:
        """Bring a note back from the trash. No other field changes."""
        caller = require_caller(caller)
        with self.session_factory() as session:
            db_note = load_owned_note(session, caller, note_id)
            if db_note.deleted_at is None:
                raise NoteValidationError(
                    f"Note '{note_id}' is not in the trash",
                    field="deleted_at",
                    code=ErrorCode.NOTE_NOT_IN_TRASH,
                )
            db_note.deleted_at = None
            _commit(session, "restore")
            logger.info(f"Restored note {note_id} from trash")
            return note_to_model(db_note)

    def permanently_delete(self, caller: CallerIdentity, note_id: str) -> BatchResult:
        """Delete a note for good.

        Media blobs are removed first, best-effort. A blob that cannot be
        removed is logged and reported in the returned result but does not
        stop the row from being deleted.

        Returns:
            Per-blob removal results.
        """
        caller = require_caller(caller)
        with self.session_factory() as session:
            load_owned_note(session, caller, note_id)

        blob_result = self.media_store.remove_blobs_for_note(caller, note_id)
        if not blob_result.ok:
            logger.warning(
                f"Note {note_id}: {len(blob_result.failed)} blob(s) left in storage"
            )

        with self.session_factory() as session:
            db_note = load_owned_note(session, caller, note_id)
            session.delete(db_note)
            _commit(session, "permanently_delete", ErrorCode.STORAGE_DELETE_FAILED)
        logger.info(f"Permanently deleted note {note_id}")
        return blob_result

    def empty_trash(self, caller: CallerIdentity) -> BatchResult:
        """Permanently delete every trashed note, one at a time.

        A failure on one note is recorded and the loop moves on.
        """
        caller = require_caller(caller)
        result = BatchResult(operation="empty_trash")
        for note in self.list_deleted(caller):
            try:
                self.permanently_delete(caller, note.id)
                result.add_success(note.id)
            except (NoteNotFoundError, StorageError, SQLAlchemyError) as e:
                logger.error(f"Empty trash: could not delete note {note.id}: {e}")
                result.add_failure(note.id, str(e))
        logger.info(
            f"Emptied trash for {caller.user_id}: "
            f"{len(result.succeeded)} deleted, {len(result.failed)} failed"
        )
        return result

    def count_active(self, caller: CallerIdentity) -> int:
        caller = require_caller(caller)
        with self.session_factory() as session:
            return session.scalar(
                select(func.count(DBNote.id))
                .where(DBNote.user_id == caller.user_id, DBNote.deleted_at.is_(None))
            ) or 0

    def count_deleted(self, caller: CallerIdentity) -> int:
        caller = require_caller(caller)
        with self.session_factory() as session:
            return session.scalar(
                select(func.count(DBNote.id))
                .where(DBNote.user_id == caller.user_id, DBNote.deleted_at.is_not(None))
            ) or 0
