"""Append-only version history for notes."""
import logging
from typing import List

from sqlalchemy import func, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from quillnote.exceptions import (NoteNotFoundError, VersionNotFoundError,
                                  VersionSnapshotError)
from quillnote.models.db_models import DBNote, DBNoteVersion
from quillnote.models.schema import CallerIdentity, NoteVersion, generate_id, utc_now
from quillnote.storage.base import (Repository, load_owned_note, require_caller,
                                    version_to_model)

logger = logging.getLogger(__name__)


class VersionLog(Repository):
    """Writes and reads immutable note snapshots.

    Version numbers are contiguous per note, starting at 1. The next number
    is read as ``max(version_number) + 1`` immediately before the insert;
    the unique constraint on ``(note_id, version_number)`` turns a
    concurrent collision into a failed snapshot rather than a duplicate.
    """

    def snapshot(self, caller: CallerIdentity, note_id: str) -> NoteVersion:
        """Record the note's current title and content as a new version.

        Raises:
            NoteNotFoundError: If the caller does not own the note.
            VersionSnapshotError: If the snapshot could not be written.
        """
        caller = require_caller(caller)
        with self.session_factory() as session:
            db_note = load_owned_note(session, caller, note_id)
            version = self.append(session, db_note)
            try:
                session.commit()
            except SQLAlchemyError as e:
                session.rollback()
                raise VersionSnapshotError(note_id, original_error=e) from e
            return version

    def append(self, session: Session, db_note: DBNote) -> NoteVersion:
        """Insert a snapshot of ``db_note`` inside the caller's transaction.

        The row is flushed before returning so a failure surfaces here, before
        the caller applies any new values to the note. Nothing is committed.
        """
        try:
            current_max = session.scalar(
                select(func.max(DBNoteVersion.version_number))
                .where(DBNoteVersion.note_id == db_note.id)
            )
            db_version = DBNoteVersion(
                id=generate_id(),
                note_id=db_note.id,
                title=db_note.title,
                content=db_note.content,
                version_number=(current_max or 0) + 1,
                created_at=utc_now(),
            )
            session.add(db_version)
            session.flush()
        except SQLAlchemyError as e:
            session.rollback()
            logger.error(f"Snapshot of note {db_note.id} failed: {e}")
            raise VersionSnapshotError(db_note.id, original_error=e) from e

        logger.debug(
            f"Recorded version {db_version.version_number} of note {db_note.id}"
        )
        return version_to_model(db_version)

    def list_versions(self, caller: CallerIdentity, note_id: str) -> List[NoteVersion]:
        """List a note's versions, newest first."""
        caller = require_caller(caller)
        with self.session_factory() as session:
            load_owned_note(session, caller, note_id)
            rows = session.scalars(
                select(DBNoteVersion)
                .where(DBNoteVersion.note_id == note_id)
                .order_by(DBNoteVersion.version_number.desc())
            ).all()
            return [version_to_model(row) for row in rows]

    def count(self, caller: CallerIdentity, note_id: str) -> int:
        caller = require_caller(caller)
        with self.session_factory() as session:
            load_owned_note(session, caller, note_id)
            return session.scalar(
                select(func.count(DBNoteVersion.id))
                .where(DBNoteVersion.note_id == note_id)
            ) or 0

    def get_version(self, caller: CallerIdentity, version_id: str) -> NoteVersion:
        """Get one version, checking the caller owns its note."""
        caller = require_caller(caller)
        with self.session_factory() as session:
            db_version = session.get(DBNoteVersion, version_id)
            if db_version is None:
                raise VersionNotFoundError(version_id)
            try:
                load_owned_note(session, caller, db_version.note_id)
            except NoteNotFoundError as e:
                # Covers AuthorizationError too
                raise VersionNotFoundError(version_id) from e
            return version_to_model(db_version)

