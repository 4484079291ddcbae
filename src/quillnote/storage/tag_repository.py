"""Repository for tag storage and retrieval."""
import logging
from typing import Dict, List, Optional, Sequence

from sqlalchemy import delete, func, select
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.exc import IntegrityError

from quillnote.exceptions import ErrorCode, TagConflictError, TagError
from quillnote.models.db_models import DBNote, DBTag, note_tags
from quillnote.models.schema import (CallerIdentity, NoteTagRow, Tag, generate_id,
                                     ensure_timezone_aware, utc_now)
from quillnote.storage.base import (Repository, load_owned_note, require_caller,
                                    tag_to_model)

logger = logging.getLogger(__name__)

# Default palette offered when creating tags
TAG_COLORS = [
    "#ef4444", "#f97316", "#f59e0b", "#eab308",
    "#84cc16", "#22c55e", "#10b981", "#14b8a6",
    "#06b6d4", "#0ea5e9", "#3b82f6", "#6366f1",
    "#8b5cf6", "#a855f7", "#d946ef", "#ec4899",
]


class TagRepository(Repository):
    """Per-owner named, coloured labels and their note associations.

    Tag names are unique per owner. Attaching a tag that is already
    attached is a no-op.
    """

    def _load_owned_tag(self, session, caller: CallerIdentity, tag_id: str) -> DBTag:
        db_tag = session.get(DBTag, tag_id) if tag_id else None
        if db_tag is None or db_tag.user_id != caller.user_id:
            raise TagError(
                f"Tag with ID '{tag_id}' not found", code=ErrorCode.TAG_NOT_FOUND
            )
        return db_tag

    def list_for_owner(self, caller: CallerIdentity) -> List[Tag]:
        """All of the caller's tags, ordered by name."""
        caller = require_caller(caller)
        with self.session_factory() as session:
            rows = session.scalars(
                select(DBTag)
                .where(DBTag.user_id == caller.user_id)
                .order_by(DBTag.name)
            ).all()
            return [tag_to_model(row) for row in rows]

    def create(self, caller: CallerIdentity, name: str, color: Optional[str] = None) -> Tag:
        """Create a tag.

        Raises:
            TagError: If the name is blank or too long.
            TagConflictError: If the caller already has a tag with this name.
        """
        caller = require_caller(caller)
        try:
            tag = Tag(user_id=caller.user_id, name=name or "", color=color)
        except ValueError as e:
            raise TagError(str(e), tag_name=name) from e

        with self.session_factory() as session:
            session.add(DBTag(
                id=tag.id,
                user_id=tag.user_id,
                name=tag.name,
                color=tag.color,
                created_at=tag.created_at,
            ))
            try:
                session.commit()
            except IntegrityError as e:
                session.rollback()
                raise TagConflictError(tag.name) from e

        logger.info(f"Created tag '{tag.name}' for user {caller.user_id}")
        return tag

    def delete(self, caller: CallerIdentity, tag_id: str) -> None:
        """Delete a tag; its note associations go with it."""
        caller = require_caller(caller)
        with self.session_factory() as session:
            db_tag = self._load_owned_tag(session, caller, tag_id)
            session.delete(db_tag)
            session.commit()

    def attach(self, caller: CallerIdentity, note_id: str, tag_id: str) -> None:
        """Attach a tag to a note. Attaching twice is a no-op."""
        caller = require_caller(caller)
        with self.session_factory() as session:
            load_owned_note(session, caller, note_id)
            self._load_owned_tag(session, caller, tag_id)
            session.execute(
                sqlite_insert(note_tags)
                .values(note_id=note_id, tag_id=tag_id, created_at=utc_now())
                .on_conflict_do_nothing()
            )
            session.commit()

    def detach(self, caller: CallerIdentity, note_id: str, tag_id: str) -> None:
        """Remove a tag from a note. Detaching an absent tag is a no-op."""
        caller = require_caller(caller)
        with self.session_factory() as session:
            load_owned_note(session, caller, note_id)
            self._load_owned_tag(session, caller, tag_id)
            session.execute(
                delete(note_tags).where(
                    note_tags.c.note_id == note_id, note_tags.c.tag_id == tag_id
                )
            )
            session.commit()

    def tags_for_note(self, caller: CallerIdentity, note_id: str) -> List[Tag]:
        return [row.tag for row in self.tag_rows(caller, [note_id])]

    def tag_rows(self, caller: CallerIdentity, note_ids: Sequence[str]) -> List[NoteTagRow]:
        """Fetch the note/tag join for several notes as typed rows.

        Notes the caller does not own contribute no rows.
        """
        caller = require_caller(caller)
        if not note_ids:
            return []
        with self.session_factory() as session:
            result = session.execute(
                select(note_tags.c.note_id, note_tags.c.created_at, DBTag)
                .join(DBTag, note_tags.c.tag_id == DBTag.id)
                .join(DBNote, note_tags.c.note_id == DBNote.id)
                .where(
                    note_tags.c.note_id.in_(list(note_ids)),
                    DBNote.user_id == caller.user_id,
                )
                .order_by(DBTag.name)
            ).all()
            return [
                NoteTagRow(
                    note_id=note_id,
                    tag=tag_to_model(db_tag),
                    attached_at=ensure_timezone_aware(attached_at),
                )
                for note_id, attached_at, db_tag in result
            ]

    def usage_counts(self, caller: CallerIdentity) -> Dict[str, int]:
        """Map each of the caller's tag names to the number of notes using it."""
        caller = require_caller(caller)
        with self.session_factory() as session:
            result = session.execute(
                select(DBTag.name, func.count(note_tags.c.note_id))
                .select_from(DBTag)
                .outerjoin(note_tags, DBTag.id == note_tags.c.tag_id)
                .where(DBTag.user_id == caller.user_id)
                .group_by(DBTag.name)
            ).all()
            return {name: count for name, count in result}

    def count_for_owner(self, caller: CallerIdentity) -> int:
        caller = require_caller(caller)
        with self.session_factory() as session:
            return session.scalar(
                select(func.count(DBTag.id)).where(DBTag.user_id == caller.user_id)
            ) or 0

    @staticmethod
    def suggest_color(existing: Sequence[Tag]) -> str:
        """Pick the first palette colour not already in use."""
        used = {t.color for t in existing if t.color}
        for color in TAG_COLORS:
            if color not in used:
                return color
        return TAG_COLORS[len(existing) % len(TAG_COLORS)]
