"""Service layer for Quillnote operations."""

import datetime
import logging
from pathlib import Path
from typing import Any, Dict, List, Optional, Union

from quillnote.config import config
from quillnote.exceptions import MediaError, StorageError, ValidationError
from quillnote.models.db_models import init_db
from quillnote.models.schema import (BatchResult, CallerIdentity, ExportFormat,
                                     MediaItem, MediaKind, Note, NoteVersion,
                                     SharedLink, Tag, utc_now)
from quillnote.observability import traced
from quillnote.services.autosave import AutoSaver
from quillnote.services.export_service import ExportBundle, build_export
from quillnote.services.share_resolver import SharedNoteResolver
from quillnote.services.shared_fetch import FetchFunction, create_fetcher
from quillnote.storage.base import require_caller
from quillnote.storage.media_store import MediaStore
from quillnote.storage.note_repository import NoteRepository
from quillnote.storage.share_repository import ShareLinkManager, share_url
from quillnote.storage.tag_repository import TagRepository
from quillnote.storage.version_log import VersionLog

logger = logging.getLogger(__name__)


class NoteService:
    """Facade over the repositories used by the server.

    Every method takes the caller identity explicitly, except the public
    share resolution path which runs for anonymous viewers.
    """

    def __init__(
        self,
        engine: Optional[Any] = None,
        media_store: Optional[MediaStore] = None,
        fetcher: Optional[FetchFunction] = None,
    ):
        """Initialize the service.

        Args:
            engine: SQLAlchemy engine shared by every repository. A new one
                is created from config if None.
            media_store: Media store to use (tests pass one with a temp dir).
            fetcher: Privileged fetch used to resolve share links. Defaults
                to ``create_fetcher()``.
        """
        self.engine = engine or init_db()
        self.media_store = media_store or MediaStore(self.engine)
        self.version_log = VersionLog(self.engine)
        self.notes = NoteRepository(
            self.engine, version_log=self.version_log, media_store=self.media_store
        )
        self.tags = TagRepository(self.engine)
        self.shares = ShareLinkManager(self.engine)
        self.fetcher = fetcher or create_fetcher(self.engine, self.shares)

    # Notes

    def create_note(self, caller: CallerIdentity, title: Optional[str] = None,
                    content: Optional[str] = None, pinned: bool = False,
                    color: Optional[str] = None, tags: Optional[List[str]] = None) -> Note:
        """Create a note, optionally attaching tags by name (created if missing)."""
        note = self.notes.create(caller, title=title, content=content, pinned=pinned, color=color)
        if tags:
            for tag in self._tags_by_name(caller, tags, create_missing=True):
                self.tags.attach(caller, note.id, tag.id)
            note = self.notes.get(caller, note.id)
        return note

    def get_note(self, caller: CallerIdentity, note_id: str, include_deleted: bool = False) -> Note:
        return self.notes.get(caller, note_id, include_deleted=include_deleted)

    def list_notes(self, caller: CallerIdentity, query: Optional[str] = None,
                   tag: Optional[str] = None) -> List[Note]:
        """List active notes, optionally filtered by text and tag name."""
        tag_id = None
        if tag:
            matches = self._tags_by_name(caller, [tag], create_missing=False)
            if not matches:
                return []
            tag_id = matches[0].id
        return self.notes.list_active(caller, query=query, tag_id=tag_id)

    def update_note(self, caller: CallerIdentity, note_id: str, **fields: Any) -> Note:
        """Update a note. Title/content changes are snapshotted first."""
        if not fields:
            raise ValidationError("No fields to update")
        return self.notes.update(caller, note_id, fields)

    def trash_note(self, caller: CallerIdentity, note_id: str) -> Note:
        return self.notes.soft_delete(caller, note_id)

    def restore_note(self, caller: CallerIdentity, note_id: str) -> Note:
        return self.notes.restore(caller, note_id)

    def list_trash(self, caller: CallerIdentity) -> List[Note]:
        return self.notes.list_deleted(caller)

    def purge_note(self, caller: CallerIdentity, note_id: str) -> BatchResult:
        return self.notes.permanently_delete(caller, note_id)

    @traced("empty_trash")
    def empty_trash(self, caller: CallerIdentity) -> BatchResult:
        return self.notes.empty_trash(caller)

    def autosaver(self, caller: CallerIdentity, note_id: str,
                  delay: Optional[float] = None) -> AutoSaver:
        """Debounced saver for one open note."""
        caller = require_caller(caller)
        self.notes.get(caller, note_id)
        return AutoSaver(lambda fields: self.notes.update(caller, note_id, fields), delay)

    # Versions

    def note_history(self, caller: CallerIdentity, note_id: str) -> List[NoteVersion]:
        return self.version_log.list_versions(caller, note_id)

    def restore_version(self, caller: CallerIdentity, version_id: str) -> Note:
        """Put a version's title and content back on its note.

        Goes through ``update``, so the state being replaced is itself
        recorded as a new version.
        """
        version = self.version_log.get_version(caller, version_id)
        logger.info(f"Restoring note {version.note_id} to version {version.version_number}")
        return self.notes.update(
            caller, version.note_id, {"title": version.title, "content": version.content}
        )

    # Tags

    def list_tags(self, caller: CallerIdentity) -> List[Tag]:
        return self.tags.list_for_owner(caller)

    def tag_usage(self, caller: CallerIdentity) -> Dict[str, int]:
        """Number of notes, trash included, carrying each of the caller's tags."""
        return self.tags.usage_counts(caller)

    def create_tag(self, caller: CallerIdentity, name: str, color: Optional[str] = None) -> Tag:
        """Create a tag, picking an unused palette colour when none is given."""
        if color is None:
            color = TagRepository.suggest_color(self.tags.list_for_owner(caller))
        return self.tags.create(caller, name, color)

    def delete_tag(self, caller: CallerIdentity, tag_id: str) -> None:
        self.tags.delete(caller, tag_id)

    def tag_note(self, caller: CallerIdentity, note_id: str, tag_name: str) -> Tag:
        """Attach a tag by name, creating the tag if the caller has none by that name."""
        tag = self._tags_by_name(caller, [tag_name], create_missing=True)[0]
        self.tags.attach(caller, note_id, tag.id)
        return tag

    def untag_note(self, caller: CallerIdentity, note_id: str, tag_name: str) -> bool:
        """Detach a tag by name. Returns False if the caller has no such tag."""
        matches = self._tags_by_name(caller, [tag_name], create_missing=False)
        if not matches:
            return False
        self.tags.detach(caller, note_id, matches[0].id)
        return True

    def _tags_by_name(self, caller: CallerIdentity, names: List[str],
                      create_missing: bool) -> List[Tag]:
        existing = {t.name.lower(): t for t in self.tags.list_for_owner(caller)}
        result = []
        for name in names:
            key = (name or "").strip().lower()
            if not key:
                continue
            if key in existing:
                result.append(existing[key])
            elif create_missing:
                tag = self.create_tag(caller, name.strip())
                existing[key] = tag
                result.append(tag)
        return result

    # Media

    def upload_media(self, caller: CallerIdentity, note_id: str,
                     kind: Union[str, MediaKind], filename: str, data: bytes) -> MediaItem:
        return self.media_store.upload(caller, note_id, kind, filename, data)

    def upload_media_file(self, caller: CallerIdentity, note_id: str,
                          kind: Union[str, MediaKind], file_path: Union[str, Path]) -> MediaItem:
        """Read a local file and upload it."""
        path = Path(file_path).expanduser()
        if not path.is_file():
            raise MediaError(f"File not found: {path.name}")
        try:
            data = path.read_bytes()
        except OSError as e:
            raise StorageError(
                "Could not read file for upload", operation="read", path=str(path),
                original_error=e,
            ) from e
        return self.media_store.upload(caller, note_id, kind, path.name, data)

    def list_media(self, caller: CallerIdentity, note_id: str) -> List[MediaItem]:
        return self.media_store.list_for_note(caller, note_id)

    def remove_media(self, caller: CallerIdentity, media_id: str) -> None:
        self.media_store.remove(caller, media_id)

    def media_url(self, item: MediaItem) -> str:
        return self.media_store.public_url_for(item)

    # Sharing

    def create_share(self, caller: CallerIdentity, note_id: str,
                     password: Optional[str] = None,
                     expires_in_days: Optional[int] = None,
                     expires: bool = False) -> SharedLink:
        """Create a share link.

        With ``expires`` set and no explicit lifetime, the link gets the
        configured default lifetime.
        """
        if expires and expires_in_days is None:
            expires_in_days = config.default_share_expiry_days
        return self.shares.create(caller, note_id, password=password,
                                  expires_in_days=expires_in_days)

    def list_shares(self, caller: CallerIdentity, note_id: str) -> List[SharedLink]:
        return self.shares.list(caller, note_id)

    def toggle_share(self, caller: CallerIdentity, link_id: str) -> SharedLink:
        return self.shares.toggle_active(caller, link_id)

    def revoke_share(self, caller: CallerIdentity, link_id: str) -> None:
        self.shares.revoke(caller, link_id)

    @staticmethod
    def share_url(link: SharedLink) -> str:
        return share_url(link.share_token)

    def resolver(self, token: str) -> SharedNoteResolver:
        """A fresh resolver for a token. No caller identity is involved."""
        return SharedNoteResolver(token, self.shares, self.fetcher)

    @traced("resolve_share")
    def open_shared(self, token: str, password: Optional[str] = None) -> SharedNoteResolver:
        """Load a token and, if a password is given and needed, submit it."""
        resolver = self.resolver(token)
        resolver.load()
        if password is not None:
            resolver.submit_password(password)
        return resolver

    # Export and stats

    @traced("export_notes")
    def export_notes(self, caller: CallerIdentity, fmt: Union[str, ExportFormat],
                     exported_at: Optional[datetime.datetime] = None) -> ExportBundle:
        """Export all active notes with their media references."""
        notes = self.notes.list_active(caller)
        active_ids = {n.id for n in notes}
        media = [m for m in self.media_store.list_for_owner(caller) if m.note_id in active_ids]
        return build_export(fmt, notes, media, exported_at or utc_now())

    def stats(self, caller: CallerIdentity) -> Dict[str, int]:
        """Counts shown on the profile page."""
        return {
            "notes": self.notes.count_active(caller),
            "trashed": self.notes.count_deleted(caller),
            "tags": self.tags.count_for_owner(caller),
            "media": self.media_store.count_for_owner(caller),
        }
