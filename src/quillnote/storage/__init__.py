"""Storage layer for the Quillnote server."""

from quillnote.storage.base import Repository
from quillnote.storage.media_store import MediaStore
from quillnote.storage.note_repository import NoteRepository
from quillnote.storage.share_repository import ShareLinkManager
from quillnote.storage.tag_repository import TagRepository
from quillnote.storage.version_log import VersionLog

__all__ = [
    "Repository",
    "NoteRepository",
    "VersionLog",
    "TagRepository",
    "MediaStore",
    "ShareLinkManager",
]
