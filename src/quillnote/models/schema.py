"""Data models for the Quillnote server."""

import datetime
import uuid
from dataclasses import dataclass, field
from datetime import timezone
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field, field_validator

from quillnote.exceptions import BulkOperationError, ErrorCode

MAX_COLOR_LENGTH = 32
MAX_TAG_NAME_LENGTH = 64


def utc_now() -> datetime.datetime:
    """Get current UTC time as timezone-aware datetime."""
    return datetime.datetime.now(timezone.utc)


def ensure_timezone_aware(dt_value: Optional[datetime.datetime]) -> datetime.datetime:
    """Ensure a datetime is timezone-aware, treating naive datetimes as UTC.

    SQLite drops tzinfo on the way back out, so every datetime read from
    the database goes through here.

    Args:
        dt_value: A datetime that may or may not have timezone info.

    Returns:
        The same datetime with UTC timezone if it was naive, otherwise unchanged.
    """
    if dt_value is None:
        return utc_now()
    if dt_value.tzinfo is None:
        return dt_value.replace(tzinfo=timezone.utc)
    return dt_value


def generate_id() -> str:
    """Generate an opaque identifier for a new row."""
    return uuid.uuid4().hex


def _clean_color(value: Optional[str]) -> Optional[str]:
    if value is None:
        return None
    value = value.strip()
    if not value:
        return None
    if len(value) > MAX_COLOR_LENGTH:
        raise ValueError(f"Color cannot exceed {MAX_COLOR_LENGTH} characters")
    return value


class CallerIdentity(BaseModel):
    """The authenticated user on whose behalf an operation runs.

    Issued by the external identity provider and passed explicitly into
    every repository and service call.
    """

    user_id: str = Field(..., description="Owner identity from the auth provider")
    email: Optional[str] = Field(default=None, description="Display email")

    model_config = {"frozen": True}

    @field_validator("user_id")
    @classmethod
    def validate_user_id(cls, v: str) -> str:
        """User IDs namespace storage paths, so no separators are allowed."""
        v = v.strip()
        if not v:
            raise ValueError("user_id cannot be empty")
        if "/" in v or "\\" in v or ".." in v:
            raise ValueError("user_id cannot contain path separators")
        return v


class MediaKind(str, Enum):
    """Kinds of media that can be attached to a note."""

    IMAGE = "image"
    AUDIO = "audio"
    VIDEO = "video"


class ExportFormat(str, Enum):
    """Export file formats."""

    JSON = "json"
    TEXT = "text"
    MARKDOWN = "markdown"


class ResolverState(str, Enum):
    """States of the public shared-note resolver."""

    LOADING = "loading"
    ERROR = "error"
    PASSWORD_REQUIRED = "password_required"
    READY = "ready"


class Tag(BaseModel):
    """A per-owner label that can be attached to notes."""

    id: str = Field(default_factory=generate_id)
    user_id: str
    name: str = Field(..., description="Tag name, unique per owner")
    color: Optional[str] = None
    created_at: datetime.datetime = Field(default_factory=utc_now)

    model_config = {"frozen": True}

    @field_validator("name")
    @classmethod
    def validate_name(cls, v: str) -> str:
        v = v.strip()
        if not v:
            raise ValueError("Tag name cannot be empty")
        if len(v) > MAX_TAG_NAME_LENGTH:
            raise ValueError(f"Tag name cannot exceed {MAX_TAG_NAME_LENGTH} characters")
        return v

    @field_validator("color")
    @classmethod
    def validate_color(cls, v: Optional[str]) -> Optional[str]:
        return _clean_color(v)

    def __str__(self) -> str:
        return self.name


class Note(BaseModel):
    """A rich-text note. ``content`` is an HTML fragment."""

    id: str = Field(default_factory=generate_id, description="Unique ID of the note")
    user_id: str = Field(..., description="Owner of the note")
    title: Optional[str] = Field(default=None, description="Title of the note")
    content: Optional[str] = Field(default=None, description="HTML content")
    is_pinned: bool = Field(default=False)
    color: Optional[str] = Field(default=None, description="Colour label")
    created_at: datetime.datetime = Field(default_factory=utc_now)
    updated_at: datetime.datetime = Field(default_factory=utc_now)
    deleted_at: Optional[datetime.datetime] = Field(
        default=None, description="Soft-delete marker; None while active"
    )
    tags: List[Tag] = Field(default_factory=list)

    model_config = {"validate_assignment": True, "extra": "forbid"}

    @field_validator("title")
    @classmethod
    def validate_title(cls, v: Optional[str]) -> Optional[str]:
        """Blank titles are stored as None."""
        if v is None or not v.strip():
            return None
        return v

    @field_validator("color")
    @classmethod
    def validate_color(cls, v: Optional[str]) -> Optional[str]:
        return _clean_color(v)

    @property
    def is_deleted(self) -> bool:
        return self.deleted_at is not None

    @property
    def display_title(self) -> str:
        return self.title or "Untitled"


class MediaItem(BaseModel):
    """A stored blob attached to a note."""

    id: str = Field(default_factory=generate_id)
    note_id: str
    media_type: MediaKind
    storage_path: str
    created_at: datetime.datetime = Field(default_factory=utc_now)

    model_config = {"frozen": True}


class NoteVersion(BaseModel):
    """An immutable snapshot of a note's title and content before an update."""

    id: str = Field(default_factory=generate_id)
    note_id: str
    title: Optional[str] = None
    content: Optional[str] = None
    version_number: int = Field(..., ge=1)
    created_at: datetime.datetime = Field(default_factory=utc_now)

    model_config = {"frozen": True}


class SharedLink(BaseModel):
    """A bearer-token grant giving public read access to one note."""

    id: str = Field(default_factory=generate_id)
    note_id: str
    share_token: str
    password_hash: Optional[str] = None
    expires_at: Optional[datetime.datetime] = None
    created_at: datetime.datetime = Field(default_factory=utc_now)
    created_by: str
    is_active: bool = True
    view_count: int = Field(default=0, ge=0)

    @property
    def has_password(self) -> bool:
        return bool(self.password_hash)

    def is_expired(self, now: Optional[datetime.datetime] = None) -> bool:
        """True once ``expires_at`` has passed. Links without expiry never expire."""
        if self.expires_at is None:
            return False
        now = now or utc_now()
        return ensure_timezone_aware(self.expires_at) < now

    def is_live(self, now: Optional[datetime.datetime] = None) -> bool:
        return self.is_active and not self.is_expired(now)


class SharedNotePayload(BaseModel):
    """The subset of a note returned to anonymous viewers."""

    id: str
    title: Optional[str] = None
    content: Optional[str] = None
    created_at: datetime.datetime
    updated_at: datetime.datetime
    color: Optional[str] = None

    def to_wire(self) -> Dict[str, Any]:
        """Serialize with ISO timestamps for JSON responses."""
        return {
            "id": self.id,
            "title": self.title,
            "content": self.content,
            "created_at": self.created_at.isoformat(),
            "updated_at": self.updated_at.isoformat(),
            "color": self.color,
        }


@dataclass(frozen=True)
class NoteTagRow:
    """One row of the note/tag join, mapped to typed fields.

    Attributes:
        note_id: The tagged note.
        tag: The attached tag.
        attached_at: When the association was created.
    """

    note_id: str
    tag: Tag
    attached_at: datetime.datetime


@dataclass(frozen=True)
class BatchItemResult:
    """Outcome of one item in a best-effort batch operation."""

    item_id: str
    success: bool
    error: Optional[str] = None


@dataclass
class BatchResult:
    """Per-item results of a best-effort batch operation.

    A failure on one item never stops the remaining items; the caller
    decides whether partial success is acceptable.
    """

    operation: str
    items: List[BatchItemResult] = field(default_factory=list)

    def add_success(self, item_id: str) -> None:
        self.items.append(BatchItemResult(item_id=item_id, success=True))

    def add_failure(self, item_id: str, error: str) -> None:
        self.items.append(BatchItemResult(item_id=item_id, success=False, error=error))

    @property
    def succeeded(self) -> List[str]:
        return [item.item_id for item in self.items if item.success]

    @property
    def failed(self) -> List[BatchItemResult]:
        return [item for item in self.items if not item.success]

    @property
    def ok(self) -> bool:
        return not self.failed

    def raise_for_failures(self) -> None:
        """Raise BulkOperationError if any item failed."""
        if self.ok:
            return
        code = (
            ErrorCode.BULK_OPERATION_PARTIAL
            if self.succeeded
            else ErrorCode.BULK_OPERATION_FAILED
        )
        raise BulkOperationError(
            f"{self.operation}: {len(self.failed)} of {len(self.items)} items failed",
            operation=self.operation,
            total_count=len(self.items),
            success_count=len(self.succeeded),
            failed_ids=[item.item_id for item in self.failed],
            code=code,
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "operation": self.operation,
            "total": len(self.items),
            "succeeded": len(self.succeeded),
            "failed": [
                {"id": item.item_id, "error": item.error} for item in self.failed
            ],
        }
