"""Custom exceptions for the Quillnote server.

Provides a structured exception hierarchy with error codes and
machine-readable error information for better error handling.
"""
from enum import Enum
from typing import Any, Dict, List, Optional


class ErrorCode(Enum):
    """Error codes for machine-readable error identification."""

    # Identity errors (1xxx)
    AUTHENTICATION_REQUIRED = 1001
    ACCESS_DENIED = 1002

    # Note errors (2xxx)
    NOTE_NOT_FOUND = 2001
    NOTE_VALIDATION_FAILED = 2002
    NOTE_NOT_IN_TRASH = 2003
    VERSION_NOT_FOUND = 2101
    VERSION_SNAPSHOT_FAILED = 2102

    # Tag errors (3xxx)
    TAG_NOT_FOUND = 3001
    TAG_INVALID = 3002
    TAG_ALREADY_EXISTS = 3003

    # Storage errors (4xxx)
    STORAGE_READ_FAILED = 4001
    STORAGE_WRITE_FAILED = 4002
    STORAGE_DELETE_FAILED = 4003
    STORAGE_CONNECTION_FAILED = 4004
    MEDIA_NOT_FOUND = 4101
    MEDIA_INVALID = 4102

    # Bulk operation errors (45xx)
    BULK_OPERATION_FAILED = 4501
    BULK_OPERATION_PARTIAL = 4502

    # Share link errors (5xxx)
    SHARE_LINK_NOT_FOUND = 5001
    SHARE_LINK_INVALID = 5004

    # Configuration errors (6xxx)
    CONFIG_INVALID = 6001
    CONFIG_MISSING = 6002

    # Validation errors (7xxx)
    VALIDATION_FAILED = 7001
    INVALID_MEDIA_KIND = 7002
    INVALID_EXPORT_FORMAT = 7003
    PATH_TRAVERSAL_DETECTED = 7004


class QuillnoteError(Exception):
    """Base exception for all Quillnote errors.

    Attributes:
        message: Human-readable error message
        code: Machine-readable error code
        details: Additional context about the error
    """

    def __init__(
        self,
        message: str,
        code: ErrorCode = ErrorCode.VALIDATION_FAILED,
        details: Optional[Dict[str, Any]] = None
    ):
        self.message = message
        self.code = code
        self.details = details or {}
        super().__init__(message)

    def to_dict(self) -> Dict[str, Any]:
        """Convert exception to a dictionary for serialization."""
        return {
            "error": self.__class__.__name__,
            "code": self.code.value,
            "code_name": self.code.name,
            "message": self.message,
            "details": self.details
        }

    def __str__(self) -> str:
        if self.details:
            detail_str = ", ".join(f"{k}={v}" for k, v in self.details.items())
            return f"[{self.code.name}] {self.message} ({detail_str})"
        return f"[{self.code.name}] {self.message}"


class AuthenticationError(QuillnoteError):
    """Raised when an operation is attempted without a caller identity."""

    def __init__(self, message: str = "Not authenticated"):
        super().__init__(message, code=ErrorCode.AUTHENTICATION_REQUIRED)


class NoteNotFoundError(QuillnoteError):
    """Raised when a note cannot be found.

    Also raised when the note exists but belongs to another owner, so the
    two cases are indistinguishable to the caller.
    """

    def __init__(self, note_id: str, message: Optional[str] = None):
        super().__init__(
            message or f"Note with ID '{note_id}' not found",
            code=ErrorCode.NOTE_NOT_FOUND,
            details={"note_id": note_id}
        )
        self.note_id = note_id


class AuthorizationError(NoteNotFoundError):
    """Raised when a caller touches a resource owned by someone else.

    Subclasses NoteNotFoundError and carries the same message so handlers
    that report not-found never leak the resource's existence.
    """

    def __init__(self, resource_id: str, owner_hint: Optional[str] = None):
        super().__init__(resource_id)
        self.code = ErrorCode.ACCESS_DENIED
        # Only kept on the instance for logs, never in details/to_dict()
        self.owner_hint = owner_hint


class NoteValidationError(QuillnoteError):
    """Raised when note data fails validation."""

    def __init__(
        self,
        message: str,
        field: Optional[str] = None,
        value: Optional[Any] = None,
        code: ErrorCode = ErrorCode.NOTE_VALIDATION_FAILED
    ):
        details = {}
        if field:
            details["field"] = field
        if value is not None:
            details["value"] = str(value)[:100]  # Truncate for safety

        super().__init__(message, code=code, details=details)
        self.field = field
        self.value = value


class VersionNotFoundError(QuillnoteError):
    """Raised when a version snapshot cannot be found."""

    def __init__(self, version_id: str):
        super().__init__(
            f"Version with ID '{version_id}' not found",
            code=ErrorCode.VERSION_NOT_FOUND,
            details={"version_id": version_id}
        )
        self.version_id = version_id


class VersionSnapshotError(QuillnoteError):
    """Raised when the pre-update snapshot could not be written.

    The update that triggered the snapshot is aborted.
    """

    def __init__(self, note_id: str, original_error: Optional[Exception] = None):
        details = {"note_id": note_id}
        if original_error:
            details["original_error"] = str(original_error)[:200]
        super().__init__(
            f"Could not record version history for note '{note_id}'; update aborted",
            code=ErrorCode.VERSION_SNAPSHOT_FAILED,
            details=details
        )
        self.note_id = note_id
        self.original_error = original_error


class TagError(QuillnoteError):
    """Raised for tag-related errors."""

    def __init__(
        self,
        message: str,
        tag_name: Optional[str] = None,
        code: ErrorCode = ErrorCode.TAG_INVALID
    ):
        details = {}
        if tag_name:
            details["tag_name"] = tag_name

        super().__init__(message, code=code, details=details)
        self.tag_name = tag_name


class TagConflictError(TagError):
    """Raised when a tag name already exists for the owner."""

    def __init__(self, tag_name: str):
        super().__init__(
            f"A tag named '{tag_name}' already exists",
            tag_name=tag_name,
            code=ErrorCode.TAG_ALREADY_EXISTS
        )


class StorageError(QuillnoteError):
    """Raised for storage/persistence errors."""

    def __init__(
        self,
        message: str,
        operation: Optional[str] = None,
        path: Optional[str] = None,
        code: ErrorCode = ErrorCode.STORAGE_READ_FAILED,
        original_error: Optional[Exception] = None
    ):
        details = {}
        if operation:
            details["operation"] = operation
        if path:
            # Don't expose full paths in error messages for security
            details["path_hint"] = path.split("/")[-1] if "/" in path else path
        if original_error:
            details["original_error"] = str(original_error)[:200]

        super().__init__(message, code=code, details=details)
        self.operation = operation
        self.path = path
        self.original_error = original_error


class MediaError(QuillnoteError):
    """Raised for media attachment errors that are not storage failures."""

    def __init__(
        self,
        message: str,
        media_id: Optional[str] = None,
        code: ErrorCode = ErrorCode.MEDIA_INVALID
    ):
        details = {}
        if media_id:
            details["media_id"] = media_id
        super().__init__(message, code=code, details=details)
        self.media_id = media_id


class ShareLinkNotFoundError(QuillnoteError):
    """Raised when a share link is missing, inactive or not owned by the caller."""

    def __init__(self, identifier: str, message: Optional[str] = None):
        super().__init__(
            message or "This shared link is invalid or has been deactivated.",
            code=ErrorCode.SHARE_LINK_NOT_FOUND,
            # Tokens are bearer credentials: keep only a prefix
            details={"link": identifier[:6]}
        )
        self.identifier = identifier


class ConfigurationError(QuillnoteError):
    """Raised for configuration-related errors."""

    def __init__(
        self,
        message: str,
        config_key: Optional[str] = None,
        code: ErrorCode = ErrorCode.CONFIG_INVALID
    ):
        details = {}
        if config_key:
            details["config_key"] = config_key

        super().__init__(message, code=code, details=details)
        self.config_key = config_key


class ValidationError(QuillnoteError):
    """Raised for general validation errors."""

    def __init__(
        self,
        message: str,
        field: Optional[str] = None,
        value: Optional[Any] = None,
        code: ErrorCode = ErrorCode.VALIDATION_FAILED
    ):
        details = {}
        if field:
            details["field"] = field
        if value is not None:
            details["value"] = str(value)[:100]

        super().__init__(message, code=code, details=details)
        self.field = field
        self.value = value


class BulkOperationError(QuillnoteError):
    """Raised when a batch operation fails for every item.

    Partial failures are not errors; they are reported per item in the
    batch result. This is raised only when a caller asks for strict
    behaviour via ``BatchResult.raise_for_failures()``.

    Attributes:
        operation: Name of the bulk operation (e.g., "empty_trash")
        total_count: Total number of items attempted
        success_count: Number of items that succeeded
        failed_ids: List of IDs that failed (full list, not truncated)
    """

    def __init__(
        self,
        message: str,
        operation: str,
        total_count: int = 0,
        success_count: int = 0,
        failed_ids: Optional[List[str]] = None,
        code: ErrorCode = ErrorCode.BULK_OPERATION_FAILED,
    ):
        if total_count < 0:
            raise ValueError("total_count must be non-negative")
        if success_count < 0:
            raise ValueError("success_count must be non-negative")
        if success_count > total_count:
            raise ValueError("success_count cannot exceed total_count")

        details = {
            "operation": operation,
            "total_count": total_count,
            "success_count": success_count,
            "failed_count": total_count - success_count
        }
        if failed_ids:
            details["failed_ids"] = failed_ids[:10]  # Truncate for safety

        super().__init__(message, code=code, details=details)
        self.operation = operation
        self.total_count = total_count
        self.success_count = success_count
        self.failed_ids: List[str] = list(failed_ids) if failed_ids else []

    @property
    def failed_count(self) -> int:
        """Number of items that failed (computed from total - success)."""
        return self.total_count - self.success_count
