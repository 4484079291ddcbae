"""Media attachments: blob storage plus the metadata rows that track it.

Blobs live in one of three buckets chosen by media kind. Paths are
namespaced by owner (``<user_id>/<epoch_ms>_<filename>``) and public URLs
are a pure function of bucket and path.
"""
import logging
import mimetypes
import os
import tempfile
import time
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Dict, List, Optional, Sequence, Union
from urllib.parse import quote

import boto3
from botocore.config import Config
from botocore.exceptions import BotoCoreError, ClientError
from sqlalchemy import func, select
from sqlalchemy.exc import SQLAlchemyError

from quillnote.config import QuillnoteConfig, config
from quillnote.exceptions import (ErrorCode, MediaError, NoteNotFoundError,
                                  StorageError, ValidationError)
from quillnote.models.db_models import DBMedia, DBNote
from quillnote.models.schema import (BatchResult, CallerIdentity, MediaItem,
                                     MediaKind, generate_id, utc_now)
from quillnote.storage.base import (Repository, load_owned_note, media_to_model,
                                    require_caller)
from quillnote.utils import sanitize_filename

logger = logging.getLogger(__name__)

BUCKETS: Dict[MediaKind, str] = {
    MediaKind.IMAGE: "note-images",
    MediaKind.AUDIO: "note-audio",
    MediaKind.VIDEO: "note-videos",
}

MAX_UPLOAD_BYTES = 50 * 1024 * 1024  # 50 MB


def parse_media_kind(kind: Union[str, MediaKind]) -> MediaKind:
    """Parse a media kind, raising ValidationError for unknown values."""
    if isinstance(kind, MediaKind):
        return kind
    try:
        return MediaKind(str(kind).strip().lower())
    except ValueError:
        raise ValidationError(
            f"Invalid media type: {kind}. Valid types are: "
            f"{', '.join(k.value for k in MediaKind)}",
            field="media_type",
            value=kind,
            code=ErrorCode.INVALID_MEDIA_KIND,
        )


def bucket_for(kind: Union[str, MediaKind]) -> str:
    """Map a media kind to its bucket name."""
    return BUCKETS[parse_media_kind(kind)]


def build_storage_path(
    caller: CallerIdentity, filename: str, now_ms: Optional[int] = None
) -> str:
    """Build ``<user_id>/<epoch_ms>_<sanitized filename>``."""
    caller = require_caller(caller)
    stamp = now_ms if now_ms is not None else int(time.time() * 1000)
    return f"{caller.user_id}/{stamp}_{sanitize_filename(filename)}"


def _media_not_found(media_id: str) -> MediaError:
    return MediaError(
        f"Media with ID '{media_id}' not found",
        media_id=media_id,
        code=ErrorCode.MEDIA_NOT_FOUND,
    )


def public_url(base_url: str, kind: Union[str, MediaKind], path: str) -> str:
    """Derive the public URL of a stored blob."""
    return f"{base_url.rstrip('/')}/{bucket_for(kind)}/{quote(path)}"


class BlobStore(ABC):
    """Minimal object storage interface: put and remove by bucket and path."""

    @abstractmethod
    def put(self, bucket: str, path: str, data: bytes,
            content_type: Optional[str] = None) -> None:
        """Store ``data`` at ``bucket/path``, replacing anything there."""

    @abstractmethod
    def remove(self, bucket: str, paths: Sequence[str]) -> None:
        """Remove blobs. Missing paths are not an error."""

    @abstractmethod
    def exists(self, bucket: str, path: str) -> bool:
        """Check whether a blob exists."""


class LocalBlobStore(BlobStore):
    """Stores blobs as files under ``<root>/<bucket>/<path>``."""

    def __init__(self, root: Union[str, Path]):
        self.root = Path(root)
        self.root.mkdir(parents=True, exist_ok=True)

    def _resolve(self, bucket: str, path: str) -> Path:
        bucket_dir = (self.root / bucket).resolve()
        target = (bucket_dir / path).resolve()
        if bucket_dir not in target.parents:
            raise ValidationError(
                "Storage path escapes its bucket",
                field="storage_path",
                value=path,
                code=ErrorCode.PATH_TRAVERSAL_DETECTED,
            )
        return target

    def put(self, bucket: str, path: str, data: bytes,
            content_type: Optional[str] = None) -> None:
        target = self._resolve(bucket, path)
        target.parent.mkdir(parents=True, exist_ok=True)
        # Write to a temp file in the same directory, then atomically rename
        fd, temp_name = tempfile.mkstemp(dir=target.parent, suffix=".part")
        try:
            with os.fdopen(fd, "wb") as f:
                f.write(data)
            os.replace(temp_name, target)
        except OSError:
            if os.path.exists(temp_name):
                os.remove(temp_name)
            raise

    def remove(self, bucket: str, paths: Sequence[str]) -> None:
        for path in paths:
            target = self._resolve(bucket, path)
            try:
                target.unlink()
            except FileNotFoundError:
                logger.debug(f"Blob already gone: {bucket}/{path}")

    def exists(self, bucket: str, path: str) -> bool:
        return self._resolve(bucket, path).is_file()


class S3BlobStore(BlobStore):
    """Stores blobs in an S3-compatible object store, one bucket per kind."""

    def __init__(self, client=None, settings: Optional[QuillnoteConfig] = None):
        self.client = client or self._make_client(settings or config)

    @staticmethod
    def _make_client(settings: QuillnoteConfig):
        style = (settings.s3_addressing_style or "path").lower()
        if style not in ("path", "virtual"):
            style = "path"
        cfg = Config(signature_version="s3v4", s3={"addressing_style": style})
        return boto3.client(
            "s3",
            aws_access_key_id=settings.s3_access_key,
            aws_secret_access_key=settings.s3_secret_key,
            endpoint_url=settings.s3_endpoint,
            region_name=settings.s3_region,
            config=cfg,
        )

    def put(self, bucket: str, path: str, data: bytes,
            content_type: Optional[str] = None) -> None:
        kwargs = {"Bucket": bucket, "Key": path, "Body": data}
        if content_type:
            kwargs["ContentType"] = content_type
        self.client.put_object(**kwargs)

    def remove(self, bucket: str, paths: Sequence[str]) -> None:
        if not paths:
            return
        response = self.client.delete_objects(
            Bucket=bucket,
            Delete={"Objects": [{"Key": p} for p in paths], "Quiet": True},
        )
        errors = response.get("Errors") or []
        if errors:
            first = errors[0]
            raise OSError(
                f"{len(errors)} object(s) not removed from {bucket}: "
                f"{first.get('Key')} ({first.get('Code')})"
            )

    def exists(self, bucket: str, path: str) -> bool:
        try:
            self.client.head_object(Bucket=bucket, Key=path)
            return True
        except ClientError as e:
            if e.response.get("Error", {}).get("Code") in ("404", "NoSuchKey", "NotFound"):
                return False
            raise


def create_blob_store(settings: Optional[QuillnoteConfig] = None) -> BlobStore:
    """Build the blob store selected by ``storage_backend``."""
    settings = settings or config
    if settings.storage_backend == "s3":
        logger.info(f"Using S3 media storage at {settings.s3_endpoint or 'AWS default'}")
        return S3BlobStore(settings=settings)
    storage_dir = settings.get_storage_dir()
    logger.info(f"Using local media storage in {storage_dir}")
    return LocalBlobStore(storage_dir)


# Errors a blob backend may raise for an I/O-level failure
BLOB_ERRORS = (OSError, BotoCoreError, ClientError)


class MediaStore(Repository):
    """Uploads, lists and removes media attached to the caller's notes."""

    def __init__(
        self,
        engine=None,
        blob_store: Optional[BlobStore] = None,
        public_base_url: Optional[str] = None,
    ):
        super().__init__(engine)
        self.blob_store = blob_store or create_blob_store()
        self.public_base_url = public_base_url or config.public_base_url

    def public_url_for(self, item: MediaItem) -> str:
        return public_url(self.public_base_url, item.media_type, item.storage_path)

    def upload(
        self,
        caller: CallerIdentity,
        note_id: str,
        kind: Union[str, MediaKind],
        filename: str,
        data: bytes,
        content_type: Optional[str] = None,
    ) -> MediaItem:
        """Upload a blob, then record it against the note.

        The two steps are not atomic. If recording fails after the upload
        succeeded, the blob is left in storage, logged as an orphan and a
        StorageError is raised.

        Raises:
            NoteNotFoundError: If the caller does not own an active note with this ID.
            ValidationError: For an unknown media kind.
            MediaError: For empty or oversized uploads.
            StorageError: If the upload or the metadata insert fails.
        """
        caller = require_caller(caller)
        media_kind = parse_media_kind(kind)
        if not data:
            raise MediaError("Cannot upload an empty file")
        if len(data) > MAX_UPLOAD_BYTES:
            raise MediaError(
                f"File exceeds maximum size of {MAX_UPLOAD_BYTES // (1024 * 1024)} MB"
            )

        with self.session_factory() as session:
            load_owned_note(session, caller, note_id, include_deleted=False)

        bucket = bucket_for(media_kind)
        path = build_storage_path(caller, filename)
        content_type = content_type or mimetypes.guess_type(filename)[0]

        try:
            self.blob_store.put(bucket, path, data, content_type=content_type)
        except BLOB_ERRORS as e:
            raise StorageError(
                f"Failed to upload {media_kind.value}",
                operation="upload",
                path=path,
                code=ErrorCode.STORAGE_WRITE_FAILED,
                original_error=e,
            ) from e

        db_media = DBMedia(
            id=generate_id(),
            note_id=note_id,
            media_type=media_kind.value,
            storage_path=path,
            created_at=utc_now(),
        )
        try:
            with self.session_factory() as session:
                session.add(db_media)
                session.commit()
                item = media_to_model(db_media)
        except SQLAlchemyError as e:
            logger.warning(f"Orphaned blob left in storage: {bucket}/{path} ({e})")
            raise StorageError(
                f"Uploaded {media_kind.value} could not be recorded",
                operation="record_media",
                path=path,
                code=ErrorCode.STORAGE_WRITE_FAILED,
                original_error=e,
            ) from e

        logger.info(f"Attached {media_kind.value} {item.id} to note {note_id}")
        return item

    def get(self, caller: CallerIdentity, media_id: str) -> MediaItem:
        """Get one media item. Another owner's item reads as missing."""
        caller = require_caller(caller)
        with self.session_factory() as session:
            db_media = session.get(DBMedia, media_id) if media_id else None
            if db_media is None:
                raise _media_not_found(media_id)
            try:
                load_owned_note(session, caller, db_media.note_id)
            except NoteNotFoundError as e:
                # Covers AuthorizationError too
                raise _media_not_found(media_id) from e
            return media_to_model(db_media)

    def remove(self, caller: CallerIdentity, media_id: str) -> None:
        """Remove a media item's blob, then its row.

        Raises:
            MediaError: If the item does not exist or is not the caller's.
            StorageError: If the blob could not be removed; the row is kept.
        """
        item = self.get(caller, media_id)
        bucket = bucket_for(item.media_type)
        try:
            self.blob_store.remove(bucket, [item.storage_path])
        except BLOB_ERRORS as e:
            raise StorageError(
                "Failed to remove media",
                operation="remove",
                path=item.storage_path,
                code=ErrorCode.STORAGE_DELETE_FAILED,
                original_error=e,
            ) from e
        with self.session_factory() as session:
            db_media = session.get(DBMedia, media_id)
            if db_media is not None:
                session.delete(db_media)
                session.commit()
        logger.info(f"Removed media {media_id}")

    def list_for_note(self, caller: CallerIdentity, note_id: str) -> List[MediaItem]:
        caller = require_caller(caller)
        with self.session_factory() as session:
            load_owned_note(session, caller, note_id)
            rows = session.scalars(
                select(DBMedia)
                .where(DBMedia.note_id == note_id)
                .order_by(DBMedia.created_at)
            ).all()
            return [media_to_model(row) for row in rows]

    def list_for_owner(self, caller: CallerIdentity) -> List[MediaItem]:
        """All media on the caller's notes, trash included."""
        caller = require_caller(caller)
        with self.session_factory() as session:
            rows = session.scalars(
                select(DBMedia)
                .join(DBNote, DBMedia.note_id == DBNote.id)
                .where(DBNote.user_id == caller.user_id)
                .order_by(DBMedia.created_at)
            ).all()
            return [media_to_model(row) for row in rows]

    def count_for_owner(self, caller: CallerIdentity) -> int:
        caller = require_caller(caller)
        with self.session_factory() as session:
            return session.scalar(
                select(func.count(DBMedia.id))
                .join(DBNote, DBMedia.note_id == DBNote.id)
                .where(DBNote.user_id == caller.user_id)
            ) or 0

    def remove_blobs_for_note(self, caller: CallerIdentity, note_id: str) -> BatchResult:
        """Best-effort removal of every blob attached to a note.

        Rows are left alone; they go with the note's cascade. Each failure
        is logged and reported in the result.
        """
        result = BatchResult(operation="remove_note_blobs")
        for item in self.list_for_note(caller, note_id):
            try:
                self.blob_store.remove(bucket_for(item.media_type), [item.storage_path])
                result.add_success(item.id)
            except BLOB_ERRORS as e:
                logger.warning(
                    f"Could not remove blob {item.storage_path} of note {note_id}: {e}"
                )
                result.add_failure(item.id, str(e))
        return result
