"""Fake collaborators for testing.

Blob stores and clocks with controlled behaviour. The database is never
faked: tests use a real in-memory SQLite engine.
"""
import datetime
from typing import Dict, List, Optional, Sequence, Tuple

from quillnote.storage.media_store import BlobStore


class MemoryBlobStore(BlobStore):
    """Keeps blobs in a dict and records every call."""

    def __init__(self) -> None:
        self.blobs: Dict[Tuple[str, str], bytes] = {}
        self.removed: List[Tuple[str, str]] = []

    def put(self, bucket: str, path: str, data: bytes,
            content_type: Optional[str] = None) -> None:
        self.blobs[(bucket, path)] = data

    def remove(self, bucket: str, paths: Sequence[str]) -> None:
        for path in paths:
            self.blobs.pop((bucket, path), None)
            self.removed.append((bucket, path))

    def exists(self, bucket: str, path: str) -> bool:
        return (bucket, path) in self.blobs


class FailingBlobStore(MemoryBlobStore):
    """Stores blobs normally but fails the operations it is told to fail."""

    def __init__(self, fail_put: bool = False, fail_remove: bool = False) -> None:
        super().__init__()
        self.fail_put = fail_put
        self.fail_remove = fail_remove

    def put(self, bucket: str, path: str, data: bytes,
            content_type: Optional[str] = None) -> None:
        if self.fail_put:
            raise OSError("bucket unavailable")
        super().put(bucket, path, data, content_type)

    def remove(self, bucket: str, paths: Sequence[str]) -> None:
        if self.fail_remove:
            raise OSError("delete rejected")
        super().remove(bucket, paths)


class FakeClock:
    """A settable clock; call it to read the time."""

    def __init__(self, now: Optional[datetime.datetime] = None) -> None:
        self.now = now or datetime.datetime.now(datetime.timezone.utc)

    def __call__(self) -> datetime.datetime:
        return self.now

    def advance(self, **kwargs) -> None:
        self.now += datetime.timedelta(**kwargs)
