"""Common test fixtures for the Quillnote server."""

import tempfile
from pathlib import Path

import pytest

from quillnote.config import config
from quillnote.models.db_models import init_db
from quillnote.models.schema import CallerIdentity
from quillnote.services.note_service import NoteService
from quillnote.services.shared_fetch import SharedNoteFetcher
from quillnote.storage.media_store import LocalBlobStore, MediaStore
from quillnote.storage.note_repository import NoteRepository
from quillnote.storage.share_repository import ShareLinkManager
from quillnote.storage.tag_repository import TagRepository
from quillnote.storage.version_log import VersionLog

PUBLIC_BASE_URL = "https://cdn.example.test/storage"
SHARE_BASE_URL = "https://notes.example.test"


@pytest.fixture(params=["asyncio"])
def anyio_backend(request):
    """Restrict anyio tests to asyncio only (trio is not installed)."""
    return request.param


@pytest.fixture
def temp_dirs():
    """Create temporary directories for media and database."""
    with tempfile.TemporaryDirectory() as storage_dir:
        with tempfile.TemporaryDirectory() as db_dir:
            yield Path(storage_dir), Path(db_dir)


@pytest.fixture
def test_config(temp_dirs, monkeypatch):
    """Configure with test paths (auto-restored even on crash)."""
    storage_dir, db_dir = temp_dirs
    monkeypatch.setattr(config, "database_path", db_dir / "test_quillnote.db")
    monkeypatch.setattr(config, "storage_dir", storage_dir)
    monkeypatch.setattr(config, "storage_backend", "local")
    monkeypatch.setattr(config, "public_base_url", PUBLIC_BASE_URL)
    monkeypatch.setattr(config, "share_base_url", SHARE_BASE_URL)
    monkeypatch.setattr(config, "functions_url", None)
    monkeypatch.setattr(config, "user_id", "alice")
    monkeypatch.setattr(config, "user_email", "alice@example.test")
    yield config


@pytest.fixture
def engine(test_config):
    """In-memory database shared by every repository in a test."""
    engine = init_db("sqlite://")
    yield engine
    engine.dispose()


@pytest.fixture
def alice():
    return CallerIdentity(user_id="alice", email="alice@example.test")


@pytest.fixture
def bob():
    return CallerIdentity(user_id="bob", email="bob@example.test")


@pytest.fixture
def blob_store(temp_dirs):
    storage_dir, _ = temp_dirs
    return LocalBlobStore(storage_dir)


@pytest.fixture
def media_store(engine, blob_store):
    return MediaStore(engine, blob_store=blob_store, public_base_url=PUBLIC_BASE_URL)


@pytest.fixture
def version_log(engine):
    return VersionLog(engine)


@pytest.fixture
def note_repository(engine, version_log, media_store):
    """Create a test note repository."""
    return NoteRepository(engine, version_log=version_log, media_store=media_store)


@pytest.fixture
def tag_repository(engine):
    return TagRepository(engine)


@pytest.fixture
def share_manager(engine):
    return ShareLinkManager(engine)


@pytest.fixture
def fetcher(engine, share_manager):
    return SharedNoteFetcher(engine=engine, share_manager=share_manager)


@pytest.fixture
def note_service(engine, media_store, fetcher):
    """Create a test NoteService wired to the in-memory database."""
    return NoteService(engine=engine, media_store=media_store, fetcher=fetcher)
