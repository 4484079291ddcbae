"""Tests for the append-only version log."""
import pytest
from sqlalchemy.exc import OperationalError
from sqlalchemy.orm import Session

from quillnote.exceptions import (NoteNotFoundError, VersionNotFoundError,
                                  VersionSnapshotError)
from quillnote.models.db_models import DBNoteVersion
from quillnote.storage.version_log import VersionLog


class TestVersionLog:
    def test_snapshot_records_current_state(self, note_repository, version_log, alice):
        note = note_repository.create(alice, title="Plan", content="<p>step 1</p>")
        version = version_log.snapshot(alice, note.id)
        assert version.version_number == 1
        assert version.title == "Plan"
        assert version.content == "<p>step 1</p>"
        assert version.note_id == note.id

    def test_numbers_are_contiguous(self, note_repository, version_log, alice):
        note = note_repository.create(alice, title="Plan", content="<p>x</p>")
        numbers = [version_log.snapshot(alice, note.id).version_number for _ in range(4)]
        assert numbers == [1, 2, 3, 4]
        assert version_log.count(alice, note.id) == 4

    def test_numbers_are_per_note(self, note_repository, version_log, alice):
        a = note_repository.create(alice, title="A", content="<p>a</p>")
        b = note_repository.create(alice, title="B", content="<p>b</p>")
        version_log.snapshot(alice, a.id)
        version_log.snapshot(alice, a.id)
        assert version_log.snapshot(alice, b.id).version_number == 1

    def test_list_versions_newest_first(self, note_repository, version_log, alice):
        note = note_repository.create(alice, title="T", content="<p>1</p>")
        note_repository.update(alice, note.id, {"content": "<p>2</p>"})
        note_repository.update(alice, note.id, {"content": "<p>3</p>"})
        versions = version_log.list_versions(alice, note.id)
        assert [v.content for v in versions] == ["<p>2</p>", "<p>1</p>"]
        assert [v.version_number for v in versions] == [2, 1]

    def test_versions_are_owner_scoped(self, note_repository, version_log, alice, bob):
        note = note_repository.create(alice, title="T", content="<p>1</p>")
        version = version_log.snapshot(alice, note.id)
        with pytest.raises(NoteNotFoundError):
            version_log.list_versions(bob, note.id)
        with pytest.raises(NoteNotFoundError):
            version_log.snapshot(bob, note.id)
        with pytest.raises(VersionNotFoundError):
            version_log.get_version(bob, version.id)

    def test_get_version(self, note_repository, version_log, alice):
        note = note_repository.create(alice, title="T", content="<p>1</p>")
        version = version_log.snapshot(alice, note.id)
        assert version_log.get_version(alice, version.id) == version

    def test_get_missing_version(self, version_log, alice):
        with pytest.raises(VersionNotFoundError):
            version_log.get_version(alice, "nope")

    def test_trashed_note_history_still_readable(self, note_repository, version_log, alice):
        note = note_repository.create(alice, title="T", content="<p>1</p>")
        note_repository.update(alice, note.id, {"content": "<p>2</p>"})
        note_repository.soft_delete(alice, note.id)
        assert version_log.count(alice, note.id) == 1


class TestSnapshotFailure:
    """A snapshot that cannot be written aborts the update."""

    def test_update_aborted_when_snapshot_fails(self, note_repository, version_log, alice, monkeypatch):
        note = note_repository.create(alice, title="T", content="<p>original</p>")

        real_flush = Session.flush

        def broken_flush(self, *args, **kwargs):
            if any(isinstance(obj, DBNoteVersion) for obj in self.new):
                raise OperationalError("INSERT INTO note_versions", {}, Exception("disk I/O error"))
            return real_flush(self, *args, **kwargs)

        with monkeypatch.context() as m:
            m.setattr(Session, "flush", broken_flush)
            with pytest.raises(VersionSnapshotError):
                note_repository.update(alice, note.id, {"content": "<p>changed</p>"})

        assert note_repository.get(alice, note.id).content == "<p>original</p>"
        assert version_log.count(alice, note.id) == 0


def test_version_log_creates_engine_when_missing(test_config, monkeypatch):
    monkeypatch.setattr(test_config, "in_memory_db", True)
    log = VersionLog()
    assert str(log.engine.url) == "sqlite://"
