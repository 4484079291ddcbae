"""Tests for the privileged shared-note fetch and its HTTP client."""
import datetime
from unittest.mock import MagicMock

import pydantic
import pytest
import requests

from quillnote.exceptions import ConfigurationError, ErrorCode
from quillnote.models.schema import SharedNotePayload
from quillnote.services.shared_fetch import (INTERNAL_ERROR, LINK_EXPIRED,
                                             LINK_NOT_FOUND, MISSING_PARAMETERS,
                                             NOTE_NOT_FOUND, FetchResponse,
                                             HttpSharedNoteFetcher,
                                             SharedNoteFetcher, create_fetcher)
from tests.fakes import FakeClock


@pytest.fixture
def shared(note_repository, share_manager, alice):
    """A note with a live share link."""
    note = note_repository.create(
        alice, title="Recipe", content="<p>Flour</p>", color="#fde68a"
    )
    link = share_manager.create(alice, note.id, expires_in_days=7)
    return note, link


class TestFetchResponse:
    def test_failure(self):
        response = FetchResponse.failure(404, "gone")
        assert response.status == 404
        assert response.body == {"success": False, "error": "gone"}
        assert not response.ok
        assert response.note is None

    def test_success_parses_note(self):
        now = datetime.datetime(2024, 1, 1, tzinfo=datetime.timezone.utc)
        payload = SharedNotePayload(id="n1", title="T", created_at=now, updated_at=now)
        response = FetchResponse(200, {"success": True, "note": payload.to_wire()})
        assert response.ok
        assert response.note == payload

    def test_200_without_success_flag_is_not_ok(self):
        assert not FetchResponse(200, {"success": False}).ok

    def test_note_with_missing_fields_raises(self):
        response = FetchResponse(200, {"success": True, "note": {"id": "x"}})
        assert response.ok
        with pytest.raises(pydantic.ValidationError):
            response.note


class TestSharedNoteFetcher:
    """One test per status code."""

    def test_missing_parameters(self, fetcher):
        assert fetcher.fetch(None, "link").status == 400
        assert fetcher.fetch("note", "").status == 400
        response = fetcher.handle_request(None)
        assert response.status == 400
        assert response.body["error"] == MISSING_PARAMETERS

    def test_success_returns_note_and_counts_view(self, fetcher, share_manager, shared, alice):
        note, link = shared
        response = fetcher.handle_request({"noteId": note.id, "sharedNoteId": link.id})
        assert response.status == 200
        assert response.body["success"] is True
        wire = response.body["note"]
        assert wire["id"] == note.id
        assert wire["title"] == "Recipe"
        assert wire["content"] == "<p>Flour</p>"
        assert wire["color"] == "#fde68a"
        assert set(wire) == {"id", "title", "content", "created_at", "updated_at", "color"}
        assert share_manager.list(alice, note.id)[0].view_count == 1

    def test_callable(self, fetcher, shared):
        note, link = shared
        assert fetcher(note.id, link.id).ok

    def test_unknown_link(self, fetcher, shared):
        note, _ = shared
        response = fetcher.fetch(note.id, "no-such-link")
        assert response.status == 404
        assert response.body["error"] == LINK_NOT_FOUND

    def test_link_for_another_note(self, fetcher, note_repository, shared, alice):
        _, link = shared
        other = note_repository.create(alice, title="Other")
        assert fetcher.fetch(other.id, link.id).status == 404

    def test_inactive_link(self, fetcher, share_manager, shared, alice):
        note, link = shared
        share_manager.toggle_active(alice, link.id)
        response = fetcher.fetch(note.id, link.id)
        assert response.status == 404
        assert response.body["error"] == LINK_NOT_FOUND

    def test_expired_link(self, engine, share_manager, shared, alice):
        note, link = shared
        clock = FakeClock(link.expires_at + datetime.timedelta(seconds=1))
        response = SharedNoteFetcher(engine, share_manager, clock=clock).fetch(note.id, link.id)
        assert response.status == 410
        assert response.body["error"] == LINK_EXPIRED
        assert share_manager.list(alice, note.id)[0].view_count == 0

    def test_trashed_note(self, fetcher, note_repository, share_manager, shared, alice):
        note, link = shared
        note_repository.soft_delete(alice, note.id)
        response = fetcher.fetch(note.id, link.id)
        assert response.status == 404
        assert response.body["error"] == NOTE_NOT_FOUND
        assert share_manager.list(alice, note.id)[0].view_count == 0

    def test_internal_error(self, engine, shared):
        note, link = shared
        broken = MagicMock()
        broken.find_active_for_note.side_effect = RuntimeError("connection reset")
        response = SharedNoteFetcher(engine, broken).fetch(note.id, link.id)
        assert response.status == 500
        assert response.body == {"success": False, "error": INTERNAL_ERROR}


class TestHttpSharedNoteFetcher:
    def _response(self, status, body=None, text=""):
        response = MagicMock()
        response.status_code = status
        if body is None:
            response.json.side_effect = ValueError("not json")
        else:
            response.json.return_value = body
        response.text = text
        return response

    def test_posts_to_function(self):
        session = MagicMock()
        session.post.return_value = self._response(410, {"success": False, "error": LINK_EXPIRED})
        fetcher = HttpSharedNoteFetcher("https://fn.example.test/functions/v1/", 5, session)

        response = fetcher("n1", "l1")

        session.post.assert_called_once_with(
            "https://fn.example.test/functions/v1/get-shared-note",
            json={"noteId": "n1", "sharedNoteId": "l1"},
            timeout=5,
        )
        assert response.status == 410
        assert response.body["error"] == LINK_EXPIRED

    def test_unreachable_function_is_500(self):
        session = MagicMock()
        session.post.side_effect = requests.ConnectionError("refused")
        response = HttpSharedNoteFetcher("https://fn.example.test", 5, session)("n1", "l1")
        assert response.status == 500

    def test_non_json_body(self):
        session = MagicMock()
        session.post.return_value = self._response(502, text="Bad Gateway")
        response = HttpSharedNoteFetcher("https://fn.example.test", 5, session)("n1", "l1")
        assert response.status == 502
        assert response.body == {"success": False, "error": "Bad Gateway"}

    @pytest.mark.parametrize("body", [["not", "an", "object"], "ok", None])
    def test_non_object_json_body_is_500(self, body):
        session = MagicMock()
        response = MagicMock(status_code=200)
        response.json.return_value = body
        session.post.return_value = response

        result = HttpSharedNoteFetcher("https://fn.example.test", 5, session)("n1", "l1")

        assert result.status == 500
        assert result.body == {"success": False, "error": INTERNAL_ERROR}
        assert not result.ok

    def test_requires_url(self, test_config):
        with pytest.raises(ConfigurationError) as exc_info:
            HttpSharedNoteFetcher()
        assert exc_info.value.code == ErrorCode.CONFIG_MISSING
        assert exc_info.value.config_key == "functions_url"


class TestCreateFetcher:
    def test_in_process_by_default(self, engine, test_config):
        assert isinstance(create_fetcher(engine), SharedNoteFetcher)

    def test_remote_when_configured(self, engine, test_config, monkeypatch):
        monkeypatch.setattr(test_config, "functions_url", "https://fn.example.test")
        fetcher = create_fetcher(engine)
        assert isinstance(fetcher, HttpSharedNoteFetcher)
        assert fetcher.url == "https://fn.example.test/get-shared-note"
