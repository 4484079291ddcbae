# tests/test_mcp_server.py
"""Tests for the MCP server implementation."""
import json
from unittest.mock import MagicMock, patch

import pytest
from starlette.requests import Request

from quillnote.exceptions import NoteNotFoundError
from quillnote.models.schema import BatchItemResult, BatchResult, Note, ResolverState, Tag
from quillnote.server.mcp_server import QuillnoteMcpServer
from quillnote.services.share_resolver import (EXPIRED_LINK_MESSAGE,
                                               INVALID_LINK_MESSAGE,
                                               LOAD_FAILED_MESSAGE)


def _capture():
    """Build a FastMCP mock whose decorators record what they wrap."""
    tools, routes = {}, {}
    mock_mcp = MagicMock()

    def tool(*args, **kwargs):
        def wrapper(func):
            tools[kwargs.get("name")] = func
            return func
        return wrapper

    def custom_route(path, methods=None, **kwargs):
        def wrapper(func):
            routes[path] = func
            return func
        return wrapper

    mock_mcp.tool = tool
    mock_mcp.custom_route = custom_route
    return mock_mcp, tools, routes


class TestMcpServer:
    """Tool behaviour against a mocked NoteService."""

    def setup_method(self):
        """Set up test environment before each test."""
        self.mock_mcp, self.registered_tools, self.routes = _capture()
        self.mock_service = MagicMock()
        self.mock_service.share_url.side_effect = lambda link: f"https://x.test/shared/{link.share_token}"
        self.mock_service.media_url.return_value = "https://cdn.test/note-images/a.png"

        self.mcp_patcher = patch('quillnote.server.mcp_server.FastMCP', return_value=self.mock_mcp)
        self.fetcher_patcher = patch('quillnote.server.mcp_server.SharedNoteFetcher')
        self.mcp_patcher.start()
        self.fetcher_patcher.start()

        self.server = QuillnoteMcpServer(service=self.mock_service)

    def teardown_method(self):
        """Clean up after each test."""
        self.mcp_patcher.stop()
        self.fetcher_patcher.stop()

    @pytest.fixture(autouse=True)
    def _signed_in(self, test_config):
        """Every tool acts as the configured user."""

    def test_tools_registered(self):
        expected = {
            "qn_create_note", "qn_get_note", "qn_list_notes", "qn_update_note",
            "qn_delete_note", "qn_restore_note", "qn_list_trash", "qn_purge_note",
            "qn_empty_trash", "qn_note_history", "qn_restore_version", "qn_list_tags",
            "qn_create_tag", "qn_delete_tag", "qn_tag_note", "qn_untag_note",
            "qn_upload_media", "qn_list_media", "qn_remove_media", "qn_create_share",
            "qn_list_shares", "qn_toggle_share", "qn_revoke_share", "qn_open_shared",
            "qn_export_notes", "qn_stats",
        }
        assert expected <= set(self.registered_tools)
        assert set(self.routes) == {"/functions/get-shared-note", "/shared/{token}"}

    def test_create_note_tool(self):
        self.mock_service.create_note.return_value = MagicMock(id="n123")
        result = self.registered_tools["qn_create_note"](
            title="Groceries", content="<p>Milk</p>", tags="food, errands ,"
        )
        assert "n123" in result
        args, kwargs = self.mock_service.create_note.call_args
        caller = args[0]
        assert caller.user_id == "alice"
        assert kwargs["tags"] == ["food", "errands"]
        assert kwargs["pinned"] is False

    def test_not_signed_in(self, test_config, monkeypatch):
        monkeypatch.setattr(test_config, "user_id", None)
        result = self.registered_tools["qn_list_notes"]()
        assert result.startswith("Error: Not authenticated")
        self.mock_service.list_notes.assert_not_called()

    def test_update_note_maps_fields(self):
        update = self.registered_tools["qn_update_note"]
        assert update(note_id="n1") == "Nothing to update."
        self.mock_service.update_note.assert_not_called()

        assert update(note_id="n1", content="<p>x</p>", pinned=True) == "Note n1 updated successfully"
        _, kwargs = self.mock_service.update_note.call_args
        assert kwargs == {"content": "<p>x</p>", "is_pinned": True}

    def test_list_notes_formatting(self):
        work = Tag(user_id="alice", name="work", color="#3b82f6")
        self.mock_service.list_notes.return_value = [
            Note(id="n1", user_id="alice", title="Plan", content="<p>Ship <b>it</b></p>",
                 is_pinned=True, tags=[work]),
            Note(id="n2", user_id="alice", title=None, content=None),
        ]
        result = self.registered_tools["qn_list_notes"](query="plan")
        lines = result.splitlines()
        assert lines[0] == "Found 2 notes:"
        assert lines[1] == "- Plan (ID: n1) [pinned, #work]"
        assert lines[2] == "  Ship it"
        assert lines[3].startswith("- Untitled (ID: n2)")

    def test_list_notes_empty(self):
        self.mock_service.list_notes.return_value = []
        assert self.registered_tools["qn_list_notes"]() == "No notes found."

    def test_list_notes_limit(self):
        self.mock_service.list_notes.return_value = [
            Note(id=f"n{i}", user_id="alice", title=f"N{i}") for i in range(3)
        ]
        result = self.registered_tools["qn_list_notes"](limit=2)
        assert result.splitlines()[-1] == "... and 1 more"

    def test_not_found_error_message(self):
        self.mock_service.get_note.side_effect = NoteNotFoundError("missing")
        result = self.registered_tools["qn_get_note"](note_id="missing")
        assert result == "Error: Note with ID 'missing' not found"

    def test_empty_trash_reports_failures(self):
        self.mock_service.empty_trash.return_value = BatchResult(operation="empty_trash", items=[
            BatchItemResult(item_id="a", success=True),
            BatchItemResult(item_id="b", success=False, error="locked"),
        ])
        result = self.registered_tools["qn_empty_trash"]()
        assert result.splitlines() == ["Deleted 1 of 2 notes.", "- Failed: b: locked"]

    def test_empty_trash_total_failure_is_an_error(self):
        self.mock_service.empty_trash.return_value = BatchResult(operation="empty_trash", items=[
            BatchItemResult(item_id="a", success=False, error="locked"),
            BatchItemResult(item_id="b", success=False, error="locked"),
        ])
        result = self.registered_tools["qn_empty_trash"]()
        assert result == "Error: empty_trash: 2 of 2 items failed"

    def test_empty_trash_nothing_to_do(self):
        self.mock_service.empty_trash.return_value = BatchResult(operation="empty_trash")
        assert self.registered_tools["qn_empty_trash"]() == "Trash is already empty."

    def test_tag_note_requires_names(self):
        assert self.registered_tools["qn_tag_note"](note_id="n1", tags=" , ") == "Error: No tags given"

    def test_untag_reports_unknown(self):
        self.mock_service.untag_note.side_effect = lambda caller, note_id, name: name == "a"
        result = self.registered_tools["qn_untag_note"](note_id="n1", tags="a, b")
        assert result == "Removed 1 tag(s) from note n1; unknown tags: b"

    def test_open_shared_states(self):
        resolver = MagicMock()
        self.mock_service.open_shared.return_value = resolver
        open_shared = self.registered_tools["qn_open_shared"]

        resolver.state = ResolverState.PASSWORD_REQUIRED
        resolver.password_error = False
        assert "password protected" in open_shared(token="t")

        resolver.password_error = True
        assert open_shared(token="t", password="x") == "Incorrect password. Try again."

        resolver.state = ResolverState.ERROR
        resolver.error = EXPIRED_LINK_MESSAGE
        assert open_shared(token="t") == f"Error: {EXPIRED_LINK_MESSAGE}"

    def test_stats(self):
        self.mock_service.stats.return_value = {"notes": 3, "trashed": 1, "tags": 2, "media": 0}
        lines = self.registered_tools["qn_stats"]().splitlines()
        assert lines[:4] == ["Notes: 3", "In trash: 1", "Tags: 2", "Media: 0"]
        assert lines[4].startswith("Operations: ")

    @pytest.mark.parametrize("state,error,status", [
        (ResolverState.READY, None, 200),
        (ResolverState.PASSWORD_REQUIRED, None, 401),
        (ResolverState.ERROR, INVALID_LINK_MESSAGE, 404),
        (ResolverState.ERROR, EXPIRED_LINK_MESSAGE, 410),
        (ResolverState.ERROR, LOAD_FAILED_MESSAGE, 502),
    ])
    def test_shared_view_status(self, state, error, status):
        resolver = MagicMock(state=state, error=error)
        resolver.to_dict.return_value = {"state": state.value}
        self.mock_service.open_shared.return_value = resolver
        assert self.server.handle_shared_view("tok") == (status, {"state": state.value})


class TestErrorFormatting:
    def setup_method(self):
        self.mock_mcp, _, _ = _capture()
        self.mcp_patcher = patch('quillnote.server.mcp_server.FastMCP', return_value=self.mock_mcp)
        self.fetcher_patcher = patch('quillnote.server.mcp_server.SharedNoteFetcher')
        self.mcp_patcher.start()
        self.fetcher_patcher.start()
        self.server = QuillnoteMcpServer(service=MagicMock())

    def teardown_method(self):
        self.mcp_patcher.stop()
        self.fetcher_patcher.stop()

    def test_quillnote_error(self):
        assert self.server.format_error_response(NoteNotFoundError("x")) == \
            "Error: Note with ID 'x' not found"

    def test_value_error_hides_details(self):
        result = self.server.format_error_response(ValueError("secret detail"))
        assert result.startswith("Error: Invalid input (ref: ")
        assert "secret" not in result

    def test_os_error(self):
        result = self.server.format_error_response(OSError("disk full"))
        assert result.startswith("Error: A file system error occurred")

    def test_unexpected_error(self):
        result = self.server.format_error_response(RuntimeError("boom"))
        assert result.startswith("Error: An unexpected error occurred")


class TestMcpServerIntegration:
    """Tools and routes against the real service and an in-memory database."""

    @pytest.fixture
    def server(self, note_service):
        mock_mcp, tools, routes = _capture()
        with patch('quillnote.server.mcp_server.FastMCP', return_value=mock_mcp):
            server = QuillnoteMcpServer(service=note_service)
        server.tools = tools
        server.routes = routes
        return server

    def test_note_lifecycle(self, server):
        tools = server.tools
        created = tools["qn_create_note"](title="Groceries", content="<p>Milk</p>", tags="food")
        note_id = created.rsplit(" ", 1)[-1]

        summary = tools["qn_get_note"](note_id=note_id)
        assert summary.splitlines()[0] == "# Groceries"
        assert "Tags: food" in summary
        assert summary.splitlines()[-1] == "Milk"
        assert tools["qn_get_note"](note_id=note_id, format="html") == "<p>Milk</p>"

        tools["qn_update_note"](note_id=note_id, content="<p>Milk, Eggs</p>")
        history = tools["qn_note_history"](note_id=note_id)
        assert "Version 1" in history and "Milk" in history

        assert "moved to trash" in tools["qn_delete_note"](note_id=note_id)
        assert tools["qn_list_notes"]() == "No notes found."
        assert tools["qn_list_trash"]().startswith("1 notes in trash:")
        assert tools["qn_restore_note"](note_id=note_id) == f"Note {note_id} restored"

        tools["qn_delete_note"](note_id=note_id)
        assert tools["qn_empty_trash"]() == "Deleted 1 of 1 notes."

    def test_upload_and_export(self, server, tmp_path):
        tools = server.tools
        note_id = tools["qn_create_note"](title="Trip").rsplit(" ", 1)[-1]
        photo = tmp_path / "beach.png"
        photo.write_bytes(b"\x89PNG")

        uploaded = tools["qn_upload_media"](note_id=note_id, media_type="image", file_path=str(photo))
        assert uploaded.startswith("Uploaded image with ID: ")
        assert "/note-images/alice/" in uploaded

        bad = tools["qn_upload_media"](note_id=note_id, media_type="pdf", file_path=str(photo))
        assert bad.startswith("Error: Invalid media type")

        inline = json.loads(tools["qn_export_notes"](format="json"))
        assert inline["notesCount"] == 1
        assert inline["notes"][0]["media"][0]["media_type"] == "image"

        out_dir = tmp_path / "exports"
        written = tools["qn_export_notes"](format="markdown", output_dir=str(out_dir))
        assert written.endswith("(text/markdown)")
        [exported] = list(out_dir.iterdir())
        assert exported.suffix == ".md"
        assert "# Trip" in exported.read_text(encoding="utf-8")

    def test_share_flow(self, server):
        tools = server.tools
        note_id = tools["qn_create_note"](title="Diary", content="<p>secret</p>").rsplit(" ", 1)[-1]
        created = tools["qn_create_share"](note_id=note_id, password="pw", expires_in_days=7)
        assert "Password protected: yes" in created
        token = created.splitlines()[1].rsplit("/", 1)[-1]

        assert "password protected" in tools["qn_open_shared"](token=token)
        assert tools["qn_open_shared"](token=token, password="nope") == "Incorrect password. Try again."
        opened = tools["qn_open_shared"](token=token, password="pw")
        assert opened.splitlines()[0] == "# Diary"
        assert opened.splitlines()[-1] == "secret"
        assert "1 views" in tools["qn_list_shares"](note_id=note_id)

        status, body = server.handle_shared_view(token, "pw")
        assert status == 200
        assert body["note"]["title"] == "Diary"

    def test_list_tags_shows_usage(self, server):
        tools = server.tools
        tools["qn_create_note"](title="A", tags="work, home")
        tools["qn_create_note"](title="B", tags="work")
        tools["qn_create_tag"](name="idle")

        lines = tools["qn_list_tags"]().splitlines()

        assert lines[0] == "3 tags:"
        assert lines[1].startswith("- home ") and lines[1].endswith(", 1 notes)")
        assert lines[2].startswith("- idle ") and lines[2].endswith(", 0 notes)")
        assert lines[3].startswith("- work ") and lines[3].endswith(", 2 notes)")

    def test_share_with_default_expiry(self, server):
        note_id = server.tools["qn_create_note"](title="T").rsplit(" ", 1)[-1]
        assert "Expires:" not in server.tools["qn_create_share"](note_id=note_id)
        assert "Expires:" in server.tools["qn_create_share"](note_id=note_id, expires=True)

    def test_get_shared_note_handler(self, server, alice):
        note = server.service.create_note(alice, title="Recipe", content="<p>Flour</p>")
        link = server.service.create_share(alice, note.id)

        assert server.handle_get_shared_note(None)[0] == 400
        status, body = server.handle_get_shared_note({"noteId": note.id, "sharedNoteId": link.id})
        assert status == 200
        assert body["note"]["title"] == "Recipe"

        server.service.trash_note(alice, note.id)
        assert server.handle_get_shared_note({"noteId": note.id, "sharedNoteId": link.id})[0] == 404

    @staticmethod
    def _request(method, path, body=b"", headers=None, path_params=None):
        sent = {"done": False}

        async def receive():
            if sent["done"]:
                return {"type": "http.disconnect"}
            sent["done"] = True
            return {"type": "http.request", "body": body, "more_body": False}

        scope = {
            "type": "http",
            "method": method,
            "path": path,
            "headers": [(k.lower().encode(), v.encode()) for k, v in (headers or {}).items()],
            "query_string": b"",
            "path_params": path_params or {},
        }
        return Request(scope, receive)

    @pytest.mark.anyio
    async def test_function_route(self, server, alice):
        note = server.service.create_note(alice, title="Recipe")
        link = server.service.create_share(alice, note.id)
        route = server.routes["/functions/get-shared-note"]

        payload = json.dumps({"noteId": note.id, "sharedNoteId": link.id}).encode()
        response = await route(self._request("POST", "/functions/get-shared-note", payload))
        assert response.status_code == 200
        assert json.loads(response.body)["note"]["id"] == note.id

        response = await route(self._request("POST", "/functions/get-shared-note", b"not json"))
        assert response.status_code == 400

    @pytest.mark.anyio
    async def test_shared_route_password_header(self, server, alice):
        note = server.service.create_note(alice, title="Diary", content="<p>x</p>")
        link = server.service.create_share(alice, note.id, password="pw")
        route = server.routes["/shared/{token}"]
        params = {"token": link.share_token}

        response = await route(self._request("GET", "/shared/t", path_params=params))
        assert response.status_code == 401

        response = await route(self._request(
            "GET", "/shared/t", headers={"X-Share-Password": "pw"}, path_params=params
        ))
        assert response.status_code == 200

        response = await route(self._request(
            "POST", "/shared/t", json.dumps({"password": "pw"}).encode(), path_params=params
        ))
        assert response.status_code == 200
        assert json.loads(response.body)["state"] == "ready"

        response = await route(self._request("GET", "/shared/t", path_params={"token": "z" * 24}))
        assert response.status_code == 404
