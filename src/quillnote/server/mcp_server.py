"""MCP server implementation for Quillnote."""

import logging
import uuid
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple

import anyio
from mcp.server.fastmcp import FastMCP
from starlette.requests import Request
from starlette.responses import JSONResponse

from quillnote.config import config
from quillnote.exceptions import AuthenticationError, QuillnoteError
from quillnote.models.schema import CallerIdentity, Note, ResolverState
from quillnote.observability import metrics, timed_operation
from quillnote.services.export_service import html_to_text
from quillnote.services.note_service import NoteService
from quillnote.services.share_resolver import (EXPIRED_LINK_MESSAGE,
                                               INVALID_LINK_MESSAGE,
                                               NOTE_UNAVAILABLE_MESSAGE)
from quillnote.services.shared_fetch import SharedNoteFetcher

logger = logging.getLogger(__name__)

PREVIEW_LENGTH = 80

# HTTP status for each resolver error message; anything else is 502
_RESOLVER_ERROR_STATUS = {
    INVALID_LINK_MESSAGE: 404,
    NOTE_UNAVAILABLE_MESSAGE: 404,
    EXPIRED_LINK_MESSAGE: 410,
}


def _split_csv(value: Optional[str]) -> List[str]:
    if not value:
        return []
    return [part.strip() for part in value.split(",") if part.strip()]


def _preview(note: Note) -> str:
    text = " ".join(html_to_text(note.content or "").split())
    if len(text) > PREVIEW_LENGTH:
        text = text[: PREVIEW_LENGTH - 3] + "..."
    return text


def _note_line(note: Note) -> str:
    flags = []
    if note.is_pinned:
        flags.append("pinned")
    if note.color:
        flags.append(note.color)
    if note.tags:
        flags.append("#" + " #".join(t.name for t in note.tags))
    suffix = f" [{', '.join(flags)}]" if flags else ""
    return f"- {note.display_title} (ID: {note.id}){suffix}"


class QuillnoteMcpServer:
    """MCP server for Quillnote."""

    def __init__(self, engine=None, service: Optional[NoteService] = None):
        """Initialize the MCP server.

        Args:
            engine: Pre-configured SQLAlchemy engine shared by all repositories.
            service: Pre-built service (tests); created from ``engine`` if None.
        """
        self.mcp = FastMCP(config.server_name, host=config.host, port=config.port)
        self.service = service or NoteService(engine=engine)
        # The HTTP route always answers from this database, even when the
        # service itself resolves shares through a remote function
        self.shared_fetcher = SharedNoteFetcher(
            engine=self.service.engine, share_manager=self.service.shares
        )
        self.initialize()
        self._register_tools()
        self._register_routes()

    def initialize(self) -> None:
        """Initialize services."""
        logger.info("Quillnote MCP server initialized")

    @property
    def caller(self) -> CallerIdentity:
        """The configured identity every tool acts as."""
        if not config.user_id:
            raise AuthenticationError(
                "Not authenticated: set QUILLNOTE_USER_ID to the signed-in user"
            )
        return CallerIdentity(user_id=config.user_id, email=config.user_email)

    def format_error_response(self, error: Exception) -> str:
        """Format an error response in a consistent way.

        Args:
            error: The exception that occurred

        Returns:
            Formatted error message with appropriate level of detail
        """
        # Generate a unique error ID for traceability in logs
        error_id = str(uuid.uuid4())[:8]

        if isinstance(error, QuillnoteError):
            logger.error(
                f"[{error.code.name}] [{error_id}]: {error.message}",
                extra={"error_details": error.details},
            )
            return f"Error: {error.message}"
        elif isinstance(error, ValueError):
            logger.error(f"Validation error [{error_id}]: {str(error)}")
            return f"Error: Invalid input (ref: {error_id})"
        elif isinstance(error, (IOError, OSError)):
            logger.error(f"File system error [{error_id}]: {str(error)}", exc_info=True)
            return f"Error: A file system error occurred (ref: {error_id})"
        else:
            logger.error(f"Unexpected error [{error_id}]: {str(error)}", exc_info=True)
            return f"Error: An unexpected error occurred (ref: {error_id})"

    def _register_tools(self) -> None:
        """Register MCP tools."""

        @self.mcp.tool(name="qn_create_note")
        def qn_create_note(
            title: Optional[str] = None,
            content: Optional[str] = None,
            pinned: bool = False,
            color: Optional[str] = None,
            tags: Optional[str] = None,
        ) -> str:
            """Create a new note.
            Args:
                title: Title of the note (optional)
                content: HTML content of the note (optional)
                pinned: Pin the note to the top of the list
                color: Colour label, e.g. "#f59e0b" (optional)
                tags: Comma-separated tag names; missing tags are created
            """
            with timed_operation("qn_create_note") as op:
                try:
                    note = self.service.create_note(
                        self.caller,
                        title=title,
                        content=content,
                        pinned=pinned,
                        color=color,
                        tags=_split_csv(tags),
                    )
                    op["note_id"] = note.id
                    return f"Note created successfully with ID: {note.id}"
                except Exception as e:
                    return self.format_error_response(e)

        @self.mcp.tool(name="qn_get_note")
        def qn_get_note(note_id: str, format: str = "summary") -> str:
            """Retrieve a note by ID.
            Args:
                note_id: The ID of the note
                format: "summary" (default) shows metadata and plain text,
                    "html" returns the stored HTML content
            """
            with timed_operation("qn_get_note", note_id=note_id) as op:
                try:
                    note = self.service.get_note(self.caller, note_id)
                    op["found"] = True
                    if format.lower() == "html":
                        return note.content or ""
                    lines = [
                        f"# {note.display_title}",
                        f"ID: {note.id}",
                        f"Created: {note.created_at.isoformat()}",
                        f"Updated: {note.updated_at.isoformat()}",
                        f"Pinned: {'yes' if note.is_pinned else 'no'}",
                    ]
                    if note.color:
                        lines.append(f"Color: {note.color}")
                    if note.tags:
                        lines.append(f"Tags: {', '.join(t.name for t in note.tags)}")
                    media = self.service.list_media(self.caller, note_id)
                    if media:
                        lines.append("Media:")
                        lines.extend(
                            f"- {m.media_type.value}: {self.service.media_url(m)} (ID: {m.id})"
                            for m in media
                        )
                    lines.extend(["", html_to_text(note.content or "") or "(no content)"])
                    return "\n".join(lines)
                except Exception as e:
                    return self.format_error_response(e)

        @self.mcp.tool(name="qn_list_notes")
        def qn_list_notes(
            query: Optional[str] = None, tag: Optional[str] = None, limit: int = 50
        ) -> str:
            """List active notes, pinned first.
            Args:
                query: Only notes whose title or content contains this text
                tag: Only notes carrying this tag name
                limit: Maximum number of notes to list (default 50)
            """
            with timed_operation("qn_list_notes") as op:
                try:
                    notes = self.service.list_notes(self.caller, query=query, tag=tag)
                    op["result_count"] = len(notes)
                    if not notes:
                        return "No notes found."
                    shown = notes[: max(1, limit)]
                    lines = [f"Found {len(notes)} notes:"]
                    for note in shown:
                        lines.append(_note_line(note))
                        preview = _preview(note)
                        if preview:
                            lines.append(f"  {preview}")
                    if len(notes) > len(shown):
                        lines.append(f"... and {len(notes) - len(shown)} more")
                    return "\n".join(lines)
                except Exception as e:
                    return self.format_error_response(e)

        @self.mcp.tool(name="qn_update_note")
        def qn_update_note(
            note_id: str,
            title: Optional[str] = None,
            content: Optional[str] = None,
            pinned: Optional[bool] = None,
            color: Optional[str] = None,
        ) -> str:
            """Update a note. Omitted fields are left unchanged.
            Title or content changes record the previous version first.
            Args:
                note_id: The ID of the note
                title: New title ("" clears it)
                content: New HTML content ("" clears it)
                pinned: New pin state
                color: New colour label ("" clears it)
            """
            with timed_operation("qn_update_note", note_id=note_id):
                try:
                    fields: Dict[str, Any] = {}
                    if title is not None:
                        fields["title"] = title
                    if content is not None:
                        fields["content"] = content
                    if pinned is not None:
                        fields["is_pinned"] = pinned
                    if color is not None:
                        fields["color"] = color
                    if not fields:
                        return "Nothing to update."
                    self.service.update_note(self.caller, note_id, **fields)
                    return f"Note {note_id} updated successfully"
                except Exception as e:
                    return self.format_error_response(e)

        @self.mcp.tool(name="qn_delete_note")
        def qn_delete_note(note_id: str) -> str:
            """Move a note to the trash. It can be restored with qn_restore_note.
            Args:
                note_id: The ID of the note
            """
            with timed_operation("qn_delete_note", note_id=note_id):
                try:
                    self.service.trash_note(self.caller, note_id)
                    return f"Note {note_id} moved to trash"
                except Exception as e:
                    return self.format_error_response(e)

        @self.mcp.tool(name="qn_restore_note")
        def qn_restore_note(note_id: str) -> str:
            """Restore a note from the trash.
            Args:
                note_id: The ID of the trashed note
            """
            with timed_operation("qn_restore_note", note_id=note_id):
                try:
                    self.service.restore_note(self.caller, note_id)
                    return f"Note {note_id} restored"
                except Exception as e:
                    return self.format_error_response(e)

        @self.mcp.tool(name="qn_list_trash")
        def qn_list_trash() -> str:
            """List notes in the trash, most recently deleted first."""
            with timed_operation("qn_list_trash") as op:
                try:
                    notes = self.service.list_trash(self.caller)
                    op["result_count"] = len(notes)
                    if not notes:
                        return "Trash is empty."
                    lines = [f"{len(notes)} notes in trash:"]
                    for note in notes:
                        lines.append(
                            f"- {note.display_title} (ID: {note.id}), "
                            f"deleted {note.deleted_at.isoformat()}"
                        )
                    return "\n".join(lines)
                except Exception as e:
                    return self.format_error_response(e)

        @self.mcp.tool(name="qn_purge_note")
        def qn_purge_note(note_id: str) -> str:
            """Permanently delete a note with its media, versions and share links.
            Args:
                note_id: The ID of the note
            """
            with timed_operation("qn_purge_note", note_id=note_id):
                try:
                    result = self.service.purge_note(self.caller, note_id)
                    message = f"Note {note_id} permanently deleted"
                    if not result.ok:
                        message += (
                            f" ({len(result.failed)} media file(s) could not be "
                            "removed from storage)"
                        )
                    return message
                except Exception as e:
                    return self.format_error_response(e)

        @self.mcp.tool(name="qn_empty_trash")
        def qn_empty_trash() -> str:
            """Permanently delete every note in the trash."""
            with timed_operation("qn_empty_trash") as op:
                try:
                    result = self.service.empty_trash(self.caller)
                    op["deleted"] = len(result.succeeded)
                    if not result.items:
                        return "Trash is already empty."
                    if not result.succeeded:
                        result.raise_for_failures()
                    lines = [f"Deleted {len(result.succeeded)} of {len(result.items)} notes."]
                    for item in result.failed:
                        lines.append(f"- Failed: {item.item_id}: {item.error}")
                    return "\n".join(lines)
                except Exception as e:
                    return self.format_error_response(e)

        @self.mcp.tool(name="qn_note_history")
        def qn_note_history(note_id: str) -> str:
            """List the saved versions of a note, newest first.
            Args:
                note_id: The ID of the note
            """
            with timed_operation("qn_note_history", note_id=note_id) as op:
                try:
                    versions = self.service.note_history(self.caller, note_id)
                    op["result_count"] = len(versions)
                    if not versions:
                        return f"No versions recorded for note {note_id}."
                    lines = [f"{len(versions)} versions of note {note_id}:"]
                    for version in versions:
                        preview = " ".join(html_to_text(version.content or "").split())
                        lines.append(
                            f"- Version {version.version_number} "
                            f"({version.created_at.isoformat()}, ID: {version.id}): "
                            f"{version.title or 'Untitled'}: {preview[:PREVIEW_LENGTH]}"
                        )
                    return "\n".join(lines)
                except Exception as e:
                    return self.format_error_response(e)

        @self.mcp.tool(name="qn_restore_version")
        def qn_restore_version(version_id: str) -> str:
            """Restore a note's title and content from a saved version.
            Args:
                version_id: The ID of the version (see qn_note_history)
            """
            with timed_operation("qn_restore_version"):
                try:
                    note = self.service.restore_version(self.caller, version_id)
                    return f"Note {note.id} restored from version {version_id}"
                except Exception as e:
                    return self.format_error_response(e)

        @self.mcp.tool(name="qn_list_tags")
        def qn_list_tags() -> str:
            """List all tags, ordered by name."""
            with timed_operation("qn_list_tags") as op:
                try:
                    tags = self.service.list_tags(self.caller)
                    op["result_count"] = len(tags)
                    if not tags:
                        return "No tags found."
                    usage = self.service.tag_usage(self.caller)
                    lines = [f"{len(tags)} tags:"]
                    for tag in tags:
                        color = f" {tag.color}" if tag.color else ""
                        count = usage.get(tag.name, 0)
                        lines.append(
                            f"- {tag.name}{color} (ID: {tag.id}, {count} notes)"
                        )
                    return "\n".join(lines)
                except Exception as e:
                    return self.format_error_response(e)

        @self.mcp.tool(name="qn_create_tag")
        def qn_create_tag(name: str, color: Optional[str] = None) -> str:
            """Create a tag.
            Args:
                name: Tag name, unique among your tags
                color: Colour, e.g. "#3b82f6"; a free palette colour is picked if omitted
            """
            with timed_operation("qn_create_tag"):
                try:
                    tag = self.service.create_tag(self.caller, name, color)
                    return f"Tag '{tag.name}' created with ID: {tag.id} ({tag.color})"
                except Exception as e:
                    return self.format_error_response(e)

        @self.mcp.tool(name="qn_delete_tag")
        def qn_delete_tag(tag_id: str) -> str:
            """Delete a tag and remove it from every note.
            Args:
                tag_id: The ID of the tag
            """
            with timed_operation("qn_delete_tag"):
                try:
                    self.service.delete_tag(self.caller, tag_id)
                    return f"Tag {tag_id} deleted"
                except Exception as e:
                    return self.format_error_response(e)

        @self.mcp.tool(name="qn_tag_note")
        def qn_tag_note(note_id: str, tags: str) -> str:
            """Attach tags to a note. Already attached tags are left as they are.
            Args:
                note_id: The ID of the note
                tags: Comma-separated tag names; missing tags are created
            """
            with timed_operation("qn_tag_note", note_id=note_id):
                try:
                    names = _split_csv(tags)
                    if not names:
                        return "Error: No tags given"
                    for name in names:
                        self.service.tag_note(self.caller, note_id, name)
                    return f"Tagged note {note_id} with: {', '.join(names)}"
                except Exception as e:
                    return self.format_error_response(e)

        @self.mcp.tool(name="qn_untag_note")
        def qn_untag_note(note_id: str, tags: str) -> str:
            """Remove tags from a note.
            Args:
                note_id: The ID of the note
                tags: Comma-separated tag names
            """
            with timed_operation("qn_untag_note", note_id=note_id):
                try:
                    names = _split_csv(tags)
                    removed = [n for n in names if self.service.untag_note(self.caller, note_id, n)]
                    unknown = [n for n in names if n not in removed]
                    message = f"Removed {len(removed)} tag(s) from note {note_id}"
                    if unknown:
                        message += f"; unknown tags: {', '.join(unknown)}"
                    return message
                except Exception as e:
                    return self.format_error_response(e)

        @self.mcp.tool(name="qn_upload_media")
        def qn_upload_media(note_id: str, media_type: str, file_path: str) -> str:
            """Attach a local file to a note.
            Args:
                note_id: The ID of the note
                media_type: image, audio or video
                file_path: Path of the file to upload
            """
            with timed_operation("qn_upload_media", note_id=note_id) as op:
                try:
                    item = self.service.upload_media_file(
                        self.caller, note_id, media_type, file_path
                    )
                    op["media_id"] = item.id
                    return (
                        f"Uploaded {item.media_type.value} with ID: {item.id}\n"
                        f"URL: {self.service.media_url(item)}"
                    )
                except Exception as e:
                    return self.format_error_response(e)

        @self.mcp.tool(name="qn_list_media")
        def qn_list_media(note_id: str) -> str:
            """List media attached to a note.
            Args:
                note_id: The ID of the note
            """
            with timed_operation("qn_list_media", note_id=note_id) as op:
                try:
                    items = self.service.list_media(self.caller, note_id)
                    op["result_count"] = len(items)
                    if not items:
                        return f"No media attached to note {note_id}."
                    lines = [f"{len(items)} media items:"]
                    for item in items:
                        lines.append(
                            f"- {item.media_type.value}: {self.service.media_url(item)} "
                            f"(ID: {item.id})"
                        )
                    return "\n".join(lines)
                except Exception as e:
                    return self.format_error_response(e)

        @self.mcp.tool(name="qn_remove_media")
        def qn_remove_media(media_id: str) -> str:
            """Remove a media attachment and its stored file.
            Args:
                media_id: The ID of the media item
            """
            with timed_operation("qn_remove_media"):
                try:
                    self.service.remove_media(self.caller, media_id)
                    return f"Media {media_id} removed"
                except Exception as e:
                    return self.format_error_response(e)

        @self.mcp.tool(name="qn_create_share")
        def qn_create_share(
            note_id: str,
            password: Optional[str] = None,
            expires_in_days: Optional[int] = None,
            expires: bool = False,
        ) -> str:
            """Create a public share link for a note.
            Args:
                note_id: The ID of the note
                password: Optional password viewers must enter
                expires_in_days: Optional lifetime in days (1-365)
                expires: Use the default lifetime when expires_in_days is omitted;
                    without either the link never expires
            """
            with timed_operation("qn_create_share", note_id=note_id) as op:
                try:
                    link = self.service.create_share(
                        self.caller, note_id, password=password,
                        expires_in_days=expires_in_days, expires=expires,
                    )
                    op["link_id"] = link.id
                    lines = [
                        f"Share link created with ID: {link.id}",
                        f"URL: {self.service.share_url(link)}",
                    ]
                    if link.expires_at:
                        lines.append(f"Expires: {link.expires_at.isoformat()}")
                    if link.has_password:
                        lines.append("Password protected: yes")
                    return "\n".join(lines)
                except Exception as e:
                    return self.format_error_response(e)

        @self.mcp.tool(name="qn_list_shares")
        def qn_list_shares(note_id: str) -> str:
            """List a note's share links, newest first.
            Args:
                note_id: The ID of the note
            """
            with timed_operation("qn_list_shares", note_id=note_id) as op:
                try:
                    links = self.service.list_shares(self.caller, note_id)
                    op["result_count"] = len(links)
                    if not links:
                        return f"No share links for note {note_id}."
                    lines = [f"{len(links)} share links:"]
                    for link in links:
                        status = "active" if link.is_active else "inactive"
                        if link.is_expired():
                            status = "expired"
                        extras = [status, f"{link.view_count} views"]
                        if link.has_password:
                            extras.append("password")
                        if link.expires_at:
                            extras.append(f"expires {link.expires_at.isoformat()}")
                        lines.append(
                            f"- {self.service.share_url(link)} (ID: {link.id}; "
                            f"{', '.join(extras)})"
                        )
                    return "\n".join(lines)
                except Exception as e:
                    return self.format_error_response(e)

        @self.mcp.tool(name="qn_toggle_share")
        def qn_toggle_share(link_id: str) -> str:
            """Activate or deactivate a share link.
            Args:
                link_id: The ID of the share link
            """
            with timed_operation("qn_toggle_share"):
                try:
                    link = self.service.toggle_share(self.caller, link_id)
                    return f"Share link {link_id} is now {'active' if link.is_active else 'inactive'}"
                except Exception as e:
                    return self.format_error_response(e)

        @self.mcp.tool(name="qn_revoke_share")
        def qn_revoke_share(link_id: str) -> str:
            """Delete a share link permanently.
            Args:
                link_id: The ID of the share link
            """
            with timed_operation("qn_revoke_share"):
                try:
                    self.service.revoke_share(self.caller, link_id)
                    return f"Share link {link_id} revoked"
                except Exception as e:
                    return self.format_error_response(e)

        @self.mcp.tool(name="qn_open_shared")
        def qn_open_shared(token: str, password: Optional[str] = None) -> str:
            """Open a share link the way an anonymous viewer would.
            Counts as a view when the note is shown.
            Args:
                token: The share token (last part of the share URL)
                password: Password, if the link has one
            """
            with timed_operation("qn_open_shared") as op:
                try:
                    resolver = self.service.open_shared(token, password)
                    op["state"] = resolver.state.value
                    if resolver.state is ResolverState.READY:
                        note = resolver.note
                        return "\n".join([
                            f"# {note.title or 'Untitled'}",
                            f"Updated: {note.updated_at.isoformat()}",
                            "",
                            html_to_text(note.content or "") or "(no content)",
                        ])
                    if resolver.state is ResolverState.PASSWORD_REQUIRED:
                        if resolver.password_error:
                            return "Incorrect password. Try again."
                        return "This note is password protected. Provide a password."
                    return f"Error: {resolver.error}"
                except Exception as e:
                    return self.format_error_response(e)

        @self.mcp.tool(name="qn_export_notes")
        def qn_export_notes(format: str = "json", output_dir: Optional[str] = None) -> str:
            """Export all active notes.
            Args:
                format: json, text or markdown
                output_dir: Directory to write the export file to; the
                    export is returned inline if omitted
            """
            with timed_operation("qn_export_notes", format=format) as op:
                try:
                    bundle = self.service.export_notes(self.caller, format)
                    op["bytes"] = len(bundle.data)
                    if not output_dir:
                        return bundle.data.decode("utf-8")
                    target_dir = Path(output_dir).expanduser()
                    target_dir.mkdir(parents=True, exist_ok=True)
                    target = target_dir / bundle.filename
                    target.write_bytes(bundle.data)
                    return f"Exported notes to {target} ({bundle.mime_type})"
                except Exception as e:
                    return self.format_error_response(e)

        @self.mcp.tool(name="qn_stats")
        def qn_stats() -> str:
            """Show note, tag and media counts plus server health."""
            with timed_operation("qn_stats"):
                try:
                    counts = self.service.stats(self.caller)
                    summary = metrics.get_summary()
                    return "\n".join([
                        f"Notes: {counts['notes']}",
                        f"In trash: {counts['trashed']}",
                        f"Tags: {counts['tags']}",
                        f"Media: {counts['media']}",
                        f"Operations: {summary['total_operations']} "
                        f"({summary['total_errors']} errors)",
                    ])
                except Exception as e:
                    return self.format_error_response(e)

    def handle_get_shared_note(self, payload: Optional[Dict[str, Any]]) -> Tuple[int, Dict[str, Any]]:
        """Privileged fetch: ``{noteId, sharedNoteId}`` -> (status, body)."""
        response = self.shared_fetcher.handle_request(payload)
        return response.status, response.body

    def handle_shared_view(self, token: str, password: Optional[str] = None) -> Tuple[int, Dict[str, Any]]:
        """Public share route: resolve a token, optionally with a password."""
        resolver = self.service.open_shared(token, password)
        body = resolver.to_dict()
        if resolver.state is ResolverState.READY:
            return 200, body
        if resolver.state is ResolverState.PASSWORD_REQUIRED:
            return 401, body
        return _RESOLVER_ERROR_STATUS.get(resolver.error, 502), body

    def _register_routes(self) -> None:
        """Register the HTTP routes served next to the MCP endpoint."""

        @self.mcp.custom_route("/functions/get-shared-note", methods=["POST"])
        async def get_shared_note(request: Request) -> JSONResponse:
            try:
                payload = await request.json()
            except ValueError:
                payload = None
            if not isinstance(payload, dict):
                payload = None
            status, body = await anyio.to_thread.run_sync(self.handle_get_shared_note, payload)
            return JSONResponse(body, status_code=status)

        @self.mcp.custom_route("/shared/{token}", methods=["GET", "POST"])
        async def shared_view(request: Request) -> JSONResponse:
            token = request.path_params["token"]
            password = request.headers.get("x-share-password")
            if request.method == "POST":
                try:
                    body = await request.json()
                except ValueError:
                    body = {}
                if isinstance(body, dict) and body.get("password") is not None:
                    password = str(body["password"])
            status, body = await anyio.to_thread.run_sync(
                self.handle_shared_view, token, password
            )
            return JSONResponse(body, status_code=status)

    def run(self, transport: str = "stdio") -> None:
        """Run the MCP server."""
        self.mcp.run(transport=transport)
