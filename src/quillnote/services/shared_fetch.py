"""Privileged read path for shared notes.

Anonymous viewers hold no row-level grants, so note content for a share
link is served by this fetcher, which reads across owners. It re-checks
the link itself because it is reachable independently of the resolver.
"""
import logging
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, Mapping, Optional

import requests
from sqlalchemy import select

from quillnote.config import config
from quillnote.exceptions import ConfigurationError, ErrorCode
from quillnote.models.db_models import DBNote, get_session_factory, init_db
from quillnote.models.schema import SharedNotePayload, ensure_timezone_aware, utc_now
from quillnote.storage.share_repository import ShareLinkManager

logger = logging.getLogger(__name__)

MISSING_PARAMETERS = "Missing required parameters"
LINK_NOT_FOUND = "Shared note not found or inactive"
LINK_EXPIRED = "This shared link has expired"
NOTE_NOT_FOUND = "Note not found"
INTERNAL_ERROR = "Internal server error"


@dataclass(frozen=True)
class FetchResponse:
    """Status code and JSON body of a privileged fetch."""

    status: int
    body: Dict[str, Any] = field(default_factory=dict)

    @property
    def ok(self) -> bool:
        return (self.status == 200 and isinstance(self.body, dict)
                and bool(self.body.get("success")))

    @property
    def note(self) -> Optional[SharedNotePayload]:
        if not self.ok or not self.body.get("note"):
            return None
        return SharedNotePayload.model_validate(self.body["note"])

    @classmethod
    def failure(cls, status: int, error: str) -> "FetchResponse":
        return cls(status=status, body={"success": False, "error": error})


# (note_id, shared_note_id) -> FetchResponse
FetchFunction = Callable[[str, str], FetchResponse]


class SharedNoteFetcher:
    """In-process implementation of the privileged fetch.

    Status codes:
        400 missing parameters, 404 link missing/inactive or note gone,
        410 link expired, 200 success, 500 anything unexpected.
    """

    def __init__(self, engine=None, share_manager: Optional[ShareLinkManager] = None,
                 clock: Callable = utc_now):
        self.engine = engine or init_db()
        self.session_factory = get_session_factory(self.engine)
        self.share_manager = share_manager or ShareLinkManager(self.engine)
        self.clock = clock

    def __call__(self, note_id: str, shared_note_id: str) -> FetchResponse:
        return self.fetch(note_id, shared_note_id)

    def handle_request(self, payload: Optional[Mapping[str, Any]]) -> FetchResponse:
        """Handle a ``{noteId, sharedNoteId}`` request body."""
        payload = payload or {}
        return self.fetch(payload.get("noteId"), payload.get("sharedNoteId"))

    def fetch(self, note_id: Optional[str], shared_note_id: Optional[str]) -> FetchResponse:
        if not note_id or not shared_note_id:
            return FetchResponse.failure(400, MISSING_PARAMETERS)
        try:
            link = self.share_manager.find_active_for_note(shared_note_id, note_id)
            if link is None:
                logger.info(f"Shared note {shared_note_id} not found or inactive")
                return FetchResponse.failure(404, LINK_NOT_FOUND)
            if link.is_expired(self.clock()):
                return FetchResponse.failure(410, LINK_EXPIRED)

            with self.session_factory() as session:
                db_note = session.scalar(
                    select(DBNote).where(DBNote.id == note_id, DBNote.deleted_at.is_(None))
                )
                if db_note is None:
                    logger.info(f"Shared note {shared_note_id}: note {note_id} not found")
                    return FetchResponse.failure(404, NOTE_NOT_FOUND)
                payload = SharedNotePayload(
                    id=db_note.id,
                    title=db_note.title,
                    content=db_note.content,
                    created_at=ensure_timezone_aware(db_note.created_at),
                    updated_at=ensure_timezone_aware(db_note.updated_at),
                    color=db_note.color,
                )

            self.share_manager.increment_view_count(link.id)
            logger.info(f"Served shared note {note_id} via link {shared_note_id}")
            return FetchResponse(200, {"success": True, "note": payload.to_wire()})
        except Exception as e:
            logger.error(f"Error fetching shared note {note_id}: {e}", exc_info=True)
            return FetchResponse.failure(500, INTERNAL_ERROR)


class HttpSharedNoteFetcher:
    """Calls a remote ``get-shared-note`` function over HTTP."""

    def __init__(self, functions_url: Optional[str] = None, timeout: Optional[float] = None,
                 session: Optional[requests.Session] = None):
        base = functions_url or config.functions_url
        if not base:
            raise ConfigurationError(
                "functions_url is required for the HTTP fetcher",
                config_key="functions_url",
                code=ErrorCode.CONFIG_MISSING,
            )
        self.url = f"{base.rstrip('/')}/get-shared-note"
        self.timeout = timeout or config.functions_timeout
        self.session = session or requests.Session()

    def __call__(self, note_id: str, shared_note_id: str) -> FetchResponse:
        try:
            r = self.session.post(
                self.url,
                json={"noteId": note_id, "sharedNoteId": shared_note_id},
                timeout=self.timeout,
            )
        except requests.RequestException as e:
            logger.error(f"Shared note function unreachable: {e}")
            return FetchResponse.failure(500, INTERNAL_ERROR)
        try:
            body = r.json()
        except ValueError:
            body = {"success": False, "error": r.text[:200]}
        if not isinstance(body, dict):
            logger.error(f"Shared note function returned a non-object body ({r.status_code})")
            return FetchResponse.failure(500, INTERNAL_ERROR)
        return FetchResponse(status=r.status_code, body=body)


def create_fetcher(engine=None, share_manager: Optional[ShareLinkManager] = None) -> FetchFunction:
    """Remote fetcher when ``functions_url`` is configured, in-process otherwise."""
    if config.functions_url:
        return HttpSharedNoteFetcher()
    return SharedNoteFetcher(engine=engine, share_manager=share_manager)
