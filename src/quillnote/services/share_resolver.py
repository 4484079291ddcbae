"""Public read path for a share token.

States::

    LOADING -> ERROR | PASSWORD_REQUIRED | READY
    PASSWORD_REQUIRED -> PASSWORD_REQUIRED (wrong password) | READY | ERROR

ERROR and READY are terminal; a new resolver is needed to try again.
"""
import logging
from typing import Any, Callable, Dict, Optional

import pydantic

from quillnote.models.schema import ResolverState, SharedLink, SharedNotePayload, utc_now
from quillnote.services.shared_fetch import FetchFunction, FetchResponse
from quillnote.storage.share_repository import ShareLinkManager, verify_share_password

logger = logging.getLogger(__name__)

INVALID_LINK_MESSAGE = "This shared link is invalid or has been deactivated."
EXPIRED_LINK_MESSAGE = "This shared link has expired."
NOTE_UNAVAILABLE_MESSAGE = "This shared note is no longer available."
LOAD_FAILED_MESSAGE = "Failed to load note content."


def message_for_fetch_failure(response: FetchResponse) -> str:
    """Map a failed privileged fetch to the message shown to the viewer."""
    if response.status == 404:
        return NOTE_UNAVAILABLE_MESSAGE
    if response.status == 410:
        return EXPIRED_LINK_MESSAGE
    return LOAD_FAILED_MESSAGE


class SharedNoteResolver:
    """Resolves one share token into note content.

    Example:
        resolver = SharedNoteResolver(token, share_manager, fetcher)
        if resolver.load() is ResolverState.PASSWORD_REQUIRED:
            resolver.submit_password("hunter2")
        if resolver.state is ResolverState.READY:
            show(resolver.note)
    """

    def __init__(
        self,
        token: str,
        share_manager: ShareLinkManager,
        fetch: FetchFunction,
        clock: Callable = utc_now,
    ):
        self.token = token
        self.share_manager = share_manager
        self.fetch = fetch
        self.clock = clock

        self.state = ResolverState.LOADING
        self.link: Optional[SharedLink] = None
        self.note: Optional[SharedNotePayload] = None
        self.error: Optional[str] = None
        self.password_error = False

    @property
    def is_terminal(self) -> bool:
        return self.state in (ResolverState.ERROR, ResolverState.READY)

    def load(self) -> ResolverState:
        """Validate the token and either gate on a password or fetch the note."""
        if self.state is not ResolverState.LOADING:
            return self.state

        link = self.share_manager.find_active_by_token(self.token)
        if link is None:
            return self._fail(INVALID_LINK_MESSAGE)
        if link.is_expired(self.clock()):
            return self._fail(EXPIRED_LINK_MESSAGE)

        self.link = link
        if link.has_password:
            self.state = ResolverState.PASSWORD_REQUIRED
            return self.state
        return self._fetch_content()

    def submit_password(self, candidate: str) -> ResolverState:
        """Check a password. A wrong one leaves the resolver waiting for another."""
        if self.state is not ResolverState.PASSWORD_REQUIRED:
            logger.debug(f"Ignoring password submit in state {self.state.value}")
            return self.state

        if not verify_share_password(candidate, self.link.password_hash):
            self.password_error = True
            return self.state

        self.password_error = False
        return self._fetch_content()

    def _fetch_content(self) -> ResolverState:
        response = self.fetch(self.link.note_id, self.link.id)
        if response.ok:
            try:
                note = response.note
            except pydantic.ValidationError as e:
                logger.error(f"Malformed note payload for link {self.link.id}: {e}")
                note = None
            if note is None:
                return self._fail(LOAD_FAILED_MESSAGE)
            self.note = note
            self.state = ResolverState.READY
            return self.state
        logger.info(
            f"Shared note fetch for link {self.link.id} failed with {response.status}"
        )
        return self._fail(message_for_fetch_failure(response))

    def _fail(self, message: str) -> ResolverState:
        self.state = ResolverState.ERROR
        self.error = message
        return self.state

    def to_dict(self) -> Dict[str, Any]:
        """Serializable view of the resolver for API responses."""
        return {
            "state": self.state.value,
            "error": self.error,
            "passwordError": self.password_error,
            "note": self.note.to_wire() if self.note else None,
        }
