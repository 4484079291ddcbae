"""Share links: bearer tokens granting public read access to one note.

A link is live while it is active and either has no expiry or expires in
the future. Password and expiry are independent gates on top of token
possession.
"""
import datetime
import hashlib
import hmac
import logging
import secrets
import string
from typing import List, Optional

from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError

from quillnote.config import MIN_SHARE_TOKEN_LENGTH, config
from quillnote.exceptions import ShareLinkNotFoundError, ValidationError
from quillnote.models.db_models import DBNote, DBSharedLink
from quillnote.models.schema import CallerIdentity, SharedLink, generate_id, utc_now
from quillnote.storage.base import (Repository, link_to_model, load_owned_note,
                                    require_caller)

logger = logging.getLogger(__name__)

TOKEN_ALPHABET = string.ascii_letters + string.digits

MIN_EXPIRY_DAYS = 1
MAX_EXPIRY_DAYS = 365

# Token collisions are astronomically unlikely; retry a couple of times anyway
_TOKEN_ATTEMPTS = 3


def generate_share_token(length: Optional[int] = None) -> str:
    """Generate an unguessable token from ``[A-Za-z0-9]``.

    Raises:
        ValueError: If ``length`` is below the minimum of 24.
    """
    length = length or config.share_token_length
    if length < MIN_SHARE_TOKEN_LENGTH:
        raise ValueError(f"Share tokens must be at least {MIN_SHARE_TOKEN_LENGTH} characters")
    return "".join(secrets.choice(TOKEN_ALPHABET) for _ in range(length))


def hash_share_password(password: str) -> str:
    """Hex SHA-256 digest of a share password."""
    return hashlib.sha256(password.encode("utf-8")).hexdigest()


def verify_share_password(candidate: str, password_hash: str) -> bool:
    """Compare a candidate password against a stored digest in constant time."""
    if candidate is None or not password_hash:
        return False
    return hmac.compare_digest(hash_share_password(candidate), password_hash)


def share_url(token: str, base_url: Optional[str] = None) -> str:
    """The public URL for a token."""
    return f"{(base_url or config.share_base_url).rstrip('/')}/shared/{token}"


class ShareLinkManager(Repository):
    """Creates, lists, toggles and revokes share links for the caller's notes."""

    def _load_owned_link(self, session, caller: CallerIdentity, link_id: str) -> DBSharedLink:
        db_link = session.get(DBSharedLink, link_id) if link_id else None
        if db_link is None:
            raise ShareLinkNotFoundError(link_id or "", message="Share link not found")
        db_note = session.get(DBNote, db_link.note_id)
        if db_note is None or db_note.user_id != caller.user_id:
            raise ShareLinkNotFoundError(link_id, message="Share link not found")
        return db_link

    def create(
        self,
        caller: CallerIdentity,
        note_id: str,
        password: Optional[str] = None,
        expires_in_days: Optional[int] = None,
    ) -> SharedLink:
        """Create a share link for an active note.

        Args:
            caller: The note's owner.
            note_id: Note to share.
            password: Optional password; stored only as a digest.
            expires_in_days: Optional lifetime in days (1..365). None means
                the link never expires.

        Raises:
            NoteNotFoundError: If the caller does not own an active note with this ID.
            ValidationError: If ``expires_in_days`` is out of range or the
                password is blank.
        """
        caller = require_caller(caller)
        expires_at = None
        if expires_in_days is not None:
            if not MIN_EXPIRY_DAYS <= expires_in_days <= MAX_EXPIRY_DAYS:
                raise ValidationError(
                    f"Expiry must be between {MIN_EXPIRY_DAYS} and {MAX_EXPIRY_DAYS} days",
                    field="expires_in_days",
                    value=expires_in_days,
                )
            expires_at = utc_now() + datetime.timedelta(days=expires_in_days)
        if password is not None and not password.strip():
            raise ValidationError("Share password cannot be blank", field="password")
        password_hash = hash_share_password(password) if password else None

        for attempt in range(_TOKEN_ATTEMPTS):
            with self.session_factory() as session:
                load_owned_note(session, caller, note_id, include_deleted=False)
                db_link = DBSharedLink(
                    id=generate_id(),
                    note_id=note_id,
                    share_token=generate_share_token(),
                    password_hash=password_hash,
                    expires_at=expires_at,
                    created_at=utc_now(),
                    created_by=caller.user_id,
                    is_active=True,
                    view_count=0,
                )
                session.add(db_link)
                try:
                    session.commit()
                except IntegrityError:
                    session.rollback()
                    logger.warning(f"Share token collision on attempt {attempt + 1}")
                    continue
                logger.info(
                    f"Created share link {db_link.id} for note {note_id} "
                    f"(password={'yes' if password_hash else 'no'}, expires={expires_at})"
                )
                return link_to_model(db_link)
        raise ValidationError("Could not generate a unique share token")

    def list(self, caller: CallerIdentity, note_id: str) -> List[SharedLink]:
        """A note's share links, newest first."""
        caller = require_caller(caller)
        with self.session_factory() as session:
            load_owned_note(session, caller, note_id)
            rows = session.scalars(
                select(DBSharedLink)
                .where(DBSharedLink.note_id == note_id)
                .order_by(DBSharedLink.created_at.desc())
            ).all()
            return [link_to_model(row) for row in rows]

    def toggle_active(self, caller: CallerIdentity, link_id: str) -> SharedLink:
        """Flip a link between active and inactive."""
        caller = require_caller(caller)
        with self.session_factory() as session:
            db_link = self._load_owned_link(session, caller, link_id)
            db_link.is_active = not db_link.is_active
            session.commit()
            logger.info(f"Share link {link_id} is now {'active' if db_link.is_active else 'inactive'}")
            return link_to_model(db_link)

    def revoke(self, caller: CallerIdentity, link_id: str) -> None:
        """Delete a link for good."""
        caller = require_caller(caller)
        with self.session_factory() as session:
            db_link = self._load_owned_link(session, caller, link_id)
            session.delete(db_link)
            session.commit()
            logger.info(f"Revoked share link {link_id}")

    # Unauthenticated lookups used by the public read path

    def find_active_by_token(self, token: str) -> Optional[SharedLink]:
        """Find an active link by token, expired or not. No caller required."""
        if not token:
            return None
        with self.session_factory() as session:
            db_link = session.scalar(
                select(DBSharedLink).where(
                    DBSharedLink.share_token == token,
                    DBSharedLink.is_active.is_(True),
                )
            )
            return link_to_model(db_link) if db_link else None

    def find_active_for_note(self, link_id: str, note_id: str) -> Optional[SharedLink]:
        """Find an active link by ID that belongs to ``note_id``."""
        with self.session_factory() as session:
            db_link = session.scalar(
                select(DBSharedLink).where(
                    DBSharedLink.id == link_id,
                    DBSharedLink.note_id == note_id,
                    DBSharedLink.is_active.is_(True),
                )
            )
            return link_to_model(db_link) if db_link else None

    def increment_view_count(self, link_id: str) -> None:
        """Add one view, as a single atomic UPDATE."""
        with self.session_factory() as session:
            session.execute(
                update(DBSharedLink)
                .where(DBSharedLink.id == link_id)
                .values(view_count=DBSharedLink.view_count + 1)
            )
            session.commit()
