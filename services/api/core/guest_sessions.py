# services/api/core/guest_sessions.py
"""
Guest viewing sessions.

GuestSessionIssuer:   validate -> persist -> notify. Every call mints a new
                      session; nothing is deduplicated.
GuestSessionRedeemer: resolve a session id to a redeemable session, consuming
                      one view atomically in the store.
"""
from __future__ import annotations

import asyncio
import logging
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Awaitable, Callable, Dict, List, Optional, Protocol

from adapters.base import SessionStore
from core.email_sender import OutgoingEmail
from core.errors import NotificationError, PersistenceError, SessionNotFound, SessionUnavailable, ValidationError
from core.guest_email import build_guest_email
from core.validation import decode_page_image, validate_email, validate_pdf_url, validate_selected_pages
from models.guest_session import GuestViewSession

logger = logging.getLogger(__name__)

DEFAULT_TTL = timedelta(days=7)
DEFAULT_MAX_ACCESS = 10

PageImageSource = Callable[[str, List[int]], Awaitable[Dict[int, bytes]]]


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class Mailer(Protocol):
    async def send(self, email: OutgoingEmail) -> str: ...


@dataclass
class IssuedSession:
    session: GuestViewSession
    viewing_url: str
    message_id: str

    @property
    def session_id(self) -> str:
        return self.session.session_id


class GuestSessionIssuer:
    def __init__(
        self,
        store: SessionStore,
        mailer: Mailer,
        *,
        viewing_url_for: Callable[[str], str],
        ttl: timedelta = DEFAULT_TTL,
        max_access: int = DEFAULT_MAX_ACCESS,
        clock: Callable[[], datetime] = utcnow,
        id_factory: Callable[[], str] = lambda: str(uuid.uuid4()),
        page_image_source: Optional[PageImageSource] = None,
    ):
        self.store = store
        self.mailer = mailer
        self.viewing_url_for = viewing_url_for
        self.ttl = ttl
        self.max_access = max_access
        self.clock = clock
        self.id_factory = id_factory
        self.page_image_source = page_image_source

    async def issue(
        self,
        email: Optional[str],
        source_pdf_url: Optional[str],
        document_name: Optional[str],
        selected_pages,
        *,
        page_images: Optional[List[str]] = None,
    ) -> IssuedSession:
        """
        Raises:
            ValidationError: bad input; nothing is stored or sent
            PersistenceError: the record could not be written; nothing is sent
            NotificationError: the record exists but the email failed
        """
        recipient = validate_email(email)
        pages = validate_selected_pages(selected_pages)
        pdf_url = validate_pdf_url(source_pdf_url)
        attachments = self._decode_images(pages, page_images)

        now = self.clock()
        session = GuestViewSession(
            session_id=self.id_factory(),
            source_document_url=pdf_url,
            document_name=document_name or "",
            selected_pages=pages,
            recipient_email=recipient,
            created_at=now,
            expires_at=now + self.ttl,
            access_count=0,
            max_access_count=self.max_access,
        )

        await asyncio.to_thread(self.store.create_session, session)
        viewing_url = self.viewing_url_for(session.session_id)
        logger.info(f"✓ Guest session {session.session_id} created for pages {pages}")

        if attachments is None and self.page_image_source is not None:
            attachments = await self.page_image_source(pdf_url, pages)

        message = build_guest_email(
            recipient=recipient,
            document_name=session.document_name,
            selected_pages=pages,
            viewing_url=viewing_url,
            expires_at=session.expires_at,
            ttl_days=self.ttl.days,
            page_images=attachments,
        )
        try:
            message_id = await self.mailer.send(message)
        except NotificationError as e:
            e.session_id = session.session_id
            e.viewing_url = viewing_url
            logger.error(f"✗ Session {session.session_id} stored but notification failed: {e}")
            raise

        return IssuedSession(session=session, viewing_url=viewing_url, message_id=message_id)

    def _decode_images(self, pages: List[int], page_images: Optional[List[str]]) -> Optional[Dict[int, bytes]]:
        """Client-supplied snapshots, one per selected page in order. Undecodable entries are skipped."""
        if not page_images:
            return None
        decoded: Dict[int, bytes] = {}
        for page, data in zip(pages, page_images):
            if not data:
                continue
            try:
                decoded[page] = decode_page_image(data)
            except ValidationError as e:
                logger.warning(f"Skipping image for page {page}: {e}")
        if len(page_images) != len(pages):
            logger.warning(f"Got {len(page_images)} page images for {len(pages)} pages, extra entries ignored")
        return decoded


class GuestSessionRedeemer:
    def __init__(self, store: SessionStore, *, clock: Callable[[], datetime] = utcnow):
        self.store = store
        self.clock = clock

    async def resolve(self, session_id: Optional[str]) -> GuestViewSession:
        """
        Returns the session after consuming one view.

        Raises:
            SessionNotFound, SessionExpired, SessionAccessExhausted.
            Storage read failures are reported as SessionNotFound.
        """
        if not session_id:
            raise SessionNotFound("", "No session ID provided")

        try:
            session = await asyncio.to_thread(self.store.redeem_session, session_id, self.clock())
        except SessionUnavailable as e:
            logger.warning(f"Guest session {session_id} rejected ({e.reason})")
            raise
        except PersistenceError as e:
            logger.error(f"Guest session {session_id} lookup failed: {e}")
            raise SessionNotFound(session_id, str(e)) from e

        logger.info(
            f"✓ Guest session {session_id} redeemed "
            f"({session.access_count}/{session.max_access_count} views used)"
        )
        return session
