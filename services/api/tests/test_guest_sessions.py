"""
Tests for guest session issuing and redemption.

Run with: pytest tests/test_guest_sessions.py -v
"""
import asyncio
from datetime import datetime, timedelta, timezone

import aiosmtplib
import pytest

from adapters.memory import InMemorySessionStore
from core.email_sender import InlineImage, OutgoingEmail, SmtpMailer, classify_smtp_error
from core.errors import (
    NotificationError,
    PersistenceError,
    SessionAccessExhausted,
    SessionExpired,
    SessionNotFound,
    SessionUnavailable,
    ValidationError,
)
from core.guest_email import build_guest_email
from core.guest_sessions import GuestSessionIssuer, GuestSessionRedeemer
from core.pdf_fetcher import ProxyRotation
from core.viewer import ViewerSession, ViewerState
from fakes import FIXED_NOW, BrokenStore, FailingMailer, FakeDocument, FakeFetcher, RecordingMailer, opener_for
from models.guest_session import GuestViewSession

PDF_URL = "https://cdn.example.com/worksheets/articulation.pdf"
PNG_DATA_URL = "data:image/png;base64,iVBORw0KGgo="


def viewing_url_for(session_id: str) -> str:
    return f"https://shop.example.com/guest-view/{session_id}"


def make_issuer(store=None, mailer=None, **kwargs) -> GuestSessionIssuer:
    kwargs.setdefault("clock", lambda: FIXED_NOW)
    return GuestSessionIssuer(
        store if store is not None else InMemorySessionStore(),
        mailer if mailer is not None else RecordingMailer(),
        viewing_url_for=viewing_url_for,
        **kwargs,
    )


def seed_session(store: InMemorySessionStore, **overrides) -> GuestViewSession:
    record = {
        "sessionId": "abc",
        "sourceDocumentUrl": PDF_URL,
        "documentName": "Articulation Set",
        "selectedPages": [2, 5, 9],
        "recipientEmail": "parent@example.com",
        "createdAt": FIXED_NOW,
        "expiresAt": FIXED_NOW + timedelta(days=7),
        "accessCount": 0,
        "maxAccessCount": 10,
    }
    record.update(overrides)
    store.put_record(record)
    return GuestViewSession.from_record(record)


class TestIssue:
    """Validate -> persist -> notify."""

    @pytest.mark.asyncio
    async def test_issue_persists_and_notifies(self):
        store = InMemorySessionStore()
        mailer = RecordingMailer()
        issuer = make_issuer(store, mailer)

        issued = await issuer.issue("Parent@Example.com", PDF_URL, "Articulation Set", [2, 5, 9])

        stored = store.get_session(issued.session_id)
        assert stored is not None
        assert stored.selected_pages == [2, 5, 9]
        assert stored.access_count == 0
        assert stored.max_access_count == 10
        assert stored.created_at == FIXED_NOW
        assert stored.expires_at == FIXED_NOW + timedelta(days=7)
        assert issued.viewing_url == viewing_url_for(issued.session_id)
        assert issued.message_id == "<msg-1@test.local>"

        assert len(mailer.sent) == 1
        assert mailer.sent[0].to == "parent@example.com"
        assert issued.viewing_url in mailer.sent[0].text

    @pytest.mark.asyncio
    async def test_expiry_is_seven_days_from_now_on_real_clock(self):
        issuer = GuestSessionIssuer(InMemorySessionStore(), RecordingMailer(), viewing_url_for=viewing_url_for)

        before = datetime.now(timezone.utc)
        issued = await issuer.issue("parent@example.com", PDF_URL, "Doc", [1])

        expected = before + timedelta(days=7)
        assert abs((issued.session.expires_at - expected).total_seconds()) <= 1

    @pytest.mark.asyncio
    async def test_every_call_mints_a_new_session(self):
        store = InMemorySessionStore()
        issuer = make_issuer(store)

        first = await issuer.issue("parent@example.com", PDF_URL, "Doc", [1, 2])
        second = await issuer.issue("parent@example.com", PDF_URL, "Doc", [1, 2])

        assert first.session_id != second.session_id
        assert len(store) == 2

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "email, pdf_url, pages",
        [
            ("parent@example.com", PDF_URL, []),
            ("", PDF_URL, [1]),
            (None, PDF_URL, [1]),
            ("not-an-email", PDF_URL, [1]),
            ("parent@example.com", "", [1]),
            ("parent@example.com", PDF_URL, [0]),
        ],
    )
    async def test_invalid_input_stores_and_sends_nothing(self, email, pdf_url, pages):
        store = InMemorySessionStore()
        mailer = RecordingMailer()
        issuer = make_issuer(store, mailer)

        with pytest.raises(ValidationError):
            await issuer.issue(email, pdf_url, "Doc", pages)

        assert len(store) == 0
        assert mailer.sent == []

    @pytest.mark.asyncio
    async def test_empty_selection_error_mentions_pages(self):
        with pytest.raises(ValidationError, match="pages"):
            await make_issuer().issue("parent@example.com", PDF_URL, "Doc", [])

    @pytest.mark.asyncio
    async def test_notification_failure_keeps_session_redeemable(self):
        store = InMemorySessionStore()
        issuer = make_issuer(store, FailingMailer())

        with pytest.raises(NotificationError) as exc_info:
            await issuer.issue("parent@example.com", PDF_URL, "Doc", [3])

        err = exc_info.value
        assert err.kind == NotificationError.TIMEOUT
        assert err.session_id is not None
        assert err.viewing_url == viewing_url_for(err.session_id)

        redeemer = GuestSessionRedeemer(store, clock=lambda: FIXED_NOW)
        session = await redeemer.resolve(err.session_id)
        assert session.selected_pages == [3]

    @pytest.mark.asyncio
    async def test_persistence_failure_sends_nothing(self):
        mailer = RecordingMailer()
        issuer = make_issuer(BrokenStore(), mailer)

        with pytest.raises(PersistenceError):
            await issuer.issue("parent@example.com", PDF_URL, "Doc", [1])

        assert mailer.sent == []

    @pytest.mark.asyncio
    async def test_client_page_images_become_inline_attachments(self):
        mailer = RecordingMailer()
        issuer = make_issuer(mailer=mailer)

        await issuer.issue(
            "parent@example.com", PDF_URL, "Doc", [4, 7],
            page_images=[PNG_DATA_URL, PNG_DATA_URL],
        )

        email = mailer.sent[0]
        assert [img.content_id for img in email.images] == ["page-4", "page-7"]
        assert 'src="cid:page-4"' in email.html

    @pytest.mark.asyncio
    async def test_undecodable_page_image_is_skipped(self):
        store = InMemorySessionStore()
        mailer = RecordingMailer()
        issuer = make_issuer(store, mailer)

        await issuer.issue(
            "parent@example.com", PDF_URL, "Doc", [1, 2],
            page_images=["%%%not base64%%%", PNG_DATA_URL],
        )

        assert len(store) == 1
        assert [img.content_id for img in mailer.sent[0].images] == ["page-2"]

    @pytest.mark.asyncio
    async def test_page_image_source_used_when_client_sends_none(self):
        requested = []

        async def source(url, pages):
            requested.append((url, pages))
            return {pages[0]: b"\x89PNG fake"}

        mailer = RecordingMailer()
        issuer = make_issuer(mailer=mailer, page_image_source=source)

        await issuer.issue("parent@example.com", PDF_URL, "Doc", [6, 8])

        assert requested == [(PDF_URL, [6, 8])]
        assert [img.content_id for img in mailer.sent[0].images] == ["page-6"]


class TestRedeem:
    @pytest.mark.asyncio
    async def test_redeem_consumes_one_view(self):
        store = InMemorySessionStore()
        seed_session(store)
        redeemer = GuestSessionRedeemer(store, clock=lambda: FIXED_NOW)

        session = await redeemer.resolve("abc")

        assert session.access_count == 1
        assert session.remaining_views == 9
        assert store.get_session("abc").access_count == 1

    @pytest.mark.asyncio
    async def test_expired_session_rejected(self):
        store = InMemorySessionStore()
        seed_session(store)
        later = FIXED_NOW + timedelta(days=7, seconds=1)
        redeemer = GuestSessionRedeemer(store, clock=lambda: later)

        with pytest.raises(SessionExpired):
            await redeemer.resolve("abc")
        assert store.get_session("abc").access_count == 0

    @pytest.mark.asyncio
    async def test_expiry_reported_even_when_also_exhausted(self):
        store = InMemorySessionStore()
        seed_session(store, accessCount=10)
        later = FIXED_NOW + timedelta(days=8)
        redeemer = GuestSessionRedeemer(store, clock=lambda: later)

        with pytest.raises(SessionExpired):
            await redeemer.resolve("abc")

    @pytest.mark.asyncio
    async def test_exhausted_session_rejected(self):
        store = InMemorySessionStore()
        seed_session(store, accessCount=10)
        redeemer = GuestSessionRedeemer(store, clock=lambda: FIXED_NOW)

        with pytest.raises(SessionAccessExhausted):
            await redeemer.resolve("abc")

    @pytest.mark.asyncio
    async def test_access_count_increments_on_each_redeem_until_ceiling(self):
        """Each successful redemption consumes a view: ten succeed, the eleventh is refused."""
        store = InMemorySessionStore()
        seed_session(store)
        redeemer = GuestSessionRedeemer(store, clock=lambda: FIXED_NOW)

        for expected in range(1, 11):
            session = await redeemer.resolve("abc")
            assert session.access_count == expected

        with pytest.raises(SessionAccessExhausted):
            await redeemer.resolve("abc")

    @pytest.mark.asyncio
    async def test_concurrent_redeems_never_exceed_ceiling(self):
        store = InMemorySessionStore()
        seed_session(store)
        redeemer = GuestSessionRedeemer(store, clock=lambda: FIXED_NOW)

        results = await asyncio.gather(*(redeemer.resolve("abc") for _ in range(15)), return_exceptions=True)

        successes = [r for r in results if isinstance(r, GuestViewSession)]
        refused = [r for r in results if isinstance(r, SessionAccessExhausted)]
        assert len(successes) == 10
        assert len(refused) == 5
        assert store.get_session("abc").access_count == 10

    @pytest.mark.asyncio
    async def test_unknown_and_missing_ids_are_not_found(self):
        redeemer = GuestSessionRedeemer(InMemorySessionStore(), clock=lambda: FIXED_NOW)

        with pytest.raises(SessionNotFound):
            await redeemer.resolve("nope")
        with pytest.raises(SessionNotFound):
            await redeemer.resolve("")

    @pytest.mark.asyncio
    async def test_storage_failure_reported_as_not_found(self):
        redeemer = GuestSessionRedeemer(BrokenStore(), clock=lambda: FIXED_NOW)

        with pytest.raises(SessionNotFound):
            await redeemer.resolve("abc")

    def test_all_rejections_share_one_message(self):
        messages = {
            SessionNotFound("x").user_message,
            SessionExpired("x").user_message,
            SessionAccessExhausted("x").user_message,
        }
        assert messages == {SessionUnavailable.user_message}

    @pytest.mark.asyncio
    async def test_redeemed_session_drives_guest_viewer(self):
        """Logical pages 1..3 of the guest view show physical pages 2, 5 and 9."""
        store = InMemorySessionStore()
        seed_session(store)
        session = await GuestSessionRedeemer(store, clock=lambda: FIXED_NOW).resolve("abc")

        doc = FakeDocument(page_count=10)
        viewer = ViewerSession(
            session.source_document_url,
            fetcher=FakeFetcher(),
            rotation=ProxyRotation(),
            document_opener=opener_for(doc),
            page_map=session.selected_pages,
            thumbnails=False,
            first_paint_delay=0,
        )
        await viewer.open()

        assert viewer.state == ViewerState.READY
        assert viewer.page_count == 3
        assert viewer.page_labels == [2, 5, 9]
        await viewer.go_to_page(3)
        assert doc.rendered_pages[0] == 2
        assert doc.rendered_pages[-1] == 9
        viewer.close()


class TestGuestEmail:
    def test_subject_pages_and_link(self):
        email = build_guest_email(
            recipient="parent@example.com",
            document_name="Fluency Cards",
            selected_pages=[9, 2, 5],
            viewing_url="https://shop.example.com/guest-view/abc",
            expires_at=FIXED_NOW + timedelta(days=7),
        )

        assert email.subject == "Selected Pages from Fluency Cards"
        assert "Pages: 2, 5, 9" in email.text
        assert "https://shop.example.com/guest-view/abc" in email.html
        assert "March 8, 2026" in email.text
        assert email.images == []

    def test_document_name_is_escaped_in_html(self):
        email = build_guest_email(
            recipient="parent@example.com",
            document_name="<script>x</script>",
            selected_pages=[1],
            viewing_url="https://shop.example.com/guest-view/abc",
            expires_at=FIXED_NOW,
        )
        assert "<script>" not in email.html
        assert "&lt;script&gt;" in email.html


class TestSmtpMailer:
    def make_mailer(self) -> SmtpMailer:
        return SmtpMailer(
            host="smtp.example.com",
            port=587,
            username="user",
            password="secret",
            sender="Therapy Tools <noreply@example.com>",
        )

    def test_build_message_structure(self):
        email = OutgoingEmail(
            to="parent@example.com",
            subject="Selected Pages from Doc",
            text="plain",
            html="<p>html</p>",
            images=[InlineImage(content_id="page-3", filename="page-3.png", data=b"\x89PNG")],
        )

        msg = self.make_mailer().build_message(email)

        assert msg.get_content_subtype() == "related"
        assert msg["To"] == "parent@example.com"
        assert msg["Message-ID"].endswith("@example.com>")
        parts = msg.get_payload()
        assert parts[0].get_content_subtype() == "alternative"
        assert [p.get_content_type() for p in parts[0].get_payload()] == ["text/plain", "text/html"]
        assert parts[1]["Content-ID"] == "<page-3>"

    @pytest.mark.parametrize(
        "error, kind",
        [
            (aiosmtplib.SMTPTimeoutError("slow"), NotificationError.TIMEOUT),
            (asyncio.TimeoutError(), NotificationError.TIMEOUT),
            (ConnectionRefusedError(), NotificationError.CONNECTION_REFUSED),
            (aiosmtplib.SMTPAuthenticationError(535, "bad login"), NotificationError.AUTH_FAILED),
            (aiosmtplib.SMTPServerDisconnected("gone"), NotificationError.SOCKET),
            (aiosmtplib.SMTPResponseException(550, "rejected"), NotificationError.GENERIC),
        ],
    )
    def test_classify_smtp_error(self, error, kind):
        assert classify_smtp_error(error).kind == kind

    @pytest.mark.asyncio
    async def test_send_wraps_transport_errors(self, monkeypatch):
        async def refuse(*args, **kwargs):
            raise ConnectionRefusedError()

        monkeypatch.setattr(aiosmtplib, "send", refuse)
        email = OutgoingEmail(to="parent@example.com", subject="s", text="t", html="h")

        with pytest.raises(NotificationError) as exc_info:
            await self.make_mailer().send(email)
        assert exc_info.value.kind == NotificationError.CONNECTION_REFUSED
