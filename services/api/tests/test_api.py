"""
HTTP-level tests for the viewer API.

Dependencies are swapped through app.dependency_overrides: in-memory session
store, a recording mailer and viewers backed by a scripted document.

Run with: pytest tests/test_api.py -v
"""
import asyncio
from datetime import datetime, timedelta, timezone

import pytest
import pytest_asyncio
from fastapi import HTTPException
from httpx import ASGITransport, AsyncClient

import main
from adapters.memory import InMemorySessionStore
from core.pdf_fetcher import ProxyRotation
from core.viewer import ViewerSession
from core.viewer_registry import ViewerRegistry
from fakes import FailingMailer, FakeDocument, FakeFetcher, RecordingMailer, opener_for
from routers.proxy import google_drive_download_url

PDF_URL = "https://cdn.example.com/worksheets/articulation.pdf"
OWNER = {"X-User-Email": "therapist@example.com"}
OTHER = {"X-User-Email": "someone-else@example.com"}


class Backend:
    """Everything the app would otherwise build from settings."""

    def __init__(self):
        self.store = InMemorySessionStore()
        self.mailer = RecordingMailer()
        self.registry = ViewerRegistry(maxsize=16, ttl=600)
        self.document = FakeDocument(page_count=10, page_size=(600.0, 900.0))

    def viewer_factory(self, source_url, **kwargs):
        kwargs.setdefault("first_paint_delay", 0)
        return ViewerSession(
            source_url,
            fetcher=FakeFetcher(),
            rotation=ProxyRotation(),
            document_opener=opener_for(self.document),
            **kwargs,
        )

    def seed(self, session_id="abc", **overrides):
        now = datetime.now(timezone.utc)
        record = {
            "sessionId": session_id,
            "sourceDocumentUrl": PDF_URL,
            "documentName": "Articulation Set",
            "selectedPages": [2, 5, 9],
            "recipientEmail": "parent@example.com",
            "createdAt": now,
            "expiresAt": now + timedelta(days=7),
            "accessCount": 0,
            "maxAccessCount": 10,
        }
        record.update(overrides)
        self.store.put_record(record)


@pytest.fixture(autouse=True)
def reset_rate_limits():
    main.rate_limit_storage.clear()
    yield
    main.rate_limit_storage.clear()


@pytest.fixture
def backend():
    backend = Backend()
    main.app.dependency_overrides[main.get_session_store] = lambda: backend.store
    main.app.dependency_overrides[main.get_mailer] = lambda: backend.mailer
    main.app.dependency_overrides[main.get_viewer_registry] = lambda: backend.registry
    main.app.dependency_overrides[main.get_viewer_factory] = lambda: backend.viewer_factory
    yield backend
    main.app.dependency_overrides.clear()
    backend.registry.close_all()


@pytest_asyncio.fixture
async def client(backend):
    transport = ASGITransport(app=main.app)
    async with AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac


def send_body(**overrides):
    body = {
        "email": "parent@example.com",
        "productId": "prod-42",
        "pdfUrl": PDF_URL,
        "pdfName": "Articulation Set",
        "selectedPages": [2, 5, 9],
    }
    body.update(overrides)
    return body


class TestSendPdfPages:
    @pytest.mark.asyncio
    async def test_send_creates_session_and_emails_link(self, client, backend):
        response = await client.post("/send-pdf-pages", json=send_body())

        assert response.status_code == 200
        data = response.json()
        assert data["success"] is True
        details = data["details"]
        assert details["email"] == "parent@example.com"
        assert details["pages"] == [2, 5, 9]
        assert details["viewingUrl"].endswith(f"/guest-view/{details['sessionId']}")
        assert details["messageId"] == "<msg-1@test.local>"

        stored = backend.store.get_session(details["sessionId"])
        assert stored.access_count == 0
        assert len(backend.mailer.sent) == 1
        assert response.headers["access-control-allow-origin"] == "*"

    @pytest.mark.asyncio
    async def test_empty_selection_is_400_and_nothing_stored(self, client, backend):
        response = await client.post("/send-pdf-pages", json=send_body(selectedPages=[]))

        assert response.status_code == 400
        assert "pages" in response.json()["error"]
        assert len(backend.store) == 0
        assert backend.mailer.sent == []

    @pytest.mark.asyncio
    async def test_missing_selection_is_400(self, client, backend):
        body = send_body()
        del body["selectedPages"]

        response = await client.post("/send-pdf-pages", json=body)

        assert response.status_code == 400
        assert "pages" in response.json()["error"]
        assert len(backend.store) == 0

    @pytest.mark.asyncio
    async def test_missing_email_is_400(self, client, backend):
        body = send_body()
        del body["email"]

        response = await client.post("/send-pdf-pages", json=body)

        assert response.status_code == 400
        assert response.json() == {"error": "Missing email address"}

    @pytest.mark.asyncio
    async def test_malformed_json_is_400(self, client):
        response = await client.post(
            "/send-pdf-pages",
            content=b"{not json",
            headers={"Content-Type": "application/json"},
        )
        assert response.status_code == 400
        assert "error" in response.json()

    @pytest.mark.asyncio
    async def test_preflight_returns_204_with_cors(self, client):
        response = await client.options("/send-pdf-pages")

        assert response.status_code == 204
        assert response.headers["access-control-allow-origin"] == "*"
        assert "POST" in response.headers["access-control-allow-methods"]

    @pytest.mark.asyncio
    async def test_get_is_405(self, client):
        response = await client.get("/send-pdf-pages")

        assert response.status_code == 405
        assert response.json() == {"error": "Method not allowed. Only POST requests are supported."}

    @pytest.mark.asyncio
    async def test_mail_failure_is_500_but_session_persists(self, client, backend):
        main.app.dependency_overrides[main.get_mailer] = lambda: FailingMailer()

        response = await client.post("/send-pdf-pages", json=send_body())

        assert response.status_code == 500
        data = response.json()
        assert data["kind"] == "timeout"
        assert backend.store.get_session(data["sessionId"]) is not None

        redeemed = await client.get(f"/guest-view/{data['sessionId']}")
        assert redeemed.status_code == 200


class TestGuestView:
    @pytest.mark.asyncio
    async def test_redeem_opens_guest_viewer(self, client, backend):
        backend.seed()

        response = await client.get("/guest-view/abc")

        assert response.status_code == 200
        data = response.json()
        assert data["state"] == "ready"
        assert data["pageCount"] == 3
        assert data["currentPage"] == 1
        assert data["pageLabels"] == [2, 5, 9]
        assert data["remainingViews"] == 9
        assert backend.document.rendered_pages[0] == 2

    @pytest.mark.asyncio
    async def test_guest_frame_and_navigation_use_logical_pages(self, client, backend):
        backend.seed()
        viewer_id = (await client.get("/guest-view/abc")).json()["viewerId"]

        frame = await client.get(f"/viewers/{viewer_id}/page")
        assert frame.status_code == 200
        assert frame.headers["content-type"] == "image/png"
        assert "no-store" in frame.headers["cache-control"]
        assert frame.headers["x-page-number"] == "1"

        moved = await client.post(f"/viewers/{viewer_id}/navigate", json={"page": 2})
        assert moved.status_code == 200
        assert moved.json()["currentPage"] == 2
        assert backend.document.rendered_pages[-1] == 5

        clamped = await client.post(f"/viewers/{viewer_id}/navigate", json={"page": 40})
        assert clamped.json()["currentPage"] == 3
        assert backend.document.rendered_pages[-1] == 9

    @pytest.mark.asyncio
    async def test_unknown_and_expired_look_the_same(self, client, backend):
        past = datetime.now(timezone.utc) - timedelta(days=1)
        backend.seed("old", createdAt=past - timedelta(days=7), expiresAt=past)

        missing = await client.get("/guest-view/nope")
        expired = await client.get("/guest-view/old")

        assert missing.status_code == 404
        assert expired.status_code == 404
        assert missing.json()["error"] == expired.json()["error"]
        assert missing.json()["code"] == "not_found"
        assert expired.json()["code"] == "expired"

    @pytest.mark.asyncio
    async def test_exhausted_session_is_404(self, client, backend):
        backend.seed(accessCount=10)

        response = await client.get("/guest-view/abc")

        assert response.status_code == 404
        assert response.json()["code"] == "access_exhausted"


class TestRateLimiting:
    @pytest.mark.asyncio
    async def test_counted_per_route_not_per_url(self, client, backend):
        await client.get("/guest-view/one")
        await client.get("/guest-view/two")
        await client.get("/guest-view/three")

        buckets = main.rate_limit_storage["127.0.0.1"]
        assert list(buckets) == ["GET:/guest-view/{session_id}"]
        assert len(buckets["GET:/guest-view/{session_id}"]) == 3

    @pytest.mark.asyncio
    async def test_stale_entries_are_dropped(self, client, backend):
        old = datetime.now() - timedelta(minutes=5)
        main.rate_limit_storage["127.0.0.1"]["GET:/viewers/{viewer_id}"] = [old]

        await client.get("/guest-view/one")

        assert "GET:/viewers/{viewer_id}" not in main.rate_limit_storage["127.0.0.1"]

    @pytest.mark.asyncio
    async def test_limit_applies_across_urls_of_one_route(self, client, backend, monkeypatch):
        monkeypatch.setitem(main.RATE_LIMITS, "read", 2)
        assert (await client.get("/guest-view/one")).status_code == 404
        assert (await client.get("/guest-view/two")).status_code == 404

        limited = await client.get("/guest-view/three")

        assert limited.status_code == 429
        assert limited.json()["retry_after_seconds"] >= 1


class TestViewers:
    @pytest.mark.asyncio
    async def test_open_requires_user(self, client):
        response = await client.post("/viewers", json={"pdfUrl": PDF_URL})
        assert response.status_code == 401

    @pytest.mark.asyncio
    async def test_open_lands_on_target_page(self, client, backend):
        response = await client.post("/viewers", json={"pdfUrl": PDF_URL, "targetPage": 4}, headers=OWNER)

        assert response.status_code == 201
        data = response.json()
        assert data["state"] == "ready"
        assert data["pageCount"] == 10
        assert data["currentPage"] == 4
        assert data["navigationComplete"] is True
        assert data["zoom"] == 1.5

    @pytest.mark.asyncio
    async def test_owned_viewer_hidden_from_others(self, client):
        viewer_id = (await client.post("/viewers", json={"pdfUrl": PDF_URL}, headers=OWNER)).json()["viewerId"]

        assert (await client.get(f"/viewers/{viewer_id}", headers=OWNER)).status_code == 200
        assert (await client.get(f"/viewers/{viewer_id}", headers=OTHER)).status_code == 404
        assert (await client.get(f"/viewers/{viewer_id}")).status_code == 401

    @pytest.mark.asyncio
    async def test_zoom_and_pan(self, client):
        viewer_id = (await client.post("/viewers", json={"pdfUrl": PDF_URL}, headers=OWNER)).json()["viewerId"]

        zoomed = await client.post(f"/viewers/{viewer_id}/zoom", json={"action": "in"}, headers=OWNER)
        assert zoomed.json()["zoom"] == 1.75

        reset = await client.post(f"/viewers/{viewer_id}/zoom", json={"action": "reset"}, headers=OWNER)
        assert reset.json()["zoom"] == 1.5
        assert reset.json()["canPan"] is True

        panned = await client.post(f"/viewers/{viewer_id}/pan", json={"dx": 0, "dy": -100}, headers=OWNER)
        assert panned.json()["pan"] == {"x": 0.0, "y": -100.0}

        bad = await client.post(f"/viewers/{viewer_id}/zoom", json={}, headers=OWNER)
        assert bad.status_code == 400

    @pytest.mark.asyncio
    async def test_thumbnail_available_after_background_generation(self, client, backend):
        viewer_id = (await client.post("/viewers", json={"pdfUrl": PDF_URL}, headers=OWNER)).json()["viewerId"]
        viewer = backend.registry.lookup(viewer_id)
        await asyncio.gather(*viewer.background_tasks, return_exceptions=True)

        thumb = await client.get(f"/viewers/{viewer_id}/thumbnails/3", headers=OWNER)
        assert thumb.status_code == 200
        assert thumb.content.startswith(b"\x89PNG")

        missing = await client.get(f"/viewers/{viewer_id}/thumbnails/99", headers=OWNER)
        assert missing.status_code == 404

    @pytest.mark.asyncio
    async def test_delete_closes_viewer(self, client, backend):
        viewer_id = (await client.post("/viewers", json={"pdfUrl": PDF_URL}, headers=OWNER)).json()["viewerId"]

        deleted = await client.delete(f"/viewers/{viewer_id}", headers=OWNER)

        assert deleted.status_code == 204
        assert (await client.get(f"/viewers/{viewer_id}", headers=OWNER)).status_code == 404
        assert backend.document.closed is True


class TestProxyAndHealth:
    def test_drive_file_link_converted(self):
        url = "https://drive.google.com/file/d/FILE123/view?usp=sharing"
        assert google_drive_download_url(url) == "https://drive.google.com/uc?export=download&id=FILE123"

    def test_drive_open_id_link_converted(self):
        url = "https://drive.google.com/open?id=FILE456"
        assert google_drive_download_url(url) == "https://drive.google.com/uc?export=download&id=FILE456"

    def test_drive_folder_link_rejected(self):
        with pytest.raises(HTTPException) as exc_info:
            google_drive_download_url("https://drive.google.com/drive/folders/XYZ")
        assert exc_info.value.status_code == 400

    def test_other_urls_untouched(self):
        assert google_drive_download_url(PDF_URL) == PDF_URL

    @pytest.mark.asyncio
    async def test_healthz(self, client):
        response = await client.get("/healthz")
        assert response.status_code == 200
        assert response.json()["status"] == "ok"
