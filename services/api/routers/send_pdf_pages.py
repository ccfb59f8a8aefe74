# services/api/routers/send_pdf_pages.py
from __future__ import annotations

from datetime import timedelta
from typing import Annotated

from fastapi import APIRouter, Depends, Response, status
from fastapi.responses import JSONResponse

from main import get_mailer, get_pdf_fetcher, get_session_store  # DI from main
from core.guest_sessions import GuestSessionIssuer
from core.page_images import render_page_images
from schemas.send_pdf_pages import SendPdfPagesDetails, SendPdfPagesRequest, SendPdfPagesResponse
from settings import get_settings

router = APIRouter(tags=["guest-sessions"])

# DI aliases (no default!)
Store = Annotated[object, Depends(get_session_store)]
Mailer = Annotated[object, Depends(get_mailer)]
Fetcher = Annotated[object, Depends(get_pdf_fetcher)]

CORS_HEADERS = {
    "Access-Control-Allow-Origin": "*",
    "Access-Control-Allow-Headers": "Content-Type",
    "Access-Control-Allow-Methods": "POST, OPTIONS",
}


@router.options("/send-pdf-pages")
async def send_pdf_pages_preflight():
    return Response(status_code=status.HTTP_204_NO_CONTENT, headers=CORS_HEADERS)


@router.api_route("/send-pdf-pages", methods=["GET", "PUT", "PATCH", "DELETE"], include_in_schema=False)
async def send_pdf_pages_method_not_allowed():
    return JSONResponse(
        status_code=status.HTTP_405_METHOD_NOT_ALLOWED,
        content={"error": "Method not allowed. Only POST requests are supported."},
        headers={**CORS_HEADERS, "Allow": "POST, OPTIONS"},
    )


@router.post("/send-pdf-pages", response_model=SendPdfPagesResponse)
async def send_pdf_pages(
    body: SendPdfPagesRequest,
    store: Store,
    mailer: Mailer,
    fetcher: Fetcher,
    response: Response,
):
    """
    Create a guest viewing session for the selected pages and email the
    viewing link to the recipient.

    - 400: missing email / pages / pdfUrl (nothing stored, nothing sent)
    - 500: storage failure, or mail transport failure after the session was stored
    """
    settings = get_settings()

    page_image_source = None
    if settings.email_attach_page_images:
        async def page_image_source(pdf_url, pages):
            return await render_page_images(fetcher, pdf_url, pages)

    issuer = GuestSessionIssuer(
        store,
        mailer,
        viewing_url_for=settings.guest_viewing_url,
        ttl=timedelta(days=settings.guest_session_ttl_days),
        max_access=settings.guest_session_max_access,
        page_image_source=page_image_source,
    )
    issued = await issuer.issue(
        body.email,
        body.pdfUrl,
        body.pdfName,
        body.selectedPages,
        page_images=body.pageImages,
    )

    for key, value in CORS_HEADERS.items():
        response.headers[key] = value

    session = issued.session
    return SendPdfPagesResponse(
        success=True,
        message=f"Email sent successfully to {session.recipient_email}",
        details=SendPdfPagesDetails(
            email=session.recipient_email,
            pages=session.selected_pages,
            sessionId=session.session_id,
            viewingUrl=issued.viewing_url,
            messageId=issued.message_id,
            expiresAt=session.expires_at,
        ),
    )
