# services/api/routers/guest_view.py
from __future__ import annotations

import logging
from typing import Annotated

from fastapi import APIRouter, Depends

from main import get_session_store, get_viewer_factory, get_viewer_registry  # DI from main
from core.guest_sessions import GuestSessionRedeemer
from schemas.send_pdf_pages import GuestViewOut

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/guest-view", tags=["guest-view"])

Store = Annotated[object, Depends(get_session_store)]
Registry = Annotated[object, Depends(get_viewer_registry)]
ViewerFactory = Annotated[object, Depends(get_viewer_factory)]


@router.get("/{session_id}", response_model=GuestViewOut)
async def open_guest_view(
    session_id: str,
    store: Store,
    registry: Registry,
    viewer_factory: ViewerFactory,
):
    """
    Redeem a guest session (consumes one view) and open a read-only viewer
    restricted to the shared pages.

    Page frames, navigation and zoom then go through /viewers/{viewerId}
    using logical page numbers 1..pageCount.
    """
    session = await GuestSessionRedeemer(store).resolve(session_id)

    viewer = viewer_factory(
        session.source_document_url,
        page_map=session.selected_pages,
        document_name=session.document_name,
        owner=None,
    )
    registry.add(viewer)
    await viewer.open()
    logger.info(f"Guest viewer {viewer.viewer_id} opened for session {session_id} ({viewer.state.value})")

    return GuestViewOut(
        viewerId=viewer.viewer_id,
        sessionId=session.session_id,
        documentName=session.document_name,
        state=viewer.state.value,
        pageCount=viewer.page_count or session.page_count,
        currentPage=viewer.current_page,
        pageLabels=list(session.selected_pages),
        expiresAt=session.expires_at,
        remainingViews=session.remaining_views,
        error=viewer.error_message,
    )
