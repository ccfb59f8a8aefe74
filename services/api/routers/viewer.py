# services/api/routers/viewer.py
from __future__ import annotations

import logging
from typing import Annotated, Optional

from fastapi import APIRouter, Depends, HTTPException, Response, status

from main import get_viewer_factory, get_viewer_registry  # DI from main
from core.auth import get_caller_email, require_user
from core.errors import ValidationError, ViewerBusyError
from core.viewer import ViewerSession, ViewerState
from schemas.viewer import NavigateRequest, PanRequest, ViewerOpen, ViewerOut, ZoomRequest

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/viewers", tags=["viewers"])

# DI aliases (no default!)
Registry = Annotated[object, Depends(get_viewer_registry)]
ViewerFactory = Annotated[object, Depends(get_viewer_factory)]
Caller = Annotated[Optional[str], Depends(get_caller_email)]
User = Annotated[str, Depends(require_user)]

# Frames are for on-screen viewing only
FRAME_HEADERS = {
    "Cache-Control": "no-store, no-cache, must-revalidate, private",
    "Content-Disposition": "inline",
    "X-Content-Type-Options": "nosniff",
}


def _viewer_for(registry, viewer_id: str, caller: Optional[str]) -> ViewerSession:
    """
    Guest viewers (no owner) are reachable by anyone holding the id.
    Owned viewers only by their owner; others get the same 404 as a
    missing viewer.
    """
    viewer = registry.lookup(viewer_id)
    if viewer is None or viewer.state == ViewerState.CLOSED:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="VIEWER_NOT_FOUND")
    if viewer.owner is not None:
        if not caller:
            raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="AUTHENTICATION_REQUIRED")
        if caller != viewer.owner:
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="VIEWER_NOT_FOUND")
    return viewer


def _busy(viewer: ViewerSession, action: str) -> ViewerBusyError:
    if viewer.state == ViewerState.ERROR:
        return ViewerBusyError(f"Cannot {action}: {viewer.error_message or 'viewer is in an error state'}. Retry loading first.")
    return ViewerBusyError(f"Cannot {action} while a page is rendering; request dropped")


@router.post("", response_model=ViewerOut, status_code=status.HTTP_201_CREATED)
async def open_viewer(body: ViewerOpen, user: User, registry: Registry, viewer_factory: ViewerFactory):
    """
    Open a viewer for an authenticated user and render the initial page
    (targetPage when given and in range, else page 1).

    A viewer that could not load the document is still returned, in state
    "error" with a user-facing message; POST /viewers/{id}/retry tries again.
    """
    kwargs = {"document_name": body.documentName or "", "owner": user, "target_page": body.targetPage}
    if body.zoom is not None:
        kwargs["zoom"] = body.zoom

    viewer = viewer_factory(body.pdfUrl, **kwargs)
    registry.add(viewer)
    await viewer.open()
    logger.info(f"Viewer {viewer.viewer_id} opened by {user} ({viewer.state.value})")
    return viewer.snapshot()


@router.get("/{viewer_id}", response_model=ViewerOut)
async def get_viewer(viewer_id: str, caller: Caller, registry: Registry):
    return _viewer_for(registry, viewer_id, caller).snapshot()


@router.get("/{viewer_id}/page")
async def get_page_frame(viewer_id: str, caller: Caller, registry: Registry):
    """PNG of the viewer's drawing surface (the current page at the current zoom)."""
    viewer = _viewer_for(registry, viewer_id, caller)
    if not viewer.current_page:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="NO_PAGE_RENDERED")
    return Response(
        content=viewer.frame_png(),
        media_type="image/png",
        headers={**FRAME_HEADERS, "X-Page-Number": str(viewer.current_page)},
    )


@router.post("/{viewer_id}/navigate", response_model=ViewerOut)
async def navigate(viewer_id: str, body: NavigateRequest, caller: Caller, registry: Registry):
    viewer = _viewer_for(registry, viewer_id, caller)
    if not await viewer.go_to_page(body.page):
        raise _busy(viewer, "navigate")
    return viewer.snapshot()


@router.post("/{viewer_id}/zoom", response_model=ViewerOut)
async def zoom(viewer_id: str, body: ZoomRequest, caller: Caller, registry: Registry):
    viewer = _viewer_for(registry, viewer_id, caller)

    if body.level is not None:
        accepted = await viewer.set_zoom(body.level)
    elif body.action == "in":
        accepted = await viewer.zoom_in()
    elif body.action == "out":
        accepted = await viewer.zoom_out()
    elif body.action == "reset":
        accepted = await viewer.reset_zoom()
    else:
        raise ValidationError("Provide either action (in|out|reset) or level")

    if not accepted:
        raise _busy(viewer, "zoom")
    return viewer.snapshot()


@router.post("/{viewer_id}/pan", response_model=ViewerOut)
async def pan(viewer_id: str, body: PanRequest, caller: Caller, registry: Registry):
    viewer = _viewer_for(registry, viewer_id, caller)
    viewer.pan_by(body.dx, body.dy)
    return viewer.snapshot()


@router.post("/{viewer_id}/retry", response_model=ViewerOut)
async def retry(viewer_id: str, caller: Caller, registry: Registry):
    viewer = _viewer_for(registry, viewer_id, caller)
    if not await viewer.retry():
        raise _busy(viewer, "retry")
    return viewer.snapshot()


@router.get("/{viewer_id}/thumbnails/{page}")
async def get_thumbnail(viewer_id: str, page: int, caller: Caller, registry: Registry):
    viewer = _viewer_for(registry, viewer_id, caller)
    png = viewer.thumbnail_png(page)
    if png is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="THUMBNAIL_NOT_READY")
    return Response(content=png, media_type="image/png", headers=FRAME_HEADERS)


@router.delete("/{viewer_id}", status_code=status.HTTP_204_NO_CONTENT)
async def close_viewer(viewer_id: str, caller: Caller, registry: Registry):
    _viewer_for(registry, viewer_id, caller)
    registry.remove(viewer_id)
    return Response(status_code=status.HTTP_204_NO_CONTENT)
