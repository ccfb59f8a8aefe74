"""
Pydantic schemas for API request/response validation.
"""
from .send_pdf_pages import (
    GuestViewOut,
    SendPdfPagesDetails,
    SendPdfPagesRequest,
    SendPdfPagesResponse,
)
from .viewer import (
    NavigateRequest,
    PanRequest,
    ViewerOpen,
    ViewerOut,
    ZoomRequest,
)

# Re-export all
__all__ = [
    "SendPdfPagesRequest",
    "SendPdfPagesDetails",
    "SendPdfPagesResponse",
    "GuestViewOut",
    "ViewerOpen",
    "ViewerOut",
    "NavigateRequest",
    "ZoomRequest",
    "PanRequest",
]
