"""
Pydantic schemas for the guest-sharing endpoints.

Field names follow the wire format (camelCase). Required-ness is enforced by
core.validation so that every missing field gets the same `{error}` response.
"""
from datetime import datetime
from typing import Any, List, Optional

from pydantic import BaseModel, Field


class SendPdfPagesRequest(BaseModel):
    """Body of POST /send-pdf-pages."""
    email: Optional[str] = Field(None, description="Recipient email address")
    productId: Optional[str] = Field(None, description="Catalog product the PDF belongs to")
    pdfUrl: Optional[str] = Field(None, description="URL of the source PDF")
    pdfName: Optional[str] = Field(None, description="Display name of the document")
    selectedPages: Optional[List[Any]] = Field(None, description="1-based physical page numbers")
    pageImages: Optional[List[Optional[str]]] = Field(
        None,
        description="Optional base64 PNG data URLs, one per selected page, attached inline",
    )


class SendPdfPagesDetails(BaseModel):
    email: str
    pages: List[int]
    sessionId: str
    viewingUrl: str
    messageId: str
    expiresAt: datetime
    previewUrl: Optional[str] = None


class SendPdfPagesResponse(BaseModel):
    success: bool = True
    message: str
    details: SendPdfPagesDetails


class GuestViewOut(BaseModel):
    """Result of redeeming a guest session: the viewer to drive with logical pages."""
    viewerId: str
    sessionId: str
    documentName: str
    state: str
    pageCount: int
    currentPage: int
    pageLabels: List[int] = Field(..., description="Physical page number for each logical page")
    expiresAt: datetime
    remainingViews: int
    error: Optional[str] = None
