"""
Pydantic schemas for viewer sessions.
"""
from typing import List, Literal, Optional

from pydantic import BaseModel, Field


class ViewerOpen(BaseModel):
    """Open a viewer on a document the caller has access to."""
    pdfUrl: str = Field(..., min_length=1, description="URL of the PDF document")
    documentName: Optional[str] = Field(None, description="Display label")
    targetPage: Optional[int] = Field(None, ge=1, description="Page to land on once loaded")
    zoom: Optional[float] = Field(None, ge=0.5, le=3.0, description="Initial zoom")


class NavigateRequest(BaseModel):
    page: int = Field(..., description="1-based (logical) page number; clamped to the page range")


class ZoomRequest(BaseModel):
    action: Optional[Literal["in", "out", "reset"]] = None
    level: Optional[float] = Field(None, description="Absolute zoom, clamped to [0.5, 3.0]")


class PanRequest(BaseModel):
    dx: float = 0.0
    dy: float = 0.0


class PanOut(BaseModel):
    x: float
    y: float


class FrameSize(BaseModel):
    width: int
    height: int


class ViewerOut(BaseModel):
    """Serializable snapshot of a viewer session."""
    viewerId: str
    state: str
    documentName: str
    sourceUrl: str
    currentUrl: str
    pageCount: int
    currentPage: int
    pageLabels: List[int]
    zoom: float
    pan: PanOut
    canPan: bool
    frameSize: FrameSize
    busy: bool
    retryCount: int
    navigationComplete: bool
    transition: Optional[str] = None
    error: Optional[str] = None
    errorKind: Optional[str] = None
    notices: List[str] = Field(default_factory=list)
    thumbnails: List[int] = Field(default_factory=list, description="Pages with a thumbnail ready")
