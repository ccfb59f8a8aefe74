# services/api/core/pdf_engine.py
"""
Thin wrapper around python-pdfium2.

- ensure_engine_ready(): idempotent, memoized engine initialisation
- open_document(): parse bytes into a PdfiumDocument
- PdfiumDocument.rasterize(): render a 1-based page to a PIL image

pdfium is not thread-safe, so every call into it goes through one
process-wide lock; rasterization itself runs in a worker thread so the event
loop stays responsive.
"""
from __future__ import annotations

import asyncio
import logging
import threading
from dataclasses import dataclass
from typing import Any, Dict, Tuple

from PIL import Image

from core.errors import RenderError

logger = logging.getLogger(__name__)

_engine: Any = None
_engine_lock = threading.Lock()
_PDFIUM_LOCK = threading.Lock()


@dataclass(frozen=True)
class RenderConfig:
    """
    accelerated: use the full-featured render path. Off = simplified path
                 (no image/path smoothing), the fallback when output is blank.
    intent:      "display" or "print" (pdfium optimize mode).
    draw_forms:  draw interactive form fields and annotations.
    """
    accelerated: bool = True
    intent: str = "print"
    draw_forms: bool = True


COMPATIBLE_CONFIG = RenderConfig(accelerated=False, intent="display", draw_forms=True)
STANDARD_CONFIG = RenderConfig(accelerated=True, intent="print", draw_forms=True)
SIMPLIFIED_CONFIG = RenderConfig(accelerated=False, intent="display", draw_forms=False)
FORCED_CONFIG = RenderConfig(accelerated=False, intent="print", draw_forms=True)


def _render_kwargs(config: RenderConfig) -> Dict[str, Any]:
    kwargs: Dict[str, Any] = {
        "may_draw_forms": config.draw_forms,
        "draw_annots": config.draw_forms,
        "fill_color": (255, 255, 255, 255),
    }
    if config.intent == "print":
        kwargs["optimize_mode"] = "print"
    if not config.accelerated:
        kwargs["no_smoothimage"] = True
        kwargs["no_smoothpath"] = True
    return kwargs


async def ensure_engine_ready():
    """Import pypdfium2 once; later calls return the memoized module."""
    global _engine
    if _engine is not None:
        return _engine
    with _engine_lock:
        if _engine is None:
            try:
                import pypdfium2 as pdfium
            except ImportError as exc:
                raise RenderError("pypdfium2 is required for PDF rendering") from exc
            _engine = pdfium
            logger.info("✓ PDF rendering engine ready (pypdfium2)")
    return _engine


class PdfiumDocument:
    """Navigable document. Page numbers are 1-based throughout."""

    def __init__(self, pdf: Any):
        self._pdf = pdf
        self._pages: Dict[int, Any] = {}
        self._closed = False

    @property
    def page_count(self) -> int:
        return len(self._pdf)

    def _page(self, page_number: int) -> Any:
        if self._closed:
            raise RenderError("Document is closed", page_number=page_number)
        if not 1 <= page_number <= self.page_count:
            raise RenderError(
                f"Page {page_number} is outside the document (1-{self.page_count})",
                page_number=page_number,
            )
        page = self._pages.get(page_number)
        if page is None:
            with _PDFIUM_LOCK:
                page = self._pdf[page_number - 1]
            self._pages[page_number] = page
        return page

    def load_page(self, page_number: int) -> None:
        """Pre-fetch a page (parses it and keeps it cached) without rendering."""
        self._page(page_number)

    def page_size(self, page_number: int) -> Tuple[float, float]:
        """Page (width, height) in PDF points."""
        page = self._page(page_number)
        with _PDFIUM_LOCK:
            width, height = page.get_size()
        return float(width), float(height)

    async def rasterize(self, page_number: int, scale: float, config: RenderConfig) -> Image.Image:
        page = self._page(page_number)
        kwargs = _render_kwargs(config)

        def _run() -> Image.Image:
            with _PDFIUM_LOCK:
                bitmap = page.render(scale=scale, **kwargs)
                return bitmap.to_pil().convert("RGB")

        try:
            return await asyncio.to_thread(_run)
        except RenderError:
            raise
        except Exception as exc:
            raise RenderError(
                f"Rasterization failed for page {page_number}: {exc}",
                page_number=page_number,
            ) from exc

    def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        with _PDFIUM_LOCK:
            for page in self._pages.values():
                page.close()
            self._pages.clear()
            self._pdf.close()


async def open_document(data: bytes | bytearray) -> PdfiumDocument:
    """Parse PDF bytes. pdfium gets its own immutable copy of the buffer."""
    pdfium = await ensure_engine_ready()
    payload = bytes(data)

    def _open() -> Any:
        with _PDFIUM_LOCK:
            return pdfium.PdfDocument(payload)

    try:
        pdf = await asyncio.to_thread(_open)
    except pdfium.PdfiumError as exc:
        raise RenderError(f"Failed to parse PDF document: {exc}") from exc
    return PdfiumDocument(pdf)
