# services/api/core/page_images.py
"""Server-side PNG snapshots of selected pages, attached to notification emails."""
from __future__ import annotations

import logging
from typing import Dict, List

from core.errors import FetchError, RenderError
from core.page_renderer import PageRenderer
from core.pdf_engine import open_document
from core.pdf_fetcher import PdfFetcher
from core.surface import DrawingSurface

logger = logging.getLogger(__name__)

EMAIL_IMAGE_SCALE = 2.0


async def render_page_images(
    fetcher: PdfFetcher,
    pdf_url: str,
    pages: List[int],
    *,
    scale: float = EMAIL_IMAGE_SCALE,
    renderer: PageRenderer | None = None,
) -> Dict[int, bytes]:
    """
    Best effort: returns PNG bytes per physical page; pages that fail are
    logged and left out.
    """
    try:
        data = await fetcher.fetch_document_bytes(pdf_url)
        document = await open_document(data)
    except (FetchError, RenderError) as e:
        logger.warning(f"[page_images] Could not load {pdf_url} for email images: {e}")
        return {}

    renderer = renderer or PageRenderer()
    surface = DrawingSurface()
    images: Dict[int, bytes] = {}
    try:
        for page in pages:
            try:
                await renderer.render_page(document, page, scale, surface)
            except RenderError as e:
                logger.warning(f"[page_images] Failed to convert page {page}: {e}")
                continue
            images[page] = surface.to_png()
    finally:
        surface.release()
        document.close()

    logger.info(f"[page_images] Rendered {len(images)}/{len(pages)} pages for email")
    return images
