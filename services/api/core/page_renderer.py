# services/api/core/page_renderer.py
from __future__ import annotations

import asyncio
import logging
import math
from dataclasses import dataclass
from typing import List, Optional, Protocol, Tuple

from PIL import Image

from core.errors import RenderError
from core.pdf_engine import (
    COMPATIBLE_CONFIG,
    FORCED_CONFIG,
    SIMPLIFIED_CONFIG,
    STANDARD_CONFIG,
    RenderConfig,
)
from core.surface import DrawingSurface

logger = logging.getLogger(__name__)

# Initial attempt + two retries
MAX_RENDER_ATTEMPTS = 3
# Zoom factors for the retries. Changing the scale sidesteps pdfium's cached
# (blank) output for the same page/scale pair.
RETRY_ZOOM_FACTORS = (0.99, 1.01)
# How long after the very first paint of a document we re-check it
FIRST_PAINT_RECHECK_DELAY = 0.6


class RenderableDocument(Protocol):
    @property
    def page_count(self) -> int: ...

    def page_size(self, page_number: int) -> Tuple[float, float]: ...

    def load_page(self, page_number: int) -> None: ...

    async def rasterize(self, page_number: int, scale: float, config: RenderConfig) -> Image.Image: ...


@dataclass
class RenderResult:
    page_number: int
    zoom: float           # zoom actually used by the successful attempt
    attempts: int
    width: int
    height: int
    config: RenderConfig


def viewport_size(document: RenderableDocument, page_number: int, zoom: float) -> Tuple[int, int]:
    width_pt, height_pt = document.page_size(page_number)
    return max(1, math.ceil(width_pt * zoom)), max(1, math.ceil(height_pt * zoom))


class PageRenderer:
    """
    Rasterizes one page onto a DrawingSurface and verifies the result is not
    blank, retrying with perturbed zoom and the simplified render path.
    """

    def __init__(self, *, settle_delay: float = 0.0):
        # Pause between painting and sampling the surface
        self.settle_delay = settle_delay

    def _attempt_plan(
        self,
        zoom: float,
        first_render: bool,
        base_config: Optional[RenderConfig] = None,
    ) -> List[Tuple[float, RenderConfig]]:
        base = base_config or (COMPATIBLE_CONFIG if first_render else STANDARD_CONFIG)
        plan = [(zoom, base)]
        for factor in RETRY_ZOOM_FACTORS:
            plan.append((zoom * factor, SIMPLIFIED_CONFIG))
        return plan[:MAX_RENDER_ATTEMPTS]

    async def _paint(
        self,
        document: RenderableDocument,
        page_number: int,
        zoom: float,
        surface: DrawingSurface,
        config: RenderConfig,
    ) -> bool:
        width, height = viewport_size(document, page_number, zoom)
        surface.resize(width, height)

        frame = await document.rasterize(page_number, zoom, config)
        surface.paint(frame)

        if self.settle_delay:
            await asyncio.sleep(self.settle_delay)
        return surface.has_content()

    async def render_page(
        self,
        document: RenderableDocument,
        page_number: int,
        zoom: float,
        surface: DrawingSurface,
        *,
        first_render: bool = False,
        base_config: Optional[RenderConfig] = None,
    ) -> RenderResult:
        last_error: Optional[Exception] = None
        plan = self._attempt_plan(zoom, first_render, base_config)

        for attempt, (attempt_zoom, config) in enumerate(plan, start=1):
            try:
                has_content = await self._paint(document, page_number, attempt_zoom, surface, config)
            except RenderError as err:
                logger.warning(f"[renderer] Page {page_number} attempt {attempt} failed: {err}")
                last_error = err
                continue

            if has_content:
                if attempt > 1:
                    logger.info(f"[renderer] Page {page_number} recovered on attempt {attempt}")
                return RenderResult(
                    page_number=page_number,
                    zoom=attempt_zoom,
                    attempts=attempt,
                    width=surface.width,
                    height=surface.height,
                    config=config,
                )

            logger.warning(
                f"[renderer] Page {page_number} appears to be blank "
                f"(attempt {attempt}, zoom {attempt_zoom:.3f}), retrying"
            )

        detail = f": {last_error}" if last_error else " (blank output)"
        raise RenderError(
            f"Failed to render page {page_number} after {MAX_RENDER_ATTEMPTS} attempts{detail}",
            page_number=page_number,
            attempts=MAX_RENDER_ATTEMPTS,
        )

    async def reverify(
        self,
        document: RenderableDocument,
        page_number: int,
        zoom: float,
        surface: DrawingSurface,
    ) -> bool:
        """
        Deferred first-paint check. If the surface went (or stayed) blank,
        force a complete re-render with the print intent on the simplified path.
        """
        if surface.has_content():
            return True

        logger.warning(f"[renderer] First render verification failed for page {page_number}, forcing re-render")
        try:
            recovered = await self._paint(document, page_number, zoom, surface, FORCED_CONFIG)
        except RenderError as err:
            logger.error(f"[renderer] Forced re-render failed for page {page_number}: {err}")
            return False
        if recovered:
            logger.info("[renderer] Forced re-render completed")
        return recovered
