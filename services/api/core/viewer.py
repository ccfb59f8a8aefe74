# services/api/core/viewer.py
"""
Viewer session: one open document, one drawing surface, one render at a time.

States:
    idle -> fetching_bytes -> document_loading -> ready <-> rendering
    any of the above -> error (fetch exhausted / unparseable document)
    any -> closed (close())

Guest viewers carry a page_map: logical page i (1-based) is physical page
page_map[i-1] of the source document. Navigation, thumbnails and the page
counter all work in logical pages.
"""
from __future__ import annotations

import asyncio
import logging
import uuid
from dataclasses import dataclass
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, List, Optional, Sequence, Set, Tuple

from core.errors import FetchError, RenderError
from core.page_renderer import FIRST_PAINT_RECHECK_DELAY, PageRenderer, RenderableDocument
from core.pdf_engine import SIMPLIFIED_CONFIG, STANDARD_CONFIG, open_document
from core.pdf_fetcher import PdfFetcher, ProxyRotation
from core.surface import DrawingSurface

logger = logging.getLogger(__name__)

DEFAULT_ZOOM = 1.5
ZOOM_STEP = 0.25
MIN_ZOOM = 0.5
MAX_ZOOM = 3.0

MAX_FETCH_RETRIES = 3
PREFETCH_PAGES = 2
THUMBNAIL_LIMIT = 20
THUMBNAIL_SCALE = 0.2
RECOVERY_ZOOM_FACTOR = 1.01
PAN_BOTTOM_SLACK = 50

DEFAULT_VIEWPORT: Tuple[int, int] = (1024, 768)

DocumentOpener = Callable[[bytearray], Awaitable[RenderableDocument]]


class ViewerState(str, Enum):
    IDLE = "idle"
    FETCHING_BYTES = "fetching_bytes"
    DOCUMENT_LOADING = "document_loading"
    READY = "ready"
    RENDERING = "rendering"
    ERROR = "error"
    CLOSED = "closed"


@dataclass
class PanOffset:
    x: float = 0.0
    y: float = 0.0


def _clamp(value: float, low: float, high: float) -> float:
    return max(low, min(high, value))


def _close_document(document: RenderableDocument) -> None:
    close = getattr(document, "close", None)
    if close is not None:
        close()


class ViewerSession:
    def __init__(
        self,
        source_url: str,
        *,
        fetcher: PdfFetcher,
        renderer: Optional[PageRenderer] = None,
        rotation: Optional[ProxyRotation] = None,
        document_opener: DocumentOpener = open_document,
        target_page: Optional[int] = None,
        zoom: float = DEFAULT_ZOOM,
        page_map: Optional[Sequence[int]] = None,
        viewport: Tuple[int, int] = DEFAULT_VIEWPORT,
        document_name: str = "",
        owner: Optional[str] = None,
        viewer_id: Optional[str] = None,
        thumbnails: bool = True,
        first_paint_delay: float = FIRST_PAINT_RECHECK_DELAY,
    ):
        if not source_url:
            raise ValueError("source_url is required")
        if page_map is not None and len(page_map) == 0:
            raise ValueError("page_map must not be empty")

        self.viewer_id = viewer_id or uuid.uuid4().hex
        self.original_url = source_url
        self.current_url = source_url
        self.document_name = document_name
        self.owner = owner

        self.fetcher = fetcher
        self.renderer = renderer or PageRenderer()
        self.rotation = rotation or ProxyRotation()
        self._open_document = document_opener

        self.page_map: Optional[List[int]] = list(page_map) if page_map is not None else None
        self.target_page = target_page
        self.viewport = viewport
        self.zoom_level = _clamp(zoom, MIN_ZOOM, MAX_ZOOM)
        self.thumbnails_enabled = thumbnails
        self.first_paint_delay = first_paint_delay

        self.state = ViewerState.IDLE
        self.document: Optional[RenderableDocument] = None
        self.document_bytes: Optional[bytearray] = None
        self.surface = DrawingSurface()
        self.page_count = 0
        self.current_page = 0
        self.pan = PanOffset()
        self.retry_count = 0
        self.navigation_complete = False
        self.transition: Optional[str] = None
        self.error_message: Optional[str] = None
        self.error_kind: Optional[str] = None
        self.notices: List[str] = []
        self.thumbnails: Dict[int, bytes] = {}

        self._busy = False
        self._first_render = True
        self._tasks: Set[asyncio.Task] = set()

    # ---------- Introspection ------------------------------------------------

    @property
    def busy(self) -> bool:
        return self._busy

    @property
    def closed(self) -> bool:
        return self.state == ViewerState.CLOSED

    @property
    def background_tasks(self) -> List[asyncio.Task]:
        return list(self._tasks)

    @property
    def can_pan(self) -> bool:
        return self.surface.height > self.viewport[1]

    @property
    def page_labels(self) -> List[int]:
        """Physical page number shown for each logical page."""
        if self.page_map is not None:
            return list(self.page_map)
        return list(range(1, self.page_count + 1))

    def physical_page(self, logical_page: int) -> int:
        if self.page_map is None:
            return logical_page
        if not 1 <= logical_page <= len(self.page_map):
            raise RenderError(
                f"Page {logical_page} is outside the shared selection (1-{len(self.page_map)})",
                page_number=logical_page,
            )
        return self.page_map[logical_page - 1]

    def frame_png(self) -> bytes:
        return self.surface.to_png()

    def snapshot(self) -> Dict[str, Any]:
        return {
            "viewerId": self.viewer_id,
            "state": self.state.value,
            "documentName": self.document_name,
            "sourceUrl": self.original_url,
            "currentUrl": self.current_url,
            "pageCount": self.page_count,
            "currentPage": self.current_page,
            "pageLabels": self.page_labels,
            "zoom": self.zoom_level,
            "pan": {"x": self.pan.x, "y": self.pan.y},
            "canPan": self.can_pan,
            "frameSize": {"width": self.surface.width, "height": self.surface.height},
            "busy": self._busy,
            "retryCount": self.retry_count,
            "navigationComplete": self.navigation_complete,
            "transition": self.transition,
            "error": self.error_message,
            "errorKind": self.error_kind,
            "notices": list(self.notices),
            "thumbnails": sorted(self.thumbnails),
        }

    # ---------- Lifecycle ----------------------------------------------------

    async def open(self) -> None:
        """Fetch, parse and render the initial page. Ends in READY or ERROR."""
        if self.state == ViewerState.CLOSED:
            raise RuntimeError("Viewer is closed")
        if self._busy:
            logger.info(f"[viewer {self.viewer_id}] open() ignored, already busy")
            return

        self._busy = True
        try:
            data = await self._fetch_with_fallback()
            if data is None or self.closed:
                return
            initial_page = await self._load_document(data)
            if initial_page is None or self.closed:
                return
            await self._render(initial_page)
        finally:
            self._busy = False

        if self.state == ViewerState.READY:
            self._start_thumbnails()

    async def retry(self) -> bool:
        """User-initiated retry: clears the retry counter and alternates direct/proxied."""
        if self.state == ViewerState.CLOSED:
            raise RuntimeError("Viewer is closed")
        if self._busy:
            return False

        logger.info(f"[viewer {self.viewer_id}] Manual retry requested")
        self._cancel_tasks()
        self._drop_document()
        self.retry_count = 0
        self.error_message = None
        self.error_kind = None
        self._first_render = True
        if self.rotation.is_proxied(self.current_url):
            self.current_url = self.original_url
        else:
            self.current_url = self.rotation.proxied_url(self.original_url)
        self.state = ViewerState.IDLE

        await self.open()
        return True

    def close(self) -> None:
        """
        Synchronous teardown: cancels pending timers and tasks, releases the
        document and shrinks the surface. Safe to call more than once.
        """
        if self.state == ViewerState.CLOSED:
            return
        self._cancel_tasks()
        self._drop_document()
        self.surface.release()
        self.state = ViewerState.CLOSED
        logger.info(f"[viewer {self.viewer_id}] Closed")

    # ---------- Navigation ---------------------------------------------------

    async def go_to_page(self, page: int) -> bool:
        """
        Returns False when the request was dropped because a render is in
        flight (or nothing is loaded yet).
        """
        if self._busy or self.state != ViewerState.READY or self.document is None:
            logger.info(f"[viewer {self.viewer_id}] Navigation to page {page} dropped (state={self.state.value})")
            return False

        target = int(_clamp(page, 1, self.page_count))
        if target == self.current_page:
            return True

        self._busy = True
        try:
            await self._render(target)
        finally:
            self._busy = False
        return True

    async def next_page(self) -> bool:
        return await self.go_to_page(self.current_page + 1)

    async def previous_page(self) -> bool:
        return await self.go_to_page(self.current_page - 1)

    async def set_zoom(self, zoom: float) -> bool:
        if self._busy or self.state not in (ViewerState.READY, ViewerState.IDLE):
            return False

        new_zoom = round(_clamp(zoom, MIN_ZOOM, MAX_ZOOM), 2)
        if new_zoom == self.zoom_level:
            return True
        self.zoom_level = new_zoom
        self.pan = PanOffset()

        if self.document is None or not self.current_page:
            return True
        self._busy = True
        try:
            await self._render(self.current_page)
        finally:
            self._busy = False
        return True

    async def zoom_in(self) -> bool:
        return await self.set_zoom(self.zoom_level + ZOOM_STEP)

    async def zoom_out(self) -> bool:
        return await self.set_zoom(self.zoom_level - ZOOM_STEP)

    async def reset_zoom(self) -> bool:
        return await self.set_zoom(DEFAULT_ZOOM)

    def pan_by(self, dx: float, dy: float) -> PanOffset:
        if not self.can_pan:
            return self.pan
        return self.pan_to(self.pan.x + dx, self.pan.y + dy)

    def pan_to(self, x: float, y: float) -> PanOffset:
        container_w, container_h = self.viewport
        content_w, content_h = self.surface.size

        max_x = max(0.0, container_w / 2 - content_w / 2)
        min_x = min(0.0, container_w - content_w + max_x)
        max_y = float(container_h)
        min_y = min(0.0, container_h - content_h - PAN_BOTTOM_SLACK)

        self.pan = PanOffset(x=_clamp(x, min_x, max_x), y=_clamp(y, min_y, max_y))
        return self.pan

    def thumbnail_png(self, logical_page: int) -> Optional[bytes]:
        return self.thumbnails.get(logical_page)

    # ---------- Internals ----------------------------------------------------

    async def _fetch_with_fallback(self) -> Optional[bytearray]:
        self.state = ViewerState.FETCHING_BYTES
        while True:
            try:
                data = await self.fetcher.fetch_document_bytes(self.current_url)
            except FetchError as err:
                if self.closed:
                    return None
                logger.warning(f"[viewer {self.viewer_id}] Fetch failed (retry {self.retry_count}): {err}")
                if self.retry_count >= MAX_FETCH_RETRIES:
                    self._fail(err.user_message, kind=err.kind)
                    return None

                self.retry_count += 1
                if self.current_url != self.original_url:
                    self.rotation.handle_failure(self.current_url, self.original_url)
                    self.current_url = self.original_url
                    self.notices.append("Having trouble loading the document. Trying direct access...")
                else:
                    self.current_url = self.rotation.proxied_url(self.original_url)
                    self.notices.append("Having trouble loading the document. Trying alternate method...")
                continue

            if self.closed:
                return None
            # Replace wholesale; earlier attempts never leave a partial buffer behind
            self.document_bytes = data
            return data

    async def _load_document(self, data: bytearray) -> Optional[int]:
        self.state = ViewerState.DOCUMENT_LOADING
        try:
            document = await self._open_document(data)
        except RenderError as err:
            if self.closed:
                return None
            logger.error(f"[viewer {self.viewer_id}] ✗ Document could not be parsed: {err}")
            self._fail("The document could not be opened. It may be damaged or not a PDF.", kind="parse")
            return None
        if self.closed:
            # Torn down while parsing; nothing else will release this document
            _close_document(document)
            return None

        self.document = document
        self.page_count = len(self.page_map) if self.page_map is not None else document.page_count
        if self.page_count == 0:
            self._fail("The document has no pages.", kind="parse")
            return None

        for logical in range(1, min(PREFETCH_PAGES, self.page_count) + 1):
            try:
                document.load_page(self.physical_page(logical))
            except RenderError as err:
                logger.warning(f"[viewer {self.viewer_id}] Could not pre-fetch page {logical}: {err}")

        self.state = ViewerState.READY
        logger.info(f"[viewer {self.viewer_id}] ✓ Document loaded: {self.page_count} pages")

        target = self.target_page
        if target is not None and 1 <= target <= self.page_count:
            return target
        return 1

    async def _render(self, logical_page: int) -> None:
        """Render with recovery. Caller holds the busy flag."""
        assert self.document is not None

        self.state = ViewerState.RENDERING
        self.transition = "fade-out"
        # Once a new render begins the previous page must not stay visible
        self.surface.fill_white()

        first_render = self._first_render
        try:
            await self.renderer.render_page(
                self.document,
                self.physical_page(logical_page),
                self.zoom_level,
                self.surface,
                first_render=first_render,
            )
        except RenderError as err:
            if not self.closed:
                await self._recover(logical_page, err)
        else:
            if not self.closed:
                self._complete(logical_page)
        finally:
            if self.state == ViewerState.RENDERING:
                self.state = ViewerState.READY

    async def _recover(self, logical_page: int, error: RenderError) -> None:
        logger.error(f"[viewer {self.viewer_id}] Error rendering page {logical_page}: {error}")
        self.notices.append(f"Failed to render page {logical_page}. Trying again...")

        assert self.document is not None
        try:
            await self.renderer.render_page(
                self.document,
                self.physical_page(logical_page),
                self.zoom_level * RECOVERY_ZOOM_FACTOR,
                self.surface,
                base_config=SIMPLIFIED_CONFIG,
            )
        except RenderError as retry_err:
            logger.error(f"[viewer {self.viewer_id}] Retry for page {logical_page} failed: {retry_err}")
        else:
            if self.closed:
                return
            self._complete(logical_page)
            return

        if self.closed:
            return

        if logical_page < self.page_count:
            self.notices.append(f"Page {logical_page} could not be displayed. Skipping to page {logical_page + 1}.")
            await self._render(logical_page + 1)
            return

        self.transition = None
        self.notices.append(f"Page {logical_page} could not be displayed.")
        if not self.current_page:
            # Nothing was ever shown and there is nowhere left to go
            self._fail("Unable to display this document.", kind="render")
            return

        # Stay on the page that was showing before the failed navigation
        try:
            await self.renderer.render_page(
                self.document,
                self.physical_page(self.current_page),
                self.zoom_level,
                self.surface,
            )
        except RenderError as restore_err:
            logger.error(f"[viewer {self.viewer_id}] Could not restore page {self.current_page}: {restore_err}")

    def _complete(self, logical_page: int) -> None:
        self.current_page = logical_page
        self.pan = PanOffset()
        self.transition = "fade-in"
        if self.target_page is not None and logical_page == self.target_page:
            self.navigation_complete = True

        if self._first_render:
            self._first_render = False
            self._spawn(self._verify_first_paint(logical_page))

    async def _verify_first_paint(self, logical_page: int) -> None:
        await asyncio.sleep(self.first_paint_delay)
        if self.closed or self.document is None or self._busy or self.current_page != logical_page:
            return

        self._busy = True
        try:
            await self.renderer.reverify(
                self.document,
                self.physical_page(logical_page),
                self.zoom_level,
                self.surface,
            )
        finally:
            self._busy = False

    def _start_thumbnails(self) -> None:
        if self.thumbnails_enabled and self.document is not None:
            self._spawn(self._generate_thumbnails())

    async def _generate_thumbnails(self) -> None:
        limit = min(self.page_count, THUMBNAIL_LIMIT)
        for logical in range(1, limit + 1):
            document = self.document
            if document is None:
                return
            try:
                frame = await document.rasterize(self.physical_page(logical), THUMBNAIL_SCALE, STANDARD_CONFIG)
            except RenderError as err:
                logger.warning(f"[viewer {self.viewer_id}] Thumbnail for page {logical} failed: {err}")
                continue

            thumb = DrawingSurface()
            thumb.paint(frame)
            self.thumbnails[logical] = thumb.to_png()
            thumb.release()
        logger.info(f"[viewer {self.viewer_id}] Generated {len(self.thumbnails)} thumbnails")

    def _fail(self, message: str, *, kind: str) -> None:
        self.state = ViewerState.ERROR
        self.error_message = message
        self.error_kind = kind
        self.transition = None

    def _spawn(self, coro: Awaitable[None]) -> None:
        task = asyncio.ensure_future(coro)
        self._tasks.add(task)
        task.add_done_callback(self._on_task_done)

    def _on_task_done(self, task: asyncio.Task) -> None:
        self._tasks.discard(task)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            logger.error(f"[viewer {self.viewer_id}] Background task failed: {exc}", exc_info=exc)

    def _cancel_tasks(self) -> None:
        for task in list(self._tasks):
            task.cancel()
        self._tasks.clear()

    def _drop_document(self) -> None:
        if self.document is not None:
            _close_document(self.document)
        self.document = None
        self.document_bytes = None
        self.thumbnails.clear()
        self.page_count = 0
        self.current_page = 0
        self.pan = PanOffset()
        self.navigation_complete = False
