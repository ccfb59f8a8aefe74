# services/api/core/viewer_registry.py
from __future__ import annotations

import logging
import time
from typing import Callable, List, Optional, Tuple

from cachetools import TTLCache

from core.viewer import ViewerSession

logger = logging.getLogger(__name__)


class ViewerRegistry(TTLCache):
    """
    Open viewer sessions keyed by viewer id.

    Idle viewers expire after `ttl` seconds; when the registry is full the
    least recently inserted viewer is evicted. Either way the viewer is
    closed so its document and surface are released.
    """

    def __init__(self, maxsize: int, ttl: float, timer: Callable[[], float] = time.monotonic):
        super().__init__(maxsize=maxsize, ttl=ttl, timer=timer)

    def popitem(self) -> Tuple[str, ViewerSession]:
        key, viewer = super().popitem()
        logger.info(f"[registry] Evicting viewer {key}")
        viewer.close()
        return key, viewer

    def expire(self, time=None) -> List[Tuple[str, ViewerSession]]:
        expired = super().expire(time)
        for key, viewer in expired or ():
            logger.info(f"[registry] Viewer {key} expired")
            viewer.close()
        return expired

    def add(self, viewer: ViewerSession) -> ViewerSession:
        self[viewer.viewer_id] = viewer
        return viewer

    def lookup(self, viewer_id: str) -> Optional[ViewerSession]:
        """Fetch a live viewer and refresh its idle timer."""
        viewer = self.get(viewer_id)
        if viewer is not None:
            self[viewer_id] = viewer
        return viewer

    def remove(self, viewer_id: str) -> bool:
        viewer = self.pop(viewer_id, None)
        if viewer is None:
            return False
        viewer.close()
        return True

    def close_all(self) -> None:
        self.expire()
        for viewer_id in list(self.keys()):
            self.remove(viewer_id)
