# services/api/core/surface.py
from __future__ import annotations

import io
from typing import Tuple

from PIL import Image

WHITE = (255, 255, 255)

# Channel value below which a pixel counts as "ink"
NEAR_WHITE_THRESHOLD = 240

# Quadrant centres and the true centre, as fractions of (width, height)
CHECK_POINTS: Tuple[Tuple[float, float], ...] = (
    (0.25, 0.25),
    (0.5, 0.5),
    (0.75, 0.75),
    (0.5, 0.25),
    (0.25, 0.75),
)
PATCH_SIZE = 10
SWEEP_STEP = 200  # every Nth pixel in the fallback sweep


class DrawingSurface:
    """
    Off-screen RGB raster that a viewer paints pages onto.

    Resizing discards the previous contents (like a canvas), and the surface
    is filled white before and after every resize so nothing from the prior
    page can show through.
    """

    def __init__(self, width: int = 1, height: int = 1):
        self.image = Image.new("RGB", (max(1, width), max(1, height)), WHITE)
        self.released = False

    @property
    def width(self) -> int:
        return self.image.width

    @property
    def height(self) -> int:
        return self.image.height

    @property
    def size(self) -> Tuple[int, int]:
        return self.image.size

    def fill_white(self) -> None:
        self.image.paste(WHITE, (0, 0, self.width, self.height))

    def resize(self, width: int, height: int) -> None:
        self.fill_white()
        size = (max(1, int(width)), max(1, int(height)))
        if size != self.image.size:
            self.image = Image.new("RGB", size, WHITE)
        self.fill_white()

    def paint(self, frame: Image.Image) -> None:
        """Copy a rasterized frame onto the surface at the origin."""
        if frame.size != self.image.size:
            self.resize(*frame.size)
        self.image.paste(frame.convert("RGB"), (0, 0))

    def has_content(self) -> bool:
        return has_visible_content(self.image)

    def to_png(self) -> bytes:
        bio = io.BytesIO()
        self.image.save(bio, format="PNG")
        return bio.getvalue()

    def release(self) -> None:
        self.image = Image.new("RGB", (1, 1), WHITE)
        self.released = True


def _patch_has_ink(image: Image.Image, box: Tuple[int, int, int, int], threshold: int) -> bool:
    if box[2] <= box[0] or box[3] <= box[1]:
        return False
    extrema = image.crop(box).getextrema()  # ((rmin, rmax), (gmin, gmax), (bmin, bmax))
    return any(low < threshold for low, _high in extrema)


def has_visible_content(
    image: Image.Image,
    *,
    threshold: int = NEAR_WHITE_THRESHOLD,
    patch: int = PATCH_SIZE,
    sweep_step: int = SWEEP_STEP,
) -> bool:
    """
    Blank-page heuristic. Samples small patches at fixed interior points; if
    they are all near-white, sweeps every `sweep_step`-th pixel of the image.
    """
    rgb = image if image.mode == "RGB" else image.convert("RGB")
    width, height = rgb.size

    for fx, fy in CHECK_POINTS:
        x0 = int(width * fx)
        y0 = int(height * fy)
        box = (x0, y0, min(width, x0 + patch), min(height, y0 + patch))
        if _patch_has_ink(rgb, box, threshold):
            return True

    raw = rgb.tobytes()
    stride = 3 * sweep_step
    for i in range(0, len(raw) - 2, stride):
        if raw[i] < threshold or raw[i + 1] < threshold or raw[i + 2] < threshold:
            return True
    return False
