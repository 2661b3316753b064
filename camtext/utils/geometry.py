"""Geometry and bounding box utilities."""
from typing import Tuple

from ..core.entities import BoundingBox, BoxStyle, ImageSize, PixelBBox, Rect

# Stroke colors cycled by box id so identical heatmaps render identically.
BOX_PALETTE = (
    "#e6194b", "#3cb44b", "#ffe119", "#4363d8", "#f58231", "#911eb4",
    "#46f0f0", "#f032e6", "#bcf60c", "#fabebe", "#008080", "#e6beff",
)


def clamp(value: float, low: float, high: float) -> float:
    """Clamp value into [low, high]."""
    return max(low, min(value, high))


def box_style(box_id: int) -> BoxStyle:
    """Deterministic display style for a box id."""
    return BoxStyle(stroke=BOX_PALETTE[box_id % len(BOX_PALETTE)])


def expansion_offset(width: float, height: float, ratio: float = 1.8) -> float:
    """Margin grown around a contour: area over perimeter, scaled by ratio."""
    if width + height <= 0:
        return 0.0
    return (width * height * ratio) / (2 * (width + height))


def expand_span(start: float, length: float, limit: float, offset: float) -> Tuple[float, float]:
    """Expand a 1-D span by offset on both sides, clamped to [0, limit], with a -1 bias."""
    lo = clamp(start - offset, 0, limit) - 1
    hi = clamp(lo + length + 2 * offset, 0, limit) - 1
    return lo, hi


class GeometryTransform:
    """Maps raw contour rectangles to normalized, padded quadrilateral boxes."""

    def __init__(self, offset_ratio: float = 1.8):
        self.offset_ratio = offset_ratio

    def expand_pixels(self, rect: Rect, image_size: ImageSize) -> Tuple[float, float, float, float]:
        """Expanded rectangle (x1, y1, x2, y2) in heatmap pixels, before normalization."""
        offset = expansion_offset(rect.width, rect.height, self.offset_ratio)
        x1, x2 = expand_span(rect.x, rect.width, image_size.width, offset)
        y1, y2 = expand_span(rect.y, rect.height, image_size.height, offset)
        return x1, y1, x2, y2

    def expand(self, rect: Rect, image_size: ImageSize, box_id: int = 0) -> BoundingBox:
        """Expand a contour rectangle and normalize it to image fractions.

        Args:
            rect: Contour bounding rectangle in heatmap pixels
            image_size: Heatmap dimensions
            box_id: Identifier carried by the resulting box

        Returns:
            BoundingBox with corners ordered TL, TR, BR, BL inside [0, 1]
        """
        x1, y1, x2, y2 = self.expand_pixels(rect, image_size)
        w, h = float(image_size.width), float(image_size.height)
        nx1, nx2 = clamp(x1 / w, 0.0, 1.0), clamp(x2 / w, 0.0, 1.0)
        ny1, ny2 = clamp(y1 / h, 0.0, 1.0), clamp(y2 / h, 0.0, 1.0)
        corners = ((nx1, ny1), (nx2, ny1), (nx2, ny2), (nx1, ny2))
        return BoundingBox(id=box_id, corners=corners, style=box_style(box_id))


def box_to_pixels(box: BoundingBox, canvas: ImageSize, image: ImageSize) -> PixelBBox:
    """Map a normalized box to integer pixels of the source image.

    The box is first placed on the detection canvas, then carried to the
    source image with per-axis scale factors ``image / canvas``.
    """
    scale_x = image.width / canvas.width
    scale_y = image.height / canvas.height

    left = box.x1 * canvas.width * scale_x
    top = box.y1 * canvas.height * scale_y
    right = box.x2 * canvas.width * scale_x
    bottom = box.y2 * canvas.height * scale_y

    x = int(clamp(round(left), 0, image.width))
    y = int(clamp(round(top), 0, image.height))
    x_end = int(clamp(round(right), 0, image.width))
    y_end = int(clamp(round(bottom), 0, image.height))
    return PixelBBox(x=x, y=y, width=x_end - x, height=y_end - y)
