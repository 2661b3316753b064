"""Heatmap to text-region box extraction."""
from __future__ import annotations

import logging
from typing import List, Tuple

import cv2
import numpy as np

from ..core.entities import BoundingBox, ImageSize, Rect
from ..core.exceptions import ShapeMismatch
from ..utils.geometry import GeometryTransform

logger = logging.getLogger(__name__)


class HeatmapBoxExtractor:
    """Binarizes a probability heatmap and turns its connected components into boxes.

    The pipeline is threshold, 2x2 opening, external contours, bounding
    rectangles, noise floor, then geometric expansion. Boxes are emitted in
    reverse order of contour discovery; consumers must associate them by
    ``BoundingBox.id``.
    """

    def __init__(self, threshold: int = 77, min_box_side: int = 2, offset_ratio: float = 1.8):
        self.threshold = threshold
        self.min_box_side = min_box_side
        self.transform = GeometryTransform(offset_ratio)
        self._kernel = np.ones((2, 2), dtype=np.uint8)

    def binarize(self, heatmap: np.ndarray, image_size: ImageSize) -> np.ndarray:
        """Scale probabilities to 8-bit, threshold and open the mask.

        Raises:
            ShapeMismatch: If the heatmap length differs from height * width.
        """
        values = np.asarray(heatmap)
        if values.size != image_size.area:
            raise ShapeMismatch(
                f"Heatmap has {values.size} values, expected "
                f"{image_size.height}x{image_size.width}={image_size.area}"
            )
        raster = values.reshape(image_size.height, image_size.width).astype(np.float32)
        gray = np.clip(np.floor(raster * 255.0), 0, 255).astype(np.uint8)
        _, mask = cv2.threshold(gray, self.threshold, 255, cv2.THRESH_BINARY)
        return cv2.morphologyEx(mask, cv2.MORPH_OPEN, self._kernel)

    def find_indexed_rects(self, heatmap: np.ndarray, image_size: ImageSize) -> List[Tuple[int, Rect]]:
        """(contour index, rectangle) for contours above the noise floor.

        The index counts every external contour in discovery order, including
        those dropped by the noise floor, and becomes the box id.
        """
        mask = self.binarize(heatmap, image_size)
        contours, _ = cv2.findContours(mask, cv2.RETR_EXTERNAL, cv2.CHAIN_APPROX_SIMPLE)
        found = []
        for index, contour in enumerate(contours):
            x, y, w, h = cv2.boundingRect(contour)
            if w > self.min_box_side and h > self.min_box_side:
                found.append((index, Rect(int(x), int(y), int(w), int(h))))
        return found

    def find_rects(self, heatmap: np.ndarray, image_size: ImageSize) -> List[Rect]:
        """Bounding rectangles of external contours above the noise floor, in discovery order."""
        return [rect for _, rect in self.find_indexed_rects(heatmap, image_size)]

    def extract(self, heatmap: np.ndarray, image_size: ImageSize) -> List[BoundingBox]:
        """Extract expanded, normalized boxes from a heatmap.

        Args:
            heatmap: Probabilities in [0, 1], any shape holding height*width values
            image_size: Declared heatmap dimensions

        Returns:
            Boxes in reverse-of-discovery order; each id is its contour index

        Raises:
            ShapeMismatch: If the heatmap length differs from height * width.
        """
        boxes: List[BoundingBox] = []
        for box_id, rect in self.find_indexed_rects(heatmap, image_size):
            boxes.insert(0, self.transform.expand(rect, image_size, box_id))
        logger.debug(f"Extracted {len(boxes)} boxes from {image_size.height}x{image_size.width} heatmap")
        return boxes
