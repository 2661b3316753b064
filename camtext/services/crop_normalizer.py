"""Crop extraction and fixed-shape normalization for the recognition model."""
from __future__ import annotations

import logging
import math
from typing import List, Optional, Sequence, Tuple

import numpy as np

from ..core.entities import BoundingBox, Crop, ImageSize, PixelBBox
from ..core.exceptions import DegenerateCropError
from ..utils.geometry import box_to_pixels
from ..utils.image_utils import resize_nearest

logger = logging.getLogger(__name__)

DEFAULT_TARGET_SIZE = (32, 128)


def _round_half_up(value: float) -> int:
    return int(math.floor(value + 0.5))


def fit_dimensions(height: int, width: int, target_size: Tuple[int, int] = DEFAULT_TARGET_SIZE) -> Tuple[int, int]:
    """Aspect-preserving (height, width) that fits inside target_size.

    When the region is narrower than the target aspect the height is pinned
    to the target height, otherwise the width is pinned to the target width.
    """
    target_h, target_w = target_size
    if height <= 0 or width <= 0:
        raise DegenerateCropError(f"Cannot fit a {width}x{height} region")
    target_aspect = target_w / target_h
    if target_aspect * height > width:
        new_h = target_h
        new_w = min(target_w, _round_half_up(target_h * width / height))
    else:
        new_w = target_w
        new_h = min(target_h, _round_half_up(target_w * height / width))
    return max(1, new_h), max(1, new_w)


def pad_to_target(image: np.ndarray, target_size: Tuple[int, int]) -> np.ndarray:
    """Zero-pad on the right and bottom so the image is exactly target_size."""
    target_h, target_w = target_size
    channels = image.shape[2:] if image.ndim == 3 else ()
    out = np.zeros((target_h, target_w) + tuple(channels), dtype=image.dtype)
    h, w = image.shape[:2]
    out[:h, :w] = image
    return out


class CropNormalizer:
    """Extracts one sub-image per box and resizes/pads it to the recognition input shape."""

    def __init__(self, target_size: Tuple[int, int] = DEFAULT_TARGET_SIZE):
        self.target_size = tuple(target_size)

    def pixel_bbox(self, source_image: np.ndarray, box: BoundingBox,
                   canvas_size: Optional[ImageSize] = None) -> PixelBBox:
        image_size = ImageSize(*source_image.shape[:2])
        return box_to_pixels(box, canvas_size or image_size, image_size)

    def resize_region(self, region: np.ndarray) -> np.ndarray:
        """Nearest-neighbour resize of an already cropped region, then pad."""
        h, w = region.shape[:2]
        new_h, new_w = fit_dimensions(h, w, self.target_size)
        resized = resize_nearest(region, (new_h, new_w))
        return pad_to_target(resized, self.target_size)

    def normalize(self, source_image: np.ndarray, box: BoundingBox,
                  target_size: Optional[Tuple[int, int]] = None,
                  canvas_size: Optional[ImageSize] = None) -> np.ndarray:
        """Crop the box out of source_image and bring it to target_size.

        Args:
            source_image: H x W (x C) source pixels
            box: Normalized box relative to the detection canvas
            target_size: (height, width), defaults to the normalizer's target
            canvas_size: Detection canvas dimensions; None when the source is the canvas

        Returns:
            Raw pixel buffer of exactly target_size, same dtype and channels as the source

        Raises:
            DegenerateCropError: If the box covers no pixels.
        """
        if target_size is not None and tuple(target_size) != self.target_size:
            return CropNormalizer(target_size).normalize(source_image, box, canvas_size=canvas_size)
        bbox = self.pixel_bbox(source_image, box, canvas_size)
        return self._normalize_bbox(source_image, bbox, box.id)

    def _normalize_bbox(self, source_image: np.ndarray, bbox: PixelBBox, box_id: int) -> np.ndarray:
        if bbox.width <= 0 or bbox.height <= 0:
            raise DegenerateCropError(f"Box {box_id} maps to a {bbox.width}x{bbox.height} crop")
        region = source_image[bbox.y:bbox.y + bbox.height, bbox.x:bbox.x + bbox.width]
        if region.size == 0:
            raise DegenerateCropError(f"Box {box_id} lies outside the source image")
        return self.resize_region(region)

    def crop(self, source_image: np.ndarray, box: BoundingBox,
             canvas_size: Optional[ImageSize] = None,
             report_size: Optional[ImageSize] = None) -> Crop:
        """Cut and normalize one box.

        ``report_size`` is the size of the image the caller was given when
        source_image is a downscaled copy of it; the crop's ``pixel_bbox`` is
        expressed in that image's pixels.
        """
        bbox = self.pixel_bbox(source_image, box, canvas_size)
        buffer = self._normalize_bbox(source_image, bbox, box.id)
        if report_size is not None and report_size != ImageSize(*source_image.shape[:2]):
            bbox = box_to_pixels(box, canvas_size or ImageSize(*source_image.shape[:2]), report_size)
        return Crop(buffer=buffer, source_box=box, pixel_bbox=bbox)

    def normalize_all(self, source_image: np.ndarray, boxes: Sequence[BoundingBox],
                      canvas_size: Optional[ImageSize] = None,
                      report_size: Optional[ImageSize] = None) -> Tuple[List[Crop], int]:
        """Build crops for every usable box; degenerate boxes are logged and skipped.

        Returns:
            (crops in box order, number of skipped boxes)
        """
        crops: List[Crop] = []
        skipped = 0
        for box in boxes:
            try:
                crops.append(self.crop(source_image, box, canvas_size, report_size))
            except DegenerateCropError as e:
                skipped += 1
                logger.debug(f"Skipping crop: {e}")
        if skipped:
            logger.info(f"Skipped {skipped} degenerate crops out of {len(boxes)}")
        return crops, skipped
