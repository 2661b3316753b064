"""Image processing utilities."""

import cv2
import numpy as np
from typing import Tuple

def resize_to_max_dimension(image: np.ndarray, max_dimension: int) -> np.ndarray:
    """Downscale image so its longest side is at most max_dimension, keeping aspect ratio."""
    h, w = image.shape[:2]

    if max(h, w) <= max_dimension:
        return image

    scale = max_dimension / max(h, w)
    new_w = max(1, int(w * scale))
    new_h = max(1, int(h * scale))

    return cv2.resize(image, (new_w, new_h), interpolation=cv2.INTER_AREA)

def resize_nearest(image: np.ndarray, size: Tuple[int, int]) -> np.ndarray:
    """Resize to (height, width) with nearest-neighbour sampling, keeping channel axis."""
    height, width = size
    resized = cv2.resize(image, (width, height), interpolation=cv2.INTER_NEAREST)
    if image.ndim == 3 and resized.ndim == 2:
        resized = resized[:, :, np.newaxis]
    return resized

def to_rgb(image: np.ndarray, color_order: str = "BGR") -> np.ndarray:
    """Return a 3-channel RGB view of a BGR, RGB, BGRA or grayscale image."""
    order = color_order.upper()
    if image.ndim == 2:
        return cv2.cvtColor(image, cv2.COLOR_GRAY2RGB)
    if image.shape[2] == 4:
        code = cv2.COLOR_BGRA2RGB if order.startswith("BGR") else cv2.COLOR_RGBA2RGB
        return cv2.cvtColor(image, code)
    if order == "BGR":
        return cv2.cvtColor(image, cv2.COLOR_BGR2RGB)
    return image

def normalize_channels(batch: np.ndarray, mean: float, std: float) -> np.ndarray:
    """Center and scale raw 0..255 pixels: ``(x - 255*mean) / (255*std)`` as float32."""
    return (batch.astype(np.float32) - 255.0 * mean) / (255.0 * std)

def to_layout(batch: np.ndarray, layout: str = "NHWC") -> np.ndarray:
    """Arrange an N x H x W x C batch into the requested layout."""
    if layout.upper() == "NCHW":
        return np.ascontiguousarray(batch.transpose(0, 3, 1, 2))
    return batch
