"""Utility functions package."""

from .geometry import GeometryTransform, box_to_pixels, box_style, expansion_offset, clamp
from .image_utils import (
    resize_to_max_dimension, resize_nearest, to_rgb, normalize_channels, to_layout
)

__all__ = [
    "GeometryTransform", "box_to_pixels", "box_style", "expansion_offset", "clamp",
    "resize_to_max_dimension", "resize_nearest", "to_rgb",
    "normalize_channels", "to_layout",
]
