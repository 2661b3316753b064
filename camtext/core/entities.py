"""Domain entities (data-only structures) used across services."""
from __future__ import annotations
from dataclasses import dataclass, field
from typing import Optional, Tuple, List, Any, Dict

import numpy as np

Point = Tuple[float, float]  # (x, y) normalized 0..1
Corners = Tuple[Point, Point, Point, Point]  # TL, TR, BR, BL


@dataclass(slots=True, frozen=True)
class ImageSize:
    height: int
    width: int

    @property
    def area(self) -> int:
        return self.height * self.width


@dataclass(slots=True, frozen=True)
class Rect:
    """Axis-aligned contour rectangle in heatmap pixels."""
    x: int
    y: int
    width: int
    height: int


@dataclass(slots=True, frozen=True)
class BoxStyle:
    stroke: str  # hex color, display only


@dataclass(slots=True, frozen=True)
class BoundingBox:
    id: int
    corners: Corners
    style: BoxStyle

    @property
    def x1(self) -> float:
        return self.corners[0][0]

    @property
    def y1(self) -> float:
        return self.corners[0][1]

    @property
    def x2(self) -> float:
        return self.corners[2][0]

    @property
    def y2(self) -> float:
        return self.corners[2][1]

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "corners": [list(c) for c in self.corners],
            "style": {"stroke": self.style.stroke},
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "BoundingBox":
        corners = tuple((float(x), float(y)) for x, y in data["corners"])
        return cls(id=int(data["id"]), corners=corners, style=BoxStyle(**data["style"]))


@dataclass(slots=True, frozen=True)
class PixelBBox:
    """Crop rectangle in source-image pixel space."""
    x: int
    y: int
    width: int
    height: int

    def to_dict(self) -> Dict[str, int]:
        return {"x": self.x, "y": self.y, "width": self.width, "height": self.height}


@dataclass(slots=True)
class Crop:
    buffer: np.ndarray  # target_h x target_w x C, raw pixel values
    source_box: BoundingBox
    pixel_bbox: PixelBBox

    @property
    def box_id(self) -> int:
        return self.source_box.id


@dataclass(slots=True)
class RecognitionBatch:
    index: int
    crops: List[Crop]

    def __len__(self) -> int:
        return len(self.crops)

    @property
    def box_ids(self) -> List[int]:
        return [crop.box_id for crop in self.crops]

    def stack(self) -> np.ndarray:
        """Stack crop buffers into one N x H x W x C array."""
        return np.stack([crop.buffer for crop in self.crops])


@dataclass(slots=True, frozen=True)
class DecodedWord:
    word: str
    bounding_box: PixelBBox
    box_id: int

    def to_dict(self) -> Dict[str, Any]:
        return {"word": self.word, "bounding_box": self.bounding_box.to_dict(), "box_id": self.box_id}


@dataclass(slots=True, frozen=True)
class DeviceProfile:
    max_dimension: int
    batch_size: int
    is_constrained: bool
    pool_size: int = 1


@dataclass(slots=True)
class ExtractionResult:
    words: List[DecodedWord]
    boxes: List[BoundingBox]
    elapsed_ms: int
    correlation_id: Optional[str] = None
    skipped_crops: int = 0
    dropped_batches: int = 0
    stage_times: Dict[str, float] = field(default_factory=dict)

    @property
    def text(self) -> str:
        return " ".join(w.word for w in self.words)

    @property
    def is_empty(self) -> bool:
        return not self.words

    def to_dict(self) -> Dict[str, Any]:
        return {
            "text": self.text,
            "words": [w.to_dict() for w in self.words],
            "boxes": [b.to_dict() for b in self.boxes],
            "elapsed_ms": self.elapsed_ms,
            "correlation_id": self.correlation_id,
            "skipped_crops": self.skipped_crops,
            "dropped_batches": self.dropped_batches,
        }
