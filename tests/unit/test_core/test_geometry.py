"""Unit tests for box expansion and pixel mapping."""
import pytest

from camtext.core.entities import BoundingBox, BoxStyle, ImageSize, Rect
from camtext.utils.geometry import (
    BOX_PALETTE, GeometryTransform, box_style, box_to_pixels, expansion_offset,
)


class TestExpansionOffset:

    def test_area_over_perimeter(self):
        assert expansion_offset(20, 10) == pytest.approx(6.0)

    def test_thin_regions_get_small_margin(self):
        assert expansion_offset(100, 3) < expansion_offset(30, 30)

    def test_zero_size(self):
        assert expansion_offset(0, 0) == 0.0


class TestGeometryTransform:

    def test_expand_interior_rect(self):
        """Offset 6 on a 20x10 rect, with the -1 bias on every edge."""
        transform = GeometryTransform()
        size = ImageSize(64, 64)
        box = transform.expand(Rect(20, 10, 20, 10), size, box_id=3)

        assert box.id == 3
        assert box.x1 == pytest.approx(13 / 64)
        assert box.x2 == pytest.approx(44 / 64)
        assert box.y1 == pytest.approx(3 / 64)
        assert box.y2 == pytest.approx(24 / 64)

    def test_corner_order(self):
        box = GeometryTransform().expand(Rect(20, 10, 20, 10), ImageSize(64, 64))
        tl, tr, br, bl = box.corners
        assert tl[1] == tr[1] and bl[1] == br[1]
        assert tl[0] == bl[0] and tr[0] == br[0]
        assert tl[0] < tr[0] and tl[1] < bl[1]

    @pytest.mark.parametrize("rect", [
        Rect(0, 0, 10, 10),
        Rect(55, 55, 9, 9),
        Rect(0, 30, 64, 5),
        Rect(3, 3, 58, 58),
    ])
    def test_corners_within_unit_square(self, rect):
        box = GeometryTransform().expand(rect, ImageSize(64, 64))
        for x, y in box.corners:
            assert 0.0 <= x <= 1.0
            assert 0.0 <= y <= 1.0

    def test_expanded_span_never_shrinks(self):
        transform = GeometryTransform()
        size = ImageSize(200, 300)
        for rect in (Rect(40, 50, 30, 12), Rect(100, 20, 5, 40), Rect(10, 10, 100, 100)):
            x1, y1, x2, y2 = transform.expand_pixels(rect, size)
            assert x2 - x1 >= rect.width
            assert y2 - y1 >= rect.height

    def test_style_is_deterministic(self):
        transform = GeometryTransform()
        a = transform.expand(Rect(5, 5, 10, 10), ImageSize(64, 64), box_id=7)
        b = transform.expand(Rect(5, 5, 10, 10), ImageSize(64, 64), box_id=7)
        assert a == b
        assert a.style == box_style(7)
        assert box_style(0).stroke == box_style(len(BOX_PALETTE)).stroke


class TestBoxToPixels:

    def _box(self, x1, y1, x2, y2):
        return BoundingBox(id=0, corners=((x1, y1), (x2, y1), (x2, y2), (x1, y2)), style=BoxStyle("#fff"))

    def test_same_canvas(self):
        bbox = box_to_pixels(self._box(0.25, 0.5, 0.75, 1.0), ImageSize(100, 200), ImageSize(100, 200))
        assert (bbox.x, bbox.y, bbox.width, bbox.height) == (50, 50, 100, 50)

    def test_scales_canvas_to_source(self):
        """A box found on a 512x512 canvas maps onto a 1024x2048 source."""
        bbox = box_to_pixels(self._box(0.25, 0.25, 0.5, 0.5), ImageSize(512, 512), ImageSize(1024, 2048))
        assert (bbox.x, bbox.y, bbox.width, bbox.height) == (512, 256, 512, 256)

    def test_clipped_to_image(self):
        bbox = box_to_pixels(self._box(0.9, 0.9, 1.0, 1.0), ImageSize(10, 10), ImageSize(10, 10))
        assert bbox.x + bbox.width <= 10
        assert bbox.y + bbox.height <= 10
