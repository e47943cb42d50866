"""Coordinate mapping between display, source image and logical model space."""

import math
from dataclasses import dataclass
from typing import Sequence

from promptseg.models import Vertex


@dataclass(frozen=True)
class Box:
    x: float
    y: float
    w: float
    h: float


def pad_box(source: tuple[float, float], target: tuple[float, float]) -> Box:
    """Where to draw ``source`` (w, h) inside ``target`` (w, h) keeping its aspect ratio.

    Portrait sources are centred horizontally, landscape sources vertically.
    The padding offset is floored to a whole pixel.
    """
    sw, sh = source
    tw, th = target
    if sw == sh:
        return Box(0, 0, tw, th)
    if sh > sw:
        new_w = sw / sh * tw
        return Box(math.floor((tw - new_w) / 2), 0, new_w, th)
    new_h = sh / sw * th
    return Box(0, math.floor((th - new_h) / 2), tw, new_h)


class CoordinateMapper:
    """Maps points for one source image into the square logical space.

    Nothing is clamped: out-of-range inputs produce out-of-range outputs.
    """

    def __init__(self, source_size: tuple[int, int], logical_size: tuple[int, int] = (1024, 1024)):
        self.source_size = source_size
        self.logical_size = logical_size
        self.box = pad_box(source_size, logical_size)

    def display_to_logical(self, x: float, y: float, display_size: tuple[float, float]) -> Vertex:
        dw, dh = display_size
        lw, lh = self.logical_size
        return (x / dw * lw, y / dh * lh)

    def logical_to_display(self, x: float, y: float, display_size: tuple[float, float]) -> Vertex:
        dw, dh = display_size
        lw, lh = self.logical_size
        return (x / lw * dw, y / lh * dh)

    def source_to_logical(self, x: float, y: float) -> Vertex:
        sw, sh = self.source_size
        return (self.box.x + x / sw * self.box.w, self.box.y + y / sh * self.box.h)

    def logical_to_source(self, x: float, y: float) -> Vertex:
        sw, sh = self.source_size
        return ((x - self.box.x) / self.box.w * sw, (y - self.box.y) / self.box.h * sh)


def point_in_polygon(x: float, y: float, ring: Sequence[Vertex]) -> bool:
    """Even-odd ray casting; the last vertex connects back to the first.

    Points exactly on an edge may land on either side.
    """
    inside = False
    j = len(ring) - 1
    for i in range(len(ring)):
        xi, yi = ring[i]
        xj, yj = ring[j]
        if (yi > y) != (yj > y) and x < (xj - xi) * (y - yi) / (yj - yi) + xi:
            inside = not inside
        j = i
    return inside


def scale_ring(
    ring: Sequence[tuple[int, int]], raster_size: tuple[int, int], logical_size: tuple[int, int]
) -> tuple[Vertex, ...]:
    """Rescale a ring traced on a (w, h) raster into logical space."""
    sx = logical_size[0] / raster_size[0]
    sy = logical_size[1] / raster_size[1]
    return tuple((float(x * sx), float(y * sy)) for x, y in ring)


def grid_centers(rows: int, cols: int, size: tuple[float, float]) -> list[tuple[int, int, Vertex]]:
    """Cell centres of a rows x cols grid, row-major, as (row, col, (x, y))."""
    step_x = size[0] / cols
    step_y = size[1] / rows
    return [
        (r, c, (step_x * c + step_x / 2, step_y * r + step_y / 2))
        for r in range(rows)
        for c in range(cols)
    ]
