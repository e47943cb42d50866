"""Raster-to-polygon boundary extraction (Moore-Neighbor tracing)."""

import logging

import numpy as np

logger = logging.getLogger(__name__)

# Clockwise from north: N, NE, E, SE, S, SW, W, NW
DX = (0, 1, 1, 1, 0, -1, -1, -1)
DY = (-1, -1, 0, 1, 1, 1, 0, -1)

NORTH_WEST = 7


def foreground(raster: np.ndarray) -> np.ndarray:
    """Boolean foreground of a single- or multi-channel raster.

    Multi-channel rasters count a pixel when any of the first three channels
    is nonzero, so an alpha-only pixel is background.
    """
    arr = np.asarray(raster)
    if arr.ndim == 3:
        return np.any(arr[..., :3] != 0, axis=-1)
    return arr != 0


def trace_contour(raster: np.ndarray) -> list[tuple[int, int]]:
    """Trace the outer boundary of the first foreground blob in row-major order.

    Returns pixel coordinates (x, y) in the raster's own resolution. The ring
    starts at the top-left-most foreground pixel and ends when the walk comes
    back to it, so a closed ring repeats its start point. An isolated pixel
    yields a single point and an empty raster yields an empty list. Blobs not
    connected to the first one are ignored.

    Stopping on the first return to the start pixel can close the ring early
    when the start pixel is a diagonal junction: for {(1, 0), (0, 1), (2, 1)}
    the ring is [(1, 0), (2, 1), (1, 0)] and (0, 1) is left out.

    The walk is capped at 4 * W * H steps; hitting the cap returns the partial
    ring.
    """
    fg = foreground(raster)
    height, width = fg.shape
    hits = np.flatnonzero(fg)
    if hits.size == 0:
        return []

    start_y, start_x = divmod(int(hits[0]), width)

    def is_set(x: int, y: int) -> bool:
        return 0 <= x < width and 0 <= y < height and bool(fg[y, x])

    x, y = start_x, start_y
    ring = [(x, y)]
    # West and north-west of the start are background by construction.
    search_from = NORTH_WEST
    max_steps = 4 * width * height
    steps = 0

    while True:
        for i in range(8):
            d = (search_from + i) % 8
            nx, ny = x + DX[d], y + DY[d]
            if is_set(nx, ny):
                x, y = nx, ny
                ring.append((x, y))
                search_from = (d + 5) % 8
                break
        else:
            break  # isolated pixel

        if (x, y) == (start_x, start_y):
            break

        steps += 1
        if steps > max_steps:
            logger.warning(
                "Contour trace exceeded %d steps at (%d, %d); returning partial ring of %d points",
                max_steps, start_x, start_y, len(ring),
            )
            break

    return ring
