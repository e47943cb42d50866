"""Raster helpers: letterboxing, annotated exports and mask cut-outs."""

from typing import Iterable, Sequence

import numpy as np
from PIL import Image, ImageDraw

from promptseg.contour import foreground
from promptseg.geometry import pad_box
from promptseg.models import Label, Point, Polygon

POLYGON_FILL = (0, 0, 255, 76)
POLYGON_OUTLINE = (0, 0, 255, 255)
MASK_COLOR = (50, 205, 50, 128)

POINT_COLORS = {
    Label.POSITIVE: (0, 255, 0, 255),
    Label.NEGATIVE: (255, 0, 0, 255),
    Label.BOX_TOP_LEFT: (0, 0, 255, 255),
    Label.BOX_BOTTOM_RIGHT: (0, 0, 255, 255),
}


def letterbox(image: Image.Image, size: tuple[int, int]) -> Image.Image:
    """Scale ``image`` into a black ``size`` canvas, centred along the padded axis."""
    box = pad_box(image.size, size)
    canvas = Image.new("RGB", size, (0, 0, 0))
    scaled = image.convert("RGB").resize((max(1, round(box.w)), max(1, round(box.h))), Image.BILINEAR)
    canvas.paste(scaled, (int(box.x), int(box.y)))
    return canvas


def _mask_image(mask: np.ndarray, size: tuple[int, int], color: tuple[int, int, int, int]) -> Image.Image:
    mask_binary = foreground(mask)
    mask_rgba = np.zeros((*mask_binary.shape, 4), dtype=np.uint8)
    mask_rgba[mask_binary] = color
    mask_img = Image.fromarray(mask_rgba)
    if mask_img.size != size:
        mask_img = mask_img.resize(size, Image.NEAREST)
    return mask_img


def render_annotations(
    image: Image.Image,
    polygons: Iterable[Polygon] = (),
    mask: np.ndarray | None = None,
    points: Sequence[Point] = (),
    point_radius: int = 5,
) -> Image.Image:
    """Draw polygons, the active mask and prompt points over ``image``.

    Polygons and points are expected in the image's own pixel space (the
    logical space for a letterboxed image).
    """
    img = image.convert("RGBA")
    overlay = Image.new("RGBA", img.size, (0, 0, 0, 0))

    if mask is not None:
        overlay = Image.alpha_composite(overlay, _mask_image(mask, img.size, MASK_COLOR))

    draw = ImageDraw.Draw(overlay)
    for polygon in polygons:
        if len(polygon.ring) < 2:
            continue
        draw.polygon(list(polygon.ring), fill=POLYGON_FILL, outline=POLYGON_OUTLINE, width=3)

    for p in points:
        r = point_radius
        draw.ellipse([p.x - r, p.y - r, p.x + r, p.y + r],
                     fill=POINT_COLORS[p.label], outline=(255, 255, 255, 255))

    return Image.alpha_composite(img, overlay).convert("RGB")


def crop_to_mask(image: Image.Image, mask: np.ndarray) -> Image.Image:
    """RGBA copy of ``image`` that is transparent outside ``mask``."""
    img = image.convert("RGBA")
    alpha = Image.fromarray((foreground(mask) * 255).astype(np.uint8))
    if alpha.size != img.size:
        alpha = alpha.resize(img.size, Image.NEAREST)
    img.putalpha(alpha)
    return img
