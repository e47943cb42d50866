"""Committed polygons and restore-on-click hit testing."""

import logging
import uuid
from typing import Iterator

from promptseg.geometry import point_in_polygon
from promptseg.models import Polygon, PromptSet, Vertex

logger = logging.getLogger(__name__)


def new_polygon_id() -> str:
    # 122 random bits: the chance of any collision among a million ids is below 1e-25.
    return f"poly-{uuid.uuid4().hex}"


class PolygonRegistry:
    def __init__(self):
        self._polygons: dict[str, Polygon] = {}

    def __len__(self) -> int:
        return len(self._polygons)

    def __iter__(self) -> Iterator[Polygon]:
        return iter(list(self._polygons.values()))

    def __contains__(self, polygon_id: str) -> bool:
        return polygon_id in self._polygons

    def get(self, polygon_id: str) -> Polygon | None:
        return self._polygons.get(polygon_id)

    def add(self, polygon: Polygon) -> Polygon:
        if polygon.id in self._polygons:
            raise ValueError(f"Duplicate polygon id: {polygon.id}")
        self._polygons[polygon.id] = polygon
        logger.debug("Added polygon %s (%d vertices)", polygon.id, len(polygon.ring))
        return polygon

    def create(self, ring: tuple[Vertex, ...], origin_prompt: PromptSet | None = None) -> Polygon:
        return self.add(Polygon(id=new_polygon_id(), ring=ring, origin_prompt=origin_prompt or PromptSet()))

    def remove(self, polygon_id: str) -> Polygon:
        return self._polygons.pop(polygon_id)

    def clear(self) -> None:
        self._polygons.clear()

    def find_containing(self, x: float, y: float) -> Polygon | None:
        """First stored polygon whose ring contains (x, y), in insertion order."""
        for polygon in self._polygons.values():
            if point_in_polygon(x, y, polygon.ring):
                return polygon
        return None
