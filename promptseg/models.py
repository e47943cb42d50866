"""Value types shared by the session, the geometry pipeline and the backend."""

from dataclasses import dataclass, field
from enum import IntEnum
from typing import Any, Iterator

import numpy as np

# (x, y) in logical image space
Vertex = tuple[float, float]


class Label(IntEnum):
    """Prompt labels as understood by the mask decoder."""

    NEGATIVE = 0
    POSITIVE = 1
    BOX_TOP_LEFT = 2
    BOX_BOTTOM_RIGHT = 3


@dataclass(frozen=True)
class Point:
    x: float
    y: float
    label: Label = Label.POSITIVE

    def to_tuple(self) -> tuple[float, float, int]:
        return (self.x, self.y, int(self.label))

    def to_dict(self) -> dict[str, Any]:
        return {"x": self.x, "y": self.y, "label": int(self.label)}


@dataclass(frozen=True)
class PromptSet:
    """Ordered, immutable snapshot of prompt points.

    Order is significant: undo removes from the end and the backend receives
    the points verbatim.
    """

    points: tuple[Point, ...] = ()

    def __len__(self) -> int:
        return len(self.points)

    def __iter__(self) -> Iterator[Point]:
        return iter(self.points)

    def __bool__(self) -> bool:
        return bool(self.points)

    @property
    def is_box(self) -> bool:
        return any(p.label in (Label.BOX_TOP_LEFT, Label.BOX_BOTTOM_RIGHT) for p in self.points)

    def to_tuples(self) -> list[tuple[float, float, int]]:
        return [p.to_tuple() for p in self.points]


@dataclass(eq=False)
class MaskCandidate:
    """One mask hypothesis. ``raster`` may hold logits; positive values are foreground."""

    raster: np.ndarray
    score: float

    @property
    def mask(self) -> np.ndarray:
        return np.asarray(self.raster) > 0

    @property
    def shape(self) -> tuple[int, int]:
        return tuple(self.raster.shape[:2])


@dataclass(frozen=True)
class Polygon:
    id: str
    ring: tuple[Vertex, ...]
    origin_prompt: PromptSet = field(default_factory=PromptSet)

    @property
    def is_auto(self) -> bool:
        """Created by segment-all rather than from a user prompt."""
        return not self.origin_prompt

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "ring": [list(v) for v in self.ring],
            "points": [p.to_dict() for p in self.origin_prompt],
        }


@dataclass(frozen=True, eq=False)
class DecodeRequest:
    request_id: str
    prompt: PromptSet
    mask_input: np.ndarray | None = None


@dataclass(frozen=True, eq=False)
class DecodeResponse:
    request_id: str
    candidates: tuple[MaskCandidate, ...]
