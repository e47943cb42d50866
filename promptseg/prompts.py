"""Accumulates point and box prompts for the active selection."""

from promptseg.errors import InvalidStateError
from promptseg.geometry import Box
from promptseg.models import Label, Point, PromptSet, Vertex


class PromptBuilder:
    def __init__(self):
        self._points: list[Point] = []
        self._box_start: Vertex | None = None

    @property
    def prompt_set(self) -> PromptSet:
        return PromptSet(tuple(self._points))

    def __len__(self) -> int:
        return len(self._points)

    def add_point(self, point: Point) -> PromptSet:
        self._points.append(point)
        return self.prompt_set

    def undo_last(self) -> Point | None:
        """Drop the most recent point; returns it, or None when already empty."""
        if not self._points:
            return None
        return self._points.pop()

    def clear(self) -> None:
        self._points = []
        self._box_start = None

    def replace(self, prompt: PromptSet) -> PromptSet:
        self._points = list(prompt.points)
        return self.prompt_set

    # Box prompts

    @property
    def box_in_progress(self) -> bool:
        return self._box_start is not None

    def start_box(self, x: float, y: float) -> None:
        self._box_start = (x, y)

    def update_box(self, x: float, y: float) -> Box:
        """Normalised preview rectangle for the current drag position."""
        if self._box_start is None:
            raise InvalidStateError("No box drag in progress")
        sx, sy = self._box_start
        return Box(min(sx, x), min(sy, y), abs(x - sx), abs(y - sy))

    def cancel_box(self) -> None:
        self._box_start = None

    def finish_box(self, x: float, y: float) -> PromptSet:
        """Replace the prompt with the dragged rectangle's two canonical corners."""
        if self._box_start is None:
            raise InvalidStateError("No box drag in progress")
        sx, sy = self._box_start
        self._box_start = None
        self._points = [
            Point(min(sx, x), min(sy, y), Label.BOX_TOP_LEFT),
            Point(max(sx, x), max(sy, y), Label.BOX_BOTTOM_RIGHT),
        ]
        return self.prompt_set
