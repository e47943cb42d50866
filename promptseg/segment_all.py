"""Automatic "segment everything" over a grid of single-point prompts."""

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Callable

from promptseg.backend import InferenceBackend
from promptseg.candidates import CandidateSet
from promptseg.config import SessionConfig
from promptseg.contour import trace_contour
from promptseg.errors import SessionBusyError
from promptseg.geometry import grid_centers, scale_ring
from promptseg.models import DecodeRequest, DecodeResponse, Label, Point, Polygon, PromptSet
from promptseg.registry import PolygonRegistry

logger = logging.getLogger(__name__)

Cell = tuple[int, int]


@dataclass
class SegmentAllResult:
    requested: int
    polygons: dict[Cell, Polygon] = field(default_factory=dict)
    empty: list[Cell] = field(default_factory=list)
    failed: list[Cell] = field(default_factory=list)
    stale: int = 0


def cell_request_id(row: int, col: int) -> str:
    return f"cell-{row}-{col}"


class SegmentAllOrchestrator:
    """Fires one decode per grid cell and collects the resulting polygons.

    Only touches the backend and the registry; interactive prompt and
    candidate state belongs to the session controller and is never read here.
    Responses are matched to cells by request id, so arrival order does not
    matter.
    """

    def __init__(
        self,
        backend: InferenceBackend,
        registry: PolygonRegistry,
        config: SessionConfig | None = None,
        generation: Callable[[], int] = lambda: 0,
        on_complete: Callable[[SegmentAllResult], None] | None = None,
    ):
        self.backend = backend
        self.registry = registry
        self.config = config or SessionConfig()
        self._generation = generation
        self.on_complete = on_complete
        self.remaining = 0
        self.running = False

    def build_requests(self, rows: int, cols: int) -> dict[str, tuple[Cell, DecodeRequest]]:
        requests = {}
        for r, c, (x, y) in grid_centers(rows, cols, self.config.image_dim):
            request_id = cell_request_id(r, c)
            prompt = PromptSet((Point(x, y, Label.POSITIVE),))
            requests[request_id] = ((r, c), DecodeRequest(request_id=request_id, prompt=prompt))
        return requests

    async def run(self, rows: int | None = None, cols: int | None = None) -> SegmentAllResult:
        if self.running:
            raise SessionBusyError("Segment-all is already running")
        if rows is None:
            rows = self.config.grid_rows
        if cols is None:
            cols = self.config.grid_cols
        if rows <= 0 or cols <= 0:
            raise ValueError(f"Grid must be positive, got {rows}x{cols}")

        pending = self.build_requests(rows, cols)
        result = SegmentAllResult(requested=len(pending))
        generation = self._generation()
        limit = self.config.max_inflight
        semaphore = asyncio.Semaphore(limit) if limit > 0 else None

        self.remaining = len(pending)
        self.running = True
        logger.info("Segment-all: dispatching %d cells (%dx%d), max inflight %s",
                    len(pending), rows, cols, limit or "unbounded")
        try:
            await asyncio.gather(*(
                self._dispatch(cell, request, semaphore, pending, generation, result)
                for cell, request in list(pending.values())
            ))
        finally:
            self.running = False

        logger.info("Segment-all complete: %d polygons, %d empty, %d failed, %d stale",
                    len(result.polygons), len(result.empty), len(result.failed), result.stale)
        if self.on_complete is not None:
            self.on_complete(result)
        return result

    async def _decode(self, request: DecodeRequest, semaphore: asyncio.Semaphore | None) -> DecodeResponse:
        if semaphore is None:
            return await self.backend.decode(request)
        async with semaphore:
            return await self.backend.decode(request)

    async def _dispatch(self, cell, request, semaphore, pending, generation, result) -> None:
        logger.debug("Segment-all: decode %s at (%.1f, %.1f)",
                     request.request_id, request.prompt.points[0].x, request.prompt.points[0].y)
        try:
            response = await self._decode(request, semaphore)
        except Exception as e:
            self.remaining -= 1
            pending.pop(request.request_id, None)
            if generation != self._generation():
                result.stale += 1
                return
            logger.warning("Segment-all: cell %s failed: %s", cell, e)
            result.failed.append(cell)
            return
        self.collect(response, pending, generation, result)

    def collect(self, response: DecodeResponse, pending, generation: int, result: SegmentAllResult) -> None:
        """Turn one response into a polygon, keyed by the cell its id names."""
        entry = pending.pop(response.request_id, None)
        if entry is None:
            logger.warning("Segment-all: ignoring response for unknown request %s", response.request_id)
            return
        cell, _ = entry
        self.remaining -= 1

        if generation != self._generation():
            logger.warning("Segment-all: dropping stale response %s from generation %d",
                           response.request_id, generation)
            result.stale += 1
            return

        try:
            best = CandidateSet(response.candidates).best()
        except ValueError as e:
            logger.warning("Segment-all: cell %s returned a malformed response: %s", cell, e)
            result.failed.append(cell)
            return
        ring = trace_contour(best.mask)
        if not ring:
            result.empty.append(cell)
            return
        height, width = best.shape
        polygon = self.registry.create(scale_ring(ring, (width, height), self.config.image_dim))
        result.polygons[cell] = polygon
