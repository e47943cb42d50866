"""Interactive segmentation session: encode, prompt, decode, select, commit."""

import itertools
import logging
from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable

import numpy as np
from PIL import Image

from promptseg.backend import InferenceBackend
from promptseg.candidates import CandidateSet
from promptseg.config import SessionConfig
from promptseg.contour import trace_contour
from promptseg.errors import BackendError, InvalidStateError, SessionBusyError
from promptseg.geometry import Box, CoordinateMapper, scale_ring
from promptseg.models import DecodeRequest, MaskCandidate, Point, Polygon, PromptSet
from promptseg.prompts import PromptBuilder
from promptseg.registry import PolygonRegistry
from promptseg.render import crop_to_mask, letterbox, render_annotations
from promptseg.segment_all import SegmentAllOrchestrator, SegmentAllResult

logger = logging.getLogger(__name__)


class SessionState(str, Enum):
    IDLE = "idle"
    ENCODING = "encoding"
    READY = "ready"
    AWAITING_DECODE = "awaiting_decode"
    HAS_CANDIDATES = "has_candidates"
    FAILED = "failed"


@dataclass(frozen=True)
class SessionSnapshot:
    state: SessionState
    generation: int
    encoded: bool
    prompt: PromptSet
    scores: tuple[float, ...]
    selected_index: int | None
    has_previous_mask: bool
    polygon_ids: tuple[str, ...]
    segmenting_all: bool
    last_error: str | None


class SessionController:
    """Owns all interactive state for one image and drives the backend.

    Commands that talk to the backend are coroutines; everything else is a
    plain method. Interactive decodes never overlap: an edit issued while a
    decode is outstanding raises ``SessionBusyError``. Every reset bumps the
    generation counter, and responses to requests from an older generation
    are dropped and counted in ``stale_responses``.
    """

    def __init__(self, backend: InferenceBackend, config: SessionConfig | None = None):
        self.backend = backend
        self.config = config or SessionConfig()
        self.registry = PolygonRegistry()
        self.orchestrator = SegmentAllOrchestrator(
            backend,
            self.registry,
            self.config,
            generation=lambda: self._generation,
            on_complete=self._segment_all_done,
        )
        self.mapper: CoordinateMapper | None = None
        self.last_error: str | None = None
        self.last_segment_all: SegmentAllResult | None = None
        self.stale_responses = 0

        self._prompts = PromptBuilder()
        self._candidates: CandidateSet | None = None
        self._previous_mask: np.ndarray | None = None
        self._state = SessionState.IDLE
        self._encoded = False
        self._generation = 0
        self._image: Image.Image | None = None
        self._request_ids = itertools.count(1)
        self._listeners: list[Callable[[SessionSnapshot], None]] = []

    # Queries

    @property
    def state(self) -> SessionState:
        return self._state

    def current_state(self) -> SessionState:
        return self._state

    @property
    def generation(self) -> int:
        return self._generation

    @property
    def encoded(self) -> bool:
        return self._encoded

    @property
    def image(self) -> Image.Image | None:
        """The loaded image letterboxed into logical space."""
        return self._image

    @property
    def active_prompt(self) -> PromptSet:
        return self._prompts.prompt_set

    @property
    def previous_mask(self) -> np.ndarray | None:
        return self._previous_mask

    @property
    def selected_index(self) -> int | None:
        return self._candidates.selected_index if self._candidates is not None else None

    def active_candidates(self) -> CandidateSet | None:
        return self._candidates

    def committed_polygons(self) -> list[Polygon]:
        return list(self.registry)

    def snapshot(self) -> SessionSnapshot:
        return SessionSnapshot(
            state=self._state,
            generation=self._generation,
            encoded=self._encoded,
            prompt=self._prompts.prompt_set,
            scores=self._candidates.scores if self._candidates is not None else (),
            selected_index=self.selected_index,
            has_previous_mask=self._previous_mask is not None,
            polygon_ids=tuple(p.id for p in self.registry),
            segmenting_all=self.orchestrator.running,
            last_error=self.last_error,
        )

    def subscribe(self, callback: Callable[[SessionSnapshot], None]) -> None:
        """Call ``callback`` with a fresh snapshot after every state change."""
        self._listeners.append(callback)

    # Image lifecycle

    def load_image(self, image: Image.Image | np.ndarray) -> None:
        if not isinstance(image, Image.Image):
            image = Image.fromarray(np.asarray(image, dtype=np.uint8))
        self.reset()
        self.mapper = CoordinateMapper(image.size, self.config.image_dim)
        self._image = letterbox(image, self.config.image_dim)
        logger.info("Loaded image %dx%d, padded into %s", image.size[0], image.size[1], self.mapper.box)

    def reset(self) -> None:
        """Back to Idle; any in-flight response becomes stale."""
        self._generation += 1
        self._prompts.clear()
        self._clear_active()
        self._encoded = False
        self.registry.clear()
        self.last_error = None
        self._transition(SessionState.IDLE, "reset")

    async def encode(self) -> None:
        if self._image is None:
            raise InvalidStateError("No image loaded")
        if self._state == SessionState.ENCODING:
            raise SessionBusyError("Image is already being encoded")
        if self._encoded:
            logger.debug("Image already encoded; skipping")
            return

        generation = self._generation
        self._transition(SessionState.ENCODING, "encode requested")
        try:
            await self.backend.encode_image(np.asarray(self._image), self.config.image_dim)
        except BackendError as e:
            if generation != self._generation:
                self._drop_stale("encode", generation)
                return
            self._fail(e)
            return
        except Exception as e:
            if generation == self._generation:
                self._fail(e)
            raise
        if generation != self._generation:
            self._drop_stale("encode", generation)
            return
        self._encoded = True
        self.last_error = None
        self._transition(SessionState.READY, "encode complete")

    # Prompt edits

    def to_logical(self, x: float, y: float, display_size: tuple[float, float]) -> tuple[float, float]:
        if self.mapper is None:
            raise InvalidStateError("No image loaded")
        return self.mapper.display_to_logical(x, y, display_size)

    async def add_point(self, point: Point) -> CandidateSet | None:
        self._require_editable()
        self._prompts.add_point(point)
        return await self._decode(use_previous_mask=True)

    async def click(self, point: Point) -> CandidateSet | Polygon | None:
        """Restore the polygon under ``point`` when nothing is active, else add it."""
        if self._can_restore() and self.registry.find_containing(point.x, point.y) is not None:
            return await self.restore(point.x, point.y)
        return await self.add_point(point)

    async def undo_last_point(self) -> CandidateSet | None:
        """Remove the newest point and re-decode the rest from scratch."""
        self._require_editable()
        removed = self._prompts.undo_last()
        if removed is None:
            return None
        logger.info("Undo: removed point (%.1f, %.1f) label=%d", removed.x, removed.y, removed.label)
        # Refinement mask was computed against the removed point.
        self._previous_mask = None
        if len(self._prompts):
            return await self._decode(use_previous_mask=False)
        self._clear_active()
        self._transition(SessionState.READY, "undo emptied prompt")
        return None

    def begin_box(self, x: float, y: float) -> None:
        self._require_editable()
        self._prompts.start_box(x, y)

    def update_box(self, x: float, y: float) -> Box:
        return self._prompts.update_box(x, y)

    def cancel_box(self) -> None:
        self._prompts.cancel_box()

    async def finish_box(self, x: float, y: float) -> CandidateSet | None:
        self._require_editable()
        prompt = self._prompts.finish_box(x, y)
        logger.info("Box prompt (%.1f, %.1f)-(%.1f, %.1f)",
                    prompt.points[0].x, prompt.points[0].y, prompt.points[1].x, prompt.points[1].y)
        self._previous_mask = None
        return await self._decode(use_previous_mask=False)

    # Candidates and polygons

    def select_candidate(self, index: int) -> MaskCandidate:
        self._require_idle_interaction()
        if self._state != SessionState.HAS_CANDIDATES or self._candidates is None:
            raise InvalidStateError("No mask candidates to select from")
        candidate = self._candidates.select(index)
        self._previous_mask = candidate.raster
        logger.info("Selected candidate %d (score %.3f)", index, candidate.score)
        self._notify()
        return candidate

    def commit(self) -> Polygon | None:
        """Store the selected mask's outline as a polygon; None when there is nothing to store."""
        self._require_idle_interaction()
        if self._state != SessionState.HAS_CANDIDATES or self._candidates is None:
            logger.debug("Nothing to commit in state %s", self._state.value)
            return None

        selected = self._candidates.selected
        ring = trace_contour(selected.mask)
        if not ring:
            logger.info("Selected mask is empty; nothing committed")
            return None

        height, width = selected.shape
        polygon = self.registry.create(
            scale_ring(ring, (width, height), self.config.image_dim),
            origin_prompt=self._prompts.prompt_set,
        )
        self._prompts.clear()
        self._clear_active()
        self._transition(SessionState.READY, f"committed {polygon.id}")
        return polygon

    async def restore(self, x: float, y: float) -> Polygon | None:
        """Turn the committed polygon under (x, y) back into the active prompt."""
        self._require_idle_interaction()
        if not self._encoded:
            raise InvalidStateError("Image is not encoded")
        if not self._can_restore():
            return None
        polygon = self.registry.find_containing(x, y)
        if polygon is None:
            return None

        self.registry.remove(polygon.id)
        self._prompts.replace(polygon.origin_prompt)
        self._clear_active()
        logger.info("Restoring %s with %d point(s)", polygon.id, len(polygon.origin_prompt))
        if polygon.origin_prompt:
            await self._decode(use_previous_mask=False)
        else:
            self._transition(SessionState.READY, f"restored {polygon.id} without prompt")
        return polygon

    def clear(self) -> None:
        """Drop the active selection and every committed polygon, keep the encoding."""
        if not self._encoded:
            raise InvalidStateError("Image is not encoded")
        self._generation += 1
        self._prompts.clear()
        self._clear_active()
        self.registry.clear()
        self.last_error = None
        self._transition(SessionState.READY, "cleared")

    async def segment_all(self, rows: int | None = None, cols: int | None = None) -> SegmentAllResult:
        if not self._encoded:
            raise InvalidStateError("Image is not encoded")
        return await self.orchestrator.run(rows, cols)

    # Exports

    def render(self) -> Image.Image:
        if self._image is None:
            raise InvalidStateError("No image loaded")
        mask = self._candidates.selected.mask if self._state == SessionState.HAS_CANDIDATES else None
        return render_annotations(self._image, self.registry, mask=mask, points=self._prompts.prompt_set.points)

    def crop(self) -> Image.Image:
        if self._image is None or self._candidates is None or self._state != SessionState.HAS_CANDIDATES:
            raise InvalidStateError("No active mask to crop with")
        return crop_to_mask(self._image, self._candidates.selected.mask)

    def export(self) -> list[dict[str, Any]]:
        """Committed polygons with rings in logical and source-image coordinates."""
        items = []
        for polygon in self.registry:
            item = polygon.to_dict()
            if self.mapper is not None:
                item["source_ring"] = [list(self.mapper.logical_to_source(x, y)) for x, y in polygon.ring]
            items.append(item)
        return items

    # Internals

    def _require_idle_interaction(self) -> None:
        if self._state == SessionState.AWAITING_DECODE:
            raise SessionBusyError("A decode is still outstanding")

    def _require_editable(self) -> None:
        self._require_idle_interaction()
        if not self._encoded:
            raise InvalidStateError(f"Image is not encoded (state {self._state.value})")

    def _can_restore(self) -> bool:
        return not self._prompts.prompt_set and self._candidates is None

    def _clear_active(self) -> None:
        self._candidates = None
        self._previous_mask = None

    async def _decode(self, use_previous_mask: bool) -> CandidateSet | None:
        prompt = self._prompts.prompt_set
        mask_input = self._previous_mask if use_previous_mask else None
        request = DecodeRequest(f"interactive-{next(self._request_ids)}", prompt, mask_input)
        generation = self._generation

        self._transition(SessionState.AWAITING_DECODE, request.request_id)
        logger.info("Decoding %s: %d point(s), previous mask: %s",
                    request.request_id, len(prompt), mask_input is not None)
        for i, p in enumerate(prompt):
            logger.debug("  Point %d: (%.1f, %.1f) label=%d", i, p.x, p.y, p.label)

        try:
            response = await self.backend.decode(request)
        except BackendError as e:
            if generation != self._generation:
                self._drop_stale(request.request_id, generation)
                return None
            self._fail(e)
            return None
        except Exception as e:
            if generation == self._generation:
                self._fail(e)
            raise

        if generation != self._generation:
            self._drop_stale(request.request_id, generation)
            return None
        if response.request_id != request.request_id:
            self._fail(BackendError(f"Response {response.request_id} does not match {request.request_id}"))
            return None

        try:
            candidates = CandidateSet(response.candidates)
        except ValueError as e:
            self._fail(BackendError(str(e)))
            return None

        self._candidates = candidates
        self._previous_mask = candidates.selected.raster
        self.last_error = None
        logger.info("Decoded %s: scores=%s, selected %d", request.request_id,
                    ", ".join(f"{s:.3f}" for s in candidates.scores), candidates.selected_index)
        self._transition(SessionState.HAS_CANDIDATES, request.request_id)
        return candidates

    def _fail(self, error: Exception) -> None:
        self.last_error = str(error)
        logger.warning("Backend failure: %s", error)
        self._transition(SessionState.FAILED, "backend failure")

    def _drop_stale(self, request_id: str, generation: int) -> None:
        self.stale_responses += 1
        logger.warning("Dropping stale response %s from generation %d (current %d)",
                       request_id, generation, self._generation)

    def _segment_all_done(self, result: SegmentAllResult) -> None:
        self.last_segment_all = result
        self._notify()

    def _transition(self, state: SessionState, reason: str) -> None:
        previous = self._state
        self._state = state
        logger.info("Session %s -> %s (%s)", previous.value, state.value, reason)
        self._notify()

    def _notify(self) -> None:
        if not self._listeners:
            return
        snap = self.snapshot()
        for callback in self._listeners:
            callback(snap)
