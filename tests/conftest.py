import asyncio

import numpy as np
import pytest
from PIL import Image

from promptseg import (
    BackendError,
    DecodeRequest,
    DecodeResponse,
    MaskCandidate,
    SessionConfig,
    SessionController,
)

MASK_SIZE = 256
IMAGE_SIZE = 1024


def blob_logits(cx: float, cy: float, half: int, size: int = MASK_SIZE) -> np.ndarray:
    """Square of positive logits centred on (cx, cy), negative elsewhere."""
    logits = np.full((size, size), -1.0, dtype=np.float32)
    x0, x1 = max(0, int(cx) - half), min(size, int(cx) + half + 1)
    y0, y1 = max(0, int(cy) - half), min(size, int(cy) + half + 1)
    logits[y0:y1, x0:x1] = 1.0
    return logits


def point_blobs(request: DecodeRequest) -> list[np.ndarray]:
    """Three nested squares around the first prompt point, in mask space."""
    p = request.prompt.points[0]
    cx, cy = p.x * MASK_SIZE / IMAGE_SIZE, p.y * MASK_SIZE / IMAGE_SIZE
    return [blob_logits(cx, cy, 5 + 5 * i) for i in range(3)]


def empty_masks(request: DecodeRequest) -> list[np.ndarray]:
    return [np.full((MASK_SIZE, MASK_SIZE), -1.0, dtype=np.float32) for _ in range(3)]


async def settle(rounds: int = 20) -> None:
    for _ in range(rounds):
        await asyncio.sleep(0)


class FakeBackend:
    """Scripted in-memory backend.

    With ``hold`` set, each decode blocks until ``release`` is called for its
    request id, which lets tests control completion order.
    """

    def __init__(self, scores=(0.5, 0.8, 0.3), masks=point_blobs):
        self.scores = scores
        self.masks = masks
        self.encode_calls = []
        self.requests: list[DecodeRequest] = []
        self.hold = False
        self.fail_encode = False
        self.fail_decode = False
        self.fail_ids: set[str] = set()
        self.inflight = 0
        self.max_inflight_seen = 0
        self._gates: dict[str, asyncio.Event] = {}

    async def encode_image(self, image, size):
        self.encode_calls.append((np.asarray(image).shape, tuple(size)))
        await asyncio.sleep(0)
        if self.fail_encode:
            raise BackendError("encode failed")

    async def decode(self, request: DecodeRequest) -> DecodeResponse:
        self.requests.append(request)
        self.inflight += 1
        self.max_inflight_seen = max(self.max_inflight_seen, self.inflight)
        try:
            if self.hold:
                await self._gate(request.request_id).wait()
            else:
                await asyncio.sleep(0)
            if self.fail_decode or request.request_id in self.fail_ids:
                raise BackendError(f"decode {request.request_id} failed")
            rasters = self.masks(request)
            return DecodeResponse(
                request_id=request.request_id,
                candidates=tuple(MaskCandidate(raster=r, score=s) for r, s in zip(rasters, self.scores)),
            )
        finally:
            self.inflight -= 1

    def _gate(self, request_id: str) -> asyncio.Event:
        return self._gates.setdefault(request_id, asyncio.Event())

    def release(self, request_id: str) -> None:
        self._gate(request_id).set()

    def release_all(self) -> None:
        self.hold = False
        for gate in self._gates.values():
            gate.set()

    def cell_requests(self) -> list[DecodeRequest]:
        return [r for r in self.requests if r.request_id.startswith("cell-")]


@pytest.fixture
def backend():
    return FakeBackend()


@pytest.fixture
def gray_image():
    return Image.new("RGB", (IMAGE_SIZE, IMAGE_SIZE), (120, 120, 120))


@pytest.fixture
def make_session(backend, gray_image):
    async def factory(config: SessionConfig | None = None, image=None, encode: bool = True) -> SessionController:
        session = SessionController(backend, config or SessionConfig())
        session.load_image(image if image is not None else gray_image)
        if encode:
            await session.encode()
        return session

    return factory
