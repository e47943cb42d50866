"""Inference backend interface and the Modal-hosted implementation."""

import logging
import zlib
from typing import Any, Protocol, runtime_checkable

import modal
import numpy as np

from promptseg import config
from promptseg.candidates import CANDIDATE_COUNT
from promptseg.codec import decode_logits, encode_logits, image_to_png_bytes
from promptseg.errors import BackendError
from promptseg.models import DecodeRequest, DecodeResponse, MaskCandidate

logger = logging.getLogger(__name__)


@runtime_checkable
class InferenceBackend(Protocol):
    """Asynchronous encoder/decoder the session talks to.

    Both calls raise ``BackendError`` on failure. ``decode`` may complete in
    any order relative to other outstanding decodes.
    """

    async def encode_image(self, image: np.ndarray, size: tuple[int, int]) -> None:
        ...

    async def decode(self, request: DecodeRequest) -> DecodeResponse:
        ...


def response_from_payload(request: DecodeRequest, payload: dict[str, Any]) -> DecodeResponse:
    """Validate a worker payload and turn it into a DecodeResponse.

    Any malformed payload raises ``BackendError``.
    """
    if not isinstance(payload, dict):
        raise BackendError(f"Malformed response for {request.request_id}: {type(payload).__name__}")
    if payload.get("request_id") != request.request_id:
        raise BackendError(
            f"Response id {payload.get('request_id')!r} does not match request {request.request_id!r}"
        )
    try:
        logits = decode_logits(payload["logits"])
        scores = [float(s) for s in payload["scores"]]
    except (KeyError, TypeError, ValueError, zlib.error) as e:
        raise BackendError(f"Malformed response for {request.request_id}: {e!r}") from e
    if len(scores) != CANDIDATE_COUNT or logits.ndim != 3 or logits.shape[0] != CANDIDATE_COUNT:
        raise BackendError(f"Expected {CANDIDATE_COUNT} candidates, got {len(scores)} scores / {logits.shape} masks")
    return DecodeResponse(
        request_id=request.request_id,
        candidates=tuple(MaskCandidate(raster=logits[i], score=scores[i]) for i in range(CANDIDATE_COUNT)),
    )


class ModalBackend:
    """Talks to the ``Sam3Worker`` class deployed by ``modal_app.py``.

    Decodes run against the image of the most recently issued encode. An
    older encode that finishes later does not replace it.
    """

    def __init__(self, app_name: str | None = None, class_name: str | None = None):
        self.app_name = app_name or config.MODAL_APP_NAME
        self.class_name = class_name or config.MODAL_WORKER_CLASS
        self._worker = None
        self._image_key: str | None = None
        self._encode_token = 0

    def worker(self):
        if self._worker is None:
            logger.info("Looking up Modal app: %s.%s", self.app_name, self.class_name)
            cls = modal.Cls.from_name(self.app_name, self.class_name)
            self._worker = cls()
        return self._worker

    async def encode_image(self, image: np.ndarray, size: tuple[int, int]) -> None:
        self._encode_token += 1
        token = self._encode_token
        self._image_key = None
        image_bytes = image_to_png_bytes(image)
        logger.info("Encoding image %dx%d (%d bytes)", size[0], size[1], len(image_bytes))
        try:
            key = await self.worker().encode_image.remote.aio(image_bytes, list(size))
        except Exception as e:
            raise BackendError(f"Encode failed: {e}") from e
        if token != self._encode_token:
            logger.warning("Ignoring superseded encode %d (latest is %d)", token, self._encode_token)
            return
        self._image_key = key

    async def decode(self, request: DecodeRequest) -> DecodeResponse:
        if self._image_key is None:
            raise BackendError("No image has been encoded")
        mask_input = encode_logits(request.mask_input) if request.mask_input is not None else None
        try:
            payload = await self.worker().decode.remote.aio(
                self._image_key, request.request_id, request.prompt.to_tuples(), mask_input
            )
        except Exception as e:
            raise BackendError(f"Decode {request.request_id} failed: {e}") from e
        return response_from_payload(request, payload)
