"""Wire encoding shared by the client backend and the Modal worker."""

import io
import zlib
from typing import Any

import numpy as np
from PIL import Image


def encode_logits(logits: np.ndarray) -> dict[str, Any]:
    """Pack mask logits as zlib-compressed float16 for efficient transfer."""
    arr = np.ascontiguousarray(np.asarray(logits, dtype=np.float16))
    return {"shape": list(arr.shape), "dtype": "float16", "data": zlib.compress(arr.tobytes())}


def decode_logits(payload: dict[str, Any]) -> np.ndarray:
    raw = zlib.decompress(payload["data"])
    arr = np.frombuffer(raw, dtype=np.dtype(payload.get("dtype", "float16")))
    return arr.reshape(payload["shape"]).astype(np.float32)


def image_to_png_bytes(image: np.ndarray | Image.Image) -> bytes:
    if not isinstance(image, Image.Image):
        image = Image.fromarray(np.asarray(image, dtype=np.uint8))
    buf = io.BytesIO()
    image.convert("RGB").save(buf, format="PNG")
    return buf.getvalue()


def image_from_bytes(data: bytes) -> Image.Image:
    return Image.open(io.BytesIO(data)).convert("RGB")
