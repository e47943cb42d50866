"""Modal deployment of the SAM 3 encoder/decoder used by interactive sessions."""

import asyncio
import hashlib
import json
import os
from collections import OrderedDict
from typing import Any

import modal

APP_NAME = os.environ.get("MODAL_APP_NAME", "sam3-segmentation")

# Encoded image states kept per container; older ones are evicted first.
MAX_CACHED_IMAGES = 4

app = modal.App(APP_NAME)

# HF secret for gated models (must be consistent between local and remote)
HF_SECRET_NAME = "huggingface-secret"
secrets = [modal.Secret.from_name(HF_SECRET_NAME)]


def download_model():
    """Download SAM3 model weights during image build (runs on GPU)."""
    import sam3
    from sam3 import build_sam3_image_model

    bpe_path = os.path.join(os.path.dirname(sam3.__file__), "assets", "bpe_simple_vocab_16e6.txt.gz")
    print("Pre-downloading SAM3 model weights...")
    build_sam3_image_model(bpe_path=bpe_path, enable_inst_interactivity=True, load_from_HF=True)
    print("SAM3 model weights downloaded and cached")


sam3_image = (
    modal.Image.debian_slim(python_version="3.11")
    .apt_install("git", "libgl1", "libglib2.0-0", "ffmpeg")
    .pip_install(
        "torch==2.3.1",
        "torchvision==0.18.1",
        "numpy",
        "pillow",
        "opencv-python-headless",
        "huggingface_hub",
        "einops",
        "decord",
        "pycocotools",
        "psutil",
        "matplotlib",
        "scipy",
        "git+https://github.com/facebookresearch/sam3.git",
    )
    .run_function(download_model, gpu="A10G", secrets=secrets)
    .add_local_python_source("promptseg")
)


def split_prompt(points: list[tuple[float, float, int]]):
    """Separate click points (labels 0/1) from box corners (labels 2/3)."""
    import numpy as np

    clicks = [(x, y, label) for x, y, label in points if label in (0, 1)]
    corners = {label: (x, y) for x, y, label in points if label in (2, 3)}

    point_coords = np.array([[x, y] for x, y, _ in clicks], dtype=np.float32) if clicks else None
    point_labels = np.array([label for _, _, label in clicks], dtype=np.int32) if clicks else None
    box = None
    if 2 in corners and 3 in corners:
        (x1, y1), (x2, y2) = corners[2], corners[3]
        box = np.array([x1, y1, x2, y2], dtype=np.float32)
    return point_coords, point_labels, box


# One container so every decode finds the state its encode produced.
@app.cls(gpu="A10G", image=sam3_image, secrets=secrets, timeout=300, retries=0, max_containers=1)
class Sam3Worker:
    @modal.enter()
    def load_model(self):
        import sam3
        import torch
        from sam3 import build_sam3_image_model
        from sam3.model.sam3_image_processor import Sam3Processor

        torch.backends.cuda.matmul.allow_tf32 = True
        torch.backends.cudnn.allow_tf32 = True

        bpe_path = os.path.join(os.path.dirname(sam3.__file__), "assets", "bpe_simple_vocab_16e6.txt.gz")
        print(f"Loading SAM3 model with bpe_path: {bpe_path}")
        self.model = build_sam3_image_model(
            bpe_path=bpe_path,
            enable_inst_interactivity=True,
            load_from_HF=True,  # Will use cached weights
        )
        self.processor = Sam3Processor(self.model, confidence_threshold=0.5)
        self.states: OrderedDict[str, Any] = OrderedDict()
        print("SAM3 model loaded successfully")

    @modal.method()
    def encode_image(self, image_bytes: bytes, size: list[int]) -> str:
        """Compute and cache the image embedding; returns the key decodes refer to."""
        from promptseg.codec import image_from_bytes

        key = hashlib.sha256(image_bytes).hexdigest()
        if key in self.states:
            self.states.move_to_end(key)
            return key

        img = image_from_bytes(image_bytes)
        if list(img.size) != list(size):
            raise ValueError(f"Expected a {size[0]}x{size[1]} image, got {img.size[0]}x{img.size[1]}")

        print(f"Encoding image {key[:12]} ({img.size[0]}x{img.size[1]})")
        self.states[key] = self.processor.set_image(img)
        while len(self.states) > MAX_CACHED_IMAGES:
            self.states.popitem(last=False)
        return key

    @modal.method()
    def decode(
        self,
        image_key: str,
        request_id: str,
        points: list[tuple[float, float, int]],
        mask_input: dict | None = None,
    ) -> dict[str, Any]:
        """Predict three ranked masks for one prompt set.

        Args:
            image_key: Key returned by ``encode_image``
            request_id: Correlation id, echoed back unchanged
            points: List of (x, y, label); 0/1 are clicks, 2/3 the box corners
            mask_input: Encoded low-resolution logits from a previous decode

        Returns:
            Dict with request_id, three scores and the encoded low-res logits
        """
        import numpy as np
        import torch

        from promptseg.codec import decode_logits, encode_logits

        state = self.states.get(image_key)
        if state is None:
            raise ValueError(f"Image {image_key[:12]} is not encoded on this worker")

        point_coords, point_labels, box = split_prompt(points)
        prior = decode_logits(mask_input)[None, :, :] if mask_input is not None else None
        print(f"Decode {request_id}: {len(points)} point(s), box={box is not None}, prior={prior is not None}")

        with torch.inference_mode(), torch.autocast("cuda", dtype=torch.bfloat16):
            masks, scores, logits = self.model.predict_inst(
                state,
                point_coords=point_coords,
                point_labels=point_labels,
                box=box,
                mask_input=prior,
                multimask_output=True,
            )

        logits = np.asarray(logits.cpu().float() if hasattr(logits, "cpu") else logits)
        scores = np.asarray(scores.cpu().float() if hasattr(scores, "cpu") else scores)
        return {
            "request_id": request_id,
            "scores": [float(s) for s in scores],
            "logits": encode_logits(logits),
        }


@app.local_entrypoint()
def main(image_path: str):
    """Test: modal run modal_app.py --image-path path/to/image.png"""
    from PIL import Image

    from promptseg import ModalBackend, Point, SessionController, configure_logging

    configure_logging()

    async def run() -> list[dict]:
        session = SessionController(ModalBackend(APP_NAME))
        session.load_image(Image.open(image_path))
        await session.encode()
        size = session.config.image_size
        # Click the centre, keep the best mask
        await session.add_point(Point(size / 2, size / 2))
        session.commit()
        return session.export()

    print(json.dumps(asyncio.run(run()), indent=2))
