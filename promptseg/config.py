"""Runtime configuration resolved from environment variables."""

import logging
import os
from dataclasses import dataclass


def _int_env(name: str, default: int) -> int:
    try:
        return int(os.environ.get(name, str(default)))
    except ValueError:
        return default


IMAGE_SIZE = _int_env("PROMPTSEG_IMAGE_SIZE", 1024)
MASK_SIZE = _int_env("PROMPTSEG_MASK_SIZE", 256)
GRID_ROWS = _int_env("PROMPTSEG_GRID_ROWS", 6)
GRID_COLS = _int_env("PROMPTSEG_GRID_COLS", 6)

# 0 disables the bound and dispatches every segment-all cell at once.
MAX_INFLIGHT = max(0, _int_env("PROMPTSEG_MAX_INFLIGHT", 8))

MODAL_APP_NAME = os.environ.get("MODAL_APP_NAME", "sam3-segmentation")
MODAL_WORKER_CLASS = os.environ.get("MODAL_WORKER_CLASS", "Sam3Worker")

LOG_LEVEL = os.environ.get("PROMPTSEG_LOG_LEVEL", "INFO")


@dataclass(frozen=True)
class SessionConfig:
    image_size: int = 1024
    mask_size: int = 256
    grid_rows: int = 6
    grid_cols: int = 6
    max_inflight: int = 8

    @property
    def image_dim(self) -> tuple[int, int]:
        return (self.image_size, self.image_size)

    @classmethod
    def from_env(cls) -> "SessionConfig":
        return cls(
            image_size=IMAGE_SIZE,
            mask_size=MASK_SIZE,
            grid_rows=GRID_ROWS,
            grid_cols=GRID_COLS,
            max_inflight=MAX_INFLIGHT,
        )


def configure_logging(level: str | None = None) -> None:
    """Install the root handler used by the entry points."""
    logging.basicConfig(
        level=getattr(logging, (level or LOG_LEVEL).upper(), logging.INFO),
        format="%(levelname)s:%(name)s:%(message)s",
    )
