"""Interactive promptable segmentation sessions with polygon output."""

from promptseg.backend import InferenceBackend, ModalBackend
from promptseg.candidates import CandidateSet
from promptseg.config import SessionConfig, configure_logging
from promptseg.contour import trace_contour
from promptseg.errors import BackendError, InvalidStateError, PromptSegError, SessionBusyError
from promptseg.geometry import CoordinateMapper, pad_box, point_in_polygon
from promptseg.models import (
    DecodeRequest,
    DecodeResponse,
    Label,
    MaskCandidate,
    Point,
    Polygon,
    PromptSet,
)
from promptseg.prompts import PromptBuilder
from promptseg.registry import PolygonRegistry
from promptseg.segment_all import SegmentAllOrchestrator, SegmentAllResult
from promptseg.session import SessionController, SessionSnapshot, SessionState

__all__ = [
    "BackendError",
    "CandidateSet",
    "CoordinateMapper",
    "DecodeRequest",
    "DecodeResponse",
    "InferenceBackend",
    "InvalidStateError",
    "Label",
    "MaskCandidate",
    "ModalBackend",
    "Point",
    "Polygon",
    "PolygonRegistry",
    "PromptBuilder",
    "PromptSegError",
    "PromptSet",
    "SegmentAllOrchestrator",
    "SegmentAllResult",
    "SessionBusyError",
    "SessionConfig",
    "SessionController",
    "SessionSnapshot",
    "SessionState",
    "configure_logging",
    "pad_box",
    "point_in_polygon",
    "trace_contour",
]
