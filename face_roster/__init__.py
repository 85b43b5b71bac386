from .color import PixelFormat, RawFrame, RawPlane, convert_to_rgb
from .debounce import RecognitionDebouncer
from .enrollment import EnrollmentController, EnrollmentMetadata
from .matcher import Matcher, MatchResult, cosine_distance
from .pipeline import FramePipeline, PipelineState
from .roster import Identity, Roster

__all__ = [
    "EnrollmentController",
    "EnrollmentMetadata",
    "FramePipeline",
    "Identity",
    "MatchResult",
    "Matcher",
    "PipelineState",
    "PixelFormat",
    "RawFrame",
    "RawPlane",
    "RecognitionDebouncer",
    "Roster",
    "convert_to_rgb",
    "cosine_distance",
]
