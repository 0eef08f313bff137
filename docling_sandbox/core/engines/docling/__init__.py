"""
Docling Engine Package
----------------------
This package modularizes the local Granite Docling runtime by separating concerns:
- diagnostics: Compute backend selection (GPU execution provider vs CPU).
- assets / progress: Weight shard acquisition and unified download percentage.
- loader: Preprocessor and ONNX generator construction with per-component precision.
- session: Lazily initialized, single-flight model session.
- preparer: Image rasterization, chat templating and tensor packing.
- generator / streamer: Streamed decoding with end-marker trimming and cancellation.
"""

from .errors import (
    DoclingEngineError,
    InitializationError,
    InvalidInputError,
    GenerationError,
    GenerationCancelled,
)
from .diagnostics import ComputeBackend, select_backend, describe_backend
from .progress import ProgressAggregator
from .loader import ModelLoader
from .session import ModelSession, SessionState
from .preparer import InputPreparer, PreparedInputs
from .generator import StreamingDecoder
from .streamer import FragmentStreamer

__all__ = [
    "DoclingEngineError",
    "InitializationError",
    "InvalidInputError",
    "GenerationError",
    "GenerationCancelled",
    "ComputeBackend",
    "select_backend",
    "describe_backend",
    "ProgressAggregator",
    "ModelLoader",
    "ModelSession",
    "SessionState",
    "InputPreparer",
    "PreparedInputs",
    "StreamingDecoder",
    "FragmentStreamer",
]
