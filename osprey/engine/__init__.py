"""Engine interface and helpers for engine implementations."""

from .base import CompletionUnit, EngineHandle, StreamCallback, TokenProb
from .loader import EngineLoadError, load_engine

__all__ = [
    "CompletionUnit",
    "EngineHandle",
    "EngineLoadError",
    "StreamCallback",
    "TokenProb",
    "load_engine",
]
