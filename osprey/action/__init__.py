"""Goal lifecycle: admission, execution, cancellation and streaming."""

from .executor import GenerationExecutor, ImageLoadError
from .gate import AdmissionGate
from .register import GoalRegister
from .server import ActionServer
from .stream import GoalStream
from .types import (
    FeedbackEvent,
    Goal,
    GoalChannel,
    GoalHandle,
    GoalMetrics,
    GoalResult,
    GoalStatus,
    SubmitResponse,
    TerminalStatus,
    TokenAlternative,
)

__all__ = [
    "ActionServer",
    "AdmissionGate",
    "FeedbackEvent",
    "GenerationExecutor",
    "Goal",
    "GoalChannel",
    "GoalHandle",
    "GoalMetrics",
    "GoalRegister",
    "GoalResult",
    "GoalStatus",
    "GoalStream",
    "ImageLoadError",
    "SubmitResponse",
    "TerminalStatus",
    "TokenAlternative",
]
