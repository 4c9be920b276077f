"""Osprey: single-flight streaming generation over a multimodal engine."""

from .action import ActionServer, Goal, GoalResult, SubmitResponse, TerminalStatus
from .sampling import SamplingConfig

__all__ = [
    "ActionServer",
    "Goal",
    "GoalResult",
    "SamplingConfig",
    "SubmitResponse",
    "TerminalStatus",
]
