"""Typed containers shared by the goal lifecycle components."""

from __future__ import annotations

import enum
import time
import uuid
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Protocol

from osprey.sampling import SamplingConfig
from osprey.utils.image import ImagePayload


class GoalStatus(str, enum.Enum):
    """Runtime status of a goal that has not been finalized yet."""

    ACTIVE = "active"
    CANCEL_REQUESTED = "cancel_requested"


class TerminalStatus(str, enum.Enum):
    SUCCEEDED = "succeeded"
    CANCELED = "canceled"
    ABORTED = "aborted"


class SubmitResponse(str, enum.Enum):
    ACCEPTED = "accepted"
    REJECTED = "rejected"


@dataclass(frozen=True)
class Goal:
    """One inference request as submitted by a caller."""

    prompt: str
    image: Optional[ImagePayload] = None
    reset: bool = False
    sampling_config: SamplingConfig = field(default_factory=SamplingConfig)

    @property
    def has_image(self) -> bool:
        return self.image is not None and not self.image.is_empty


@dataclass(frozen=True)
class TokenAlternative:
    token_id: int
    probability: float
    text: str

    def to_dict(self) -> Dict[str, object]:
        return {"token_id": self.token_id, "probability": self.probability, "text": self.text}


@dataclass(frozen=True)
class FeedbackEvent:
    """Partial response emitted for every produced token."""

    token_id: int
    token_text: str
    alternatives: List[TokenAlternative]

    def to_dict(self) -> Dict[str, object]:
        return {
            "token_id": self.token_id,
            "token_text": self.token_text,
            "alternatives": [alt.to_dict() for alt in self.alternatives],
        }


@dataclass(frozen=True)
class GoalMetrics:
    output_tokens: int = 0
    ttft_ms: float = 0.0
    generation_time_ms: float = 0.0

    def to_dict(self) -> Dict[str, float]:
        return {
            "output_tokens": self.output_tokens,
            "ttft_ms": self.ttft_ms,
            "generation_time_ms": self.generation_time_ms,
        }


@dataclass(frozen=True)
class GoalResult:
    """Terminal event delivered exactly once per accepted goal."""

    goal_id: str
    status: TerminalStatus
    text: str = ""
    token_ids: List[int] = field(default_factory=list)
    per_step_alternatives: List[List[TokenAlternative]] = field(default_factory=list)
    metrics: GoalMetrics = field(default_factory=GoalMetrics)
    error: Optional[str] = None

    def to_dict(self) -> Dict[str, object]:
        payload: Dict[str, object] = {
            "goal_id": self.goal_id,
            "status": self.status.value,
            "text": self.text,
            "token_ids": list(self.token_ids),
            "per_step_alternatives": [
                [alt.to_dict() for alt in step] for step in self.per_step_alternatives
            ],
            "metrics": self.metrics.to_dict(),
        }
        if self.error is not None:
            payload["error"] = self.error
        return payload


class GoalChannel(Protocol):
    """Sink for the events of one goal.

    Both methods are called from the goal's worker thread and must not block.
    ``finish`` is called exactly once, after every ``publish_feedback``.
    """

    def publish_feedback(self, event: FeedbackEvent) -> None: ...

    def finish(self, result: GoalResult) -> None: ...


class GoalHandle:
    """Live, mutable view of a goal while it is being processed.

    ``status`` is only read or written while holding the register lock.
    """

    __slots__ = ("goal_id", "goal", "channel", "status", "accepted_at")

    def __init__(
        self,
        goal: Goal,
        channel: GoalChannel,
        *,
        goal_id: Optional[str] = None,
    ) -> None:
        self.goal_id = goal_id or uuid.uuid4().hex
        self.goal = goal
        self.channel = channel
        self.status = GoalStatus.ACTIVE
        self.accepted_at = time.perf_counter()

    def __repr__(self) -> str:
        return f"GoalHandle(goal_id={self.goal_id!r}, status={self.status.value})"


__all__ = [
    "FeedbackEvent",
    "Goal",
    "GoalChannel",
    "GoalHandle",
    "GoalMetrics",
    "GoalResult",
    "GoalStatus",
    "SubmitResponse",
    "TerminalStatus",
    "TokenAlternative",
]
