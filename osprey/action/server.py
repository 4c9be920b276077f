"""Goal lifecycle around a single engine: submit, stream, cancel."""

from __future__ import annotations

import logging
from typing import Optional, Tuple

from osprey.engine.base import EngineHandle
from osprey.utils.image import DEFAULT_JPEG_QUALITY

from .executor import GenerationExecutor
from .gate import AdmissionGate, Dispatcher
from .register import GoalRegister
from .stream import GoalStream
from .types import Goal, GoalChannel, GoalHandle, GoalStatus, SubmitResponse


logger = logging.getLogger(__name__)


class ActionServer:
    """Owns the register, gate and executor bound to one engine.

    Relationship to other components:

    - :class:`~osprey.action.gate.AdmissionGate` decides whether a goal may start
      and spawns its worker thread.
    - :class:`~osprey.action.executor.GenerationExecutor` runs the goal and
      finalizes it through the register.
    - :class:`~osprey.action.register.GoalRegister` holds the active goal and
      forwards cancel requests to the engine.
    - Transports (HTTP, CLI) talk to this class only.
    """

    def __init__(
        self,
        engine: EngineHandle,
        *,
        debug: bool = False,
        jpeg_quality: int = DEFAULT_JPEG_QUALITY,
        url_safe_images: bool = False,
        dispatcher: Optional[Dispatcher] = None,
    ) -> None:
        self.engine = engine
        self.register = GoalRegister(engine.cancel)
        self.executor = GenerationExecutor(
            engine,
            self.register,
            debug=debug,
            jpeg_quality=jpeg_quality,
            url_safe_images=url_safe_images,
        )
        self.gate = AdmissionGate(self.register, self.executor, dispatcher=dispatcher)

    def submit(
        self, goal: Goal, channel: GoalChannel
    ) -> Tuple[SubmitResponse, Optional[GoalHandle]]:
        return self.gate.submit(goal, channel)

    async def submit_streaming(self, goal: Goal) -> Optional[GoalStream]:
        """Submit ``goal`` with an asyncio stream as its channel.

        Returns ``None`` when the goal is rejected.
        """

        stream = GoalStream()
        response, handle = self.submit(goal, stream)
        if response is SubmitResponse.REJECTED or handle is None:
            return None
        stream.goal_id = handle.goal_id
        return stream

    def cancel(self, goal_id: Optional[str] = None) -> bool:
        """Request cancellation; returns whether an active goal was flagged."""

        canceling = self.register.request_cancel(goal_id)
        if not canceling:
            logger.debug("Cancel request ignored: no matching active goal")
        return canceling

    def active_goal(self) -> Optional[Tuple[str, GoalStatus]]:
        return self.register.snapshot()

    @property
    def busy(self) -> bool:
        return self.register.get() is not None


__all__ = ["ActionServer"]
