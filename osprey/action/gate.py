"""Admission control for new goals."""

from __future__ import annotations

import logging
import threading
from typing import Callable, Optional, Tuple

from .executor import GenerationExecutor
from .register import GoalRegister
from .types import Goal, GoalChannel, GoalHandle, SubmitResponse


logger = logging.getLogger(__name__)

Dispatcher = Callable[[GoalHandle], None]


class AdmissionGate:
    """Accepts a goal only when no other goal holds the register.

    Accepted goals run on their own daemon thread; :meth:`submit` returns as
    soon as the thread is started.
    """

    def __init__(
        self,
        register: GoalRegister,
        executor: GenerationExecutor,
        *,
        dispatcher: Optional[Dispatcher] = None,
    ) -> None:
        self._register = register
        self._executor = executor
        self._dispatch = dispatcher or self._spawn_thread

    def submit(
        self, goal: Goal, channel: GoalChannel
    ) -> Tuple[SubmitResponse, Optional[GoalHandle]]:
        handle = GoalHandle(goal, channel)
        if not self._register.try_admit(handle):
            active = self._register.get()
            logger.info(
                "Rejecting goal %s: goal %s is still active",
                handle.goal_id,
                active.goal_id if active is not None else "<finishing>",
            )
            return SubmitResponse.REJECTED, None

        logger.info("Accepted goal %s", handle.goal_id)
        try:
            self._dispatch(handle)
        except Exception as exc:
            logger.exception("Failed to start goal %s", handle.goal_id)
            self._executor.abort(handle, f"Failed to start goal: {exc}")
            raise
        return SubmitResponse.ACCEPTED, handle

    def _spawn_thread(self, handle: GoalHandle) -> None:
        thread = threading.Thread(
            target=self._executor.run,
            args=(handle,),
            name=f"osprey-goal-{handle.goal_id[:8]}",
            daemon=True,
        )
        thread.start()


__all__ = ["AdmissionGate", "Dispatcher"]
