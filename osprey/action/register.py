"""Single-slot store for the goal currently owning the engine."""

from __future__ import annotations

import logging
import threading
from typing import Callable, Optional, Tuple

from .types import GoalHandle, GoalResult, GoalStatus


logger = logging.getLogger(__name__)


class GoalRegister:
    """Holds at most one active :class:`GoalHandle`.

    A single lock guards the slot and the status of the handle in it, so
    admission, cancellation and finalization observe each other in a total
    order. ``cancel_engine`` is invoked under that lock and must not block.
    """

    def __init__(self, cancel_engine: Callable[[], None]) -> None:
        self._cancel_engine = cancel_engine
        self._lock = threading.Lock()
        self._handle: Optional[GoalHandle] = None

    def get(self) -> Optional[GoalHandle]:
        with self._lock:
            return self._handle

    def snapshot(self) -> Optional[Tuple[str, GoalStatus]]:
        """Return the active goal id and its status, read together."""

        with self._lock:
            if self._handle is None:
                return None
            return self._handle.goal_id, self._handle.status

    def set(self, handle: GoalHandle) -> None:
        with self._lock:
            if self._handle is not None:
                raise RuntimeError(
                    f"Register already holds goal {self._handle.goal_id}; "
                    f"cannot store {handle.goal_id}"
                )
            self._handle = handle

    def try_admit(self, handle: GoalHandle) -> bool:
        """Store ``handle`` if the slot is free; return whether it was stored."""

        with self._lock:
            if self._handle is not None:
                return False
            self._handle = handle
            return True

    def clear(self, handle: GoalHandle) -> None:
        with self._lock:
            self._clear_locked(handle)

    def finalize(
        self,
        handle: GoalHandle,
        decide: Callable[[GoalStatus], GoalResult],
    ) -> GoalResult:
        """Build the terminal result, deliver it and free the slot in one step.

        ``decide`` receives the status observed under the lock, so a cancel
        request either lands before finalization (and is reflected in the
        result) or finds the slot empty.
        """

        with self._lock:
            if self._handle is not handle:
                raise RuntimeError(f"Goal {handle.goal_id} is not the active goal")
            result = decide(handle.status)
            try:
                handle.channel.finish(result)
            finally:
                self._clear_locked(handle)
        return result

    def request_cancel(self, goal_id: Optional[str] = None) -> bool:
        """Flag the active goal for cancellation and signal the engine.

        Returns ``False`` when no goal is active or ``goal_id`` names a goal
        that is not the active one. Repeated calls are harmless.
        """

        with self._lock:
            handle = self._handle
            if handle is None:
                return False
            if goal_id is not None and goal_id != handle.goal_id:
                return False
            if handle.status is not GoalStatus.CANCEL_REQUESTED:
                logger.info("Cancel requested for goal %s", handle.goal_id)
                handle.status = GoalStatus.CANCEL_REQUESTED
            self._cancel_engine()
            return True

    def _clear_locked(self, handle: GoalHandle) -> None:
        if self._handle is not handle:
            raise RuntimeError(f"Goal {handle.goal_id} is not the active goal")
        self._handle = None


__all__ = ["GoalRegister"]
