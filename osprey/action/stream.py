"""Asyncio bridge for goal events produced on the worker thread."""

from __future__ import annotations

import asyncio
from dataclasses import dataclass
from typing import AsyncIterator, Optional, Union

from .types import FeedbackEvent, GoalResult


@dataclass(slots=True)
class _StreamCompletion:
    result: GoalResult


_StreamQueueItem = Union[FeedbackEvent, _StreamCompletion]


class GoalStream(AsyncIterator[FeedbackEvent]):
    """Goal channel that yields feedback to an asyncio consumer.

    Events are handed to the owning loop with ``call_soon_threadsafe``; the
    completion is scheduled the same way so it is always observed after every
    feedback event published before it.
    """

    __slots__ = ("goal_id", "_loop", "_queue", "_result_future", "_final_result")

    def __init__(self, loop: Optional[asyncio.AbstractEventLoop] = None) -> None:
        self._loop = loop or asyncio.get_running_loop()
        self._queue: asyncio.Queue[_StreamQueueItem] = asyncio.Queue()
        self._result_future: asyncio.Future[GoalResult] = self._loop.create_future()
        self._final_result: Optional[GoalResult] = None
        self.goal_id: Optional[str] = None

    # ------------------------------------------------------------------
    # GoalChannel (worker thread side)

    def publish_feedback(self, event: FeedbackEvent) -> None:
        self._loop.call_soon_threadsafe(self._queue.put_nowait, event)

    def finish(self, result: GoalResult) -> None:
        self._loop.call_soon_threadsafe(self._complete, result)

    def _complete(self, result: GoalResult) -> None:
        self._queue.put_nowait(_StreamCompletion(result))
        if not self._result_future.done():
            self._result_future.set_result(result)

    # ------------------------------------------------------------------
    # Consumer side

    @property
    def done(self) -> bool:
        return self._result_future.done()

    def __aiter__(self) -> "GoalStream":
        return self

    async def __anext__(self) -> FeedbackEvent:
        if self._final_result is not None:
            raise StopAsyncIteration
        item = await self._queue.get()
        if isinstance(item, _StreamCompletion):
            self._final_result = item.result
            raise StopAsyncIteration
        return item

    async def result(self) -> GoalResult:
        if self._final_result is not None:
            return self._final_result
        result = await self._result_future
        self._final_result = result
        return result


__all__ = ["GoalStream"]
