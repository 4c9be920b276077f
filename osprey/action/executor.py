"""Runs one goal against the engine and finalizes it."""

from __future__ import annotations

import logging
import time
from typing import List, Optional

from osprey.engine.base import CompletionUnit, EngineHandle
from osprey.utils.image import DEFAULT_JPEG_QUALITY, encode_image

from .register import GoalRegister
from .types import (
    FeedbackEvent,
    GoalHandle,
    GoalMetrics,
    GoalResult,
    GoalStatus,
    TerminalStatus,
    TokenAlternative,
)


logger = logging.getLogger(__name__)


class ImageLoadError(RuntimeError):
    """The engine refused the image attached to a goal."""


class GenerationExecutor:
    """Drives the engine for a single goal at a time.

    The caller guarantees exclusivity: :class:`~osprey.action.gate.AdmissionGate`
    only dispatches a goal after it won the register slot, and the slot is
    released by :meth:`run` itself during finalization.
    """

    def __init__(
        self,
        engine: EngineHandle,
        register: GoalRegister,
        *,
        debug: bool = False,
        jpeg_quality: int = DEFAULT_JPEG_QUALITY,
        url_safe_images: bool = False,
    ) -> None:
        self._engine = engine
        self._register = register
        self._debug = debug
        self._jpeg_quality = jpeg_quality
        self._url_safe_images = url_safe_images

    def run(self, handle: GoalHandle) -> Optional[GoalResult]:
        # Latencies are measured from admission, so they include dispatch time.
        started = handle.accepted_at
        first_token_at: List[float] = []
        feedback: List[FeedbackEvent] = []

        try:
            units = self._generate(handle, first_token_at, feedback)
        except ImageLoadError as exc:
            logger.warning("Goal %s aborted: %s", handle.goal_id, exc)
            return self.abort(handle, str(exc))
        except Exception as exc:
            logger.exception("Goal %s aborted by engine failure", handle.goal_id)
            return self.abort(handle, f"{type(exc).__name__}: {exc}")

        finished = time.perf_counter()
        ttft_ms = (first_token_at[0] - started) * 1000.0 if first_token_at else 0.0
        if len(units) != len(feedback):
            logger.warning(
                "Goal %s: engine returned %d units but streamed %d",
                handle.goal_id,
                len(units),
                len(feedback),
            )
        metrics = GoalMetrics(
            output_tokens=len(feedback),
            ttft_ms=ttft_ms,
            generation_time_ms=(finished - started) * 1000.0,
        )

        text = "".join(event.token_text for event in feedback)
        token_ids = [event.token_id for event in feedback]
        alternatives = [event.alternatives for event in feedback]

        def decide(status: GoalStatus) -> GoalResult:
            terminal = (
                TerminalStatus.CANCELED
                if status is GoalStatus.CANCEL_REQUESTED
                else TerminalStatus.SUCCEEDED
            )
            return GoalResult(
                goal_id=handle.goal_id,
                status=terminal,
                text=text,
                token_ids=token_ids,
                per_step_alternatives=alternatives,
                metrics=metrics,
            )

        result = self._finalize(handle, decide)
        if result is not None:
            logger.info(
                "Goal %s %s with %d tokens in %.1f ms",
                handle.goal_id,
                result.status.value,
                metrics.output_tokens,
                metrics.generation_time_ms,
            )
        return result

    def abort(self, handle: GoalHandle, reason: str) -> Optional[GoalResult]:
        """Finalize ``handle`` as ABORTED with an empty result."""

        result = GoalResult(
            goal_id=handle.goal_id,
            status=TerminalStatus.ABORTED,
            error=reason,
        )
        return self._finalize(handle, lambda _status: result)

    # ------------------------------------------------------------------
    # Steps

    def _generate(
        self,
        handle: GoalHandle,
        first_token_at: List[float],
        feedback: List[FeedbackEvent],
    ) -> List[CompletionUnit]:
        engine = self._engine
        goal = handle.goal

        if self._debug:
            logger.info("Prompt received for goal %s:\n%s", handle.goal_id, goal.prompt)

        if goal.reset:
            engine.reset()

        sampling = goal.sampling_config.resolve(engine.n_vocab(), engine.eos_token())

        if goal.has_image:
            assert goal.image is not None
            try:
                encoded = encode_image(
                    goal.image, url=self._url_safe_images, quality=self._jpeg_quality
                )
            except ValueError as exc:
                raise ImageLoadError(f"Could not encode goal image: {exc}") from exc
            if not engine.load_image(encoded):
                raise ImageLoadError("Engine failed to load the goal image")
        else:
            engine.free_image()

        publish_failed = False

        def _on_unit(unit: CompletionUnit) -> None:
            nonlocal publish_failed
            if not first_token_at:
                first_token_at.append(time.perf_counter())
            event = self._feedback(unit)
            feedback.append(event)
            try:
                handle.channel.publish_feedback(event)
            except Exception:
                if not publish_failed:
                    publish_failed = True
                    logger.exception("Failed to publish feedback for goal %s", handle.goal_id)

        return list(engine.generate(goal.prompt, _on_unit, sampling))

    def _feedback(self, unit: CompletionUnit) -> FeedbackEvent:
        return FeedbackEvent(
            token_id=unit.token,
            token_text=self._engine.detokenize([unit.token]),
            alternatives=self._alternatives(unit),
        )

    def _alternatives(self, unit: CompletionUnit) -> List[TokenAlternative]:
        detokenize = self._engine.detokenize
        return [
            TokenAlternative(
                token_id=prob.token,
                probability=prob.probability,
                text=detokenize([prob.token]),
            )
            for prob in unit.probs
        ]

    def _finalize(self, handle: GoalHandle, decide) -> Optional[GoalResult]:
        try:
            return self._register.finalize(handle, decide)
        except Exception:
            logger.exception("Failed to deliver the result of goal %s", handle.goal_id)
            return None


__all__ = ["GenerationExecutor", "ImageLoadError"]
