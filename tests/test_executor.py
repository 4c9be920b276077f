"""Tests for running a single goal through the generation executor.

The executor is driven synchronously on the test thread; the register slot is
claimed up front the way the admission gate would.
"""

from __future__ import annotations

import time

import numpy as np

from helpers import DEFAULT_TOKENS, RecordingChannel, ScriptedEngine, vocab_text
from osprey.action.executor import GenerationExecutor
from osprey.action.register import GoalRegister
from osprey.action.types import Goal, GoalHandle, GoalStatus, TerminalStatus
from osprey.sampling import SamplingConfig
from osprey.utils.codec import b64decode
from osprey.utils.image import ImagePayload, image_payload_from_array


def _red_square() -> ImagePayload:
    pixels = np.zeros((10, 10, 3), dtype=np.uint8)
    pixels[..., 0] = 255
    return image_payload_from_array(pixels)


def _run(engine: ScriptedEngine, goal: Goal, channel: RecordingChannel | None = None):
    register = GoalRegister(engine.cancel)
    executor = GenerationExecutor(engine, register)
    channel = channel or RecordingChannel()
    handle = GoalHandle(goal, channel)
    register.set(handle)
    result = executor.run(handle)
    return result, channel, register


def test_success_streams_every_token(engine: ScriptedEngine) -> None:
    result, channel, register = _run(engine, Goal(prompt="describe"))

    assert result is not None
    assert result.status is TerminalStatus.SUCCEEDED
    assert channel.results == [result]
    assert register.get() is None

    assert [event.token_id for event in channel.events] == DEFAULT_TOKENS
    assert result.token_ids == DEFAULT_TOKENS
    assert result.text == vocab_text(DEFAULT_TOKENS)
    assert "".join(event.token_text for event in channel.events) == result.text
    assert result.metrics.output_tokens == len(DEFAULT_TOKENS)


def test_alternatives_are_detokenized(engine: ScriptedEngine) -> None:
    result, channel, _ = _run(engine, Goal(prompt="describe"))

    first = channel.events[0]
    assert [alt.token_id for alt in first.alternatives] == [1, 2]
    assert [alt.text for alt in first.alternatives] == ["A", " red"]
    assert first.alternatives[0].probability == 0.75
    assert len(result.per_step_alternatives) == len(DEFAULT_TOKENS)
    assert result.per_step_alternatives[0] == first.alternatives


def test_reset_runs_before_generation(engine: ScriptedEngine) -> None:
    _run(engine, Goal(prompt="again", reset=True))
    assert engine.calls == ["reset", "free_image", "generate"]


def test_no_reset_by_default(engine: ScriptedEngine) -> None:
    _run(engine, Goal(prompt="again"))
    assert "reset" not in engine.calls


def test_sampling_is_resolved_against_engine(engine: ScriptedEngine) -> None:
    goal = Goal(prompt="x", sampling_config=SamplingConfig(top_k=0, ignore_eos=True))
    _run(engine, goal)
    (sampling,) = engine.sampling
    assert sampling.top_k == engine.n_vocab()
    assert engine.eos_token() in sampling.logit_bias


def test_image_is_sent_as_base64_jpeg(engine: ScriptedEngine) -> None:
    result, _, _ = _run(engine, Goal(prompt="describe", image=_red_square()))

    assert result.status is TerminalStatus.SUCCEEDED
    assert result.text
    assert engine.calls == ["load_image", "generate"]
    (encoded,) = engine.loaded_images
    assert b64decode(encoded)[:2] == b"\xff\xd8"


def test_empty_image_releases_previous_image(engine: ScriptedEngine) -> None:
    register = GoalRegister(engine.cancel)
    executor = GenerationExecutor(engine, register)
    goals = [
        Goal(prompt="describe", image=_red_square()),
        Goal(prompt="and now?", image=ImagePayload(data=b"", encoding="rgb8")),
    ]

    results = []
    for goal in goals:
        handle = GoalHandle(goal, RecordingChannel())
        register.set(handle)
        results.append(executor.run(handle))

    assert [r.status for r in results] == [TerminalStatus.SUCCEEDED] * 2
    assert engine.calls == ["load_image", "generate", "free_image", "generate"]
    assert engine.calls.count("free_image") == 1
    assert len(engine.loaded_images) == 1


def test_rejected_image_aborts_without_tokens() -> None:
    engine = ScriptedEngine(load_image_ok=False)
    result, channel, register = _run(engine, Goal(prompt="describe", image=_red_square()))

    assert result.status is TerminalStatus.ABORTED
    assert result.token_ids == [] and result.text == ""
    assert "image" in (result.error or "")
    assert channel.events == []
    assert "generate" not in engine.calls
    assert register.get() is None


def test_undecodable_image_aborts() -> None:
    engine = ScriptedEngine()
    goal = Goal(prompt="x", image=ImagePayload(data=b"garbage", encoding="auto"))
    result, _, _ = _run(engine, goal)
    assert result.status is TerminalStatus.ABORTED
    assert engine.loaded_images == []


def test_reset_failure_aborts() -> None:
    engine = ScriptedEngine(fail_on="reset")
    result, channel, register = _run(engine, Goal(prompt="x", reset=True))

    assert result.status is TerminalStatus.ABORTED
    assert "engine reset failed" in (result.error or "")
    assert channel.results == [result]
    assert register.get() is None


def test_generate_failure_aborts_with_empty_result() -> None:
    engine = ScriptedEngine(fail_on="generate")
    result, _, register = _run(engine, Goal(prompt="x"))
    assert result.status is TerminalStatus.ABORTED
    assert result.token_ids == []
    assert register.get() is None


def test_cancel_during_generation_keeps_partial_result() -> None:
    holder: dict[str, GoalRegister] = {}
    engine = ScriptedEngine(on_token=lambda token: holder["register"].request_cancel())
    register = GoalRegister(engine.cancel)
    holder["register"] = register
    executor = GenerationExecutor(engine, register)
    channel = RecordingChannel()
    handle = GoalHandle(Goal(prompt="x"), channel)
    register.set(handle)

    result = executor.run(handle)

    assert result.status is TerminalStatus.CANCELED
    assert result.token_ids == DEFAULT_TOKENS[:1]
    assert len(channel.events) == 1
    assert "".join(e.token_text for e in channel.events) == result.text


def test_cancel_observed_at_finalization_is_never_success(engine: ScriptedEngine) -> None:
    register = GoalRegister(engine.cancel)
    executor = GenerationExecutor(engine, register)
    handle = GoalHandle(Goal(prompt="x"), RecordingChannel())
    register.set(handle)
    register.request_cancel()
    assert handle.status is GoalStatus.CANCEL_REQUESTED

    # The engine clears stale cancels when generation starts, so every token
    # is produced, but the goal still finishes as canceled.
    result = executor.run(handle)
    assert result.status is TerminalStatus.CANCELED
    assert result.token_ids == DEFAULT_TOKENS


def test_feedback_failure_does_not_abort(engine: ScriptedEngine) -> None:
    channel = RecordingChannel(fail_feedback=True)
    result, _, _ = _run(engine, Goal(prompt="x"), channel)
    assert result.status is TerminalStatus.SUCCEEDED
    assert len(channel.events) == len(DEFAULT_TOKENS)


class _DriftingEngine(ScriptedEngine):
    """Detokenizes the same token differently on every call."""

    def __init__(self) -> None:
        super().__init__()
        self._detokenize_calls = 0

    def detokenize(self, tokens) -> str:
        self._detokenize_calls += 1
        return f"{super().detokenize(tokens)}#{self._detokenize_calls}"


def test_result_text_is_built_from_streamed_feedback() -> None:
    engine = _DriftingEngine()
    result, channel, _ = _run(engine, Goal(prompt="x"))

    assert result.status is TerminalStatus.SUCCEEDED
    assert result.text == "".join(event.token_text for event in channel.events)
    assert result.per_step_alternatives == [event.alternatives for event in channel.events]


def test_latency_is_measured_from_admission(engine: ScriptedEngine) -> None:
    register = GoalRegister(engine.cancel)
    executor = GenerationExecutor(engine, register)
    handle = GoalHandle(Goal(prompt="x"), RecordingChannel())
    handle.accepted_at = time.perf_counter() - 1.0
    register.set(handle)

    result = executor.run(handle)

    assert result.metrics.ttft_ms >= 1000.0
    assert result.metrics.generation_time_ms >= result.metrics.ttft_ms
