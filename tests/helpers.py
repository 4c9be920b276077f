"""Stub engine and channel shared by the action server tests."""

from __future__ import annotations

import json
import threading
from typing import Callable, Dict, List, Optional, Sequence

from osprey.action.types import FeedbackEvent, GoalResult
from osprey.engine.base import CompletionUnit, StreamCallback, TokenProb
from osprey.sampling import SamplingConfig


VOCAB = {
    0: "</s>",
    1: "A",
    2: " red",
    3: " square",
    4: ".",
    5: " blue",
    6: " circle",
}
DEFAULT_TOKENS = [1, 2, 3, 4]
WAIT_TIMEOUT_S = 5.0


class ScriptedEngine:
    """Engine stub that replays a fixed token sequence.

    ``pause_after`` makes ``generate`` stop after that many tokens and wait
    for either :meth:`release` or :meth:`cancel`; ``paused`` is set when the
    pause point is reached so tests can synchronise with the goal thread.
    """

    def __init__(
        self,
        tokens: Sequence[int] = DEFAULT_TOKENS,
        *,
        n_vocab: int = 32,
        eos: int = 0,
        n_alternatives: int = 2,
        load_image_ok: bool = True,
        pause_after: Optional[int] = None,
        fail_on: Optional[str] = None,
        on_token: Optional[Callable[[int], None]] = None,
    ) -> None:
        self.tokens = list(tokens)
        self._n_vocab = n_vocab
        self._eos = eos
        self._n_alternatives = n_alternatives
        self.load_image_ok = load_image_ok
        self.pause_after = pause_after
        self.fail_on = fail_on
        self.on_token = on_token

        self.calls: List[str] = []
        self.loaded_images: List[str] = []
        self.sampling: List[SamplingConfig] = []
        self.cancel_count = 0
        self.paused = threading.Event()
        self._resume = threading.Event()
        self._cancelled = threading.Event()
        self._lock = threading.Lock()

    # ------------------------------------------------------------------
    # EngineHandle

    def reset(self) -> None:
        self._record("reset")
        if self.fail_on == "reset":
            raise RuntimeError("engine reset failed")

    def load_image(self, encoded_image: str) -> bool:
        self._record("load_image")
        self.loaded_images.append(encoded_image)
        return self.load_image_ok

    def free_image(self) -> None:
        self._record("free_image")

    def cancel(self) -> None:
        with self._lock:
            self.cancel_count += 1
        self._cancelled.set()

    def generate(
        self,
        prompt: str,
        stream_callback: StreamCallback,
        sampling: SamplingConfig,
    ) -> List[CompletionUnit]:
        self._record("generate")
        self.sampling.append(sampling)
        self._cancelled.clear()
        if self.fail_on == "generate":
            raise RuntimeError("engine generate failed")

        produced: List[CompletionUnit] = []
        for index, token in enumerate(self.tokens):
            if self.pause_after is not None and index == self.pause_after:
                self.paused.set()
                while not (self._resume.is_set() or self._cancelled.is_set()):
                    self._resume.wait(0.01)
            if self._cancelled.is_set():
                break
            unit = CompletionUnit(token=token, probs=self._alternatives(token))
            produced.append(unit)
            stream_callback(unit)
            if self.on_token is not None:
                self.on_token(token)
        return produced

    def detokenize(self, tokens: Sequence[int]) -> str:
        return "".join(VOCAB.get(token, f"<{token}>") for token in tokens)

    def n_vocab(self) -> int:
        return self._n_vocab

    def eos_token(self) -> int:
        return self._eos

    # ------------------------------------------------------------------

    def release(self) -> None:
        self._resume.set()

    def _alternatives(self, token: int) -> List[TokenProb]:
        alts = [TokenProb(token=token, probability=0.75)]
        for offset in range(1, self._n_alternatives):
            alts.append(TokenProb(token=(token + offset) % len(VOCAB), probability=0.25 / offset))
        return alts

    def _record(self, name: str) -> None:
        with self._lock:
            self.calls.append(name)


class RecordingChannel:
    """Goal channel that stores events and signals completion."""

    def __init__(self, *, fail_feedback: bool = False) -> None:
        self.events: List[FeedbackEvent] = []
        self.results: List[GoalResult] = []
        self.finished = threading.Event()
        self._fail_feedback = fail_feedback

    def publish_feedback(self, event: FeedbackEvent) -> None:
        self.events.append(event)
        if self._fail_feedback:
            raise ConnectionError("consumer went away")

    def finish(self, result: GoalResult) -> None:
        self.results.append(result)
        self.finished.set()

    def wait(self, timeout: float = WAIT_TIMEOUT_S) -> GoalResult:
        assert self.finished.wait(timeout), "goal did not reach a terminal state"
        assert len(self.results) == 1
        return self.results[0]


def vocab_text(tokens: Sequence[int]) -> str:
    return "".join(VOCAB[token] for token in tokens)


def sse_events(body: str) -> List[Dict[str, object]]:
    return [
        json.loads(line[len("data: ") :])
        for line in body.splitlines()
        if line.startswith("data: ")
    ]
