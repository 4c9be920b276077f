"""Interface the action server needs from an inference engine.

The engine owns the model, tokenizer, sampler and session state (chat
history, loaded image embedding). The server drives it from one goal thread
at a time; the only call that may arrive from another thread during
``generate`` is ``cancel``.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Callable, List, Protocol, Sequence, runtime_checkable

from osprey.sampling import SamplingConfig


@dataclass(frozen=True)
class TokenProb:
    """One alternative considered by the sampler at a decode step."""

    token: int
    probability: float


@dataclass(frozen=True)
class CompletionUnit:
    """A sampled token together with its top-N alternatives."""

    token: int
    probs: List[TokenProb] = field(default_factory=list)


StreamCallback = Callable[[CompletionUnit], None]


@runtime_checkable
class EngineHandle(Protocol):
    def reset(self) -> None:
        """Drop conversational state (history, KV cache, loaded image)."""

    def load_image(self, encoded_image: str) -> bool:
        """Load a base64 JPEG for the next generation; ``False`` on rejection."""

    def free_image(self) -> None: ...

    def cancel(self) -> None:
        """Ask a running ``generate`` to stop at its next checkpoint.

        Must not block. Engines clear the request when a new ``generate``
        starts, so a late cancel never leaks into the next goal.
        """

    def generate(
        self,
        prompt: str,
        stream_callback: StreamCallback,
        sampling: SamplingConfig,
    ) -> Sequence[CompletionUnit]:
        """Run generation, calling ``stream_callback`` for each unit as it is produced.

        Returns every produced unit in order, including when generation stopped
        because of ``cancel``.
        """

    def detokenize(self, tokens: Sequence[int]) -> str: ...

    def n_vocab(self) -> int: ...

    def eos_token(self) -> int: ...


__all__ = ["CompletionUnit", "EngineHandle", "StreamCallback", "TokenProb"]
