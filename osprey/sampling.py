"""Sampling configuration carried by each goal and resolved against the engine."""

from __future__ import annotations

import dataclasses
import logging
import math
from dataclasses import dataclass, field
from typing import Any, Dict, Mapping, Optional, Tuple


logger = logging.getLogger(__name__)

# k=top_k, f=tail free, y=typical, p=top_p, m=min_p, t=temperature
SAMPLER_LETTERS = "kfypmt"


@dataclass(frozen=True)
class SamplingConfig:
    """Knobs forwarded to the engine's sampler.

    Values are taken as given when the goal is built; :meth:`resolve` clamps
    them against the vocabulary of the engine that will run the goal.
    """

    n_prev: int = 64
    n_probs: int = 1
    min_keep: int = 0
    ignore_eos: bool = False
    logit_bias: Mapping[int, float] = field(default_factory=dict)

    temp: float = 0.8
    dynatemp_range: float = 0.0
    dynatemp_exponent: float = 1.0

    top_k: int = 40
    top_p: float = 0.95
    min_p: float = 0.05
    tfs_z: float = 1.0
    typical_p: float = 1.0

    penalty_last_n: int = 64
    penalty_repeat: float = 1.0
    penalty_freq: float = 0.0
    penalty_present: float = 0.0
    penalize_nl: bool = False

    mirostat: int = 0
    mirostat_eta: float = 0.1
    mirostat_tau: float = 5.0

    samplers_sequence: str = SAMPLER_LETTERS
    grammar: str = ""
    grammar_schema: str = ""

    # 0 lets the engine pick its own limit.
    max_tokens: int = 0
    stop: Tuple[str, ...] = ()

    @classmethod
    def from_mapping(
        cls,
        payload: Mapping[str, Any],
        base: Optional["SamplingConfig"] = None,
    ) -> "SamplingConfig":
        """Build a config from a JSON object, validating field names and types.

        Fields missing from ``payload`` are taken from ``base`` (or the class
        defaults).
        """

        fields = {f.name: f for f in dataclasses.fields(cls)}
        kwargs: Dict[str, Any] = {}
        for key, value in payload.items():
            if key not in fields:
                raise ValueError(f"Unknown sampling field '{key}'")
            default = fields[key].default
            if key == "logit_bias":
                kwargs[key] = _parse_logit_bias(value)
            elif key == "stop":
                kwargs[key] = _parse_stop(value)
            elif isinstance(default, bool):
                if not isinstance(value, bool):
                    raise ValueError(f"Field 'sampling_config.{key}' must be a boolean")
                kwargs[key] = value
            elif isinstance(default, int):
                if isinstance(value, bool) or not isinstance(value, int):
                    raise ValueError(f"Field 'sampling_config.{key}' must be an integer")
                kwargs[key] = value
            elif isinstance(default, float):
                if isinstance(value, bool) or not isinstance(value, (int, float)):
                    raise ValueError(f"Field 'sampling_config.{key}' must be a number")
                if not math.isfinite(value):
                    raise ValueError(f"Field 'sampling_config.{key}' must be finite")
                kwargs[key] = float(value)
            else:
                if not isinstance(value, str):
                    raise ValueError(f"Field 'sampling_config.{key}' must be a string")
                kwargs[key] = value
        if base is None:
            return cls(**kwargs)
        return dataclasses.replace(base, **kwargs)

    def resolve(self, n_vocab: int, eos_token: int) -> "SamplingConfig":
        """Return a copy with every value clamped into the range the engine accepts."""

        if n_vocab <= 0:
            raise ValueError(f"n_vocab must be positive, received {n_vocab}")

        logit_bias: Dict[int, float] = {}
        for token, bias in self.logit_bias.items():
            if 0 <= token < n_vocab:
                logit_bias[token] = bias
            else:
                logger.warning(
                    "Dropping logit bias for token %d outside vocabulary of %d", token, n_vocab
                )
        if self.ignore_eos:
            logit_bias[eos_token] = -math.inf

        top_k = self.top_k
        if top_k <= 0 or top_k > n_vocab:
            top_k = n_vocab

        mirostat = self.mirostat if self.mirostat in (0, 1, 2) else 0
        samplers = "".join(c for c in self.samplers_sequence if c in SAMPLER_LETTERS)

        return dataclasses.replace(
            self,
            n_prev=max(self.n_prev, 1),
            n_probs=min(max(self.n_probs, 0), n_vocab),
            min_keep=max(self.min_keep, 0),
            logit_bias=logit_bias,
            temp=max(self.temp, 0.0),
            top_k=top_k,
            top_p=_clamp(self.top_p, 0.0, 1.0),
            min_p=_clamp(self.min_p, 0.0, 1.0),
            tfs_z=self.tfs_z if 0.0 < self.tfs_z <= 1.0 else 1.0,
            typical_p=self.typical_p if 0.0 < self.typical_p <= 1.0 else 1.0,
            mirostat=mirostat,
            samplers_sequence=samplers,
            max_tokens=max(self.max_tokens, 0),
        )


def _clamp(value: float, low: float, high: float) -> float:
    return min(max(value, low), high)


def _parse_logit_bias(value: Any) -> Dict[int, float]:
    """Accept ``{"token": bias}`` or ``[{"token": t, "bias": b}, ...]``."""

    entries: list[tuple[Any, Any]]
    if isinstance(value, Mapping):
        entries = list(value.items())
    elif isinstance(value, list):
        entries = []
        for item in value:
            if not isinstance(item, Mapping) or "token" not in item or "bias" not in item:
                raise ValueError(
                    "Entries of 'sampling_config.logit_bias' must be objects with 'token' and 'bias'"
                )
            entries.append((item["token"], item["bias"]))
    else:
        raise ValueError("Field 'sampling_config.logit_bias' must be an object or a list")

    parsed: Dict[int, float] = {}
    for token, bias in entries:
        try:
            token_id = int(token)
        except (TypeError, ValueError) as exc:
            raise ValueError(f"Invalid logit_bias token {token!r}") from exc
        if isinstance(bias, bool) or not isinstance(bias, (int, float)):
            raise ValueError(f"Invalid logit_bias value for token {token_id}")
        parsed[token_id] = float(bias)
    return parsed


def _parse_stop(value: Any) -> Tuple[str, ...]:
    if isinstance(value, str):
        return (value,)
    if isinstance(value, list) and all(isinstance(item, str) for item in value):
        return tuple(value)
    raise ValueError("Field 'sampling_config.stop' must be a string or a list of strings")


__all__ = ["SAMPLER_LETTERS", "SamplingConfig"]
