"""Helpers for engines that produce logits as torch tensors."""

from __future__ import annotations

from typing import List

import torch
from torch import Tensor

from .base import CompletionUnit, TokenProb


def token_probs_from_logits(logits: Tensor, n_probs: int) -> List[TokenProb]:
    """Return the ``n_probs`` most likely tokens of a single logits row.

    ``logits`` may be shaped ``(vocab,)`` or ``(1, vocab)``. Probabilities are
    computed in float32 and returned in descending order.
    """

    if logits.ndim == 2 and logits.shape[0] == 1:
        logits = logits.squeeze(0)
    if logits.ndim != 1:
        raise ValueError(f"logits must be 1D or shaped (1, vocab); received shape {tuple(logits.shape)}")
    if n_probs <= 0:
        return []

    probs = torch.softmax(logits.detach().to(device="cpu", dtype=torch.float32), dim=-1)
    k = min(n_probs, probs.shape[0])
    values, indices = torch.topk(probs, k)
    return [
        TokenProb(token=int(token), probability=float(prob))
        for prob, token in zip(values.tolist(), indices.tolist())
    ]


def completion_from_logits(token: int, logits: Tensor, n_probs: int) -> CompletionUnit:
    return CompletionUnit(token=int(token), probs=token_probs_from_logits(logits, n_probs))


__all__ = ["completion_from_logits", "token_probs_from_logits"]
