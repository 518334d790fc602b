"""Token selection from next-token logits."""

from __future__ import annotations

import math
from typing import Optional, Sequence, Tuple

import torch

from .config import SamplingConfig


class TokenSampler:
    """Picks the next token, carrying the mirostat ``mu`` between calls."""

    def __init__(self, config: Optional[SamplingConfig] = None) -> None:
        self.config = config or SamplingConfig()
        self._rng: Optional[torch.Generator] = None
        if self.config.seed is not None:
            self._rng = torch.Generator()
            self._rng.manual_seed(int(self.config.seed))

    def sample(
        self,
        logits: torch.Tensor,
        recent_tokens: Sequence[int],
        mirostat_mu: Optional[float] = None,
    ) -> Tuple[int, Optional[float]]:
        """Return ``(token_id, mirostat_mu)`` for the given logits row."""

        scores = logits.detach().float().reshape(-1).cpu()
        if scores.numel() == 0:
            raise ValueError("Cannot sample from an empty logits tensor.")
        window = self._penalty_window(recent_tokens)
        scores = self._apply_repetition_penalty(scores, window)
        if self.config.mirostat == 2:
            return self._sample_mirostat_v2(scores, mirostat_mu)
        if not self.config.do_sample or self.config.temperature <= 0.0:
            return int(torch.argmax(scores).item()), mirostat_mu
        scores = scores / self.config.temperature
        filtered = self._top_k_top_p_filter(scores)
        if torch.isinf(filtered).all():
            filtered = scores
        probs = torch.softmax(filtered, dim=-1)
        token_id = torch.multinomial(probs, num_samples=1, generator=self._rng)
        return int(token_id.item()), mirostat_mu

    def _penalty_window(self, recent_tokens: Sequence[int]) -> Sequence[int]:
        last_n = self.config.repeat_last_n
        if last_n <= 0:
            return ()
        tokens = list(recent_tokens)
        return tokens[-last_n:]

    def _apply_repetition_penalty(
        self, logits: torch.Tensor, history: Sequence[int]
    ) -> torch.Tensor:
        penalty = self.config.repetition_penalty
        if penalty == 1.0 or not history:
            return logits
        adjusted = logits.clone()
        vocab = adjusted.numel()
        for token in set(history):
            if not 0 <= token < vocab:
                continue
            score = adjusted[token]
            adjusted[token] = score / penalty if score > 0 else score * penalty
        return adjusted

    def _top_k_top_p_filter(self, logits: torch.Tensor) -> torch.Tensor:
        top_k = self.config.top_k
        top_p = self.config.top_p
        filtered = logits.clone()
        if 0 < top_k < filtered.numel():
            threshold = torch.topk(filtered, top_k).values[-1]
            filtered[filtered < threshold] = float("-inf")
        if 0.0 < top_p < 1.0:
            sorted_logits, sorted_indices = torch.sort(filtered, descending=True)
            cumulative = torch.cumsum(torch.softmax(sorted_logits, dim=-1), dim=-1)
            cutoff = cumulative > top_p
            # Keep the first token that crosses the threshold.
            cutoff[1:] = cutoff[:-1].clone()
            cutoff[0] = False
            filtered[sorted_indices[cutoff]] = float("-inf")
        return filtered

    def _sample_mirostat_v2(
        self, logits: torch.Tensor, mirostat_mu: Optional[float]
    ) -> Tuple[int, float]:
        tau = self.config.mirostat_tau
        eta = self.config.mirostat_eta
        mu = 2.0 * tau if mirostat_mu is None else float(mirostat_mu)
        temperature = self.config.temperature if self.config.temperature > 0.0 else 1.0
        probs = torch.softmax(logits / temperature, dim=-1)
        sorted_probs, sorted_indices = torch.sort(probs, descending=True)
        surprise = -torch.log2(sorted_probs.clamp_min(1e-30))
        keep = int((surprise <= mu).sum().item())
        keep = max(1, keep)
        kept = sorted_probs[:keep]
        kept = kept / kept.sum()
        choice = int(torch.multinomial(kept, num_samples=1, generator=self._rng).item())
        observed = -math.log2(max(float(kept[choice].item()), 1e-30))
        mu = mu - eta * (observed - tau)
        return int(sorted_indices[choice].item()), mu


__all__ = ["TokenSampler"]
