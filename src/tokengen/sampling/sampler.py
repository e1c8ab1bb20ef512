"""
Logits-to-Token Sampling Engine

Turns one raw score vector into a token id. With do_sample enabled the
stages run in a fixed order:

1. Repetition penalty over the recent history window
2. Temperature scaling
3. Conversion to (token id, score) pairs
4. Top-k filtering
5. Top-p (nucleus) filtering
6. Softmax over the survivors
7. Stochastic draw with an injected generator

Without do_sample the arg-max of the unmodified vector is returned.
"""

from dataclasses import dataclass
from typing import Optional, Sequence

import torch

from ..config import GenerationConfig
from ..errors import ConfigurationError


@dataclass
class ScoredTokens:
    """
    Candidate tokens with their scores.

    Attributes:
        ids: Token ids [num_candidates]
        scores: Scores aligned with ids [num_candidates], updated in place
    """

    ids: torch.Tensor
    scores: torch.Tensor

    def __len__(self) -> int:
        return self.ids.shape[0]

    def select(self, index: torch.Tensor) -> "ScoredTokens":
        return ScoredTokens(ids=self.ids[index], scores=self.scores[index])


def _check_scores(scores: torch.Tensor) -> torch.Tensor:
    if scores.dim() != 1:
        scores = scores.reshape(-1)
    if scores.numel() == 0:
        raise ConfigurationError("Vocabulary size must be positive")
    return scores


def apply_repetition_penalty(
    scores: torch.Tensor,
    history: Sequence[int],
    penalty: float,
    last_n: int,
) -> torch.Tensor:
    """
    Penalize tokens seen in the last `last_n` history entries, in place.

    Each distinct token in the window is adjusted once: positive scores are
    divided by the penalty, non-positive scores multiplied by it.

    Args:
        scores: Score vector [vocab_size], modified in place
        history: Token history, oldest first
        penalty: Repetition penalty factor
        last_n: Window size over the end of history

    Returns:
        The same scores tensor
    """
    n = min(len(history), last_n)
    if penalty == 1.0 or n <= 0:
        return scores

    vocab_size = scores.shape[0]
    window = {int(t) for t in history[len(history) - n :] if 0 <= int(t) < vocab_size}
    if not window:
        return scores

    index = torch.tensor(sorted(window), dtype=torch.long, device=scores.device)
    selected = scores[index]
    scores[index] = torch.where(selected > 0, selected / penalty, selected * penalty)
    return scores


def apply_temperature(scores: torch.Tensor, temperature: float) -> torch.Tensor:
    """Divide every score by temperature in place; skipped for temperature <= 0."""
    if temperature > 0:
        scores.div_(temperature)
    return scores


def to_scored(scores: torch.Tensor) -> ScoredTokens:
    """Pair every vocabulary index with its score."""
    ids = torch.arange(scores.shape[0], dtype=torch.long, device=scores.device)
    return ScoredTokens(ids=ids, scores=scores)


def top_k_filter(candidates: ScoredTokens, top_k: int) -> ScoredTokens:
    """
    Keep the top_k highest-scoring candidates.

    Applied only when 0 < top_k < len(candidates). A stable sort keeps equal
    scores in ascending vocabulary order, so ties are deterministic.
    """
    if not 0 < top_k < len(candidates):
        return candidates
    order = torch.sort(candidates.scores, descending=True, stable=True).indices
    return candidates.select(order[:top_k])


def top_p_filter(candidates: ScoredTokens, top_p: float) -> ScoredTokens:
    """
    Keep the shortest score-ordered prefix whose probability mass reaches top_p.

    Applied only when 0 < top_p < 1. At least one candidate always survives.
    The returned candidates are sorted by descending score.
    """
    if not 0.0 < top_p < 1.0:
        return candidates
    order = torch.sort(candidates.scores, descending=True, stable=True).indices
    ordered = candidates.select(order)
    probs = torch.softmax(ordered.scores.double(), dim=0)
    cumulative = torch.cumsum(probs, dim=0)
    keep = int((cumulative < top_p).sum().item()) + 1
    keep = min(keep, len(ordered))
    return ScoredTokens(ids=ordered.ids[:keep], scores=ordered.scores[:keep])


def softmax_inplace(candidates: ScoredTokens) -> ScoredTokens:
    """Renormalize candidate scores into probabilities in place."""
    candidates.scores.copy_(torch.softmax(candidates.scores, dim=0))
    return candidates


def draw(
    candidates: ScoredTokens, generator: Optional[torch.Generator] = None
) -> int:
    """Draw one token id from candidates whose scores are probabilities."""
    index = torch.multinomial(candidates.scores.float(), 1, generator=generator)
    return int(candidates.ids[index].item())


def _filtered_candidates(
    history: Sequence[int], scores: torch.Tensor, config: GenerationConfig
) -> ScoredTokens:
    apply_repetition_penalty(
        scores, history, config.repeat_penalty, config.repeat_last_n
    )
    apply_temperature(scores, config.temperature)
    candidates = to_scored(scores)
    candidates = top_k_filter(candidates, config.top_k)
    candidates = top_p_filter(candidates, config.top_p)
    return softmax_inplace(candidates)


def select_token(
    history: Sequence[int],
    scores: torch.Tensor,
    config: GenerationConfig,
    generator: Optional[torch.Generator] = None,
) -> int:
    """
    Choose the next token id from raw scores.

    Args:
        history: Token history used for the repetition penalty
        scores: Raw scores [vocab_size]; modified in place when sampling
        config: Sampling configuration
        generator: Random source for the draw

    Returns:
        Selected token id

    Raises:
        ConfigurationError: If the score vector is empty
    """
    scores = _check_scores(scores)
    if not config.do_sample:
        return int(torch.argmax(scores).item())
    candidates = _filtered_candidates(history, scores, config)
    return draw(candidates, generator)


def token_distribution(
    history: Sequence[int], scores: torch.Tensor, config: GenerationConfig
) -> torch.Tensor:
    """
    Full-vocabulary probabilities that select_token would draw from.

    Greedy configs yield a one-hot vector at the arg-max. The input scores
    are not modified.

    Returns:
        Probability vector [vocab_size] (float32)
    """
    scores = _check_scores(scores).detach().clone().float()
    probs = torch.zeros_like(scores)
    if not config.do_sample:
        probs[torch.argmax(scores)] = 1.0
        return probs
    candidates = _filtered_candidates(history, scores, config)
    probs[candidates.ids] = candidates.scores.float()
    return probs
