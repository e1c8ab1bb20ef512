"""
Rejection sampling for speculative decoding.

Verifies draft proposals against the target model's distributions. Greedy
verification accepts a proposal only if it equals the target arg-max.
Stochastic verification accepts proposal x with probability
min(1, p(x) / q(x)) and, on the first rejection, resamples from the residual
distribution norm(max(0, p - q)); this keeps the output distributed exactly
as the target model's.
"""

import logging
from dataclasses import dataclass
from typing import List, Optional, Sequence

import torch

logger = logging.getLogger(__name__)

_EPS = 1e-10


@dataclass
class VerificationResult:
    """
    Outcome of verifying one block of draft proposals.

    Attributes:
        accepted_token_ids: Accepted prefix of the proposals
        num_accepted: Length of the accepted prefix
        bonus_token_id: Target token following the accepted prefix (the
            correction on rejection, or an extra token when all are accepted)
        all_accepted: Whether every proposal was accepted
    """

    accepted_token_ids: List[int]
    num_accepted: int
    bonus_token_id: int
    all_accepted: bool = False


class RejectionSampler:
    """Greedy or stochastic verifier for draft proposals."""

    def __init__(self, method: str = "greedy") -> None:
        """
        Initialize the rejection sampler.

        Args:
            method: "greedy" or "stochastic"

        Raises:
            ValueError: If method is not supported
        """
        if method not in {"greedy", "stochastic"}:
            raise ValueError(
                f"Invalid rejection method '{method}'. "
                "Must be 'greedy' or 'stochastic'."
            )
        self.method = method

    def __call__(
        self,
        draft_token_ids: Sequence[int],
        target_probs: torch.Tensor,
        draft_probs: Optional[torch.Tensor] = None,
        generator: Optional[torch.Generator] = None,
    ) -> VerificationResult:
        """
        Verify draft proposals.

        Args:
            draft_token_ids: Proposed tokens [k]
            target_probs: Target distributions [k + 1, vocab]; row i scores
                the position of proposal i, row k the position after them
            draft_probs: Draft distributions [k, vocab]; required for
                stochastic verification
            generator: Random source for acceptance tests and resampling

        Returns:
            VerificationResult
        """
        k = len(draft_token_ids)
        if target_probs.shape[0] != k + 1:
            raise ValueError(
                f"target_probs must have {k + 1} rows, got {target_probs.shape[0]}"
            )
        if self.method == "greedy":
            return self._greedy(draft_token_ids, target_probs)
        if draft_probs is None:
            raise ValueError("draft_probs must be provided for stochastic rejection.")
        return self._stochastic(draft_token_ids, target_probs, draft_probs, generator)

    def _greedy(
        self, draft_token_ids: Sequence[int], target_probs: torch.Tensor
    ) -> VerificationResult:
        target_tokens = torch.argmax(target_probs, dim=-1).tolist()
        num_accepted = 0
        for proposed, expected in zip(draft_token_ids, target_tokens):
            if proposed != expected:
                break
            num_accepted += 1
        return VerificationResult(
            accepted_token_ids=list(draft_token_ids[:num_accepted]),
            num_accepted=num_accepted,
            bonus_token_id=int(target_tokens[num_accepted]),
            all_accepted=num_accepted == len(draft_token_ids),
        )

    def _stochastic(
        self,
        draft_token_ids: Sequence[int],
        target_probs: torch.Tensor,
        draft_probs: torch.Tensor,
        generator: Optional[torch.Generator],
    ) -> VerificationResult:
        k = len(draft_token_ids)
        num_accepted = 0
        for i, token in enumerate(draft_token_ids):
            p = float(target_probs[i, token])
            q = max(float(draft_probs[i, token]), _EPS)
            r = float(torch.rand(1, generator=generator).item())
            if r >= min(1.0, p / q):
                break
            num_accepted += 1

        if num_accepted == k:
            bonus_dist = target_probs[k]
        else:
            residual = torch.clamp(
                target_probs[num_accepted] - draft_probs[num_accepted], min=0.0
            )
            total = float(residual.sum())
            # p == q leaves no residual mass; fall back to the target itself
            bonus_dist = residual / total if total > 0 else target_probs[num_accepted]

        bonus = int(torch.multinomial(bonus_dist.float(), 1, generator=generator).item())
        logger.debug(f"Stochastic verification: accepted {num_accepted}/{k}")
        return VerificationResult(
            accepted_token_ids=list(draft_token_ids[:num_accepted]),
            num_accepted=num_accepted,
            bonus_token_id=bonus,
            all_accepted=num_accepted == k,
        )
