"""
Lookahead Controllers for Speculative Decoding

Decide how many draft tokens (K) the draft model proposes per speculative
iteration. K=1 advances draft and target in lockstep; larger K trades more
draft work for fewer target calls when the draft agrees with the target.
"""

import logging
from abc import ABC, abstractmethod
from collections import deque
from typing import Any, Deque, Dict, Optional

logger = logging.getLogger(__name__)


class LookaheadController(ABC):
    """Chooses the number of draft proposals per iteration."""

    name = "base"

    @abstractmethod
    def next_k(self) -> int:
        """Number of draft tokens to propose in the coming iteration."""
        pass

    def observe(self, proposed: int, accepted: int) -> None:
        """Feed back the outcome of one verified iteration."""
        pass

    def reset(self) -> None:
        pass

    def get_info(self) -> Dict[str, Any]:
        return {"controller": self.name}


class FixedLookahead(LookaheadController):
    """Always proposes the same number of draft tokens."""

    name = "fixed"

    def __init__(self, k: int = 4):
        if k < 1:
            raise ValueError(f"k must be >= 1, got {k}")
        self.k = k

    def next_k(self) -> int:
        return self.k

    def get_info(self) -> Dict[str, Any]:
        return {"controller": self.name, "k": self.k}


class AdaptiveLookahead(LookaheadController):
    """
    Grows K while recent acceptance is high and shrinks it when low.

    Acceptance is averaged over the last `window_size` iterations; K moves by
    `step_size` once the average leaves target +/- `tolerance`.
    """

    name = "adaptive"

    def __init__(
        self,
        initial_k: int = 4,
        min_k: int = 1,
        max_k: int = 8,
        step_size: int = 1,
        window_size: int = 4,
        target_acceptance_rate: float = 0.7,
        tolerance: float = 0.1,
    ):
        if not 1 <= min_k <= initial_k <= max_k:
            raise ValueError(
                f"Require 1 <= min_k <= initial_k <= max_k, "
                f"got {min_k}, {initial_k}, {max_k}"
            )
        self.initial_k = initial_k
        self.min_k = min_k
        self.max_k = max_k
        self.step_size = step_size
        self.window_size = window_size
        self.target_acceptance_rate = target_acceptance_rate
        self.tolerance = tolerance

        self.current_k = initial_k
        self.acceptance_history: Deque[float] = deque(maxlen=window_size)

    def next_k(self) -> int:
        return self.current_k

    def recent_acceptance(self) -> Optional[float]:
        if len(self.acceptance_history) < self.window_size:
            return None
        return sum(self.acceptance_history) / len(self.acceptance_history)

    def observe(self, proposed: int, accepted: int) -> None:
        if proposed <= 0:
            return
        self.acceptance_history.append(accepted / proposed)
        recent = self.recent_acceptance()
        if recent is None:
            return
        if recent > self.target_acceptance_rate + self.tolerance:
            self.current_k = min(self.current_k + self.step_size, self.max_k)
        elif recent < self.target_acceptance_rate - self.tolerance:
            self.current_k = max(self.current_k - self.step_size, self.min_k)
        logger.debug(f"Adaptive lookahead: acceptance={recent:.2f}, k={self.current_k}")

    def reset(self) -> None:
        self.current_k = self.initial_k
        self.acceptance_history.clear()

    def get_info(self) -> Dict[str, Any]:
        return {
            "controller": self.name,
            "current_k": self.current_k,
            "min_k": self.min_k,
            "max_k": self.max_k,
            "step_size": self.step_size,
            "window_size": self.window_size,
            "target_acceptance_rate": self.target_acceptance_rate,
            "recent_acceptance_rate": self.recent_acceptance(),
        }


def create_lookahead(controller_type: str, **kwargs: Any) -> LookaheadController:
    """
    Create a lookahead controller by type.

    Raises:
        ValueError: If controller_type is not recognized
    """
    if controller_type == "fixed":
        return FixedLookahead(kwargs.get("k", 4))
    elif controller_type == "adaptive":
        return AdaptiveLookahead(**kwargs)
    else:
        raise ValueError(
            f"Unknown controller: {controller_type}. "
            f"Available: ['fixed', 'adaptive']"
        )
