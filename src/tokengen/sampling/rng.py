"""
Random sources for stochastic sampling.

Draws are reproducible per seed, but a generator is created once and then
persists across sampling calls: consecutive runs with the same seed continue
the same random stream instead of restarting it. Generators are confined to
the thread that created them.
"""

import logging
import threading
from typing import Dict, Optional, Tuple, Union

import torch

logger = logging.getLogger(__name__)


def create_generator(
    seed: int, device: Union[str, torch.device] = "cpu"
) -> torch.Generator:
    """
    Create a torch.Generator for sampling.

    Args:
        seed: Seed for the generator; negative means non-deterministic
        device: Device the generator draws on

    Returns:
        Seeded generator
    """
    generator = torch.Generator(device=device)
    if seed < 0:
        generator.seed()
    else:
        generator.manual_seed(seed)
    return generator


class GeneratorPool:
    """
    Persistent per-thread, per-seed generators.

    With a fallback_seed, negative (unseeded) requests get a generator seeded
    with it instead of OS entropy; deterministic mode sets this.
    """

    def __init__(
        self,
        device: Union[str, torch.device] = "cpu",
        fallback_seed: Optional[int] = None,
    ):
        self.device = device
        self.fallback_seed = fallback_seed
        self._local = threading.local()

    def _generators(self) -> Dict[Tuple[int, str], torch.Generator]:
        generators = getattr(self._local, "generators", None)
        if generators is None:
            generators = {}
            self._local.generators = generators
        return generators

    def get(self, seed: int) -> torch.Generator:
        """Return this thread's generator for seed, creating it on first use."""
        generators = self._generators()
        key = (seed, str(self.device))
        generator = generators.get(key)
        if generator is None:
            if seed < 0 and self.fallback_seed is not None:
                generator = create_generator(self.fallback_seed, self.device)
            else:
                generator = create_generator(seed, self.device)
            generators[key] = generator
            logger.debug(
                f"Created sampling generator seed={seed} "
                f"thread={threading.current_thread().name}"
            )
        return generator

    def clear(self) -> None:
        """Drop this thread's generators so the next draw restarts each seed."""
        self._generators().clear()
