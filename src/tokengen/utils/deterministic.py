"""
Deterministic seeding and reproducibility utilities.

Deterministic mode seeds the global Python, NumPy and PyTorch RNGs and pins
cuDNN. Sampling draws from pool generators rather than the global RNG, so
the engine also hands the applied seed to its GeneratorPool; otherwise an
unseeded (seed -1) run would still read OS entropy.
"""

import os
import random
from typing import Optional

import numpy as np
import torch

DEFAULT_SEED = 1234
DETERMINISTIC_ENV = "TOKENGEN_DETERMINISTIC"


def set_deterministic_mode(seed: Optional[int] = None) -> int:
    """
    Set deterministic mode for reproducible generation runs.

    Args:
        seed: Random seed (DEFAULT_SEED if None or negative)

    Returns:
        The seed that was applied
    """
    if seed is None or seed < 0:
        seed = DEFAULT_SEED

    random.seed(seed)
    np.random.seed(seed)
    torch.manual_seed(seed)

    if torch.cuda.is_available():
        torch.cuda.manual_seed_all(seed)

    if torch.backends.cudnn.is_available():
        torch.backends.cudnn.deterministic = True
        torch.backends.cudnn.benchmark = False

    os.environ["PYTHONHASHSEED"] = str(seed)
    return seed


def deterministic_requested() -> bool:
    """Whether the TOKENGEN_DETERMINISTIC environment flag is on."""
    return os.getenv(DETERMINISTIC_ENV, "0").lower() in ("1", "true", "yes")


def ensure_deterministic(
    seed: Optional[int] = None, enabled: bool = False
) -> Optional[int]:
    """
    Apply deterministic mode if enabled or requested by the environment.

    Args:
        seed: Seed to apply (DEFAULT_SEED if None or negative)
        enabled: Apply regardless of the environment flag

    Returns:
        The applied seed, or None when deterministic mode is off
    """
    if enabled or deterministic_requested():
        return set_deterministic_mode(seed)
    return None
