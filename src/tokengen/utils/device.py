"""
Device and dtype selection shared by runtimes and the engine.
"""

import torch


def select_device(device: str = "auto") -> str:
    """Select the best available device."""
    if device == "auto":
        if torch.backends.mps.is_available():
            return "mps"
        elif torch.cuda.is_available():
            return "cuda"
        else:
            return "cpu"
    return device


def select_dtype(device: str) -> torch.dtype:
    """Select appropriate dtype based on device."""
    if device in ["cuda", "mps"]:
        return torch.float16
    else:
        return torch.float32


def parse_dtype(name: str) -> torch.dtype:
    """
    Map a config dtype name ("float16", "bfloat16", "float32") to torch.dtype.

    Raises:
        ValueError: If the name is not a floating point torch dtype
    """
    dtype = getattr(torch, name.replace("torch.", ""), None)
    if not isinstance(dtype, torch.dtype) or not dtype.is_floating_point:
        raise ValueError(f"Unsupported dtype: {name}")
    return dtype
