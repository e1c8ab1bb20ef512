"""
Utilities Module

Device selection, deterministic seeding and token validation.
"""

from .deterministic import ensure_deterministic, set_deterministic_mode
from .device import parse_dtype, select_device, select_dtype
from .token_validation import validate_token_ids

__all__ = [
    "ensure_deterministic",
    "set_deterministic_mode",
    "parse_dtype",
    "select_device",
    "select_dtype",
    "validate_token_ids",
]
