"""
Token ID validation.

Single validation point that keeps out-of-range token ids away from the
model's embedding lookup.
"""

import logging
from typing import Sequence

from ..errors import TokenizationError

logger = logging.getLogger(__name__)


def validate_token_ids(
    token_ids: Sequence[int], vocab_size: int, name: str = "input"
) -> None:
    """
    Check that every token id lies in [0, vocab_size).

    Args:
        token_ids: Token ids to check
        vocab_size: Model vocabulary size
        name: Identifier for logging

    Raises:
        TokenizationError: If the sequence is empty or holds invalid ids
    """
    if len(token_ids) == 0:
        raise TokenizationError(f"[{name}] empty token sequence")
    if vocab_size <= 0:
        return

    invalid = [t for t in token_ids if t < 0 or t >= vocab_size]
    if invalid:
        logger.error(
            f"[{name}] Input ID out of bounds detected! "
            f"Min: {min(token_ids)}, Max: {max(token_ids)}, Vocab_size: {vocab_size}, "
            f"Invalid_count: {len(invalid)}/{len(token_ids)}"
        )
        raise TokenizationError(
            f"[{name}] {len(invalid)} token ids outside vocabulary of size {vocab_size}"
        )
