"""
Streaming Detokenizer

Turns a token id stream into UTF-8 safe text fragments. The streamer keeps
a cache of emitted tokens and decodes it cumulatively because:

- a token's rendered text can depend on preceding context (a leading space
  is dropped only when the token starts a sequence), and
- one printable character may span several token ids, so decoding a
  prefix can end in the U+FFFD replacement character.

Output is withheld while the decoded tail is incomplete and released by a
later token or by end().
"""

import logging
from typing import Callable, Iterable, List, Optional, Sequence

logger = logging.getLogger(__name__)

REPLACEMENT_CHAR = "�"


class TextStreamer:
    """Incremental, UTF-8 safe detokenization buffer."""

    def __init__(
        self,
        decode: Callable[[Sequence[int]], str],
        callback: Optional[Callable[[str], None]] = None,
        flush_on_newline: bool = False,
    ):
        """
        Initialize the streamer.

        Args:
            decode: Detokenizer turning a token id sequence into text
            callback: Optional sink called with every non-empty fragment
            flush_on_newline: Emit and clear the cache after a trailing newline
        """
        self.decode = decode
        self.callback = callback
        self.flush_on_newline = flush_on_newline
        self.token_cache: List[int] = []
        self.printed_length = 0

    def _emit(self, text: str) -> str:
        if text and self.callback is not None:
            self.callback(text)
        return text

    def put(self, token_id: int) -> str:
        """
        Add one token and return the newly printable text (possibly empty).
        """
        self.token_cache.append(int(token_id))
        text = self.decode(self.token_cache)

        if self.flush_on_newline and text.endswith("\n"):
            fragment = text[self.printed_length :]
            self.token_cache = []
            self.printed_length = 0
            return self._emit(fragment)

        if text.endswith(REPLACEMENT_CHAR):
            return ""

        fragment = text[self.printed_length :]
        self.printed_length = len(text)
        return self._emit(fragment)

    def put_many(self, token_ids: Iterable[int]) -> str:
        """Add several tokens and return all text they made printable."""
        return "".join(self.put(t) for t in token_ids)

    def end(self) -> str:
        """Flush whatever is left, including incomplete characters, and clear."""
        text = self.decode(self.token_cache) if self.token_cache else ""
        fragment = text[self.printed_length :]
        self.token_cache = []
        self.printed_length = 0
        return self._emit(fragment)
