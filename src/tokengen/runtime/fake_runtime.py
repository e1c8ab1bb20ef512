"""
Fake Runtime and Tokenizer for Testing

Provides FakeRuntime, a stateful runtime that produces deterministic logits
without loading a model, and ByteTokenizer, a byte-level tokenizer whose
decode output shows incomplete UTF-8 sequences as U+FFFD. Together they
exercise generation, cancellation and speculative decoding logic in unit
tests.
"""

import logging
import threading
from typing import Any, Callable, Dict, List, Optional, Sequence, Tuple

import torch

from ..cache.kv_types import KVCache
from ..errors import InferenceCancelled
from .base import ThreadedRuntime
from .interfaces import INPUT_IDS, LOGITS, Tokenizer

PAD_TOKEN_ID = 0
EOS_TOKEN_ID = 1
BOS_TOKEN_ID = 2
EOT_TOKEN_ID = 3
BYTE_OFFSET = 4
BYTE_VOCAB_SIZE = 256 + BYTE_OFFSET

# (tokens consumed so far, prompt length) -> next token id
Transition = Callable[[List[int], int], int]


def letter_cycle(tokens: List[int], prompt_length: int) -> int:
    """Continue the alphabet from the last token: 'a' -> 'b' -> ... -> 'z' -> 'a'."""
    last = tokens[-1] - BYTE_OFFSET
    if not ord("a") <= last <= ord("z"):
        return BYTE_OFFSET + ord("a")
    return BYTE_OFFSET + ord("a") + (last - ord("a") + 1) % 26


def scripted(script: Sequence[int]) -> Transition:
    """
    Transition that replays a fixed sequence of generated tokens.

    The i-th generated token is script[i]; the last entry repeats once the
    script runs out.
    """
    script = list(script)

    def transition(tokens: List[int], prompt_length: int) -> int:
        index = len(tokens) - prompt_length
        return script[min(index, len(script) - 1)]

    return transition


class FakeRuntime(ThreadedRuntime):
    """Deterministic stateful runtime for tests."""

    def __init__(
        self,
        name: str = "fake",
        vocab_size: int = BYTE_VOCAB_SIZE,
        transition: Optional[Transition] = None,
        num_layers: int = 2,
        num_heads: int = 1,
        head_dim: int = 4,
        peak: float = 10.0,
        runner_up: float = 4.0,
        delay_s: float = 0.0,
        fail_on_call: Optional[int] = None,
        truncatable: bool = True,
    ):
        """
        Initialize the fake runtime.

        Args:
            name: Runtime name for logging
            vocab_size: Size of the logits vector
            transition: Function choosing the arg-max token for each position
            num_layers: Number of fake cache layers
            num_heads: Heads per fake cache layer
            head_dim: Head dimension of fake cache tensors
            peak: Logit given to the chosen next token
            runner_up: Logit given to the token after it
            delay_s: Simulated latency per call, interrupted by cancel()
            fail_on_call: 1-based call index that raises a runtime failure
            truncatable: Whether truncate_state() is supported
        """
        super().__init__(name)
        self._vocab_size = vocab_size
        self.transition = transition or letter_cycle
        self.num_layers = num_layers
        self.num_heads = num_heads
        self.head_dim = head_dim
        self.peak = peak
        self.runner_up = runner_up
        self.delay_s = delay_s
        self.fail_on_call = fail_on_call
        self.truncatable = truncatable

        self.loaded = False
        self.call_count = 0
        self.reset_count = 0
        self.calls: List[List[int]] = []
        self._tokens: List[int] = []
        self._prompt_length = 0
        self._cache = KVCache()
        self._lock = threading.Lock()

    def load(self) -> None:
        self.loaded = True
        self.logger.info(f"FakeRuntime loaded: {self.name} (vocab_size={self._vocab_size})")

    def unload(self) -> None:
        self.shutdown()
        self.loaded = False

    @property
    def vocab_size(self) -> int:
        return self._vocab_size

    @property
    def state_length(self) -> int:
        return len(self._tokens)

    @property
    def tokens(self) -> List[int]:
        """Tokens currently held in the recurrent state."""
        return list(self._tokens)

    @property
    def supports_truncate(self) -> bool:
        return self.truncatable

    def logits_for(self, tokens: List[int], prompt_length: int) -> torch.Tensor:
        """Logits at the last position of tokens."""
        logits = torch.zeros(self._vocab_size)
        chosen = self.transition(tokens, prompt_length) % self._vocab_size
        logits[(chosen + 1) % self._vocab_size] = self.runner_up
        logits[chosen] = self.peak
        return logits

    def _fake_kv(self, tokens: List[int]) -> KVCache:
        n = len(tokens)
        base = torch.tensor(tokens, dtype=torch.float32).view(1, 1, n, 1)
        base = base.expand(1, self.num_heads, n, self.head_dim)
        layers = [(base + i, -(base + i)) for i in range(self.num_layers)]
        return KVCache.from_layers(layers)

    def _forward(self, inputs: Dict[str, torch.Tensor]) -> Dict[str, Any]:
        with self._lock:
            self.call_count += 1
            call_index = self.call_count
        new_tokens = [int(t) for t in inputs[INPUT_IDS].reshape(-1).tolist()]
        self.calls.append(new_tokens)

        if self.delay_s > 0 and self._cancel_event.wait(self.delay_s):
            raise InferenceCancelled(f"[{self.name}] cancelled during forward")
        if self.fail_on_call is not None and call_index == self.fail_on_call:
            raise RuntimeError(f"simulated device failure on call {call_index}")

        prompt_length = self._prompt_length if self._tokens else len(new_tokens)
        sequence = list(self._tokens)
        rows = []
        for token in new_tokens:
            sequence.append(token)
            rows.append(self.logits_for(sequence, prompt_length))
        return {
            LOGITS: torch.stack(rows).unsqueeze(0),
            "new_tokens": new_tokens,
            "prompt_length": prompt_length,
        }

    def _commit(self, result: Dict[str, Any]) -> None:
        new_tokens = result["new_tokens"]
        self._prompt_length = result["prompt_length"]
        self._tokens.extend(new_tokens)
        self._cache = self._cache.append(self._fake_kv(new_tokens))

    def reset_state(self) -> None:
        self._tokens = []
        self._prompt_length = 0
        self._cache = KVCache()
        self.reset_count += 1

    def truncate_state(self, length: int) -> None:
        if not self.truncatable:
            super().truncate_state(length)
        if length < 0 or length > len(self._tokens):
            raise ValueError(
                f"Cannot truncate state of length {len(self._tokens)} to {length}"
            )
        self._tokens = self._tokens[:length]
        self._cache = self._cache.slice_prefix(length) if length else KVCache()

    def kv_cache(self) -> Optional[KVCache]:
        return self._cache


class ByteTokenizer(Tokenizer):
    """Byte-level tokenizer: one token per UTF-8 byte, offset past special ids."""

    def __init__(self, stop_token_ids: Tuple[int, ...] = (EOT_TOKEN_ID,)):
        self.logger = logging.getLogger(__name__)
        self._stop_token_ids = tuple(stop_token_ids)
        self.decode_calls = 0

    @property
    def vocab_size(self) -> int:
        return BYTE_VOCAB_SIZE

    @property
    def eos_token_ids(self) -> Tuple[int, ...]:
        return (EOS_TOKEN_ID,) + self._stop_token_ids

    def encode(self, text: str, max_length: Optional[int] = None) -> List[int]:
        ids = [b + BYTE_OFFSET for b in text.encode("utf-8")]
        if max_length is not None:
            ids = ids[:max_length]
        return ids

    def decode(self, token_ids: Sequence[int]) -> str:
        self.decode_calls += 1
        data = bytes(int(t) - BYTE_OFFSET for t in token_ids if int(t) >= BYTE_OFFSET)
        return data.decode("utf-8", errors="replace")

    def get_tokenizer_info(self) -> dict:
        return {
            "vocab_size": BYTE_VOCAB_SIZE,
            "pad_token_id": PAD_TOKEN_ID,
            "eos_token_id": EOS_TOKEN_ID,
            "bos_token_id": BOS_TOKEN_ID,
            "eos_token_ids": self.eos_token_ids,
        }


def token_ids_for(text: str) -> List[int]:
    """Byte-level token ids for text, as ByteTokenizer would encode it."""
    return [b + BYTE_OFFSET for b in text.encode("utf-8")]
