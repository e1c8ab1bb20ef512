"""
Model Runtime and Tokenizer Interfaces

Defines the collaborator interfaces the generation core consumes, so real
Hugging Face backends and deterministic fakes can be injected alike.

A runtime is stateful: every completed inference call appends its inputs to
the runtime's recurrent state (the KV cache) until reset_state() is called.
"""

from abc import ABC, abstractmethod
from typing import List, Optional, Sequence, Tuple

import torch

from ..cache.kv_types import KVCache

INPUT_IDS = "input_ids"
ATTENTION_MASK = "attention_mask"
POSITION_IDS = "position_ids"
LOGITS = "logits"


class ModelRuntime(ABC):
    """Abstract inference runtime accepting named input tensors."""

    @abstractmethod
    def load(self) -> None:
        """Load or compile the model so inference calls can be issued."""
        pass

    @abstractmethod
    def unload(self) -> None:
        """Release the model."""
        pass

    @abstractmethod
    def set_input(self, name: str, tensor: torch.Tensor) -> None:
        """
        Bind a named input tensor for the next inference call.

        Args:
            name: Input name (input_ids, attention_mask, position_ids)
            tensor: Input tensor [batch_size, seq_len]
        """
        pass

    @abstractmethod
    def start_async(self) -> None:
        """Submit an inference call over the bound inputs without waiting."""
        pass

    @abstractmethod
    def wait(self) -> None:
        """
        Block until the submitted call completes.

        Raises:
            InferenceCancelled: If cancel() was called while waiting
            RuntimeInferenceError: If the call failed
        """
        pass

    @abstractmethod
    def cancel(self) -> None:
        """
        Request cancellation of the in-flight call; safe from any thread.

        The request also refuses later submits until clear_cancel().
        """
        pass

    @abstractmethod
    def clear_cancel(self) -> None:
        """Accept inference calls again after a cancel."""
        pass

    @abstractmethod
    def get_output(self, name: str) -> torch.Tensor:
        """
        Read a named output of the last completed call.

        Args:
            name: Output name ("logits" -> [batch_size, seq_len, vocab_size])
        """
        pass

    @abstractmethod
    def reset_state(self) -> None:
        """Clear the recurrent state for a new independent sequence."""
        pass

    @property
    @abstractmethod
    def vocab_size(self) -> int:
        """Size of the logits' last dimension."""
        pass

    @property
    @abstractmethod
    def state_length(self) -> int:
        """Number of positions held in the recurrent state."""
        pass

    def infer(self) -> None:
        """Run one synchronous inference call."""
        self.start_async()
        self.wait()

    @property
    def supports_truncate(self) -> bool:
        return False

    def truncate_state(self, length: int) -> None:
        """Drop recurrent state beyond the first `length` positions."""
        raise NotImplementedError(
            f"{type(self).__name__} cannot truncate its recurrent state"
        )

    def kv_cache(self) -> Optional[KVCache]:
        """Snapshot of the recurrent key/value cache, if the runtime exposes it."""
        return None


class Tokenizer(ABC):
    """Abstract tokenizer used to encode prompts and decode output."""

    @abstractmethod
    def encode(self, text: str, max_length: Optional[int] = None) -> List[int]:
        """
        Encode text to token IDs.

        Args:
            text: Input text to encode
            max_length: Keep at most this many tokens

        Returns:
            Token ID list
        """
        pass

    @abstractmethod
    def decode(self, token_ids: Sequence[int]) -> str:
        """
        Decode token IDs to text.

        Args:
            token_ids: Token IDs to decode

        Returns:
            Decoded text
        """
        pass

    @property
    @abstractmethod
    def eos_token_ids(self) -> Tuple[int, ...]:
        """All token IDs that terminate generation."""
        pass

    def get_tokenizer_info(self) -> dict:
        """Tokenizer metadata for compatibility checking."""
        return {"eos_token_ids": self.eos_token_ids}
