"""
Hugging Face Runtime and Tokenizer

Wraps a transformers causal LM as a stateful ModelRuntime: the model's
past_key_values are held between calls and grown by each committed
inference, so continuation calls only submit new tokens.
"""

import logging
from concurrent.futures import Future
from typing import Any, Dict, List, Optional, Sequence, Tuple

import torch
from transformers import AutoModelForCausalLM, AutoTokenizer

from ..cache.kv_types import KVCache
from ..errors import TokenizationError
from ..utils.device import select_device, select_dtype
from .base import ThreadedRuntime
from .interfaces import ATTENTION_MASK, INPUT_IDS, LOGITS, POSITION_IDS, Tokenizer


class HFRuntime(ThreadedRuntime):
    """Stateful runtime over a Hugging Face causal language model."""

    def __init__(
        self,
        model_name: str,
        device: str = "auto",
        torch_dtype: Optional[torch.dtype] = None,
    ):
        """
        Initialize the runtime; the model is loaded by load().

        Args:
            model_name: Hugging Face model identifier or local path
            device: Device to run on ("auto", "cpu", "mps", "cuda")
            torch_dtype: PyTorch data type for the model (auto-selected if None)
        """
        super().__init__(model_name)
        self.model_name = model_name
        self.device = select_device(device)
        self.torch_dtype = torch_dtype or select_dtype(self.device)
        self._model: Any = None
        self._past: Any = None
        self._length = 0
        self._vocab_size = 0

    def load(self) -> None:
        """Load the model with memory-safe defaults."""
        try:
            self.logger.info(f"Loading HF model: {self.model_name}")
            self._model = AutoModelForCausalLM.from_pretrained(
                self.model_name,
                torch_dtype=self.torch_dtype,
                low_cpu_mem_usage=True,
            )
            self._model = self._model.to(self.device)
            self._model.eval()
            self._vocab_size = int(self._model.config.vocab_size)
            self.logger.info(
                f"HF model loaded on device: {self.device} "
                f"(dtype={self.torch_dtype}, vocab_size={self._vocab_size})"
            )
        except Exception as e:
            self.logger.error(f"Failed to load HF model: {e}")
            raise

    def unload(self) -> None:
        self.shutdown()
        self._model = None
        self._past = None
        self._length = 0
        if self.device == "cuda" and torch.cuda.is_available():
            torch.cuda.empty_cache()

    @property
    def vocab_size(self) -> int:
        return self._vocab_size

    @property
    def state_length(self) -> int:
        return self._length

    @property
    def supports_truncate(self) -> bool:
        return True

    def _forward(self, inputs: Dict[str, torch.Tensor]) -> Dict[str, Any]:
        if self._model is None:
            raise RuntimeError(f"Model {self.model_name} is not loaded")
        past = self._past
        with torch.no_grad():
            outputs = self._model(
                input_ids=inputs[INPUT_IDS].to(self.device),
                attention_mask=inputs[ATTENTION_MASK].to(self.device),
                position_ids=inputs[POSITION_IDS].to(self.device),
                past_key_values=past,
                use_cache=True,
            )
        return {
            LOGITS: outputs.logits.float().cpu(),
            "past_key_values": outputs.past_key_values,
            "num_new": inputs[INPUT_IDS].shape[-1],
        }

    def _commit(self, result: Dict[str, Any]) -> None:
        self._past = result["past_key_values"]
        self._length += result["num_new"]

    def _discard(self, future: Future) -> None:
        # Cache objects grow in place during forward; drop what an
        # uncommitted call appended
        past = self._past
        if past is not None and hasattr(past, "crop"):
            past.crop(self._length)

    def reset_state(self) -> None:
        self._past = None
        self._length = 0

    def truncate_state(self, length: int) -> None:
        if length < 0 or length > self._length:
            raise ValueError(
                f"Cannot truncate state of length {self._length} to {length}"
            )
        if length == 0 or self._past is None:
            self.reset_state()
            return
        if hasattr(self._past, "crop"):
            self._past.crop(length)
        else:
            self._past = tuple(
                (k[:, :, :length, :], v[:, :, :length, :]) for k, v in self._past
            )
        self._length = length

    def kv_cache(self) -> Optional[KVCache]:
        if self._past is None:
            return None
        return KVCache.from_hf_output(self._past)


class HFTokenizer(Tokenizer):
    """Tokenizer adapter over a Hugging Face AutoTokenizer."""

    def __init__(
        self,
        model_name: str,
        stop_tokens: Sequence[str] = (),
        tokenizer: Optional[Any] = None,
    ):
        """
        Initialize the tokenizer.

        Args:
            model_name: Hugging Face model identifier or local path
            stop_tokens: Extra terminator tokens (e.g. an end-of-turn marker)
            tokenizer: Shared tokenizer instance (to avoid loading it twice)
        """
        self.logger = logging.getLogger(__name__)
        self.model_name = model_name
        try:
            self._tokenizer = tokenizer or AutoTokenizer.from_pretrained(model_name)
        except Exception as e:
            self.logger.error(f"Failed to load tokenizer {model_name}: {e}")
            raise
        if self._tokenizer.pad_token is None:
            self._tokenizer.pad_token = self._tokenizer.eos_token

        eos_ids: List[int] = []
        if self._tokenizer.eos_token_id is not None:
            eos_ids.append(int(self._tokenizer.eos_token_id))
        for token in stop_tokens:
            token_id = self._tokenizer.convert_tokens_to_ids(token)
            if token_id is not None and token_id != self._tokenizer.unk_token_id:
                eos_ids.append(int(token_id))
            else:
                self.logger.warning(f"Stop token {token!r} not in vocabulary")
        self._eos_token_ids = tuple(dict.fromkeys(eos_ids))

    @property
    def eos_token_ids(self) -> Tuple[int, ...]:
        return self._eos_token_ids

    def encode(self, text: str, max_length: Optional[int] = None) -> List[int]:
        try:
            return list(
                self._tokenizer.encode(
                    text,
                    max_length=max_length,
                    truncation=max_length is not None,
                )
            )
        except Exception as e:
            raise TokenizationError(f"Failed to encode prompt: {e}") from e

    def decode(self, token_ids: Sequence[int]) -> str:
        try:
            return self._tokenizer.decode(list(token_ids), skip_special_tokens=True)
        except Exception as e:
            raise TokenizationError(f"Failed to decode tokens: {e}") from e

    def get_tokenizer_info(self) -> dict:
        return {
            "model_name": self.model_name,
            "vocab_size": self._tokenizer.vocab_size,
            "pad_token_id": self._tokenizer.pad_token_id,
            "eos_token_id": self._tokenizer.eos_token_id,
            "bos_token_id": self._tokenizer.bos_token_id,
            "eos_token_ids": self.eos_token_ids,
        }
