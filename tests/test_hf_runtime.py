"""
Tests for the Hugging Face runtime and tokenizer adapters.

A tiny in-process module stands in for AutoModelForCausalLM so the KV-cache
handling runs without downloading a model.
"""

from types import SimpleNamespace
from unittest.mock import Mock, patch

import pytest
import torch
import torch.nn.functional as F

from tokengen.errors import TokenizationError
from tokengen.runtime.hf_runtime import HFRuntime, HFTokenizer
from tokengen.session import InferenceSession

VOCAB = 8


class TinyLM(torch.nn.Module):
    """Predicts (last token + 1) % VOCAB; caches token ids as keys and values."""

    def __init__(self):
        super().__init__()
        self.config = SimpleNamespace(vocab_size=VOCAB)
        self.position_ids = []

    def forward(self, input_ids, attention_mask, position_ids, past_key_values, use_cache):
        self.position_ids.append(position_ids.tolist())
        n = input_ids.shape[-1]
        new = input_ids.float().view(1, 1, n, 1).expand(1, 1, n, 2)
        if past_key_values is None:
            keys = new
        else:
            keys = torch.cat([past_key_values[0][0], new], dim=2)
        assert attention_mask.shape[-1] == keys.shape[2]
        logits = F.one_hot((input_ids + 1) % VOCAB, VOCAB).float()
        return SimpleNamespace(logits=logits, past_key_values=((keys, keys.clone()),))


@pytest.fixture
def hf_session():
    model = TinyLM()
    with patch(
        "tokengen.runtime.hf_runtime.AutoModelForCausalLM.from_pretrained",
        return_value=model,
    ):
        session = InferenceSession(HFRuntime("tiny", device="cpu"), name="hf")
        session.load()
    yield session, model
    session.unload()


class TestHFRuntime:
    """Test KV-cache bookkeeping over a causal LM."""

    def test_load_reads_vocab_size(self, hf_session):
        """Loading reads the vocabulary size from the model config."""
        session, _ = hf_session
        assert session.vocab_size == VOCAB
        assert session.runtime.torch_dtype == torch.float32

    def test_prefill_and_step(self, hf_session):
        """A step continues the sequence held by the first pass."""
        session, model = hf_session
        logits = session.prefill([1, 2, 3])
        assert int(torch.argmax(logits)) == 4
        logits = session.step([4])
        assert int(torch.argmax(logits[-1])) == 5
        assert session.runtime.state_length == 4
        assert model.position_ids == [[[0, 1, 2]], [[3]]]

    def test_truncate_tuple_cache(self, hf_session):
        """Legacy tuple caches are truncated to the kept length."""
        session, _ = hf_session
        session.prefill([1, 2, 3])
        session.step([4, 5])
        session.truncate(2)

        cache = session.runtime.kv_cache()
        assert cache.seq_len == 2
        assert cache.layer(0)[0][0, 0, :, 0].tolist() == [1.0, 2.0]
        # Continuation after rollback sees the shortened cache
        session.step([6])
        assert session.runtime.state_length == 3

    def test_reset_clears_cache(self, hf_session):
        """reset() drops the cached keys and values."""
        session, _ = hf_session
        session.prefill([1, 2])
        session.reset()
        assert session.runtime.kv_cache() is None
        assert session.length == 0


class TestHFTokenizer:
    """Test the AutoTokenizer adapter."""

    @pytest.fixture
    def backend(self):
        tokenizer = Mock()
        tokenizer.pad_token = None
        tokenizer.eos_token = "</s>"
        tokenizer.eos_token_id = 2
        tokenizer.unk_token_id = 0
        tokenizer.convert_tokens_to_ids.side_effect = lambda t: {"<|im_end|>": 7}.get(t, 0)
        tokenizer.encode.return_value = [5, 6]
        tokenizer.decode.return_value = "hi"
        return tokenizer

    def test_stop_tokens_extend_eos(self, backend):
        """Named stop tokens are added to the EOS ids."""
        tokenizer = HFTokenizer("m", stop_tokens=["<|im_end|>", "<missing>"], tokenizer=backend)
        assert tokenizer.eos_token_ids == (2, 7)
        assert backend.pad_token == "</s>"

    def test_encode_passes_max_length(self, backend):
        """encode() truncates to max_length."""
        tokenizer = HFTokenizer("m", tokenizer=backend)
        assert tokenizer.encode("hello", max_length=16) == [5, 6]
        backend.encode.assert_called_with("hello", max_length=16, truncation=True)

    def test_decode_skips_special_tokens(self, backend):
        """decode() drops special tokens."""
        tokenizer = HFTokenizer("m", tokenizer=backend)
        assert tokenizer.decode([5, 6]) == "hi"
        backend.decode.assert_called_with([5, 6], skip_special_tokens=True)

    def test_errors_become_tokenization_errors(self, backend):
        """Tokenizer failures surface as TokenizationError."""
        backend.encode.side_effect = RuntimeError("bad input")
        with pytest.raises(TokenizationError):
            HFTokenizer("m", tokenizer=backend).encode("x")
