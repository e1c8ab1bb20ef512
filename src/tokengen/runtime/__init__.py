"""
Runtime Module

Model runtime and tokenizer interfaces, with Hugging Face backed and
deterministic fake implementations.
"""

from .base import ThreadedRuntime
from .fake_runtime import ByteTokenizer, FakeRuntime
from .hf_runtime import HFRuntime, HFTokenizer
from .interfaces import ModelRuntime, Tokenizer

__all__ = [
    "ByteTokenizer",
    "FakeRuntime",
    "HFRuntime",
    "HFTokenizer",
    "ModelRuntime",
    "ThreadedRuntime",
    "Tokenizer",
]
