"""
Test Suite for tokengen

Unit tests for sampling, sessions, streaming and speculative decoding. All
tests run on CPU against the deterministic fake runtime and byte tokenizer,
so no model downloads are needed.
"""
