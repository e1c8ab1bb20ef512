"""
tokengen - Incremental and Speculative Token Generation

This package turns a stateful model runtime into a text generation engine.

Key Components:
- sampling: logits-to-token selection, random sources and rejection sampling
- session: stateful inference session with KV-cache bookkeeping
- generation: first-pass and continuation controller
- speculative: draft/target speculative decoding coordinator
- streamer: UTF-8 safe streaming detokenizer
- engine: load/generate/reset/unload lifecycle facade
"""

from .config import EngineConfig, GenerationConfig
from .engine import GenerationEngine
from .errors import (
    ConfigurationError,
    InferenceCancelled,
    RuntimeInferenceError,
    SessionBusyError,
    TokenizationError,
    TokengenError,
)
from .generation import (
    GenerationController,
    GenerationResult,
    GenerationState,
    StopReason,
)
from .session import InferenceSession, SessionStatus
from .speculative import SpeculativeDecoder
from .streamer import TextStreamer

__version__ = "0.1.0"

__all__ = [
    "ConfigurationError",
    "EngineConfig",
    "GenerationConfig",
    "GenerationController",
    "GenerationEngine",
    "GenerationResult",
    "GenerationState",
    "InferenceCancelled",
    "InferenceSession",
    "RuntimeInferenceError",
    "SessionBusyError",
    "SessionStatus",
    "SpeculativeDecoder",
    "StopReason",
    "TextStreamer",
    "TokenizationError",
    "TokengenError",
]
