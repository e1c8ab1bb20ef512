"""
Error Types for Token Generation

All errors raised by the engine derive from TokengenError so callers can
catch the whole family. Configuration errors are raised before any inference
call; runtime errors abort the current run but leave sessions resettable.
"""


class TokengenError(Exception):
    """Base class for token generation errors."""


class ConfigurationError(TokengenError, ValueError):
    """Invalid sampling or engine configuration."""


class RuntimeInferenceError(TokengenError, RuntimeError):
    """The model runtime failed while executing an inference call."""


class TokenizationError(TokengenError):
    """The tokenizer could not encode or decode the given input."""


class SessionBusyError(TokengenError, RuntimeError):
    """A generation call is already in flight on this session."""


class InferenceCancelled(TokengenError):
    """An in-flight inference call was cancelled before it completed."""
