"""
Incremental Generation Controller

Runs one autoregressive generation over an InferenceSession. The first pass
submits the whole prompt and samples from the last position's logits; every
continuation step submits only the previous output token. Stop conditions
are checked before each continuation step, so no inference call is issued
after a terminator, after max_new_tokens, or once cancellation is requested.

Two calling modes share one token loop:
- generate(): batch mode, or streaming with a per-token callback
- stream(): lazy iterator over token ids; closing it cancels the run
"""

import dataclasses
import logging
import threading
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Dict, Iterator, List, Optional, Sequence, Tuple

import torch

from .config import GenerationConfig
from .errors import (
    ConfigurationError,
    InferenceCancelled,
    RuntimeInferenceError,
    SessionBusyError,
    TokenizationError,
)
from .metrics import PerformanceStatistic, elapsed_ms, now_ms
from .runtime.interfaces import Tokenizer
from .sampling.rng import GeneratorPool
from .sampling.sampler import select_token
from .session import InferenceSession
from .streamer import TextStreamer
from .utils.token_validation import validate_token_ids

# (token id, stop event) -> None; set the event to stop before the next step
TokenCallback = Callable[[int, threading.Event], None]


class GenerationState(str, Enum):
    IDLE = "idle"
    FIRST_PASS = "first_pass"
    CONTINUATION = "continuation"
    COMPLETED = "completed"
    CANCELLED = "cancelled"
    FAILED = "failed"


class StopReason(str, Enum):
    TERMINATOR = "terminator"
    MAX_NEW_TOKENS = "max_new_tokens"
    CONTEXT_LIMIT = "context_limit"
    CANCELLED = "cancelled"
    MAX_ITERATIONS = "max_iterations"
    ERROR = "error"


@dataclass
class GenerationRun:
    """Mutable state of one generate call."""

    prompt_tokens: List[int]
    stats: PerformanceStatistic
    history: List[int] = field(default_factory=list)
    output_tokens: List[int] = field(default_factory=list)
    stop_event: threading.Event = field(default_factory=threading.Event)
    state: GenerationState = GenerationState.IDLE
    stop_reason: Optional[StopReason] = None
    start_ms: float = field(default_factory=now_ms)

    def __post_init__(self) -> None:
        if not self.history:
            self.history = list(self.prompt_tokens)

    @property
    def prompt_length(self) -> int:
        return len(self.prompt_tokens)

    def emit(self, token_id: int) -> None:
        self.output_tokens.append(token_id)
        self.history.append(token_id)

    def finish(self, reason: StopReason) -> None:
        self.stop_reason = reason
        if reason == StopReason.CANCELLED:
            self.state = GenerationState.CANCELLED
        elif reason == StopReason.ERROR:
            self.state = GenerationState.FAILED
        else:
            self.state = GenerationState.COMPLETED


@dataclass
class GenerationResult:
    """Outcome of a finished (completed or cancelled) generation."""

    text: str
    token_ids: List[int]
    prompt_tokens: int
    state: GenerationState
    stop_reason: Optional[StopReason]
    latency_ms: float
    stats: PerformanceStatistic
    extras: Dict[str, Any] = field(default_factory=dict)

    @property
    def generated_tokens(self) -> int:
        return len(self.token_ids)

    @property
    def tokens_per_sec(self) -> float:
        if self.latency_ms <= 0:
            return 0.0
        return self.generated_tokens / (self.latency_ms / 1000.0)

    def to_dict(self) -> Dict[str, Any]:
        result = {
            "text": self.text,
            "token_ids": list(self.token_ids),
            "prompt_tokens": self.prompt_tokens,
            "generated_tokens": self.generated_tokens,
            "state": self.state.value,
            "stop_reason": self.stop_reason.value if self.stop_reason else None,
            "latency_ms": self.latency_ms,
            "tokens_per_sec": self.tokens_per_sec,
            "stats": self.stats.to_dict(),
        }
        result.update(self.extras)
        return result


def encode_prompt(
    tokenizer: Tokenizer, prompt: Any, context_limit: int, vocab_size: int
) -> List[int]:
    """
    Tokenize a prompt (text or pre-tokenized ids) within the context limit.

    Raises:
        TokenizationError: If the prompt encodes to nothing or holds ids
            outside the vocabulary
    """
    if isinstance(prompt, str):
        token_ids = tokenizer.encode(prompt, max_length=context_limit)
    else:
        token_ids = [int(t) for t in prompt][:context_limit]
    if not token_ids:
        raise TokenizationError("Prompt encodes to an empty token sequence")
    validate_token_ids(token_ids, vocab_size, name="prompt")
    return token_ids


class GenerationController:
    """Drives first-pass and continuation inference for one session."""

    def __init__(
        self,
        session: InferenceSession,
        tokenizer: Tokenizer,
        eos_token_ids: Optional[Sequence[int]] = None,
        default_config: Optional[GenerationConfig] = None,
        generators: Optional[GeneratorPool] = None,
    ):
        """
        Initialize the controller.

        Args:
            session: Loaded inference session to drive
            tokenizer: Tokenizer for prompts and output text
            eos_token_ids: Terminator ids (defaults to the tokenizer's)
            default_config: Config used when generate() gets none
            generators: Shared random sources (one per thread and seed)
        """
        self.logger = logging.getLogger(__name__)
        self.session = session
        self.tokenizer = tokenizer
        self.eos_token_ids = tuple(
            tokenizer.eos_token_ids if eos_token_ids is None else eos_token_ids
        )
        self.default_config = default_config or GenerationConfig()
        self.generators = generators or GeneratorPool()
        self._cancel_event = threading.Event()
        self.state = GenerationState.IDLE
        self.last_run: Optional[GenerationRun] = None

    def cancel(self) -> None:
        """Request cancellation of the current run; safe from any thread."""
        self._cancel_event.set()
        run = self.last_run
        if run is not None:
            run.stop_event.set()
        self.session.cancel()

    def _prepare(
        self, prompt: Any, config: Optional[GenerationConfig]
    ) -> Tuple[GenerationRun, GenerationConfig]:
        config = (config or self.default_config).validate()
        if self.session.vocab_size <= 0:
            raise ConfigurationError(
                f"Vocabulary size must be positive, got {self.session.vocab_size}"
            )
        if self.session.is_busy:
            raise SessionBusyError(
                f"[{self.session.name}] a generation call is already in flight"
            )
        token_ids = encode_prompt(
            self.tokenizer, prompt, config.context_limit, self.session.vocab_size
        )
        self._cancel_event.clear()
        self.session.clear_cancel()
        self.session.stats.reset_run()
        run = GenerationRun(prompt_tokens=token_ids, stats=self.session.stats)
        self.last_run = run
        return run, config

    def _terminators(self, config: GenerationConfig) -> frozenset:
        return frozenset(self.eos_token_ids) | frozenset(config.stop_token_ids)

    def _stop_reason(
        self, run: GenerationRun, config: GenerationConfig
    ) -> Optional[StopReason]:
        if run.output_tokens and run.output_tokens[-1] in self._terminators(config):
            return StopReason.TERMINATOR
        if len(run.output_tokens) >= config.max_new_tokens:
            return StopReason.MAX_NEW_TOKENS
        if self._cancel_event.is_set() or run.stop_event.is_set():
            return StopReason.CANCELLED
        if self.session.length >= config.context_limit:
            return StopReason.CONTEXT_LIMIT
        return None

    def _select(
        self,
        run: GenerationRun,
        logits: torch.Tensor,
        config: GenerationConfig,
        generator: Optional[torch.Generator],
    ) -> int:
        return select_token(run.history, logits.clone(), config, generator)

    def _iterate(self, run: GenerationRun, config: GenerationConfig) -> Iterator[int]:
        """Token loop shared by every calling mode."""
        generator = self.generators.get(config.seed) if config.do_sample else None
        session = self.session

        with session.in_flight():
            try:
                self.state = run.state = GenerationState.FIRST_PASS
                start = now_ms()
                logits = session.prefill(run.prompt_tokens)
                run.stats.record_first_pass(run.prompt_length, elapsed_ms(start))
                self.logger.info(
                    f"First pass: {run.prompt_length} prompt tokens in "
                    f"{run.stats.first_infer_duration_ms:.1f} ms "
                    f"({run.stats.prompt_evaluation_speed:.1f} tokens/sec)"
                )
                token = self._select(run, logits, config, generator)
                run.emit(token)
                yield token

                self.state = run.state = GenerationState.CONTINUATION
                while True:
                    reason = self._stop_reason(run, config)
                    if reason is not None:
                        run.finish(reason)
                        break
                    start = now_ms()
                    logits = session.step([token])[-1]
                    run.stats.record_continuation(elapsed_ms(start))
                    token = self._select(run, logits, config, generator)
                    run.emit(token)
                    self.logger.debug(f"Step {len(run.output_tokens)}: token {token}")
                    yield token
            except InferenceCancelled:
                self.logger.info("Generation cancelled during inference")
                run.finish(StopReason.CANCELLED)
            except GeneratorExit:
                run.finish(StopReason.CANCELLED)
                raise
            except RuntimeInferenceError as e:
                run.finish(StopReason.ERROR)
                self.logger.error(f"Generation failed: {e}")
                session.reset()
                raise
            finally:
                self.state = run.state
                run.stats.finalize(len(run.output_tokens))

        self.logger.info(
            f"Generation {run.state.value}: {len(run.output_tokens)} tokens, "
            f"{run.stats.average_tokens_per_second:.1f} tokens/sec"
        )

    def _result(self, run: GenerationRun) -> GenerationResult:
        return GenerationResult(
            text=self.tokenizer.decode(run.output_tokens),
            token_ids=list(run.output_tokens),
            prompt_tokens=run.prompt_length,
            state=run.state,
            stop_reason=run.stop_reason,
            latency_ms=elapsed_ms(run.start_ms),
            stats=dataclasses.replace(run.stats),
        )

    def generate(
        self,
        prompt: Any,
        config: Optional[GenerationConfig] = None,
        callback: Optional[TokenCallback] = None,
        text_callback: Optional[Callable[[str], None]] = None,
    ) -> GenerationResult:
        """
        Generate a continuation of prompt.

        Args:
            prompt: Prompt text, or pre-tokenized prompt ids
            config: Sampling and stopping controls (defaults if None)
            callback: Streaming mode; called once per produced token with the
                token id and the run's stop event
            text_callback: Receives UTF-8 safe text fragments as they form

        Returns:
            GenerationResult with the decoded text of all produced tokens

        Raises:
            ConfigurationError: If config is invalid (before any inference)
            TokenizationError: If the prompt cannot be tokenized
            RuntimeInferenceError: If the runtime fails; the session is reset
        """
        run, config = self._prepare(prompt, config)
        streamer = (
            TextStreamer(self.tokenizer.decode, callback=text_callback)
            if text_callback is not None
            else None
        )
        for token in self._iterate(run, config):
            if callback is not None:
                callback(token, run.stop_event)
            if streamer is not None:
                streamer.put(token)
        if streamer is not None:
            streamer.end()
        return self._result(run)

    def stream(
        self, prompt: Any, config: Optional[GenerationConfig] = None
    ) -> Iterator[int]:
        """
        Lazily generate token ids.

        Prompt validation happens on the first next(). Closing the iterator
        early ends the run as cancelled.
        """
        run, config = self._prepare(prompt, config)
        yield from self._iterate(run, config)

    def result(self) -> Optional[GenerationResult]:
        """Result of the most recent run, once it has left the token loop."""
        run = self.last_run
        if run is None or run.stop_reason is None:
            return None
        return self._result(run)
