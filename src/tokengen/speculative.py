"""
Speculative Decoding Coordinator

Drives a cheap draft session and an expensive target session over one
prompt. Each iteration:

1. The draft catches up on any tokens it has not consumed (at least the
   pending token) and proposes K tokens by single-token continuation steps.
2. The target scores the pending token plus all K proposals in one
   continuation pass, producing K+1 distributions.
3. The rejection sampler accepts the longest valid prefix and supplies one
   more token from the target (the correction, or a bonus when all K are
   accepted).
4. Both sessions are rolled back to the accepted context. Runtimes that
   cannot truncate are reset and the accepted context is replayed.

The emitted sequence is distributed exactly as target-only decoding; with
greedy controls it is token-for-token identical to it.
"""

import dataclasses
import logging
import threading
from dataclasses import dataclass
from typing import Any, Callable, Iterator, List, Optional, Sequence, Tuple

import torch

from .config import GenerationConfig
from .errors import (
    ConfigurationError,
    InferenceCancelled,
    RuntimeInferenceError,
    SessionBusyError,
)
from .generation import (
    GenerationResult,
    GenerationRun,
    GenerationState,
    StopReason,
    TokenCallback,
    encode_prompt,
)
from .lookahead import FixedLookahead, LookaheadController
from .metrics import elapsed_ms, now_ms, process_memory_mb
from .runtime.interfaces import Tokenizer
from .sampling.rejection import RejectionSampler
from .sampling.rng import GeneratorPool
from .sampling.sampler import token_distribution
from .session import InferenceSession
from .streamer import TextStreamer


@dataclass
class SpeculativeState:
    """Counters for one speculative run."""

    max_iterations: int
    iteration: int = 0
    proposed: int = 0
    accepted: int = 0

    @property
    def acceptance_rate(self) -> float:
        return self.accepted / self.proposed if self.proposed > 0 else 0.0


class SpeculativeDecoder:
    """Draft/target speculative decoding over two inference sessions."""

    def __init__(
        self,
        draft_session: InferenceSession,
        target_session: InferenceSession,
        tokenizer: Tokenizer,
        eos_token_ids: Optional[Sequence[int]] = None,
        lookahead: Optional[LookaheadController] = None,
        max_iterations: int = 50,
        default_config: Optional[GenerationConfig] = None,
        generators: Optional[GeneratorPool] = None,
    ):
        """
        Initialize the coordinator.

        Args:
            draft_session: Loaded session of the draft model
            target_session: Loaded session of the target model
            tokenizer: Tokenizer shared by both models
            eos_token_ids: Terminator ids (defaults to the tokenizer's)
            lookahead: Chooses K per iteration (fixed K=4 if None)
            max_iterations: Upper bound on speculative iterations per run
            default_config: Config used when generate() gets none
            generators: Shared random sources (one per thread and seed)
        """
        if max_iterations < 1:
            raise ConfigurationError(f"max_iterations must be >= 1, got {max_iterations}")
        self.logger = logging.getLogger(__name__)
        self.draft = draft_session
        self.target = target_session
        self.tokenizer = tokenizer
        self.eos_token_ids = tuple(
            tokenizer.eos_token_ids if eos_token_ids is None else eos_token_ids
        )
        self.lookahead = lookahead or FixedLookahead(4)
        self.max_iterations = max_iterations
        self.default_config = default_config or GenerationConfig()
        self.generators = generators or GeneratorPool()
        self._cancel_event = threading.Event()
        self.state = GenerationState.IDLE
        self.last_run: Optional[GenerationRun] = None
        self.last_state: Optional[SpeculativeState] = None

    @property
    def vocab_size(self) -> int:
        """Vocabulary shared by draft and target (the smaller of the two)."""
        return min(self.draft.vocab_size, self.target.vocab_size)

    def cancel(self) -> None:
        """Request cancellation of the current run; safe from any thread."""
        self._cancel_event.set()
        run = self.last_run
        if run is not None:
            run.stop_event.set()
        self.draft.cancel()
        self.target.cancel()

    def _prepare(
        self, prompt: Any, config: Optional[GenerationConfig]
    ) -> Tuple[GenerationRun, GenerationConfig]:
        config = (config or self.default_config).validate()
        if self.vocab_size <= 0:
            raise ConfigurationError(
                f"Vocabulary size must be positive, got {self.vocab_size}"
            )
        if self.draft.is_busy or self.target.is_busy:
            raise SessionBusyError("a speculative generation call is already in flight")
        token_ids = encode_prompt(
            self.tokenizer, prompt, config.context_limit, self.vocab_size
        )
        self._cancel_event.clear()
        self.draft.clear_cancel()
        self.target.clear_cancel()
        self.target.stats.reset_run()
        self.lookahead.reset()
        run = GenerationRun(prompt_tokens=token_ids, stats=self.target.stats)
        self.last_run = run
        return run, config

    def _distribution(
        self, history: Sequence[int], logits: torch.Tensor, config: GenerationConfig
    ) -> torch.Tensor:
        return token_distribution(history, logits[: self.vocab_size], config)

    def _draw(
        self,
        probs: torch.Tensor,
        config: GenerationConfig,
        generator: Optional[torch.Generator],
    ) -> int:
        if not config.do_sample:
            return int(torch.argmax(probs).item())
        return int(torch.multinomial(probs, 1, generator=generator).item())

    def _terminated(self, run: GenerationRun, config: GenerationConfig) -> Optional[StopReason]:
        terminators = set(self.eos_token_ids) | set(config.stop_token_ids)
        if run.output_tokens and run.output_tokens[-1] in terminators:
            return StopReason.TERMINATOR
        if len(run.output_tokens) >= config.max_new_tokens:
            return StopReason.MAX_NEW_TOKENS
        return None

    def _stop_reason(
        self, run: GenerationRun, spec: SpeculativeState, config: GenerationConfig
    ) -> Optional[StopReason]:
        reason = self._terminated(run, config)
        if reason is not None:
            return reason
        if self._cancel_event.is_set() or run.stop_event.is_set():
            return StopReason.CANCELLED
        if self.target.length >= config.context_limit:
            return StopReason.CONTEXT_LIMIT
        if spec.iteration >= spec.max_iterations:
            return StopReason.MAX_ITERATIONS
        return None

    def _check_cancelled(self, run: GenerationRun) -> None:
        if self._cancel_event.is_set() or run.stop_event.is_set():
            raise InferenceCancelled("speculative run cancelled between calls")

    def _propose(
        self,
        run: GenerationRun,
        k: int,
        config: GenerationConfig,
        generator: Optional[torch.Generator],
    ) -> Tuple[List[int], List[torch.Tensor]]:
        """Run the draft for k proposals, feeding whatever it has not consumed."""
        proposals: List[int] = []
        draft_probs: List[torch.Tensor] = []
        if k == 0:
            return proposals, draft_probs
        feed = run.history[self.draft.length :]
        for i in range(k):
            self._check_cancelled(run)
            logits = self.draft.step(feed)[-1]
            probs = self._distribution(run.history + proposals, logits, config)
            token = self._draw(probs, config, generator)
            proposals.append(token)
            draft_probs.append(probs)
            feed = [token]
        return proposals, draft_probs

    def _verify(
        self,
        run: GenerationRun,
        proposals: List[int],
        config: GenerationConfig,
    ) -> torch.Tensor:
        """Score the pending token plus proposals on the target in one pass."""
        feed = run.history[self.target.length :] + proposals
        self._check_cancelled(run)
        logits = self.target.step(feed)
        rows = logits[-(len(proposals) + 1) :]
        return torch.stack(
            [
                self._distribution(run.history + proposals[:i], rows[i], config)
                for i in range(len(proposals) + 1)
            ]
        )

    def _rollback(self, run: GenerationRun) -> None:
        """Truncate both sessions to everything but the new pending token."""
        keep = len(run.history) - 1
        for session in (self.draft, self.target):
            if session.length > keep:
                session.truncate(keep, replay=run.history[:keep])

    def _iterate(self, run: GenerationRun, config: GenerationConfig) -> Iterator[int]:
        method = "stochastic" if config.do_sample else "greedy"
        verifier = RejectionSampler(method)
        generator = self.generators.get(config.seed) if config.do_sample else None
        spec = SpeculativeState(max_iterations=self.max_iterations)
        self.last_state = spec

        with self.draft.in_flight(), self.target.in_flight():
            try:
                self.state = run.state = GenerationState.FIRST_PASS
                start = now_ms()
                target_logits = self.target.prefill(run.prompt_tokens)
                run.stats.record_first_pass(run.prompt_length, elapsed_ms(start))
                self.draft.prefill(run.prompt_tokens)
                first_probs = self._distribution(run.history, target_logits, config)
                token = self._draw(first_probs, config, generator)
                run.emit(token)
                yield token

                self.state = run.state = GenerationState.CONTINUATION
                while True:
                    reason = self._stop_reason(run, spec, config)
                    if reason is not None:
                        run.finish(reason)
                        break

                    # Never propose past the token budget or the context window
                    remaining = config.max_new_tokens - len(run.output_tokens)
                    room = config.context_limit - self.target.length - 1
                    k = max(0, min(self.lookahead.next_k(), remaining - 1, room))

                    start = now_ms()
                    proposals, draft_probs = self._propose(run, k, config, generator)
                    target_probs = self._verify(run, proposals, config)
                    result = verifier(
                        proposals,
                        target_probs,
                        torch.stack(draft_probs) if draft_probs else target_probs[:0],
                        generator,
                    )
                    run.stats.record_continuation(elapsed_ms(start))

                    spec.iteration += 1
                    spec.proposed += k
                    spec.accepted += result.num_accepted
                    if k > 0:
                        self.lookahead.observe(k, result.num_accepted)
                    self.logger.debug(
                        f"Iteration {spec.iteration}: accepted "
                        f"{result.num_accepted}/{k}, bonus {result.bonus_token_id}"
                    )

                    emitted: List[int] = []
                    for token in result.accepted_token_ids + [result.bonus_token_id]:
                        if self._terminated(run, config) is not None:
                            break
                        run.emit(token)
                        emitted.append(token)

                    if self._terminated(run, config) is None:
                        self._rollback(run)
                    for token in emitted:
                        yield token
            except InferenceCancelled:
                self.logger.info("Speculative generation cancelled during inference")
                run.finish(StopReason.CANCELLED)
            except GeneratorExit:
                run.finish(StopReason.CANCELLED)
                raise
            except RuntimeInferenceError as e:
                run.finish(StopReason.ERROR)
                self.logger.error(f"Speculative generation failed: {e}")
                raise
            finally:
                self.state = run.state
                run.stats.finalize(len(run.output_tokens))
                self.draft.reset()
                self.target.reset()

        self.logger.info(
            f"Speculative generation {run.state.value}: "
            f"{len(run.output_tokens)} tokens in {spec.iteration} iterations, "
            f"acceptance {spec.acceptance_rate:.2f}"
        )

    def _result(self, run: GenerationRun, text: str) -> GenerationResult:
        spec = self.last_state or SpeculativeState(max_iterations=self.max_iterations)
        result = GenerationResult(
            text=text,
            token_ids=list(run.output_tokens),
            prompt_tokens=run.prompt_length,
            state=run.state,
            stop_reason=run.stop_reason,
            latency_ms=elapsed_ms(run.start_ms),
            stats=dataclasses.replace(run.stats),
        )
        result.extras = {
            "proposed": spec.proposed,
            "accepted": spec.accepted,
            "acceptance_rate": spec.acceptance_rate,
            "iterations": spec.iteration,
            "lookahead": self.lookahead.get_info(),
            "mem_rss_mb": process_memory_mb(),
        }
        return result

    def generate(
        self,
        prompt: Any,
        config: Optional[GenerationConfig] = None,
        callback: Optional[TokenCallback] = None,
        text_callback: Optional[Callable[[str], None]] = None,
    ) -> GenerationResult:
        """
        Generate a continuation of prompt with speculative decoding.

        Emitted tokens pass through a streaming detokenizer, which is flushed
        when the run ends. Both sessions are reset afterwards for reuse.

        Args:
            prompt: Prompt text, or pre-tokenized prompt ids
            config: Sampling and stopping controls (defaults if None)
            callback: Called once per emitted token with the run's stop event
            text_callback: Receives UTF-8 safe text fragments as they form

        Returns:
            GenerationResult; extras carry proposed/accepted counts,
            acceptance_rate, iterations and mem_rss_mb

        Raises:
            ConfigurationError: If config is invalid (before any inference)
            TokenizationError: If the prompt cannot be tokenized
            RuntimeInferenceError: If either runtime fails
        """
        run, config = self._prepare(prompt, config)
        streamer = TextStreamer(self.tokenizer.decode, callback=text_callback)
        fragments: List[str] = []
        for token in self._iterate(run, config):
            if callback is not None:
                callback(token, run.stop_event)
            fragments.append(streamer.put(token))
        fragments.append(streamer.end())
        return self._result(run, "".join(fragments))

    def stream(
        self, prompt: Any, config: Optional[GenerationConfig] = None
    ) -> Iterator[int]:
        """Lazily generate token ids; closing the iterator cancels the run."""
        run, config = self._prepare(prompt, config)
        yield from self._iterate(run, config)

    def result(self) -> Optional[GenerationResult]:
        """Result of the most recent run, once it has left the token loop."""
        run = self.last_run
        if run is None or run.stop_reason is None:
            return None
        return self._result(run, self.tokenizer.decode(run.output_tokens))
