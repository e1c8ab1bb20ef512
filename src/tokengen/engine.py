"""
Generation Engine

Lifecycle facade over the generation core: load a target model (and an
optional draft model), load a tokenizer, generate in batch or streaming
mode, stop, reset and unload. When a draft model is configured, generate()
and stream() go through speculative decoding.
"""

import logging
from typing import Any, Callable, Dict, Iterator, Optional

from .config import EngineConfig, GenerationConfig
from .errors import RuntimeInferenceError
from .generation import GenerationController, GenerationResult, TokenCallback
from .lookahead import create_lookahead
from .metrics import elapsed_ms, now_ms
from .runtime.fake_runtime import ByteTokenizer, FakeRuntime
from .runtime.hf_runtime import HFRuntime, HFTokenizer
from .runtime.interfaces import ModelRuntime, Tokenizer
from .sampling.rng import GeneratorPool
from .session import InferenceSession, SessionStatus
from .speculative import SpeculativeDecoder
from .utils.deterministic import ensure_deterministic
from .utils.device import parse_dtype


class GenerationEngine:
    """Single-model (or draft/target) text generation engine."""

    def __init__(
        self,
        config: Optional[EngineConfig] = None,
        target_runtime: Optional[ModelRuntime] = None,
        draft_runtime: Optional[ModelRuntime] = None,
    ):
        """
        Initialize the engine; models are loaded by load_model().

        Args:
            config: Engine configuration (defaults if None)
            target_runtime: Prebuilt runtime for the target model
            draft_runtime: Prebuilt runtime for the draft model
        """
        self.logger = logging.getLogger(__name__)
        self.config = (config or EngineConfig()).validate()
        self._target_runtime = target_runtime
        self._draft_runtime = draft_runtime

        self.target: Optional[InferenceSession] = None
        self.draft: Optional[InferenceSession] = None
        self.tokenizer: Optional[Tokenizer] = None
        self._controller: Optional[GenerationController] = None
        self._speculative: Optional[SpeculativeDecoder] = None

        applied_seed = ensure_deterministic(
            self.config.generation.seed, enabled=self.config.deterministic
        )
        if applied_seed is not None:
            self.logger.info(f"Deterministic mode on (seed={applied_seed})")
        self.generators = GeneratorPool(fallback_seed=applied_seed)

    @property
    def speculative(self) -> bool:
        return self.config.draft_model is not None or self._draft_runtime is not None

    @property
    def status(self) -> SessionStatus:
        if self.target is None:
            return SessionStatus.INIT
        return self.target.status

    def _build_runtime(self, model: str) -> ModelRuntime:
        if self.config.implementation == "hf":
            dtype = parse_dtype(self.config.dtype) if self.config.dtype else None
            return HFRuntime(model, device=self.config.device, torch_dtype=dtype)
        return FakeRuntime(name=model)

    def load_model(self) -> float:
        """
        Load the target model and, if configured, the draft model.

        Returns:
            Target load duration in milliseconds
        """
        runtime = self._target_runtime or self._build_runtime(self.config.model)
        self.target = InferenceSession(runtime, name="target")
        self.target.load()

        if self.speculative:
            draft_runtime = self._draft_runtime or self._build_runtime(
                self.config.draft_model
            )
            self.draft = InferenceSession(draft_runtime, name="draft")
            self.draft.load()

        self._build_controllers()
        return self.target.stats.load_duration_ms

    def load_tokenizer(self, tokenizer: Optional[Tokenizer] = None) -> float:
        """
        Load the tokenizer, or adopt a given one.

        Returns:
            Tokenizer load duration in milliseconds
        """
        start = now_ms()
        if tokenizer is not None:
            self.tokenizer = tokenizer
        elif self.config.implementation == "hf":
            self.tokenizer = HFTokenizer(
                self.config.tokenizer or self.config.model,
                stop_tokens=self.config.stop_tokens,
            )
        else:
            self.tokenizer = ByteTokenizer()
        duration = elapsed_ms(start)
        self.logger.info(f"Load tokenizer took: {duration:.1f} ms")
        if self.target is not None:
            self.target.stats.tokenizer_load_duration_ms = duration
        self._build_controllers()
        return duration

    def unload_tokenizer(self) -> float:
        """
        Release the tokenizer; generation needs load_tokenizer() again.

        Returns:
            Tokenizer unload duration in milliseconds
        """
        if self.tokenizer is None:
            return 0.0
        start = now_ms()
        self.stop()
        self.tokenizer = None
        self._controller = None
        self._speculative = None
        duration = elapsed_ms(start)
        self.logger.info(f"Unload tokenizer took: {duration:.1f} ms")
        if self.target is not None:
            self.target.stats.tokenizer_unload_duration_ms = duration
        return duration

    def _build_controllers(self) -> None:
        if self.target is None or self.tokenizer is None:
            return
        defaults = self.config.generation
        self._controller = GenerationController(
            self.target,
            self.tokenizer,
            default_config=defaults,
            generators=self.generators,
        )
        if self.draft is not None:
            k = self.config.num_speculative_tokens
            if self.config.lookahead_controller == "adaptive":
                lookahead = create_lookahead("adaptive", initial_k=k, max_k=max(8, k))
            else:
                lookahead = create_lookahead("fixed", k=k)
            self._speculative = SpeculativeDecoder(
                self.draft,
                self.target,
                self.tokenizer,
                lookahead=lookahead,
                max_iterations=self.config.max_iterations,
                default_config=defaults,
                generators=self.generators,
            )

    def _backend(self) -> Any:
        if self._controller is None:
            raise RuntimeInferenceError(
                "Model and tokenizer must be loaded before generating"
            )
        return self._speculative or self._controller

    def generate(
        self,
        prompt: Any,
        config: Optional[GenerationConfig] = None,
        callback: Optional[TokenCallback] = None,
        text_callback: Optional[Callable[[str], None]] = None,
    ) -> GenerationResult:
        """Generate text for prompt (batch, or streaming when callback is set)."""
        return self._backend().generate(
            prompt, config, callback=callback, text_callback=text_callback
        )

    def stream(
        self, prompt: Any, config: Optional[GenerationConfig] = None
    ) -> Iterator[int]:
        """Lazily generate token ids for prompt."""
        return self._backend().stream(prompt, config)

    def stop(self) -> None:
        """Request the in-flight generation to stop; safe from any thread."""
        backend = self._speculative or self._controller
        if backend is not None:
            backend.cancel()

    def reset(self) -> None:
        """Clear recurrent state and per-run statistics for a new conversation."""
        for session in (self.target, self.draft):
            if session is not None:
                session.reset()
                session.stats.reset_run()
        self.logger.info("Engine reset")

    def unload_model(self) -> float:
        """
        Release all loaded models.

        Returns:
            Target unload duration in milliseconds
        """
        if self.target is None:
            return 0.0
        if self.draft is not None:
            self.draft.unload()
        self.target.unload()
        self._controller = None
        self._speculative = None
        return self.target.stats.unload_duration_ms

    def get_performance_statistics(self) -> Dict[str, Any]:
        if self.target is None:
            return {}
        return self.target.stats.to_dict()
