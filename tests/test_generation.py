"""
Unit tests for the incremental generation controller.
"""

import threading
import time

import pytest

from tokengen.config import GenerationConfig
from tokengen.errors import (
    ConfigurationError,
    RuntimeInferenceError,
    SessionBusyError,
    TokenizationError,
)
from tokengen.generation import GenerationController, GenerationState, StopReason
from tokengen.runtime.fake_runtime import EOS_TOKEN_ID, EOT_TOKEN_ID, scripted, token_ids_for
from tokengen.session import SessionStatus

GREEDY = GenerationConfig(do_sample=False, max_new_tokens=8)


class TestGenerationBatch:
    """Test batch-mode generation and stopping conditions."""

    def test_generates_until_max_new_tokens(self, session, tokenizer):
        """Generation stops after max_new_tokens tokens."""
        controller = GenerationController(session, tokenizer)
        result = controller.generate("a", GREEDY.replace(max_new_tokens=5))

        assert result.text == "bcdef"
        assert result.generated_tokens == 5
        assert result.state == GenerationState.COMPLETED
        assert result.stop_reason == StopReason.MAX_NEW_TOKENS
        # One first pass plus four continuation steps
        assert session.runtime.call_count == 5

    def test_stops_right_after_terminator(self, make_session, tokenizer):
        """EOS ends the run and is kept in token_ids but not in text."""
        script = token_ids_for("hi") + [EOS_TOKEN_ID] + token_ids_for("never")
        session = make_session(transition=scripted(script))
        controller = GenerationController(session, tokenizer)
        result = controller.generate("prompt", GREEDY)

        assert result.token_ids == token_ids_for("hi") + [EOS_TOKEN_ID]
        assert result.text == "hi"
        assert result.stop_reason == StopReason.TERMINATOR
        assert session.runtime.call_count == 3

    def test_alternate_terminator(self, make_session, tokenizer):
        """The end-of-turn marker stops generation like EOS."""
        session = make_session(transition=scripted(token_ids_for("x") + [EOT_TOKEN_ID]))
        result = GenerationController(session, tokenizer).generate("p", GREEDY)
        assert result.token_ids == token_ids_for("x") + [EOT_TOKEN_ID]
        assert result.stop_reason == StopReason.TERMINATOR

    def test_config_stop_tokens(self, session, tokenizer):
        """Config stop_token_ids act as terminators."""
        stop_at_d = GREEDY.replace(stop_token_ids=tuple(token_ids_for("d")))
        result = GenerationController(session, tokenizer).generate("a", stop_at_d)
        assert result.text == "bcd"

    def test_single_token_budget_skips_continuation(self, session, tokenizer):
        """max_new_tokens=1 runs only the first pass."""
        result = GenerationController(session, tokenizer).generate(
            "a", GREEDY.replace(max_new_tokens=1)
        )
        assert result.text == "b"
        assert session.runtime.call_count == 1

    def test_context_limit_stops_generation(self, session, tokenizer):
        """The session never grows past context_limit."""
        config = GREEDY.replace(context_limit=4, max_new_tokens=20)
        result = GenerationController(session, tokenizer).generate("ab", config)
        assert result.stop_reason == StopReason.CONTEXT_LIMIT
        assert session.length == 4

    def test_prompt_truncated_to_context_limit(self, session, tokenizer):
        """Prompts are cut to context_limit tokens."""
        config = GREEDY.replace(context_limit=3, max_new_tokens=1)
        result = GenerationController(session, tokenizer).generate("abcdef", config)
        assert result.prompt_tokens == 3
        assert result.text == "d"

    def test_pre_tokenized_prompt(self, session, tokenizer):
        """Token id prompts skip encoding."""
        result = GenerationController(session, tokenizer).generate(
            token_ids_for("x"), GREEDY.replace(max_new_tokens=2)
        )
        assert result.text == "yz"

    def test_repeated_runs_are_independent(self, session, tokenizer):
        """Each run starts from a fresh session state."""
        controller = GenerationController(session, tokenizer)
        first = controller.generate("a", GREEDY.replace(max_new_tokens=3))
        second = controller.generate("a", GREEDY.replace(max_new_tokens=3))
        assert first.text == second.text == "bcd"

    def test_performance_statistics(self, session, tokenizer):
        """First-pass and continuation timings are recorded."""
        result = GenerationController(session, tokenizer).generate(
            "abc", GREEDY.replace(max_new_tokens=4)
        )
        stats = result.stats
        assert stats.input_token_num == 3
        assert stats.generated_token_num == 4
        assert stats.first_infer_duration_ms > 0
        assert stats.prompt_evaluation_speed > 0
        assert stats.next_token_duration_ms > 0
        assert stats.average_tokens_per_second > 0

    def test_result_dict(self, session, tokenizer):
        """to_dict() carries text, counts, latency and stats."""
        result = GenerationController(session, tokenizer).generate("a", GREEDY)
        data = result.to_dict()
        for key in ("text", "generated_tokens", "latency_ms", "tokens_per_sec", "stats"):
            assert key in data
        assert data["state"] == "completed"


class TestGenerationStreaming:
    """Test callback streaming and the token iterator."""

    def test_callback_called_per_token(self, session, tokenizer):
        """The token callback sees every produced token, including the first."""
        seen = []
        result = GenerationController(session, tokenizer).generate(
            "a", GREEDY.replace(max_new_tokens=4), callback=lambda t, stop: seen.append(t)
        )
        assert seen == result.token_ids
        assert len(seen) == 4

    def test_callback_stop_flag(self, session, tokenizer):
        """Setting the stop event stops before the next step."""
        def stop_after_two(token_id, stop_event):
            if token_id == token_ids_for("c")[0]:
                stop_event.set()

        result = GenerationController(session, tokenizer).generate(
            "a", GREEDY, callback=stop_after_two
        )
        assert result.text == "bc"
        assert result.state == GenerationState.CANCELLED
        assert session.runtime.call_count == 2

    def test_text_callback_receives_fragments(self, session, tokenizer):
        """Text fragments join to the final text."""
        fragments = []
        result = GenerationController(session, tokenizer).generate(
            "a", GREEDY.replace(max_new_tokens=3), text_callback=fragments.append
        )
        assert "".join(fragments) == result.text == "bcd"

    def test_stream_iterator(self, session, tokenizer):
        """The iterator completes the run and exposes its result."""
        controller = GenerationController(session, tokenizer)
        tokens = list(controller.stream("a", GREEDY.replace(max_new_tokens=3)))
        assert tokenizer.decode(tokens) == "bcd"
        assert controller.state == GenerationState.COMPLETED
        assert controller.result().text == "bcd"

    def test_closing_stream_cancels(self, session, tokenizer):
        """Closing the iterator early ends the run as cancelled."""
        controller = GenerationController(session, tokenizer)
        stream = controller.stream("a", GREEDY)
        assert tokenizer.decode([next(stream), next(stream)]) == "bc"
        stream.close()

        assert controller.state == GenerationState.CANCELLED
        assert session.runtime.call_count == 2
        assert not session.is_busy


class TestGenerationCancellation:
    """Test cancellation from another thread."""

    def test_cancel_in_flight_call(self, make_session, tokenizer):
        """cancel() from another thread interrupts the in-flight call."""
        session = make_session(delay_s=0.2)
        controller = GenerationController(session, tokenizer)
        config = GREEDY.replace(max_new_tokens=100)

        timer = threading.Timer(0.5, controller.cancel)
        timer.start()
        start = time.perf_counter()
        result = controller.generate("a", config)
        timer.join()

        assert result.state == GenerationState.CANCELLED
        assert result.stop_reason == StopReason.CANCELLED
        assert 0 < result.generated_tokens < 100
        assert time.perf_counter() - start < 5.0
        assert session.status == SessionStatus.LOADED

        # The session stays usable after a reset
        session.reset()
        session.runtime.delay_s = 0.0
        again = controller.generate("a", GREEDY.replace(max_new_tokens=2))
        assert again.text == "bc"


class TestGenerationErrors:
    """Test configuration, tokenization and runtime failures."""

    def test_invalid_config_before_inference(self, session, tokenizer):
        """Invalid configs fail before any inference call."""
        controller = GenerationController(session, tokenizer)
        with pytest.raises(ConfigurationError):
            controller.generate("a", GenerationConfig(temperature=-1.0))
        assert session.runtime.call_count == 0

    def test_empty_prompt(self, session, tokenizer):
        """An empty prompt is a tokenization error."""
        with pytest.raises(TokenizationError):
            GenerationController(session, tokenizer).generate("", GREEDY)

    def test_out_of_vocabulary_prompt(self, session, tokenizer):
        """Prompt ids outside the vocabulary are rejected."""
        with pytest.raises(TokenizationError):
            GenerationController(session, tokenizer).generate([5, 100000], GREEDY)

    def test_runtime_failure_resets_session(self, make_session, tokenizer):
        """A runtime failure marks the run failed and resets the session."""
        session = make_session(fail_on_call=3)
        controller = GenerationController(session, tokenizer)
        seen = []
        with pytest.raises(RuntimeInferenceError):
            controller.generate("a", GREEDY, callback=lambda t, stop: seen.append(t))

        assert len(seen) == 2
        assert controller.state == GenerationState.FAILED
        assert controller.last_run.stop_reason == StopReason.ERROR
        assert session.status == SessionStatus.LOADED
        assert session.length == 0
        assert session.runtime.call_count == 3

    def test_busy_session_rejected(self, session, tokenizer):
        """A second concurrent run on one session is rejected."""
        controller = GenerationController(session, tokenizer)
        stream = controller.stream("a", GREEDY)
        next(stream)
        with pytest.raises(SessionBusyError):
            controller.generate("a", GREEDY)
        stream.close()


class TestGenerationSampling:
    """Test stochastic generation with seeded generators."""

    def test_seeded_sampling_stays_in_top_k(self, session, tokenizer):
        """Seeded sampling only draws the two surviving candidates."""
        config = GenerationConfig(
            temperature=1.0, top_k=2, top_p=1.0, repeat_penalty=1.0,
            max_new_tokens=6, seed=42,
        )
        result = GenerationController(session, tokenizer).generate("a", config)
        assert result.generated_tokens == 6
        # FakeRuntime puts its two largest logits on the next letter and the one after
        history = token_ids_for("a")
        for token in result.token_ids:
            assert token - history[-1] in (1, 2, -25, -24)
            history.append(token)
