"""
Performance statistics for generation runs.

Durations are wall-clock milliseconds. Prompt evaluation speed is prompt
tokens over the first pass; average tokens/sec is generated tokens over the
accumulated continuation time.
"""

import dataclasses
import time
from dataclasses import dataclass
from typing import Any, Dict

import psutil


def now_ms() -> float:
    return time.perf_counter() * 1000.0


def elapsed_ms(start_ms: float) -> float:
    return now_ms() - start_ms


@dataclass
class PerformanceStatistic:
    """Timing and throughput counters for a loaded model and its last run."""

    # Model lifecycle
    load_duration_ms: float = 0.0
    unload_duration_ms: float = 0.0
    cancel_duration_ms: float = 0.0
    tokenizer_load_duration_ms: float = 0.0
    tokenizer_unload_duration_ms: float = 0.0

    # Generation
    first_infer_duration_ms: float = 0.0
    prompt_evaluation_speed: float = 0.0
    next_token_duration_ms: float = 0.0
    average_tokens_per_second: float = 0.0
    input_token_num: int = 0
    generated_token_num: int = 0

    def record_first_pass(self, prompt_tokens: int, duration_ms: float) -> None:
        self.input_token_num = prompt_tokens
        self.first_infer_duration_ms = duration_ms
        self.prompt_evaluation_speed = (
            prompt_tokens / duration_ms * 1000.0 if duration_ms > 0 else 0.0
        )

    def record_continuation(self, duration_ms: float) -> None:
        """Accumulate one continuation step; never reset within a run."""
        self.next_token_duration_ms += duration_ms

    def finalize(self, generated_tokens: int) -> None:
        self.generated_token_num = generated_tokens
        self.average_tokens_per_second = (
            generated_tokens / self.next_token_duration_ms * 1000.0
            if self.next_token_duration_ms > 0
            else 0.0
        )

    def reset_run(self) -> None:
        """Clear per-run counters, keeping model lifecycle durations."""
        self.first_infer_duration_ms = 0.0
        self.prompt_evaluation_speed = 0.0
        self.next_token_duration_ms = 0.0
        self.average_tokens_per_second = 0.0
        self.input_token_num = 0
        self.generated_token_num = 0

    def to_dict(self) -> Dict[str, Any]:
        return dataclasses.asdict(self)


def process_memory_mb() -> float:
    """Resident set size of this process in MB."""
    return psutil.Process().memory_info().rss / 1024 / 1024
