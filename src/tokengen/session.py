"""
Inference Session

Owns one model runtime plus the recurrent bookkeeping that transformer
decoding needs between calls: the attention mask length and the position
counter that track the runtime's KV-cache occupancy. The first pass submits
the whole prompt; continuation steps submit only new tokens and extend the
mask and positions accordingly.
"""

import logging
import threading
from contextlib import contextmanager
from enum import IntEnum
from typing import Iterator, Optional, Sequence

import torch

from .errors import InferenceCancelled, RuntimeInferenceError, SessionBusyError
from .metrics import PerformanceStatistic, elapsed_ms, now_ms
from .runtime.interfaces import (
    ATTENTION_MASK,
    INPUT_IDS,
    LOGITS,
    POSITION_IDS,
    ModelRuntime,
)

BATCH_SIZE = 1


class SessionStatus(IntEnum):
    INIT = 0
    LOADED = 1
    UNLOADED = 2
    INFERENCE = 3
    ERROR = -1


class InferenceSession:
    """Stateful single-sequence session over a ModelRuntime."""

    def __init__(self, runtime: ModelRuntime, name: str = "session"):
        self.logger = logging.getLogger(__name__)
        self.runtime = runtime
        self.name = name
        self.status = SessionStatus.INIT
        self.stats = PerformanceStatistic()
        self._length = 0
        self._busy = threading.Lock()

    def load(self) -> None:
        """Load the runtime's model and record the load duration."""
        start = now_ms()
        self.runtime.load()
        self.runtime.clear_cancel()
        self.stats.load_duration_ms = elapsed_ms(start)
        self.status = SessionStatus.LOADED
        self.logger.info(
            f"[{self.name}] load took {self.stats.load_duration_ms:.1f} ms "
            f"(vocab_size={self.vocab_size})"
        )

    def unload(self) -> None:
        start = now_ms()
        self.runtime.cancel()
        self.runtime.unload()
        self._length = 0
        self.stats.unload_duration_ms = elapsed_ms(start)
        self.status = SessionStatus.UNLOADED
        self.logger.info(
            f"[{self.name}] unload took {self.stats.unload_duration_ms:.1f} ms"
        )

    @property
    def length(self) -> int:
        """Number of positions consumed since the last reset."""
        return self._length

    @property
    def vocab_size(self) -> int:
        return self.runtime.vocab_size

    @property
    def is_busy(self) -> bool:
        return self._busy.locked()

    @contextmanager
    def in_flight(self) -> Iterator["InferenceSession"]:
        """
        Hold the session for one generation call.

        Raises:
            SessionBusyError: If another generation call holds the session
        """
        if self.status in (SessionStatus.INIT, SessionStatus.UNLOADED):
            raise RuntimeInferenceError(f"[{self.name}] model is not loaded")
        if not self._busy.acquire(blocking=False):
            raise SessionBusyError(f"[{self.name}] a generation call is already in flight")
        self.status = SessionStatus.INFERENCE
        try:
            yield self
        finally:
            if self.status == SessionStatus.INFERENCE:
                self.status = SessionStatus.LOADED
            self._busy.release()

    def _run(self, token_ids: Sequence[int], positions: torch.Tensor) -> torch.Tensor:
        n = len(token_ids)
        input_ids = torch.tensor([list(token_ids)], dtype=torch.long)
        attention_mask = torch.ones((BATCH_SIZE, self._length + n), dtype=torch.long)
        self.runtime.set_input(INPUT_IDS, input_ids)
        self.runtime.set_input(ATTENTION_MASK, attention_mask)
        self.runtime.set_input(POSITION_IDS, positions.view(BATCH_SIZE, n))
        try:
            self.runtime.start_async()
            self.runtime.wait()
        except InferenceCancelled:
            raise
        except RuntimeInferenceError:
            self.status = SessionStatus.ERROR
            raise
        except Exception as e:
            self.status = SessionStatus.ERROR
            raise RuntimeInferenceError(f"[{self.name}] inference failed: {e}") from e
        self._length += n
        logits = self.runtime.get_output(LOGITS)
        return logits.reshape(-1, logits.shape[-1])

    def prefill(self, token_ids: Sequence[int]) -> torch.Tensor:
        """
        Reset recurrent state and submit the whole prompt in one call.

        Args:
            token_ids: Prompt token ids

        Returns:
            Logits for the last prompt position [vocab_size]
        """
        if len(token_ids) == 0:
            raise ValueError("prefill requires at least one token")
        self.reset()
        positions = torch.arange(len(token_ids), dtype=torch.long)
        logits = self._run(token_ids, positions)
        return logits[-1]

    def step(self, token_ids: Sequence[int]) -> torch.Tensor:
        """
        Continue the sequence with new tokens.

        The attention mask grows by len(token_ids) and positions continue
        from the current length.

        Returns:
            Logits for every submitted position [len(token_ids), vocab_size]
        """
        if len(token_ids) == 0:
            raise ValueError("step requires at least one token")
        positions = torch.arange(
            self._length, self._length + len(token_ids), dtype=torch.long
        )
        return self._run(token_ids, positions)

    def truncate(self, length: int, replay: Optional[Sequence[int]] = None) -> None:
        """
        Roll recurrent state back to the first `length` positions.

        Runtimes that cannot truncate are reset and `replay` (the tokens to
        keep) is re-submitted as a fresh first pass.

        Raises:
            ValueError: If length is out of range, or replay is missing when
                the runtime cannot truncate
        """
        if length < 0 or length > self._length:
            raise ValueError(
                f"[{self.name}] cannot truncate length {self._length} to {length}"
            )
        if length == self._length:
            return
        if self.runtime.supports_truncate:
            self.runtime.truncate_state(length)
            self._length = length
            return
        if replay is None or len(replay) != length:
            raise ValueError(
                f"[{self.name}] runtime cannot truncate; replay of {length} tokens required"
            )
        self.logger.debug(f"[{self.name}] replaying {length} tokens after rollback")
        if length == 0:
            self.reset()
        else:
            self.prefill(replay)

    def reset(self) -> None:
        """Clear recurrent state for a new independent sequence."""
        self.runtime.reset_state()
        self._length = 0
        if self.status == SessionStatus.ERROR:
            self.status = SessionStatus.LOADED

    def cancel(self) -> float:
        """
        Cancel the in-flight runtime call.

        Returns:
            Time spent issuing the cancel in milliseconds
        """
        start = now_ms()
        self.runtime.cancel()
        self.stats.cancel_duration_ms = elapsed_ms(start)
        return self.stats.cancel_duration_ms

    def clear_cancel(self) -> None:
        """Accept inference calls again; called once at the start of a run."""
        self.runtime.clear_cancel()
