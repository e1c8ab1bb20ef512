"""
Threaded Runtime Base

Implements the submit/wait/cancel half of ModelRuntime on top of a single
worker thread. Subclasses provide _forward(), which computes outputs for
the bound inputs, and _commit(), which folds a completed call into the
recurrent state. A call cancelled while waiting is never committed. The
cancel flag stays set until clear_cancel(), so nothing is submitted between
a cancel and the start of the next run.
"""

import logging
import threading
from concurrent.futures import Future, ThreadPoolExecutor
from concurrent.futures import TimeoutError as FutureTimeoutError
from typing import Any, Dict, Optional

import torch

from ..errors import InferenceCancelled, RuntimeInferenceError
from .interfaces import ModelRuntime


class ThreadedRuntime(ModelRuntime):
    """ModelRuntime whose inference calls run on a dedicated worker thread."""

    def __init__(self, name: str, poll_interval_s: float = 0.005):
        self.logger = logging.getLogger(__name__)
        self.name = name
        self.poll_interval_s = poll_interval_s
        self._inputs: Dict[str, torch.Tensor] = {}
        self._outputs: Dict[str, torch.Tensor] = {}
        self._executor: Optional[ThreadPoolExecutor] = None
        self._future: Optional[Future] = None
        self._cancel_event = threading.Event()

    def _ensure_executor(self) -> ThreadPoolExecutor:
        if self._executor is None:
            self._executor = ThreadPoolExecutor(
                max_workers=1, thread_name_prefix=f"runtime-{self.name}"
            )
        return self._executor

    def _forward(self, inputs: Dict[str, torch.Tensor]) -> Dict[str, Any]:
        """Compute outputs for inputs; runs on the worker thread."""
        raise NotImplementedError

    def _commit(self, result: Dict[str, Any]) -> None:
        """Fold a completed call into the recurrent state."""
        raise NotImplementedError

    def _discard(self, future: Future) -> None:
        """Undo side effects of a call whose result will not be committed."""
        pass

    def set_input(self, name: str, tensor: torch.Tensor) -> None:
        self._inputs[name] = tensor

    def start_async(self) -> None:
        if self._future is not None and not self._future.done():
            raise RuntimeInferenceError(
                f"[{self.name}] inference call already in flight"
            )
        if self._cancel_event.is_set():
            raise InferenceCancelled(f"[{self.name}] cancelled before submit")
        inputs = dict(self._inputs)
        self._future = self._ensure_executor().submit(self._forward, inputs)

    def wait(self) -> None:
        future = self._future
        if future is None:
            raise RuntimeInferenceError(f"[{self.name}] no inference call submitted")

        while True:
            if self._cancel_event.is_set():
                self._future = None
                future.add_done_callback(self._discard)
                raise InferenceCancelled(f"[{self.name}] inference cancelled")
            try:
                result = future.result(timeout=self.poll_interval_s)
                break
            except FutureTimeoutError:
                continue
            except InferenceCancelled:
                self._future = None
                self._discard(future)
                raise
            except Exception as e:
                self._future = None
                self._discard(future)
                self.logger.error(f"[{self.name}] inference failed: {e}")
                raise RuntimeInferenceError(
                    f"[{self.name}] inference failed: {e}"
                ) from e

        self._future = None
        self._outputs = {k: v for k, v in result.items() if isinstance(v, torch.Tensor)}
        self._commit(result)

    def cancel(self) -> None:
        self._cancel_event.set()

    def clear_cancel(self) -> None:
        self._cancel_event.clear()

    def get_output(self, name: str) -> torch.Tensor:
        if name not in self._outputs:
            raise KeyError(f"[{self.name}] no output named '{name}'")
        return self._outputs[name]

    def shutdown(self) -> None:
        """Stop the worker thread without waiting for a discarded call."""
        if self._executor is not None:
            self._executor.shutdown(wait=False)
            self._executor = None
        self._future = None
