"""Single-flight wrapper around remote calls."""

import logging
import threading
from concurrent.futures import Future, ThreadPoolExecutor
from typing import Callable, Dict, Hashable, Optional, Tuple, TypeVar

logger = logging.getLogger(__name__)

T = TypeVar("T")
CallKey = Tuple[str, Hashable]


class RequestCoalescer:
    """
    At most one in-flight call per (operation, key).

    Callers arriving while a call is in flight get the same future. The
    outcome, result or exception, is delivered unchanged to every waiter.
    """

    def __init__(self, max_workers: int = 8, executor: Optional[ThreadPoolExecutor] = None):
        self._owns_executor = executor is None
        self._executor = executor or ThreadPoolExecutor(
            max_workers=max_workers, thread_name_prefix="remote"
        )
        self._lock = threading.Lock()
        self._in_flight: Dict[CallKey, Future] = {}
        self.calls_started = 0
        self.calls_joined = 0

    def submit(self, operation: str, key: Hashable, fn: Callable[[], T]) -> "Future[T]":
        """Start ``fn`` unless an identical call is already running."""
        call_key = (operation, key)
        with self._lock:
            future = self._in_flight.get(call_key)
            if future is not None:
                self.calls_joined += 1
                logger.debug("Joining in-flight %s %r", operation, key)
                return future
            future = Future()
            self._in_flight[call_key] = future
            self.calls_started += 1

        def run() -> None:
            if not future.set_running_or_notify_cancel():
                self._forget(call_key, future)
                return
            try:
                result = fn()
            except BaseException as e:
                # Drop the key first so a caller woken by the failure can start a fresh call
                self._forget(call_key, future)
                future.set_exception(e)
            else:
                self._forget(call_key, future)
                future.set_result(result)

        try:
            self._executor.submit(run)
        except RuntimeError as e:
            # Executor already shut down
            self._forget(call_key, future)
            future.set_exception(e)
        return future

    def call(self, operation: str, key: Hashable, fn: Callable[[], T], timeout: Optional[float] = None) -> T:
        """Blocking form of ``submit``."""
        return self.submit(operation, key, fn).result(timeout=timeout)

    def in_flight(self, operation: str, key: Hashable) -> bool:
        with self._lock:
            return (operation, key) in self._in_flight

    def _forget(self, call_key: CallKey, future: Future) -> None:
        with self._lock:
            if self._in_flight.get(call_key) is future:
                del self._in_flight[call_key]

    def shutdown(self, wait: bool = False) -> None:
        if self._owns_executor:
            self._executor.shutdown(wait=wait, cancel_futures=True)
