"""
Background execution of aggregation work.

Runs CPU-heavy recomputes off the caller's thread with progress, cancellation and a hard timeout.
"""

import concurrent.futures
import logging
import queue
import threading
import time
from dataclasses import dataclass
from typing import Any, Callable, List, Optional

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT_SECONDS = 120.0


class AggregationTimeoutError(Exception):
    """Raised when an aggregation task runs past its deadline."""


class AggregationCancelledError(Exception):
    """Raised when an aggregation task was cancelled before finishing."""


@dataclass(frozen=True)
class ProgressEvent:
    """One progress notification from a running task."""
    step: str
    percent: float
    message: str


class CancellationToken:
    """Cooperative cancellation flag checked by the task between steps."""

    def __init__(self):
        self._event = threading.Event()

    def cancel(self) -> None:
        self._event.set()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def raise_if_cancelled(self) -> None:
        """Abort the current task if cancellation was requested."""
        if self._event.is_set():
            raise AggregationCancelledError("Aggregation task was cancelled")


ProgressCallback = Callable[[ProgressEvent], None]


class AggregationTask:
    """Handle to a submitted task.

    The caller reads progress events from `progress` (or `drain_progress`)
    and then waits on `result`, which returns the value, or raises
    AggregationTimeoutError / AggregationCancelledError. A partial result
    is never returned.
    """

    def __init__(self, future: concurrent.futures.Future, token: CancellationToken,
                 progress: "queue.Queue[ProgressEvent]", timeout: float):
        self.future = future
        self.token = token
        self.progress = progress
        self.timeout = timeout
        self.deadline = time.monotonic() + timeout

    def cancel(self) -> None:
        """Request cancellation; the task stops at its next checkpoint."""
        self.token.cancel()
        self.future.cancel()

    def done(self) -> bool:
        return self.future.done()

    def drain_progress(self) -> List[ProgressEvent]:
        """Return all progress events received so far."""
        events = []
        while True:
            try:
                events.append(self.progress.get_nowait())
            except queue.Empty:
                return events

    def result(self) -> Any:
        """Wait for the task until its deadline.

        Raises:
            AggregationTimeoutError: If the deadline passes first
            AggregationCancelledError: If the task was cancelled
        """
        remaining = max(0.0, self.deadline - time.monotonic())
        try:
            return self.future.result(timeout=remaining)
        except concurrent.futures.TimeoutError:
            self.token.cancel()
            logger.warning("Aggregation task exceeded %.0fs, aborting", self.timeout)
            raise AggregationTimeoutError(
                f"Aggregation did not finish within {self.timeout:.0f} seconds"
            ) from None
        except concurrent.futures.CancelledError:
            raise AggregationCancelledError("Aggregation task was cancelled") from None


class AggregationWorker:
    """Single background thread that runs submitted aggregation tasks.

    Submitted callables receive two keyword arguments, `progress` and
    `cancel_token`, and are expected to call `cancel_token.raise_if_cancelled()`
    between steps.
    """

    def __init__(self, timeout_seconds: float = DEFAULT_TIMEOUT_SECONDS):
        if timeout_seconds <= 0:
            raise ValueError("timeout_seconds must be > 0")
        self.timeout_seconds = timeout_seconds
        self._executor = concurrent.futures.ThreadPoolExecutor(
            max_workers=1,
            thread_name_prefix="usage-ledger-aggregation"
        )

    def submit(self, fn: Callable[..., Any], *args: Any,
               timeout: Optional[float] = None, **kwargs: Any) -> AggregationTask:
        """Schedule `fn(*args, progress=..., cancel_token=..., **kwargs)`.

        Args:
            fn: The computation to run
            timeout: Seconds before the task is reported as failed

        Returns:
            Handle for progress, cancellation and the result
        """
        token = CancellationToken()
        channel: "queue.Queue[ProgressEvent]" = queue.Queue()
        future = self._executor.submit(
            fn, *args, progress=channel.put, cancel_token=token, **kwargs
        )
        return AggregationTask(future, token, channel, timeout or self.timeout_seconds)

    def run(self, fn: Callable[..., Any], *args: Any,
            on_progress: Optional[ProgressCallback] = None,
            timeout: Optional[float] = None, **kwargs: Any) -> Any:
        """Submit a task and wait for it, forwarding progress as it arrives."""
        task = self.submit(fn, *args, timeout=timeout, **kwargs)
        if on_progress is not None:
            while not task.done() and time.monotonic() < task.deadline:
                try:
                    on_progress(task.progress.get(timeout=0.05))
                except queue.Empty:
                    continue
            for event in task.drain_progress():
                on_progress(event)
        return task.result()

    def shutdown(self) -> None:
        """Stop accepting work and cancel anything still queued."""
        self._executor.shutdown(wait=False, cancel_futures=True)

    def __enter__(self) -> "AggregationWorker":
        return self

    def __exit__(self, *exc_info) -> None:
        self.shutdown()
