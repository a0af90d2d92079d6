"""
Background execution and single-flight control for engines.

An engine runs at most one operation at a time. start() claims the engine
and hands the work to a daemon thread, returning an OperationHandle the
caller can wait on; run() does the same work on the calling thread.
Progress is read from the engine's ProgressTracker while the work runs.
"""

from __future__ import annotations

import logging
import threading
from collections.abc import Callable
from typing import Generic, TypeVar

from securebackup.backup.errors import OperationInProgressError
from securebackup.backup.progress import ProgressState, ProgressTracker

logger = logging.getLogger(__name__)

RequestT = TypeVar("RequestT")
ResultT = TypeVar("ResultT")


class OperationHandle(Generic[ResultT]):
    """Handle to an operation running on a worker thread."""

    def __init__(self, name: str, target: Callable[[], ResultT]) -> None:
        self._target = target
        self._result: ResultT | None = None
        self._done = threading.Event()
        self._thread = threading.Thread(target=self._run, name=name, daemon=True)

    def start(self) -> None:
        self._thread.start()

    def _run(self) -> None:
        try:
            self._result = self._target()
        finally:
            self._done.set()

    def done(self) -> bool:
        """Check whether the operation has finished."""
        return self._done.is_set()

    def wait(self, timeout: float | None = None) -> ResultT | None:
        """
        Block until the operation finishes.

        Args:
            timeout: Seconds to wait, or None to wait indefinitely.

        Returns:
            The operation result, or None if the timeout expired first.
        """
        if not self._done.wait(timeout):
            return None
        return self._result

    @property
    def result(self) -> ResultT:
        """The operation result. Raises RuntimeError if still running."""
        if not self._done.is_set():
            raise RuntimeError("Operation has not finished yet")
        assert self._result is not None
        return self._result


class SingleFlight:
    """Non-blocking guard that admits one holder at a time."""

    def __init__(self, kind: str) -> None:
        self.kind = kind
        self._lock = threading.Lock()

    def acquire(self) -> None:
        """
        Claim the guard.

        Raises:
            OperationInProgressError: If it is already held.
        """
        if not self._lock.acquire(blocking=False):
            raise OperationInProgressError(f"A {self.kind} operation is already in progress")

    def release(self) -> None:
        self._lock.release()

    def is_busy(self) -> bool:
        return self._lock.locked()


class BaseEngine(Generic[RequestT, ResultT]):
    """
    Shared single-flight, cancellation, and threading plumbing.

    Subclasses implement _execute(), which must catch its own failures and
    always return a result, and _rejected(), which builds the result for a
    request refused because another operation is running.
    """

    kind = "operation"

    def __init__(self) -> None:
        self.progress_tracker = ProgressTracker()
        self._flight = SingleFlight(self.kind)
        self._cancel_event = threading.Event()

    def progress(self) -> ProgressState:
        """Current progress snapshot (inactive when nothing is running)."""
        return self.progress_tracker.snapshot()

    def is_running(self) -> bool:
        return self._flight.is_busy()

    def cancel(self) -> bool:
        """
        Request cooperative cancellation of the running operation.

        The operation stops at the next file boundary.

        Returns:
            True if an operation was running and has been asked to stop.
        """
        if not self._flight.is_busy():
            return False
        logger.info(f"Cancellation requested for {self.kind}")
        self._cancel_event.set()
        return True

    def run(self, request: RequestT) -> ResultT:
        """Run an operation on the calling thread and return its result."""
        try:
            self._flight.acquire()
        except OperationInProgressError as e:
            return self._rejected(e)
        self._cancel_event.clear()
        return self._run_claimed(request)

    def start(self, request: RequestT) -> OperationHandle[ResultT]:
        """
        Start an operation on a worker thread and return immediately.

        Raises:
            OperationInProgressError: If an operation of this kind is running.
        """
        self._flight.acquire()
        self._cancel_event.clear()
        handle: OperationHandle[ResultT] = OperationHandle(
            f"securebackup-{self.kind}",
            lambda: self._run_claimed(request),
        )
        try:
            handle.start()
        except RuntimeError:
            self._flight.release()
            raise
        return handle

    def _run_claimed(self, request: RequestT) -> ResultT:
        try:
            return self._execute(request)
        finally:
            self._flight.release()

    def _execute(self, request: RequestT) -> ResultT:
        raise NotImplementedError

    def _rejected(self, error: OperationInProgressError) -> ResultT:
        raise NotImplementedError
