"""
Pollable progress state for in-flight operations.

Each engine owns one ProgressTracker. Only the worker running the operation
writes to it; any number of callers may read an immutable ProgressState
snapshot at any time.
"""

from __future__ import annotations

import threading
from dataclasses import dataclass, replace
from enum import Enum
from typing import Any


class OperationStatus(Enum):
    """States of the backup and restore state machines."""

    IDLE = "idle"
    # Backup
    SCANNING = "scanning"
    DIFFING = "diffing"
    TRANSFERRING = "transferring"
    FINALIZING = "finalizing"
    # Restore
    READING_MANIFEST = "reading_manifest"
    VERIFYING_PASSWORD = "verifying_password"
    EXTRACTING = "extracting"
    # Terminal
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self in (
            OperationStatus.IDLE,
            OperationStatus.COMPLETED,
            OperationStatus.FAILED,
            OperationStatus.CANCELLED,
        )


@dataclass(frozen=True)
class ProgressState:
    """
    Snapshot of an operation's progress.

    Attributes:
        active: True while an operation is running.
        processed_files: Files handled so far in the current phase.
        total_files: Files the current phase will handle.
        processed_bytes: Original bytes handled so far.
        total_bytes: Original bytes the current phase will handle.
        current_file: Relative path being processed, if any.
        status: Current state machine status.
        error: Failure message once the operation has failed.
    """

    active: bool = False
    processed_files: int = 0
    total_files: int = 0
    processed_bytes: int = 0
    total_bytes: int = 0
    current_file: str | None = None
    status: OperationStatus = OperationStatus.IDLE
    error: str | None = None

    @property
    def percentage(self) -> float:
        """Share of files processed, from 0.0 to 100.0."""
        if self.total_files <= 0:
            return 100.0 if self.status == OperationStatus.COMPLETED else 0.0
        return min(100.0, self.processed_files / self.total_files * 100.0)

    def to_dict(self) -> dict[str, Any]:
        return {
            "active": self.active,
            "processed_files": self.processed_files,
            "total_files": self.total_files,
            "processed_bytes": self.processed_bytes,
            "total_bytes": self.total_bytes,
            "current_file": self.current_file,
            "status": self.status.value,
            "percentage": round(self.percentage, 2),
            "error": self.error,
        }


class ProgressTracker:
    """Lock-guarded holder of the latest ProgressState."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._state = ProgressState()

    def snapshot(self) -> ProgressState:
        """Return the current state. Safe to call from any thread."""
        with self._lock:
            return self._state

    def begin(self, status: OperationStatus) -> None:
        """Reset counters and mark a new operation as active."""
        with self._lock:
            self._state = ProgressState(active=True, status=status)

    def update(self, **changes: Any) -> None:
        """Replace selected fields of the current state."""
        with self._lock:
            self._state = replace(self._state, **changes)

    def advance(self, file_bytes: int) -> None:
        """Record that one more file of file_bytes original bytes is done."""
        with self._lock:
            self._state = replace(
                self._state,
                processed_files=self._state.processed_files + 1,
                processed_bytes=self._state.processed_bytes + file_bytes,
            )

    def finish(
        self,
        status: OperationStatus,
        error: str | None = None,
        reset_counts: bool = False,
    ) -> None:
        """
        Mark the operation as no longer active with a terminal status.

        Args:
            status: Terminal status to report.
            error: Failure message, if any.
            reset_counts: Zero all counters (used when nothing was done).
        """
        with self._lock:
            base = ProgressState(status=status) if reset_counts else self._state
            self._state = replace(
                base,
                active=False,
                current_file=None,
                status=status,
                error=error,
            )
