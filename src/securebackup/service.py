"""
Application-facing operations for SecureBackup.

BackupService is the single object a host (the CLI, or any embedding
application) talks to. It owns one BackupEngine and one RestoreEngine, so a
backup and a restore may run at the same time but never two of the same kind.
Every blocking operation returns a result object instead of raising.
start_backup and start_restore raise OperationInProgressError when an
operation of the same kind is already running.

Usage:
    service = BackupService(load_config())

    summary = service.scan(Path("~/Documents"), compute_hash=True)

    handle = service.start_backup(BackupRequest(source, dest, encrypt=True, password=pw))
    while not handle.done():
        print(service.backup_progress().percentage)
    result = handle.wait()

    info = service.backup_info(dest)
    service.restore(RestoreRequest(dest, target, password=pw, files=["a.txt"]))
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from securebackup.backup.engine import BackupEngine, BackupRequest, BackupResult
from securebackup.backup.errors import SecureBackupError
from securebackup.backup.manifest import FileRecord, ManifestStore, ManifestSummary
from securebackup.backup.progress import ProgressState
from securebackup.backup.restore import RestoreEngine, RestoreRequest, RestoreResult
from securebackup.backup.scanner import DirectoryScanner
from securebackup.backup.worker import OperationHandle
from securebackup.config.settings import Settings

logger = logging.getLogger(__name__)


@dataclass
class ScanSummary:
    """Result of a standalone scan."""

    success: bool
    total_files: int = 0
    total_size: int = 0
    error: str | None = None
    error_kind: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "success": self.success,
            "total_files": self.total_files,
            "total_size": self.total_size,
            "error": self.error,
            "error_kind": self.error_kind,
        }


@dataclass
class BackupInfoResult:
    """Read-only view of a backup directory's committed manifest."""

    success: bool
    summary: ManifestSummary | None = None
    files: list[FileRecord] = field(default_factory=list)
    error: str | None = None
    error_kind: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "success": self.success,
            "summary": self.summary.to_dict() if self.summary else None,
            "files": [
                {
                    "path": record.path,
                    "original_size": record.original_size,
                    "stored_size": record.stored_size,
                    "encrypted": record.encrypted,
                    "modified": record.modified.isoformat(),
                }
                for record in self.files
            ],
            "error": self.error,
            "error_kind": self.error_kind,
        }


class BackupService:
    """Facade over the backup and restore engines."""

    def __init__(self, settings: Settings | None = None) -> None:
        self.settings = settings or Settings()
        self.backup_engine = BackupEngine(self.settings)
        self.restore_engine = RestoreEngine(self.settings)

    # Scan

    def scan(self, path: Path, compute_hash: bool = False) -> ScanSummary:
        """Scan a directory and report totals without backing anything up."""
        scanner = DirectoryScanner(
            Path(path).expanduser(),
            exclude_patterns=self.settings.backup.exclude_patterns,
            compute_hash=compute_hash,
        )
        try:
            result = scanner.scan()
        except SecureBackupError as e:
            logger.error(f"Scan failed: {e}")
            return ScanSummary(success=False, error=str(e), error_kind=type(e).__name__)

        return ScanSummary(
            success=True,
            total_files=result.total_files,
            total_size=result.total_size,
        )

    # Backup

    def start_backup(self, request: BackupRequest) -> OperationHandle[BackupResult]:
        """
        Start a backup in the background.

        Raises:
            OperationInProgressError: If a backup is already running.
        """
        return self.backup_engine.start(request)

    def backup(self, request: BackupRequest) -> BackupResult:
        """Run a backup to completion on the calling thread."""
        return self.backup_engine.run(request)

    def backup_progress(self) -> ProgressState:
        return self.backup_engine.progress()

    def cancel_backup(self) -> bool:
        return self.backup_engine.cancel()

    def backup_info(self, backup_dir: Path) -> BackupInfoResult:
        """
        Inspect the last committed manifest in backup_dir.

        Only ever reflects a fully committed backup, since an in-flight or
        failed run never writes the manifest.
        """
        store = ManifestStore(Path(backup_dir).expanduser(), self.settings.backup.manifest_name)
        try:
            manifest = store.load()
        except SecureBackupError as e:
            return BackupInfoResult(success=False, error=str(e), error_kind=type(e).__name__)

        return BackupInfoResult(
            success=True,
            summary=manifest.summary(),
            files=list(manifest.records),
        )

    # Restore

    def start_restore(self, request: RestoreRequest) -> OperationHandle[RestoreResult]:
        """
        Start a restore in the background.

        Raises:
            OperationInProgressError: If a restore is already running.
        """
        return self.restore_engine.start(request)

    def restore(self, request: RestoreRequest) -> RestoreResult:
        """Run a restore to completion on the calling thread."""
        return self.restore_engine.run(request)

    def restore_progress(self) -> ProgressState:
        return self.restore_engine.progress()

    def cancel_restore(self) -> bool:
        return self.restore_engine.cancel()
