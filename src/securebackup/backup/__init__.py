"""
Backup and restore engines for SecureBackup.

Usage:
    from securebackup.backup import BackupEngine, BackupRequest

    # Blocking backup
    engine = BackupEngine(settings)
    result = engine.run(BackupRequest(source_dir, dest_dir, compress=True))

    # Background restore with progress polling
    restorer = RestoreEngine(settings)
    handle = restorer.start(RestoreRequest(dest_dir, target_dir, password=password))
    while not handle.done():
        print(restorer.progress().percentage)
    result = handle.wait()
"""

from securebackup.backup.engine import BackupEngine, BackupRequest, BackupResult
from securebackup.backup.errors import (
    BackupIOError,
    CompressionError,
    CryptoError,
    IntegrityError,
    ManifestError,
    OperationCancelledError,
    OperationInProgressError,
    PasswordRequiredError,
    ScanError,
    SecureBackupError,
)
from securebackup.backup.manifest import FileRecord, Manifest, ManifestStore, ManifestSummary
from securebackup.backup.progress import OperationStatus, ProgressState
from securebackup.backup.restore import RestoreEngine, RestoreRequest, RestoreResult
from securebackup.backup.scanner import DirectoryScanner, FileInfo, ScanResult

__all__ = [
    # Engines
    "BackupEngine",
    "BackupRequest",
    "BackupResult",
    "RestoreEngine",
    "RestoreRequest",
    "RestoreResult",
    # Data model
    "DirectoryScanner",
    "FileInfo",
    "ScanResult",
    "FileRecord",
    "Manifest",
    "ManifestStore",
    "ManifestSummary",
    "OperationStatus",
    "ProgressState",
    # Errors
    "SecureBackupError",
    "ScanError",
    "ManifestError",
    "CryptoError",
    "PasswordRequiredError",
    "CompressionError",
    "BackupIOError",
    "IntegrityError",
    "OperationInProgressError",
    "OperationCancelledError",
]
