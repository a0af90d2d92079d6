"""
Restore execution engine.

Reads the committed manifest, checks the password against the stored
password_check token, then reverses the backup pipeline for each selected
file: read blob, decrypt, decompress, verify hash, write atomically.

    Idle -> ReadingManifest -> VerifyingPassword -> Extracting -> Completed
                    \\                  \\                \\-> Failed | Cancelled
                     \\-> Failed         \\-> Failed
"""

from __future__ import annotations

import logging
import os
import time
from dataclasses import dataclass, field
from datetime import UTC, datetime
from pathlib import Path
from typing import Any

from securebackup.backup.compression import CompressionCodec
from securebackup.backup.crypto import CryptoCodec
from securebackup.backup.errors import (
    BackupIOError,
    CryptoError,
    IntegrityError,
    ManifestError,
    OperationCancelledError,
    OperationInProgressError,
    PasswordRequiredError,
    SecureBackupError,
)
from securebackup.backup.fileio import (
    atomic_write_bytes,
    hash_bytes,
    read_bytes,
    resolve_inside,
    stored_blob_path,
)
from securebackup.backup.manifest import FileRecord, Manifest, ManifestStore
from securebackup.backup.progress import OperationStatus
from securebackup.backup.worker import BaseEngine
from securebackup.config.settings import Settings

logger = logging.getLogger(__name__)


@dataclass
class RestoreRequest:
    """
    Parameters of one restore run.

    Attributes:
        backup_dir: Backup directory holding the manifest.
        restore_dir: Directory to write restored files into.
        password: Required when the backup is encrypted.
        files: Relative paths to restore; empty restores everything.
        overwrite: Replace files that already exist in restore_dir.
    """

    backup_dir: Path
    restore_dir: Path
    password: str | None = field(default=None, repr=False)
    files: list[str] = field(default_factory=list)
    overwrite: bool = False


@dataclass
class RestoreResult:
    """Result of a restore run."""

    success: bool
    restored_files: int = 0
    restored_bytes: int = 0
    skipped_files: int = 0
    duration_seconds: float = 0.0
    error: str | None = None
    error_kind: str | None = None

    @property
    def cancelled(self) -> bool:
        return self.error_kind == OperationCancelledError.__name__

    def to_dict(self) -> dict[str, Any]:
        return {
            "success": self.success,
            "restored_files": self.restored_files,
            "restored_bytes": self.restored_bytes,
            "skipped_files": self.skipped_files,
            "duration_seconds": round(self.duration_seconds, 3),
            "error": self.error,
            "error_kind": self.error_kind,
        }


class RestoreEngine(BaseEngine[RestoreRequest, RestoreResult]):
    """
    Restores files from a backup directory.

    Usage:
        engine = RestoreEngine(settings)
        result = engine.run(RestoreRequest(backup_dir, target, password="..."))
        if not result.success:
            print(result.error_kind, result.error)
    """

    kind = "restore"

    def __init__(self, settings: Settings | None = None) -> None:
        super().__init__()
        self.settings = settings or Settings()

    def _rejected(self, error: OperationInProgressError) -> RestoreResult:
        return RestoreResult(success=False, error=str(error), error_kind=type(error).__name__)

    def _execute(self, request: RestoreRequest) -> RestoreResult:
        started = time.monotonic()
        result = RestoreResult(success=False)
        tracker = self.progress_tracker
        tracker.begin(OperationStatus.READING_MANIFEST)
        codec: CryptoCodec | None = None

        logger.info(f"Restore started: {request.backup_dir} -> {request.restore_dir}")

        try:
            backup_dir = Path(request.backup_dir).expanduser().resolve()
            restore_dir = Path(request.restore_dir).expanduser().resolve()
            manifest = ManifestStore(backup_dir, self.settings.backup.manifest_name).load()
            data_dir = backup_dir / self.settings.backup.data_dir_name
            selected = self._select(manifest, request.files, restore_dir, data_dir)

            tracker.update(status=OperationStatus.VERIFYING_PASSWORD)
            codec = self._unlock(manifest, request.password)

            tracker.update(
                status=OperationStatus.EXTRACTING,
                total_files=len(selected),
                total_bytes=sum(record.original_size for record in selected),
            )
            self._extract(data_dir, restore_dir, selected, request.overwrite, codec, result)

            tracker.finish(OperationStatus.COMPLETED)
            result.success = True
            logger.info(
                f"Restore completed: {result.restored_files} files "
                f"({result.restored_bytes:,} bytes), {result.skipped_files} skipped"
            )

        except OperationCancelledError as e:
            logger.warning(f"Restore cancelled after {result.restored_files} files")
            tracker.finish(OperationStatus.CANCELLED, str(e))
            self._fail(result, e)

        except SecureBackupError as e:
            logger.error(f"Restore failed: {e}")
            tracker.finish(OperationStatus.FAILED, str(e))
            self._fail(result, e)

        except Exception as e:
            logger.exception("Restore failed with an unexpected error")
            tracker.finish(OperationStatus.FAILED, str(e))
            self._fail(result, e)

        finally:
            if codec is not None:
                codec.clear()

        result.duration_seconds = time.monotonic() - started
        return result

    def _fail(self, result: RestoreResult, error: Exception) -> None:
        result.success = False
        result.error = str(error)
        result.error_kind = type(error).__name__

    def _select(
        self,
        manifest: Manifest,
        requested: list[str],
        restore_dir: Path,
        data_dir: Path,
    ) -> list[FileRecord]:
        """
        Resolve the requested paths against the manifest.

        Raises:
            ManifestError: If a requested path is not in the backup, or a
                recorded path or blob name would land outside restore_dir or the
                data directory.
        """
        if requested:
            wanted = sorted({path.strip("/") for path in requested})
            missing = [path for path in wanted if path not in manifest]
            if missing:
                raise ManifestError(f"Not in backup: {', '.join(missing)}")
            selected = [record for path in wanted if (record := manifest.get(path)) is not None]
        else:
            selected = sorted(manifest.records, key=lambda record: record.path)

        for record in selected:
            try:
                resolve_inside(restore_dir, record.path)
                stored_blob_path(data_dir, record.blob)
            except ValueError as e:
                raise ManifestError(f"Unsafe path in manifest: {record.path}") from e

        return selected

    def _unlock(self, manifest: Manifest, password: str | None) -> CryptoCodec | None:
        """Derive the key and check it against the manifest's password_check token."""
        needs_key = manifest.encrypted or any(record.encrypted for record in manifest.records)
        if not needs_key:
            return None
        if not password:
            raise PasswordRequiredError("This backup is encrypted; a password is required")
        if manifest.kdf is None:
            raise ManifestError("Encrypted backup has no key derivation parameters")

        codec = CryptoCodec.from_password(password, manifest.kdf)
        if manifest.password_check:
            try:
                codec.verify_password_check(manifest.password_check)
            except CryptoError:
                codec.clear()
                raise
        return codec

    def _extract(
        self,
        data_dir: Path,
        restore_dir: Path,
        selected: list[FileRecord],
        overwrite: bool,
        codec: CryptoCodec | None,
        result: RestoreResult,
    ) -> None:
        compression = CompressionCodec(self.settings.backup.compression_level)

        for record in selected:
            if self._cancel_event.is_set():
                raise OperationCancelledError(
                    f"Restore cancelled after {result.restored_files} of {len(selected)} files"
                )

            self.progress_tracker.update(current_file=record.path)
            target = resolve_inside(restore_dir, record.path)

            if target.exists() and not overwrite:
                logger.debug(f"Skipping existing file: {target}")
                result.skipped_files += 1
                self.progress_tracker.advance(0)
                continue

            data = self._read_record(data_dir, record, compression, codec)
            atomic_write_bytes(target, data)
            if self.settings.restore.preserve_mtime:
                self._restore_mtime(target, record.modified)

            result.restored_files += 1
            result.restored_bytes += len(data)
            self.progress_tracker.advance(len(data))

    def _read_record(
        self,
        data_dir: Path,
        record: FileRecord,
        compression: CompressionCodec,
        codec: CryptoCodec | None,
    ) -> bytes:
        """Read a stored blob and reverse encryption and compression."""
        blob_path = stored_blob_path(data_dir, record.blob)
        if not blob_path.is_file():
            raise BackupIOError(f"Stored file missing from backup: {record.path}")

        data = read_bytes(blob_path)

        if record.encrypted:
            if codec is None:
                raise PasswordRequiredError(f"A password is required to restore {record.path}")
            data = codec.decrypt(data, associated_data=record.path.encode("utf-8"))

        if record.compressed:
            data = compression.decompress(data, expected_size=record.original_size)

        if self.settings.restore.verify_hash and record.hash and hash_bytes(data) != record.hash:
            raise IntegrityError(f"Hash mismatch for {record.path}")

        return data

    def _restore_mtime(self, target: Path, modified: datetime) -> None:
        timestamp = modified.replace(tzinfo=modified.tzinfo or UTC).timestamp()
        try:
            os.utime(target, (timestamp, timestamp))
        except OSError as e:
            logger.warning(f"Could not set modification time on {target}: {e}")
