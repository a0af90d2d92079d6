"""
Backup execution engine.

Drives one backup run through its state machine:

    Idle -> Scanning -> Diffing -> Transferring -> Finalizing -> Completed
                  \\          \\            \\             \\-> Failed
                   \\-> Failed  \\-> Failed   \\-> Failed | Cancelled

Each new or changed file is compressed, then encrypted, then written to
<dest>/data/<generation>/<relative path> (".enc" appended when encrypted),
where the generation directory is unique to the run. The manifest is
committed only after every file succeeded; any failure or cancellation
discards the run's generation directory and leaves the previous manifest,
and every blob it references, untouched. Blobs no longer referenced are
pruned after the commit.
"""

from __future__ import annotations

import logging
import shutil
import time
from dataclasses import dataclass, field, replace
from datetime import UTC, datetime
from pathlib import Path
from typing import Any

from securebackup import __version__
from securebackup.backup.compression import CompressionCodec
from securebackup.backup.crypto import CryptoCodec, KdfParams
from securebackup.backup.diff import DiffResult, compute_diff
from securebackup.backup.errors import (
    BackupIOError,
    ManifestError,
    OperationCancelledError,
    OperationInProgressError,
    PasswordRequiredError,
    SecureBackupError,
)
from securebackup.backup.fileio import (
    atomic_write_bytes,
    blob_name,
    hash_bytes,
    new_generation,
    read_bytes,
)
from securebackup.backup.manifest import FileRecord, Manifest, ManifestStore
from securebackup.backup.progress import OperationStatus
from securebackup.backup.scanner import DirectoryScanner, FileInfo, ScanResult
from securebackup.backup.worker import BaseEngine
from securebackup.config.settings import Settings

logger = logging.getLogger(__name__)


@dataclass
class BackupRequest:
    """
    Parameters of one backup run.

    Attributes:
        source_dir: Directory to back up.
        dest_dir: Backup destination; holds the manifest and data directory.
        encrypt: Encrypt stored files. Requires password.
        password: Encryption password. Never stored.
        compress: Compress stored files.
        incremental: Transfer only new and changed files.
        exclude_patterns: Overrides the configured exclusion patterns.
    """

    source_dir: Path
    dest_dir: Path
    encrypt: bool = False
    password: str | None = field(default=None, repr=False)
    compress: bool = True
    incremental: bool = True
    exclude_patterns: list[str] | None = None


@dataclass
class BackupResult:
    """Result of a backup run."""

    success: bool
    backed_up_files: int = 0
    backed_up_bytes: int = 0
    stored_bytes: int = 0
    skipped_files: int = 0
    deleted_files: int = 0
    duration_seconds: float = 0.0
    started_at: datetime | None = None
    finished_at: datetime | None = None
    manifest: Manifest | None = None
    error: str | None = None
    error_kind: str | None = None

    @property
    def cancelled(self) -> bool:
        return self.error_kind == OperationCancelledError.__name__

    def to_dict(self) -> dict[str, Any]:
        return {
            "success": self.success,
            "backed_up_files": self.backed_up_files,
            "backed_up_bytes": self.backed_up_bytes,
            "stored_bytes": self.stored_bytes,
            "skipped_files": self.skipped_files,
            "deleted_files": self.deleted_files,
            "duration_seconds": round(self.duration_seconds, 3),
            "error": self.error,
            "error_kind": self.error_kind,
        }


@dataclass
class _RunState:
    """Mutable bookkeeping for a single run."""

    started: float = field(default_factory=time.monotonic)
    started_at: datetime = field(default_factory=lambda: datetime.now(UTC))
    backed_up_files: int = 0
    backed_up_bytes: int = 0
    stored_bytes: int = 0
    skipped_files: int = 0
    generation: str = field(default_factory=new_generation)


class BackupEngine(BaseEngine[BackupRequest, BackupResult]):
    """
    Runs incremental, optionally compressed and encrypted backups.

    Usage:
        engine = BackupEngine(settings)

        # Blocking
        result = engine.run(BackupRequest(source, dest, compress=True))

        # Background
        handle = engine.start(request)
        while not handle.done():
            print(engine.progress().percentage)
        result = handle.wait()
    """

    kind = "backup"

    def __init__(self, settings: Settings | None = None) -> None:
        """
        Initialize backup engine.

        Args:
            settings: Configuration; defaults are used when omitted.
        """
        super().__init__()
        self.settings = settings or Settings()

    def _rejected(self, error: OperationInProgressError) -> BackupResult:
        return BackupResult(
            success=False,
            error=str(error),
            error_kind=type(error).__name__,
        )

    def _execute(self, request: BackupRequest) -> BackupResult:
        run = _RunState()
        tracker = self.progress_tracker
        tracker.begin(OperationStatus.SCANNING)
        codec: CryptoCodec | None = None
        staging: Path | None = None

        logger.info(
            f"Backup started: {request.source_dir} -> {request.dest_dir} "
            f"(encrypt={request.encrypt}, compress={request.compress}, "
            f"incremental={request.incremental})"
        )

        try:
            self._check_password(request)
            source = Path(request.source_dir).expanduser().resolve()
            dest = Path(request.dest_dir).expanduser().resolve()
            if source == dest:
                raise BackupIOError("Destination must be different from the source directory")

            scan = self._scan(source, dest, request)

            tracker.update(
                status=OperationStatus.DIFFING,
                total_files=scan.total_files,
                total_bytes=scan.total_size,
            )
            try:
                dest.mkdir(parents=True, exist_ok=True)
            except OSError as e:
                raise BackupIOError(f"Cannot create destination {dest}: {e}") from e

            store = ManifestStore(dest, self.settings.backup.manifest_name)
            previous = self._load_previous(store, request)
            compatible = previous is not None and self._settings_match(previous, request)
            if previous is not None and not compatible:
                logger.info("Encryption or compression setting changed; running a full backup")

            diff = compute_diff(scan, previous, incremental=request.incremental and compatible)
            run.skipped_files = len(diff.unchanged)

            kdf, password_check, codec = self._prepare_crypto(
                request, previous if compatible and request.incremental else None
            )

            data_dir = dest / self.settings.backup.data_dir_name
            staging = data_dir / run.generation
            transferred = self._transfer(data_dir, source, scan, diff, request, codec, run)

            tracker.update(status=OperationStatus.FINALIZING, current_file=None)
            manifest = self._build_manifest(
                scan, diff, transferred, previous, request, kdf, password_check
            )
            store.commit(manifest)
            staging = None
            self._prune(data_dir, manifest)

            tracker.finish(OperationStatus.COMPLETED)
            result = self._result(run, success=True, manifest=manifest)
            result.deleted_files = len(diff.deleted)
            logger.info(
                f"Backup completed: {result.backed_up_files} files backed up "
                f"({result.backed_up_bytes:,} bytes), {result.skipped_files} skipped, "
                f"{result.deleted_files} removed in {result.duration_seconds:.2f}s"
            )
            return result

        except OperationCancelledError as e:
            logger.warning(f"Backup cancelled after {run.backed_up_files} files")
            tracker.finish(OperationStatus.CANCELLED, str(e))
            return self._result(run, success=False, error=e)

        except SecureBackupError as e:
            scanning = tracker.snapshot().status == OperationStatus.SCANNING
            logger.error(f"Backup failed: {e}")
            tracker.finish(OperationStatus.FAILED, str(e), reset_counts=scanning)
            if scanning:
                run = _RunState(started=run.started, started_at=run.started_at)
            return self._result(run, success=False, error=e)

        except Exception as e:
            logger.exception("Backup failed with an unexpected error")
            tracker.finish(OperationStatus.FAILED, str(e))
            return self._result(run, success=False, error=e)

        finally:
            if codec is not None:
                codec.clear()
            if staging is not None:
                self._discard(staging)

    def _check_password(self, request: BackupRequest) -> None:
        if not request.encrypt:
            return
        if not request.password:
            raise PasswordRequiredError("A password is required when encryption is enabled")
        minimum = self.settings.crypto.min_password_length
        if len(request.password) < minimum:
            raise PasswordRequiredError(f"Password must be at least {minimum} characters")

    def _scan(self, source: Path, dest: Path, request: BackupRequest) -> ScanResult:
        patterns = (
            request.exclude_patterns
            if request.exclude_patterns is not None
            else self.settings.backup.exclude_patterns
        )
        scanner = DirectoryScanner(
            source,
            exclude_patterns=patterns,
            compute_hash=self.settings.backup.compute_hash,
            skip_dirs=[dest],
        )
        return scanner.scan()

    def _load_previous(self, store: ManifestStore, request: BackupRequest) -> Manifest | None:
        """Load the last committed manifest; a corrupt one only blocks incremental runs."""
        try:
            return store.load_if_exists()
        except ManifestError:
            if request.incremental:
                raise
            logger.warning(f"Ignoring unreadable manifest for full backup: {store.path}")
            return None

    def _settings_match(self, previous: Manifest, request: BackupRequest) -> bool:
        return previous.encrypted == request.encrypt and previous.compressed == request.compress

    def _prepare_crypto(
        self,
        request: BackupRequest,
        previous: Manifest | None,
    ) -> tuple[KdfParams | None, str | None, CryptoCodec | None]:
        """
        Derive the key for this run.

        Incremental runs over an encrypted backup reuse its salt so unchanged
        blobs stay decryptable, after checking the password against it.
        """
        if not request.encrypt:
            return None, None, None
        assert request.password is not None

        if previous is not None and previous.kdf is not None:
            codec = CryptoCodec.from_password(request.password, previous.kdf)
            if previous.password_check:
                try:
                    codec.verify_password_check(previous.password_check)
                except SecureBackupError:
                    codec.clear()
                    raise
            return previous.kdf, previous.password_check, codec

        kdf = KdfParams.generate(
            iterations=self.settings.crypto.kdf_iterations,
            salt_length=self.settings.crypto.salt_length,
        )
        codec = CryptoCodec.from_password(request.password, kdf)
        return kdf, codec.make_password_check(), codec

    def _transfer(
        self,
        data_dir: Path,
        source: Path,
        scan: ScanResult,
        diff: DiffResult,
        request: BackupRequest,
        codec: CryptoCodec | None,
        run: _RunState,
    ) -> dict[str, FileRecord]:
        """Write every new or changed file, stopping at a file boundary on cancel."""
        to_transfer = diff.to_transfer
        self.progress_tracker.update(
            status=OperationStatus.TRANSFERRING,
            processed_files=0,
            processed_bytes=0,
            total_files=len(to_transfer),
            total_bytes=sum(scan.files[path].size for path in to_transfer),
        )

        compression = (
            CompressionCodec(self.settings.backup.compression_level) if request.compress else None
        )
        transferred: dict[str, FileRecord] = {}

        for path in to_transfer:
            if self._cancel_event.is_set():
                raise OperationCancelledError(
                    f"Backup cancelled after {run.backed_up_files} of {len(to_transfer)} files"
                )

            self.progress_tracker.update(current_file=path)
            record = self._transfer_file(
                source, data_dir, run.generation, scan.files[path], compression, codec
            )
            transferred[path] = record

            run.backed_up_files += 1
            run.backed_up_bytes += record.original_size
            run.stored_bytes += record.stored_size
            self.progress_tracker.advance(record.original_size)

        return transferred

    def _transfer_file(
        self,
        source: Path,
        data_dir: Path,
        generation: str,
        info: FileInfo,
        compression: CompressionCodec | None,
        codec: CryptoCodec | None,
    ) -> FileRecord:
        """Compress, encrypt and write a single file into this run's generation."""
        data = read_bytes(source / info.relative_path)
        digest = hash_bytes(data)

        payload = compression.compress(data) if compression else data
        if codec is not None:
            payload = codec.encrypt(payload, associated_data=info.relative_path.encode("utf-8"))

        blob = blob_name(generation, info.relative_path, encrypted=codec is not None)
        atomic_write_bytes(data_dir / blob, payload)

        logger.debug(f"Stored {info.relative_path}: {len(data):,} -> {len(payload):,} bytes")

        return FileRecord(
            path=info.relative_path,
            original_size=len(data),
            stored_size=len(payload),
            hash=digest,
            modified=info.modified,
            encrypted=codec is not None,
            compressed=compression is not None,
            blob=blob,
        )

    def _build_manifest(
        self,
        scan: ScanResult,
        diff: DiffResult,
        transferred: dict[str, FileRecord],
        previous: Manifest | None,
        request: BackupRequest,
        kdf: KdfParams | None,
        password_check: str | None,
    ) -> Manifest:
        """Rebuild the full manifest from the scan and the transfer outcome."""
        records: list[FileRecord] = []
        for path in sorted(scan.files):
            if path in transferred:
                records.append(transferred[path])
                continue
            assert previous is not None
            prior = previous.get(path)
            assert prior is not None
            info = scan.files[path]
            records.append(replace(prior, modified=info.modified, original_size=info.size))

        now = datetime.now(UTC)
        return Manifest(
            source_dir=str(scan.source_dir),
            encrypted=request.encrypt,
            compressed=request.compress,
            incremental=request.incremental,
            records=records,
            created_at=previous.created_at if previous is not None else now,
            updated_at=now,
            version=__version__,
            kdf=kdf,
            password_check=password_check,
            backup_count=previous.backup_count + 1 if previous is not None else 1,
        )

    def _prune(self, data_dir: Path, manifest: Manifest) -> None:
        """Remove every file under data_dir that the committed manifest does not reference."""
        if not data_dir.is_dir():
            return

        referenced = {data_dir / record.blob for record in manifest.records}
        try:
            # Reverse order visits children before their parent directory.
            entries = sorted(data_dir.rglob("*"), reverse=True)
        except OSError as e:
            logger.warning(f"Could not list {data_dir} for pruning: {e}")
            return

        removed = 0
        for path in entries:
            if path.is_dir() and not path.is_symlink():
                try:
                    path.rmdir()
                except OSError:
                    pass  # not empty
                continue
            if path in referenced:
                continue
            try:
                path.unlink()
                removed += 1
            except OSError as e:
                logger.warning(f"Could not remove stale blob {path}: {e}")

        if removed:
            logger.debug(f"Pruned {removed} stale blobs from {data_dir}")

    def _discard(self, staging: Path) -> None:
        """Delete the blobs written by a run that did not commit."""
        if not staging.exists():
            return
        try:
            shutil.rmtree(staging)
            logger.debug(f"Discarded uncommitted blobs in {staging}")
        except OSError as e:
            logger.warning(f"Could not remove uncommitted blobs in {staging}: {e}")

    def _result(
        self,
        run: _RunState,
        success: bool,
        manifest: Manifest | None = None,
        error: Exception | None = None,
    ) -> BackupResult:
        return BackupResult(
            success=success,
            backed_up_files=run.backed_up_files,
            backed_up_bytes=run.backed_up_bytes,
            stored_bytes=run.stored_bytes,
            skipped_files=run.skipped_files,
            duration_seconds=time.monotonic() - run.started,
            started_at=run.started_at,
            finished_at=datetime.now(UTC),
            manifest=manifest,
            error=str(error) if error is not None else None,
            error_kind=type(error).__name__ if error is not None else None,
        )

