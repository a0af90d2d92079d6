"""
Directory scanning for backup planning.

Walks a source tree without following symlinks, applies exclusion patterns
to every path component, and optionally hashes each regular file. A scan is
all-or-nothing: any error while walking raises ScanError and no partial
result is returned.
"""

from __future__ import annotations

import fnmatch
import logging
import os
import stat
from collections.abc import Iterable
from dataclasses import dataclass, field
from datetime import UTC, datetime
from pathlib import Path

from securebackup.backup.errors import BackupIOError, ScanError
from securebackup.backup.fileio import hash_file
from securebackup.config.settings import DEFAULT_EXCLUDE_PATTERNS

logger = logging.getLogger(__name__)


@dataclass
class FileInfo:
    """
    Metadata for a file discovered during a scan.

    Attributes:
        relative_path: POSIX-style path relative to the scan root.
        size: File size in bytes.
        modified: Last modification time (UTC).
        hash: SHA-256 hex digest, or None if hashing was skipped.
    """

    relative_path: str
    size: int
    modified: datetime
    hash: str | None = None


@dataclass
class ScanResult:
    """Result of scanning a source tree, keyed by relative path."""

    source_dir: Path
    scanned_at: datetime
    files: dict[str, FileInfo] = field(default_factory=dict)

    @property
    def total_files(self) -> int:
        return len(self.files)

    @property
    def total_size(self) -> int:
        return sum(info.size for info in self.files.values())


class DirectoryScanner:
    """
    Walks a directory tree and collects file metadata.

    Usage:
        scanner = DirectoryScanner(source, compute_hash=True)
        result = scanner.scan()
    """

    def __init__(
        self,
        source: Path,
        exclude_patterns: Iterable[str] | None = None,
        compute_hash: bool = False,
        skip_dirs: Iterable[Path] | None = None,
    ) -> None:
        """
        Initialize the scanner.

        Args:
            source: Root directory to scan.
            exclude_patterns: Shell-style patterns matched against each path
                component. Defaults to DEFAULT_EXCLUDE_PATTERNS.
            compute_hash: Whether to hash each included file.
            skip_dirs: Absolute directories to leave out entirely (used to
                keep a destination nested in the source out of its own
                backup).
        """
        self.source = Path(source)
        self.exclude_patterns = list(
            DEFAULT_EXCLUDE_PATTERNS if exclude_patterns is None else exclude_patterns
        )
        self.compute_hash = compute_hash
        self.skip_dirs = {Path(p).resolve() for p in (skip_dirs or [])}

    def scan(self) -> ScanResult:
        """
        Scan the source directory.

        Returns:
            ScanResult with one FileInfo per included regular file.

        Raises:
            ScanError: If the root is missing, not a directory, unreadable,
                or any entry cannot be read during the walk.
        """
        if not self.source.exists():
            raise ScanError(f"Directory does not exist: {self.source}")
        if not self.source.is_dir():
            raise ScanError(f"Not a directory: {self.source}")
        try:
            with os.scandir(self.source):
                pass
        except OSError as e:
            raise ScanError(f"Directory is not readable: {self.source}: {e}") from e

        def _on_error(error: OSError) -> None:
            raise ScanError(f"Cannot read {error.filename}: {error.strerror}") from error

        result = ScanResult(source_dir=self.source.resolve(), scanned_at=datetime.now(UTC))

        for dirpath, dirnames, filenames in os.walk(
            self.source, onerror=_on_error, followlinks=False
        ):
            current = Path(dirpath)
            # Prune in place so os.walk never descends into excluded dirs
            dirnames[:] = sorted(
                name
                for name in dirnames
                if not self.is_excluded(name)
                and (current / name).resolve() not in self.skip_dirs
            )

            for name in sorted(filenames):
                if self.is_excluded(name):
                    continue
                path = current / name
                info = self._file_info(path)
                if info is not None:
                    result.files[info.relative_path] = info

        logger.debug(
            f"Scanned {self.source}: {result.total_files} files, {result.total_size:,} bytes"
        )
        return result

    def is_excluded(self, name: str) -> bool:
        """Check whether a single path component matches an exclusion pattern."""
        return any(fnmatch.fnmatchcase(name, pattern) for pattern in self.exclude_patterns)

    def _file_info(self, path: Path) -> FileInfo | None:
        """Build a FileInfo for a regular file, or None for anything else."""
        try:
            st = os.lstat(path)
        except OSError as e:
            raise ScanError(f"Cannot stat {path}: {e}") from e

        # Symlinks, sockets, devices and fifos are not backed up
        if not stat.S_ISREG(st.st_mode):
            return None

        relative = path.relative_to(self.source).as_posix()
        info = FileInfo(
            relative_path=relative,
            size=st.st_size,
            modified=datetime.fromtimestamp(st.st_mtime, UTC),
        )

        if self.compute_hash:
            try:
                info.hash = hash_file(path)
            except BackupIOError as e:
                raise ScanError(str(e)) from e

        return info
