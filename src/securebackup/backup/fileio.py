"""
File helpers shared by the backup and restore engines.

All filesystem faults are converted to BackupIOError here so the engines
can tell an I/O failure apart from a crypto or compression failure.
"""

from __future__ import annotations

import hashlib
import os
import secrets
import tempfile
from datetime import UTC, datetime
from pathlib import Path

from securebackup.backup.errors import BackupIOError

HASH_CHUNK_SIZE = 64 * 1024
ENCRYPTED_SUFFIX = ".enc"


def hash_file(path: Path) -> str:
    """Compute the SHA-256 of a file by streaming it in fixed-size chunks."""
    hasher = hashlib.sha256()
    try:
        with open(path, "rb") as f:
            while chunk := f.read(HASH_CHUNK_SIZE):
                hasher.update(chunk)
    except OSError as e:
        raise BackupIOError(f"Cannot read {path}: {e}") from e
    return hasher.hexdigest()


def hash_bytes(data: bytes) -> str:
    """Compute the SHA-256 of an in-memory buffer."""
    return hashlib.sha256(data).hexdigest()


def read_bytes(path: Path) -> bytes:
    """Read a whole file, raising BackupIOError on failure."""
    try:
        return Path(path).read_bytes()
    except OSError as e:
        raise BackupIOError(f"Cannot read {path}: {e}") from e


def atomic_write_bytes(path: Path, data: bytes) -> None:
    """
    Write data to path atomically.

    The data goes to a temporary file in the target directory which then
    replaces the destination, so readers see either the old file or the
    complete new one. The temporary file is removed on any failure.

    Raises:
        BackupIOError: If the directory cannot be created or the write fails.
    """
    path = Path(path)
    try:
        path.parent.mkdir(parents=True, exist_ok=True)
        temp_fd, temp_path = tempfile.mkstemp(
            prefix=f".{path.name}.",
            suffix=".tmp",
            dir=str(path.parent),
        )
    except OSError as e:
        raise BackupIOError(f"Cannot write {path}: {e}") from e

    try:
        with os.fdopen(temp_fd, "wb") as f:
            f.write(data)
            f.flush()
            os.fsync(f.fileno())
        os.replace(temp_path, path)
    except OSError as e:
        if os.path.exists(temp_path):
            os.unlink(temp_path)
        raise BackupIOError(f"Cannot write {path}: {e}") from e


def new_generation() -> str:
    """
    Name the data subdirectory that receives one run's blobs.

    A run never writes into a directory referenced by a committed manifest,
    so an interrupted run cannot damage the last good backup.
    """
    stamp = datetime.now(UTC).strftime("%Y%m%dT%H%M%SZ")
    return f"{stamp}-{secrets.token_hex(4)}"


def blob_name(generation: str | None, relative_path: str, encrypted: bool) -> str:
    """Return the POSIX blob name of relative_path, relative to the data directory."""
    name = f"{generation}/{relative_path}" if generation else relative_path
    return name + ENCRYPTED_SUFFIX if encrypted else name


def stored_blob_path(data_dir: Path, blob: str) -> Path:
    """
    Return where a blob named in the manifest lives under data_dir.

    Raises:
        ValueError: If the blob name escapes data_dir.
    """
    return resolve_inside(data_dir, blob)


def resolve_inside(root: Path, relative_path: str) -> Path:
    """
    Join relative_path onto root, refusing paths that escape root.

    Raises:
        ValueError: If the joined path is absolute or leaves root.
    """
    root = Path(root).resolve()
    candidate = (root / relative_path).resolve()
    if Path(relative_path).is_absolute() or not candidate.is_relative_to(root):
        raise ValueError(f"Path escapes {root}: {relative_path}")
    return candidate
