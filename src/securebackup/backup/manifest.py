"""
Backup manifest data model and persistence.

The manifest is a flat, ordered list of FileRecord values with a path index
for constant-time lookups. It is stored as JSON next to the backed-up data
and is always rewritten in full: ManifestStore.commit writes to a temporary
file and replaces the previous manifest, so a reader never observes a
half-written manifest.

Manifest JSON layout (schema_version 1):
    {
        "schema_version": 1,
        "version": "<application version>",
        "created_at": "<ISO-8601 UTC>",
        "updated_at": "<ISO-8601 UTC>",
        "source_dir": "/absolute/source",
        "config": {"encrypt": bool, "compress": bool, "incremental": bool},
        "kdf": {"algorithm": ..., "iterations": ..., "salt": ...} | null,
        "password_check": "<base64>" | null,
        "files": [{"path": ..., "original_size": ..., ...}, ...],
        "stats": {"total_files": ..., "total_original_size": ..., ...}
    }
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field
from datetime import UTC, datetime
from pathlib import Path
from typing import Any

from securebackup.backup.crypto import KdfParams
from securebackup.backup.errors import ManifestError
from securebackup.backup.fileio import atomic_write_bytes, blob_name

logger = logging.getLogger(__name__)

SCHEMA_VERSION = 1
DEFAULT_MANIFEST_NAME = "manifest.json"


def _parse_datetime(value: Any, field_name: str) -> datetime:
    if not isinstance(value, str):
        raise ManifestError(f"Invalid {field_name}: {value!r}")
    try:
        parsed = datetime.fromisoformat(value)
    except ValueError as e:
        raise ManifestError(f"Invalid {field_name}: {value!r}") from e
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=UTC)
    return parsed


@dataclass
class FileRecord:
    """
    One backed-up file.

    Attributes:
        path: POSIX path relative to the source directory. Unique per manifest.
        original_size: Size of the source file in bytes.
        stored_size: Size of the stored blob after compression/encryption.
        hash: SHA-256 hex digest of the original content ("" if unknown).
        modified: Source modification time (UTC).
        encrypted: Whether the stored blob is encrypted.
        compressed: Whether the stored blob is compressed.
        blob: POSIX path of the stored blob relative to the data directory.
            Defaults to the flat "<path>[.enc]" layout.
    """

    path: str
    original_size: int
    stored_size: int
    hash: str
    modified: datetime
    encrypted: bool = False
    compressed: bool = False
    blob: str = ""

    def __post_init__(self) -> None:
        if not self.blob:
            self.blob = blob_name(None, self.path, self.encrypted)

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for storage."""
        return {
            "path": self.path,
            "original_size": self.original_size,
            "stored_size": self.stored_size,
            "hash": self.hash,
            "modified": self.modified.isoformat(),
            "encrypted": self.encrypted,
            "compressed": self.compressed,
            "blob": self.blob,
        }

    @classmethod
    def from_dict(cls, data: Any) -> FileRecord:
        """Create from dictionary."""
        if not isinstance(data, dict):
            raise ManifestError(f"Invalid file record in manifest: {data!r}")
        try:
            path = data["path"]
            if not isinstance(path, str) or not path:
                raise ManifestError(f"Invalid file path in manifest: {path!r}")
            blob = data.get("blob") or ""
            if not isinstance(blob, str):
                raise ManifestError(f"Invalid blob name for {path}: {blob!r}")
            return cls(
                path=path,
                original_size=int(data["original_size"]),
                stored_size=int(data.get("stored_size", 0)),
                hash=str(data.get("hash") or ""),
                modified=_parse_datetime(data["modified"], "modified"),
                encrypted=bool(data.get("encrypted", False)),
                compressed=bool(data.get("compressed", False)),
                blob=blob,
            )
        except (KeyError, TypeError, ValueError, AttributeError) as e:
            raise ManifestError(f"Invalid file record in manifest: {e}") from e


@dataclass
class ManifestSummary:
    """Read-only overview of a manifest, used to populate restore selection."""

    version: str
    schema_version: int
    created_at: datetime
    updated_at: datetime
    source_dir: str
    total_files: int
    total_original_size: int
    total_stored_size: int
    encrypted: bool
    compressed: bool
    incremental: bool
    backup_count: int

    def to_dict(self) -> dict[str, Any]:
        return {
            "version": self.version,
            "schema_version": self.schema_version,
            "created_at": self.created_at.isoformat(),
            "updated_at": self.updated_at.isoformat(),
            "source_dir": self.source_dir,
            "total_files": self.total_files,
            "total_original_size": self.total_original_size,
            "total_stored_size": self.total_stored_size,
            "encrypted": self.encrypted,
            "compressed": self.compressed,
            "incremental": self.incremental,
            "backup_count": self.backup_count,
        }


@dataclass
class Manifest:
    """
    Persisted record of a backup's file set and settings.

    Records keep their insertion order; the path index is rebuilt whenever
    the manifest is constructed and rejects duplicate paths.
    """

    source_dir: str
    encrypted: bool
    compressed: bool
    incremental: bool = True
    records: list[FileRecord] = field(default_factory=list)
    created_at: datetime = field(default_factory=lambda: datetime.now(UTC))
    updated_at: datetime = field(default_factory=lambda: datetime.now(UTC))
    version: str = "unknown"
    schema_version: int = SCHEMA_VERSION
    kdf: KdfParams | None = None
    password_check: str | None = None
    backup_count: int = 1
    _index: dict[str, int] = field(init=False, repr=False, compare=False)

    def __post_init__(self) -> None:
        self._index = {}
        for position, record in enumerate(self.records):
            if record.path in self._index:
                raise ManifestError(f"Duplicate path in manifest: {record.path}")
            self._index[record.path] = position

    def __len__(self) -> int:
        return len(self.records)

    def __contains__(self, path: object) -> bool:
        return path in self._index

    def get(self, path: str) -> FileRecord | None:
        """Look up a record by relative path."""
        position = self._index.get(path)
        return None if position is None else self.records[position]

    def paths(self) -> list[str]:
        return [record.path for record in self.records]

    @property
    def total_files(self) -> int:
        return len(self.records)

    @property
    def total_original_size(self) -> int:
        return sum(record.original_size for record in self.records)

    @property
    def total_stored_size(self) -> int:
        return sum(record.stored_size for record in self.records)

    def summary(self) -> ManifestSummary:
        """Build a ManifestSummary for this manifest."""
        return ManifestSummary(
            version=self.version,
            schema_version=self.schema_version,
            created_at=self.created_at,
            updated_at=self.updated_at,
            source_dir=self.source_dir,
            total_files=self.total_files,
            total_original_size=self.total_original_size,
            total_stored_size=self.total_stored_size,
            encrypted=self.encrypted,
            compressed=self.compressed,
            incremental=self.incremental,
            backup_count=self.backup_count,
        )

    def to_dict(self) -> dict[str, Any]:
        """Convert manifest to dictionary."""
        return {
            "schema_version": self.schema_version,
            "version": self.version,
            "created_at": self.created_at.isoformat(),
            "updated_at": self.updated_at.isoformat(),
            "source_dir": self.source_dir,
            "config": {
                "encrypt": self.encrypted,
                "compress": self.compressed,
                "incremental": self.incremental,
            },
            "kdf": self.kdf.to_dict() if self.kdf else None,
            "password_check": self.password_check,
            "files": [record.to_dict() for record in self.records],
            "stats": {
                "total_files": self.total_files,
                "total_original_size": self.total_original_size,
                "total_stored_size": self.total_stored_size,
                "last_backup": self.updated_at.isoformat(),
                "backup_count": self.backup_count,
            },
        }

    @classmethod
    def from_dict(cls, data: Any) -> Manifest:
        """
        Create manifest from dictionary.

        Raises:
            ManifestError: If the data is not a valid manifest or uses a
                newer schema version than this release understands.
        """
        if not isinstance(data, dict):
            raise ManifestError("Manifest is not a JSON object")

        schema_version = data.get("schema_version")
        if not isinstance(schema_version, int):
            raise ManifestError("Manifest has no schema_version")
        if schema_version > SCHEMA_VERSION:
            raise ManifestError(
                f"Unsupported manifest schema_version {schema_version} "
                f"(this release reads up to {SCHEMA_VERSION})"
            )

        config = data.get("config") or {}
        files = data.get("files")
        if not isinstance(files, list) or not isinstance(config, dict):
            raise ManifestError("Manifest is missing its file list or config")

        kdf_data = data.get("kdf")
        if kdf_data is not None and not isinstance(kdf_data, dict):
            raise ManifestError("Invalid kdf block in manifest")
        try:
            kdf = KdfParams.from_dict(kdf_data) if kdf_data else None
        except (KeyError, TypeError, ValueError, AttributeError) as e:
            raise ManifestError(f"Invalid kdf block in manifest: {e}") from e

        stats = data.get("stats") or {}
        if not isinstance(stats, dict):
            raise ManifestError("Invalid stats block in manifest")
        password_check = data.get("password_check")
        if password_check is not None and not isinstance(password_check, str):
            raise ManifestError("Invalid password_check in manifest")
        if "source_dir" not in data:
            raise ManifestError("Manifest is missing source_dir")

        try:
            return cls(
                source_dir=str(data["source_dir"]),
                encrypted=bool(config.get("encrypt", False)),
                compressed=bool(config.get("compress", False)),
                incremental=bool(config.get("incremental", True)),
                records=[FileRecord.from_dict(item) for item in files],
                created_at=_parse_datetime(data.get("created_at"), "created_at"),
                updated_at=_parse_datetime(
                    data.get("updated_at", data.get("created_at")), "updated_at"
                ),
                version=str(data.get("version", "unknown")),
                schema_version=schema_version,
                kdf=kdf,
                password_check=password_check,
                backup_count=int(stats.get("backup_count", 1)),
            )
        except (KeyError, TypeError, ValueError, AttributeError) as e:
            raise ManifestError(f"Invalid manifest: {e}") from e


class ManifestStore:
    """
    Loads and commits the manifest stored in a backup directory.

    Usage:
        store = ManifestStore(backup_dir)
        previous = store.load_if_exists()
        store.commit(new_manifest)
    """

    def __init__(self, backup_dir: Path, manifest_name: str = DEFAULT_MANIFEST_NAME) -> None:
        self.backup_dir = Path(backup_dir)
        self.path = self.backup_dir / manifest_name

    def exists(self) -> bool:
        return self.path.is_file()

    def load(self) -> Manifest:
        """
        Load and validate the manifest.

        Raises:
            ManifestError: If the manifest is missing, unreadable, or invalid.
        """
        if not self.exists():
            raise ManifestError(f"Manifest not found: {self.path}")

        try:
            with open(self.path, encoding="utf-8") as f:
                data = json.load(f)
        except json.JSONDecodeError as e:
            raise ManifestError(f"Manifest is not valid JSON: {self.path}: {e}") from e
        except (OSError, UnicodeDecodeError) as e:
            raise ManifestError(f"Cannot read manifest {self.path}: {e}") from e

        return Manifest.from_dict(data)

    def load_if_exists(self) -> Manifest | None:
        """Load the manifest, or return None if there is none yet."""
        if not self.exists():
            return None
        return self.load()

    def commit(self, manifest: Manifest) -> None:
        """
        Atomically replace the stored manifest.

        Raises:
            BackupIOError: If the manifest cannot be written.
        """
        payload = json.dumps(manifest.to_dict(), indent=2).encode("utf-8")
        atomic_write_bytes(self.path, payload)
        logger.info(
            f"Manifest committed: {self.path} ({manifest.total_files} files, "
            f"{manifest.total_original_size:,} bytes)"
        )

