"""
Change detection between a fresh scan and the previous manifest.

Content hashes are authoritative when both sides have one; size and
modification time are only compared when hashing was skipped. Every list in
a DiffResult is sorted so the transfer order is deterministic.
"""

from __future__ import annotations

from dataclasses import dataclass, field

from securebackup.backup.manifest import FileRecord, Manifest
from securebackup.backup.scanner import FileInfo, ScanResult


@dataclass
class DiffResult:
    """
    Classification of scanned files against a previous manifest.

    Attributes:
        added: Paths absent from the previous manifest.
        modified: Paths whose content (or size/mtime) changed.
        unchanged: Paths identical to the previous manifest.
        deleted: Paths in the previous manifest missing from the scan.
    """

    added: list[str] = field(default_factory=list)
    modified: list[str] = field(default_factory=list)
    unchanged: list[str] = field(default_factory=list)
    deleted: list[str] = field(default_factory=list)

    @property
    def to_transfer(self) -> list[str]:
        """New and changed paths in lexicographic order."""
        return sorted(self.added + self.modified)

    def has_changes(self) -> bool:
        return bool(self.added or self.modified or self.deleted)

    def changed_count(self) -> int:
        return len(self.added) + len(self.modified) + len(self.deleted)


def is_unchanged(info: FileInfo, record: FileRecord) -> bool:
    """Decide whether a scanned file matches its manifest record."""
    if info.hash and record.hash:
        return info.hash == record.hash
    return info.size == record.original_size and info.modified == record.modified


def compute_diff(
    scan: ScanResult,
    previous: Manifest | None,
    incremental: bool = True,
) -> DiffResult:
    """
    Classify every scanned file as added, modified, or unchanged.

    Args:
        scan: Current scan of the source directory.
        previous: Manifest from the last successful run, if any.
        incremental: If False, every file present in previous is treated
            as modified (a full backup).

    Returns:
        DiffResult with sorted path lists.
    """
    diff = DiffResult()

    for path in sorted(scan.files):
        record = previous.get(path) if previous is not None else None
        if record is None:
            diff.added.append(path)
        elif not incremental or not is_unchanged(scan.files[path], record):
            diff.modified.append(path)
        else:
            diff.unchanged.append(path)

    if previous is not None:
        diff.deleted = sorted(path for path in previous.paths() if path not in scan.files)

    return diff
