"""
Exception hierarchy for the backup and restore engines.

Every failure the engines can report maps to exactly one of these classes.
Engines raise them internally and convert them to structured results at the
operation boundary, so callers of the public operations only ever see the
class name in ``error_kind``.
"""

from __future__ import annotations


class SecureBackupError(Exception):
    """Base exception for backup and restore errors."""

    pass


class ScanError(SecureBackupError):
    """Raised when the source directory is missing or cannot be walked."""

    pass


class ManifestError(SecureBackupError):
    """Raised when a manifest is missing, corrupt, or of an unsupported version."""

    pass


class CryptoError(SecureBackupError):
    """Raised on authentication failure (wrong password or tampered data)."""

    pass


class PasswordRequiredError(SecureBackupError):
    """Raised when a password is needed but missing or too short."""

    pass


class CompressionError(SecureBackupError):
    """Raised when a compressed stream cannot be decoded."""

    pass


class BackupIOError(SecureBackupError):
    """Raised when reading or writing a file fails."""

    pass


class IntegrityError(SecureBackupError):
    """Raised when restored content does not match its recorded hash."""

    pass


class OperationInProgressError(SecureBackupError):
    """Raised when an operation of the same kind is already running."""

    pass


class OperationCancelledError(SecureBackupError):
    """Raised when the caller cancels a running operation."""

    pass
