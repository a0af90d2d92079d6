"""
SecureBackup - Incremental, Compressed, Encrypted Backups

SecureBackup copies a directory tree into a backup directory, storing each
file compressed with Zstandard and optionally encrypted with AES-256-GCM
under a password-derived key. A JSON manifest records what was stored so
later runs only transfer new and changed files.

Key Features:
    - Incremental backups driven by SHA-256 content hashes
    - Per-file Zstandard compression
    - Per-file AES-256-GCM encryption with PBKDF2-SHA256 key derivation
    - Atomic writes; the manifest is committed only after every file succeeds
    - Background operations with pollable progress and cooperative cancel
    - Full or selective restore with integrity verification
"""

__version__ = "0.1.0"
__author__ = ""
__email__ = ""

from securebackup.config.settings import Settings, load_config

__all__ = [
    "__version__",
    "Settings",
    "load_config",
]
