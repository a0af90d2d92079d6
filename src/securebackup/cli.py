"""
Command-line interface for SecureBackup.

Provides commands for scanning a directory, creating incremental backups,
inspecting a backup, and restoring from it.

Uses Python's argparse module (no external CLI libraries).
"""

from __future__ import annotations

import argparse
import getpass
import json
import logging
import os
import sys
import time
from collections.abc import Callable
from pathlib import Path
from typing import NoReturn, TypeVar

from securebackup import __version__
from securebackup.backup.engine import BackupRequest, BackupResult
from securebackup.backup.errors import OperationInProgressError
from securebackup.backup.progress import ProgressState
from securebackup.backup.restore import RestoreRequest, RestoreResult
from securebackup.backup.worker import OperationHandle
from securebackup.config.settings import ConfigurationError, Settings, load_config
from securebackup.service import BackupService

# Set up logging
logger = logging.getLogger(__name__)

PASSWORD_ENV_VAR = "SECUREBACKUP_PASSWORD"
PROGRESS_POLL_INTERVAL = 0.2

ResultT = TypeVar("ResultT")

# Global verbosity settings (set during main() based on args)
_quiet_mode = False
_verbose_level = 0


def set_output_mode(quiet: bool = False, verbose: int = 0) -> None:
    """
    Set the output mode for the CLI.

    Args:
        quiet: If True, suppress non-essential output.
        verbose: Verbosity level (0=normal, 1+=verbose).
    """
    global _quiet_mode, _verbose_level
    _quiet_mode = quiet
    _verbose_level = verbose


def output(message: str = "", force: bool = False) -> None:
    """
    Print a message to stdout, respecting quiet mode.

    Args:
        message: The message to print.
        force: If True, print even in quiet mode (for essential output like JSON).
    """
    if force or not _quiet_mode:
        print(message)


def output_verbose(message: str, level: int = 1) -> None:
    """Print a message only if verbosity is at least level."""
    if _verbose_level >= level and not _quiet_mode:
        print(message)


def output_error(message: str) -> None:
    """Print an error message (always shown, even in quiet mode)."""
    print(message, file=sys.stderr)


def format_file_size(size: int) -> str:
    """
    Format a byte count for humans.

    Examples:
        >>> format_file_size(512)
        '512 B'
        >>> format_file_size(1536)
        '1.50 KB'
    """
    value = float(size)
    for unit in ("B", "KB", "MB", "GB", "TB"):
        if value < 1024 or unit == "TB":
            if unit == "B":
                return f"{int(value)} B"
            return f"{value:.2f} {unit}"
        value /= 1024
    return f"{value:.2f} TB"


def create_parser() -> argparse.ArgumentParser:
    """Create and configure the argument parser for SecureBackup CLI."""
    parser = argparse.ArgumentParser(
        prog="securebackup",
        description="Incremental, compressed, encrypted directory backups",
    )

    parser.add_argument(
        "--version",
        action="version",
        version=f"securebackup {__version__}",
    )

    parser.add_argument(
        "--config",
        metavar="PATH",
        help="Override config file location (default: ~/.securebackup/config.yaml)",
    )

    parser.add_argument(
        "-v", "--verbose",
        action="count",
        default=0,
        help="Increase output verbosity (can be repeated)",
    )

    parser.add_argument(
        "-q", "--quiet",
        action="store_true",
        help="Suppress non-essential output",
    )

    subparsers = parser.add_subparsers(
        title="commands",
        dest="command",
        metavar="<command>",
    )

    # scan command
    scan_parser = subparsers.add_parser(
        "scan",
        help="Scan a directory and report what would be backed up",
        description="Walk a directory using the configured exclusions and print totals.",
    )
    scan_parser.add_argument("path", metavar="PATH", help="Directory to scan")
    scan_parser.add_argument(
        "--hash",
        action="store_true",
        help="Compute a content hash for every file",
    )
    scan_parser.set_defaults(func=cmd_scan)

    # backup command
    backup_parser = subparsers.add_parser(
        "backup",
        help="Back up a directory",
        description=(
            "Copy new and changed files from SOURCE into DEST. "
            f"The encryption password is read from {PASSWORD_ENV_VAR} or prompted for."
        ),
    )
    backup_parser.add_argument("source", metavar="SOURCE", help="Directory to back up")
    backup_parser.add_argument("dest", metavar="DEST", help="Backup destination directory")
    backup_parser.add_argument(
        "--encrypt",
        action="store_true",
        help="Encrypt stored files with a password",
    )
    backup_parser.add_argument(
        "--no-compress",
        action="store_true",
        help="Store files without compression",
    )
    backup_parser.add_argument(
        "--full",
        action="store_true",
        help="Back up every file, ignoring the previous manifest",
    )
    backup_parser.set_defaults(func=cmd_backup)

    # info command
    info_parser = subparsers.add_parser(
        "info",
        help="Show information about a backup",
        description="Display the committed manifest of a backup directory.",
    )
    info_parser.add_argument("backup_dir", metavar="BACKUP_DIR", help="Backup directory")
    info_parser.add_argument(
        "--files",
        action="store_true",
        help="List every file in the backup",
    )
    info_parser.add_argument(
        "--json",
        action="store_true",
        help="Output as JSON",
    )
    info_parser.set_defaults(func=cmd_info)

    # restore command
    restore_parser = subparsers.add_parser(
        "restore",
        help="Restore files from a backup",
        description="Restore all files, or only the listed ones, into RESTORE_DIR.",
    )
    restore_parser.add_argument("backup_dir", metavar="BACKUP_DIR", help="Backup directory")
    restore_parser.add_argument("restore_dir", metavar="RESTORE_DIR", help="Target directory")
    restore_parser.add_argument(
        "files",
        metavar="FILE",
        nargs="*",
        help="Relative paths to restore (default: all files)",
    )
    restore_parser.add_argument(
        "--overwrite",
        action="store_true",
        help="Replace files that already exist in RESTORE_DIR",
    )
    restore_parser.set_defaults(func=cmd_restore)

    return parser


def setup_logging(verbose: int, quiet: bool) -> None:
    """Configure logging based on verbosity level."""
    if quiet:
        level = logging.WARNING
    elif verbose == 0:
        level = logging.INFO
    else:
        level = logging.DEBUG

    logging.basicConfig(
        level=level,
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )


def _load_settings(args: argparse.Namespace) -> Settings:
    config_path = Path(args.config) if args.config else None
    settings = load_config(config_path)
    # -v and -q take precedence over the configured level
    if not args.quiet and args.verbose == 0:
        logging.getLogger().setLevel(settings.log_level)
    return settings


def _read_password(confirm: bool) -> str | None:
    """Read the password from the environment or prompt for it."""
    password = os.environ.get(PASSWORD_ENV_VAR)
    if password:
        return password
    if not sys.stdin.isatty():
        return None

    password = getpass.getpass("Password: ")
    if confirm and password:
        again = getpass.getpass("Confirm password: ")
        if again != password:
            output_error("Passwords do not match")
            return None
    return password or None


def _wait_with_progress(
    handle: OperationHandle[ResultT],
    progress: Callable[[], ProgressState],
    cancel: Callable[[], bool],
) -> ResultT:
    """
    Poll a running operation until it finishes.

    Ctrl-C asks the engine to stop at the next file boundary and keeps
    waiting so the result reflects what was durably written.
    """
    last_reported = -1
    while not handle.done():
        try:
            state = progress()
            if state.active and state.processed_files != last_reported:
                last_reported = state.processed_files
                output_verbose(
                    f"  [{state.status.value}] {state.processed_files}/{state.total_files} "
                    f"files ({state.percentage:.0f}%)"
                )
            handle.wait(PROGRESS_POLL_INTERVAL)
        except KeyboardInterrupt:
            output("\nCancelling after the current file...")
            cancel()
    return handle.result


def cmd_scan(args: argparse.Namespace) -> int:
    """Scan a directory and print totals."""
    service = BackupService(_load_settings(args))

    result = service.scan(Path(args.path), compute_hash=args.hash)
    if not result.success:
        output_error(f"Scan failed: {result.error}")
        return 1

    output(f"Directory: {Path(args.path).expanduser().resolve()}")
    output(f"  Files: {result.total_files:,}")
    output(f"  Total size: {format_file_size(result.total_size)} ({result.total_size:,} bytes)")
    return 0


def cmd_backup(args: argparse.Namespace) -> int:
    """Back up SOURCE into DEST."""
    settings = _load_settings(args)
    service = BackupService(settings)

    password = None
    if args.encrypt:
        password = _read_password(confirm=True)
        if password is None:
            output_error(
                f"Error: A password is required for --encrypt "
                f"(set {PASSWORD_ENV_VAR} or run interactively)"
            )
            return 1

    request = BackupRequest(
        source_dir=Path(args.source),
        dest_dir=Path(args.dest),
        encrypt=args.encrypt,
        password=password,
        compress=not args.no_compress,
        incremental=not args.full,
    )

    output("SecureBackup Backup")
    output("=" * 50)
    output()
    output(f"Source: {request.source_dir}")
    output(f"Destination: {request.dest_dir}")
    output(f"Encrypt: {request.encrypt}")
    output(f"Compress: {request.compress}")
    output(f"Mode: {'incremental' if request.incremental else 'full'}")
    output()

    try:
        handle = service.start_backup(request)
    except OperationInProgressError as e:
        output_error(f"Backup failed: {e}")
        return 1

    result: BackupResult = _wait_with_progress(
        handle, service.backup_progress, service.cancel_backup
    )

    if result.cancelled:
        output_error(f"Backup cancelled: {result.error}")
        output("The previous backup, if any, is unchanged.")
        return 130

    if not result.success:
        output_error(f"Backup failed: {result.error}")
        return 1

    output("Backup completed successfully!")
    output()
    output(f"  Backed up: {result.backed_up_files:,} files ({format_file_size(result.backed_up_bytes)})")
    output(f"  Stored: {format_file_size(result.stored_bytes)}")
    output(f"  Unchanged: {result.skipped_files:,} files")
    if result.deleted_files:
        output(f"  Removed: {result.deleted_files:,} files")
    output(f"  Duration: {result.duration_seconds:.2f}s")
    output()
    output("To restore from this backup, run:")
    output(f"  securebackup restore {request.dest_dir} <RESTORE_DIR>")
    return 0


def cmd_info(args: argparse.Namespace) -> int:
    """Show the committed manifest of a backup directory."""
    service = BackupService(_load_settings(args))

    info = service.backup_info(Path(args.backup_dir))
    if args.json:
        output(json.dumps(info.to_dict(), indent=2), force=True)
        return 0 if info.success else 1

    if not info.success or info.summary is None:
        output_error(f"Error: {info.error}")
        return 1

    summary = info.summary
    output("Backup information:")
    output(f"  Source: {summary.source_dir}")
    output(f"  Created: {summary.created_at.isoformat()}")
    output(f"  Last backup: {summary.updated_at.isoformat()}")
    output(f"  Backups: {summary.backup_count}")
    output(f"  Version: {summary.version}")
    output(f"  Files: {summary.total_files:,}")
    output(f"  Original size: {format_file_size(summary.total_original_size)}")
    output(f"  Stored size: {format_file_size(summary.total_stored_size)}")
    output(f"  Encrypted: {summary.encrypted}")
    output(f"  Compressed: {summary.compressed}")

    if args.files:
        output()
        output(f"{'Path':<50} {'Size':>12} {'Stored':>12}  Modified")
        output("-" * 100)
        for record in info.files:
            lock = " [enc]" if record.encrypted else ""
            output(
                f"{record.path:<50} {format_file_size(record.original_size):>12} "
                f"{format_file_size(record.stored_size):>12}  "
                f"{record.modified.strftime('%Y-%m-%d %H:%M:%S')}{lock}"
            )

    return 0


def cmd_restore(args: argparse.Namespace) -> int:
    """Restore files from BACKUP_DIR into RESTORE_DIR."""
    service = BackupService(_load_settings(args))
    backup_dir = Path(args.backup_dir)

    info = service.backup_info(backup_dir)
    if not info.success or info.summary is None:
        output_error(f"Error: {info.error}")
        return 1

    password = None
    if info.summary.encrypted:
        password = _read_password(confirm=False)
        if password is None:
            output_error(
                f"Error: This backup is encrypted; set {PASSWORD_ENV_VAR} or run interactively"
            )
            return 1

    request = RestoreRequest(
        backup_dir=backup_dir,
        restore_dir=Path(args.restore_dir),
        password=password,
        files=list(args.files),
        overwrite=args.overwrite,
    )

    output("SecureBackup Restore")
    output("=" * 50)
    output()
    output(f"Backup: {backup_dir}")
    output(f"Target: {request.restore_dir}")
    output(f"Files: {len(request.files) if request.files else 'all'}")
    output()

    try:
        handle = service.start_restore(request)
    except OperationInProgressError as e:
        output_error(f"Restore failed: {e}")
        return 1

    result: RestoreResult = _wait_with_progress(
        handle, service.restore_progress, service.cancel_restore
    )

    if result.cancelled:
        output_error(f"Restore cancelled: {result.error}")
        return 130

    if not result.success:
        output_error(f"Restore failed: {result.error}")
        output(f"  Files restored before failure: {result.restored_files}")
        return 1

    output("Restore completed successfully!")
    output()
    output(f"  Restored: {result.restored_files:,} files ({format_file_size(result.restored_bytes)})")
    if result.skipped_files:
        output(f"  Skipped (already present): {result.skipped_files:,} files")
    output(f"  Duration: {result.duration_seconds:.2f}s")
    return 0


def main(argv: list[str] | None = None) -> NoReturn:
    """Main entry point for SecureBackup CLI."""
    parser = create_parser()
    args = parser.parse_args(argv)

    # Set up logging and output mode
    setup_logging(args.verbose, args.quiet)
    set_output_mode(args.quiet, args.verbose)

    if args.command is None:
        parser.print_help()
        sys.exit(0)

    started = time.monotonic()
    try:
        exit_code = args.func(args)
        logger.debug(f"Command {args.command} finished in {time.monotonic() - started:.2f}s")
        sys.exit(exit_code)
    except KeyboardInterrupt:
        output("\nOperation cancelled.")
        sys.exit(130)
    except ConfigurationError as e:
        output_error(f"Configuration error: {e}")
        sys.exit(2)
    except Exception as e:
        if args.verbose > 0:
            raise
        output_error(f"Error: {e}")
        sys.exit(1)


if __name__ == "__main__":
    main()
