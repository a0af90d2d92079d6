"""
Tests for the CLI commands.

Uses Python's unittest module.
Tests argument parsing, output formatting, and the commands end to end.
"""

from __future__ import annotations

import io
import json
import os
import tempfile
import unittest
from contextlib import redirect_stderr, redirect_stdout
from pathlib import Path
from unittest.mock import patch

from securebackup.cli import create_parser, format_file_size, main


class TestArgumentParser(unittest.TestCase):
    """Tests for CLI argument parsing."""

    def setUp(self) -> None:
        """Set up parser for tests."""
        self.parser = create_parser()

    def test_version_argument(self) -> None:
        """Test --version argument."""
        with redirect_stdout(io.StringIO()):
            with self.assertRaises(SystemExit) as cm:
                self.parser.parse_args(["--version"])

        self.assertEqual(cm.exception.code, 0)

    def test_no_command_defaults(self) -> None:
        """Test parsing with no command."""
        args = self.parser.parse_args([])

        self.assertEqual(args.verbose, 0)
        self.assertFalse(args.quiet)
        self.assertIsNone(args.command)

    def test_verbose_and_quiet(self) -> None:
        """Test -v and -q flags."""
        self.assertEqual(self.parser.parse_args(["-vv"]).verbose, 2)
        self.assertTrue(self.parser.parse_args(["-q"]).quiet)

    def test_scan_command(self) -> None:
        """Test scan arguments."""
        args = self.parser.parse_args(["scan", "/data", "--hash"])

        self.assertEqual(args.path, "/data")
        self.assertTrue(args.hash)
        self.assertTrue(hasattr(args, "func"))

    def test_backup_command(self) -> None:
        """Test backup arguments and defaults."""
        args = self.parser.parse_args(["backup", "/src", "/dst"])

        self.assertEqual(args.source, "/src")
        self.assertEqual(args.dest, "/dst")
        self.assertFalse(args.encrypt)
        self.assertFalse(args.no_compress)
        self.assertFalse(args.full)

    def test_backup_flags(self) -> None:
        """Test backup option flags."""
        args = self.parser.parse_args(
            ["backup", "/src", "/dst", "--encrypt", "--no-compress", "--full"]
        )

        self.assertTrue(args.encrypt)
        self.assertTrue(args.no_compress)
        self.assertTrue(args.full)

    def test_backup_requires_destination(self) -> None:
        """Test that DEST is mandatory."""
        with redirect_stderr(io.StringIO()):
            with self.assertRaises(SystemExit):
                self.parser.parse_args(["backup", "/src"])

    def test_info_command(self) -> None:
        """Test info arguments."""
        args = self.parser.parse_args(["info", "/dst", "--files", "--json"])

        self.assertEqual(args.backup_dir, "/dst")
        self.assertTrue(args.files)
        self.assertTrue(args.json)

    def test_restore_command(self) -> None:
        """Test restore with a file selection."""
        args = self.parser.parse_args(
            ["restore", "/dst", "/out", "a.txt", "docs/b.txt", "--overwrite"]
        )

        self.assertEqual(args.backup_dir, "/dst")
        self.assertEqual(args.restore_dir, "/out")
        self.assertEqual(args.files, ["a.txt", "docs/b.txt"])
        self.assertTrue(args.overwrite)

    def test_restore_all_files(self) -> None:
        """Test that no FILE arguments means everything."""
        args = self.parser.parse_args(["restore", "/dst", "/out"])

        self.assertEqual(args.files, [])
        self.assertFalse(args.overwrite)


class TestFormatFileSize(unittest.TestCase):
    """Tests for format_file_size."""

    def test_units(self) -> None:
        self.assertEqual(format_file_size(0), "0 B")
        self.assertEqual(format_file_size(512), "512 B")
        self.assertEqual(format_file_size(1536), "1.50 KB")
        self.assertEqual(format_file_size(5 * 1024 * 1024), "5.00 MB")
        self.assertEqual(format_file_size(3 * 1024**4), "3.00 TB")


class TestCommands(unittest.TestCase):
    """Runs the commands through main()."""

    def setUp(self) -> None:
        self.temp_dir = tempfile.TemporaryDirectory()
        base = Path(self.temp_dir.name)
        self.source = base / "source"
        self.dest = base / "backup"
        self.target = base / "restored"
        self.source.mkdir()
        (self.source / "a.txt").write_bytes(b"a" * 10)
        (self.source / "b.txt").write_bytes(b"b" * 20)

        self.config = base / "config.yaml"
        self.config.write_text("crypto:\n  kdf_iterations: 1000\n")
        self.env = patch.dict(
            os.environ,
            {"SECUREBACKUP_PASSWORD": "correct horse battery"},
            clear=True,
        )
        self.env.start()

    def tearDown(self) -> None:
        self.env.stop()
        self.temp_dir.cleanup()

    def run_cli(self, *argv: str) -> tuple[int, str]:
        stdout = io.StringIO()
        with redirect_stdout(stdout), redirect_stderr(io.StringIO()):
            with self.assertRaises(SystemExit) as cm:
                main(["-q", "--config", str(self.config), *argv])
        return cm.exception.code, stdout.getvalue()

    def test_no_command_prints_help(self) -> None:
        """Test that main without a command exits cleanly."""
        with redirect_stdout(io.StringIO()):
            with self.assertRaises(SystemExit) as cm:
                main([])

        self.assertEqual(cm.exception.code, 0)

    def test_scan(self) -> None:
        """Test the scan command."""
        code, _ = self.run_cli("scan", str(self.source))

        self.assertEqual(code, 0)

    def test_scan_missing_directory(self) -> None:
        """Test that a failed scan exits with 1."""
        code, _ = self.run_cli("scan", str(self.source / "missing"))

        self.assertEqual(code, 1)

    def test_backup_info_restore(self) -> None:
        """Test an encrypted backup, JSON info, and restore."""
        code, _ = self.run_cli("backup", str(self.source), str(self.dest), "--encrypt")
        self.assertEqual(code, 0)

        code, out = self.run_cli("info", str(self.dest), "--json")
        self.assertEqual(code, 0)
        info = json.loads(out)
        self.assertTrue(info["summary"]["encrypted"])
        self.assertEqual(len(info["files"]), 2)

        code, _ = self.run_cli("restore", str(self.dest), str(self.target), "b.txt")
        self.assertEqual(code, 0)
        self.assertEqual((self.target / "b.txt").read_bytes(), b"b" * 20)
        self.assertFalse((self.target / "a.txt").exists())

    def test_restore_wrong_password(self) -> None:
        """Test that a wrong password exits with 1."""
        self.run_cli("backup", str(self.source), str(self.dest), "--encrypt")

        with patch.dict(os.environ, {"SECUREBACKUP_PASSWORD": "wrong password!"}):
            code, _ = self.run_cli("restore", str(self.dest), str(self.target))

        self.assertEqual(code, 1)
        self.assertFalse(self.target.exists())

    def test_encrypt_without_password(self) -> None:
        """Test that --encrypt without a password source fails."""
        del os.environ["SECUREBACKUP_PASSWORD"]

        with patch("sys.stdin", io.StringIO()):
            code, _ = self.run_cli("backup", str(self.source), str(self.dest), "--encrypt")

        self.assertEqual(code, 1)
        self.assertFalse(self.dest.exists())

    def test_info_missing_backup(self) -> None:
        """Test info on a directory without a backup."""
        code, _ = self.run_cli("info", str(self.dest))

        self.assertEqual(code, 1)

    def test_invalid_config_exits_2(self) -> None:
        """Test that configuration errors exit with 2."""
        self.config.write_text("backup:\n  compression_level: 99\n")

        code, _ = self.run_cli("scan", str(self.source))

        self.assertEqual(code, 2)


if __name__ == "__main__":
    unittest.main()
