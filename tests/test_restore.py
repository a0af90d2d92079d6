"""
Tests for the restore engine.

Tests cover:
- Full and selective restores, plain and encrypted
- Password verification before extraction
- Overwrite handling
- Integrity, tampering and missing-blob failures
- Unsafe manifest paths
- Modification time preservation
"""

import json
import os
import tempfile
import threading
import unittest
from pathlib import Path
from unittest.mock import patch

from securebackup.backup.engine import BackupEngine, BackupRequest
from securebackup.backup.progress import OperationStatus
from securebackup.backup.restore import RestoreEngine, RestoreRequest, RestoreResult
from securebackup.config.settings import Settings

PASSWORD = "correct horse battery"

SOURCE_FILES = {
    "a.txt": b"alpha " * 20,
    "b.txt": b"bravo",
    "docs/report.md": b"# Report\n" * 40,
    "docs/deep/empty.dat": b"",
}


def make_settings():
    settings = Settings()
    settings.crypto.kdf_iterations = 1000
    return settings


class RestoreTestCase(unittest.TestCase):
    """Backs up a small tree, then gives each test a fresh restore target."""

    encrypt = False

    def setUp(self):
        self.temp_dir = tempfile.TemporaryDirectory()
        base = Path(self.temp_dir.name)
        self.source = base / "source"
        self.dest = base / "backup"
        self.target = base / "restored"
        for relative, content in SOURCE_FILES.items():
            path = self.source / relative
            path.parent.mkdir(parents=True, exist_ok=True)
            path.write_bytes(content)

        self.settings = make_settings()
        backup = BackupEngine(self.settings).run(
            BackupRequest(
                source_dir=self.source,
                dest_dir=self.dest,
                encrypt=self.encrypt,
                password=PASSWORD if self.encrypt else None,
            )
        )
        self.assertTrue(backup.success, backup.error)
        self.manifest = backup.manifest
        self.engine = RestoreEngine(self.settings)

    def tearDown(self):
        self.temp_dir.cleanup()

    def blob(self, relative):
        return self.dest / "data" / self.manifest.get(relative).blob

    def request(self, **kwargs):
        return RestoreRequest(backup_dir=self.dest, restore_dir=self.target, **kwargs)

    def restored_files(self):
        return {
            path.relative_to(self.target).as_posix(): path.read_bytes()
            for path in self.target.rglob("*")
            if path.is_file()
        }


class TestPlainRestore(RestoreTestCase):
    """Restores from an unencrypted, compressed backup."""

    def test_full_restore(self):
        """Test that every file comes back byte-identical."""
        result = self.engine.run(self.request())

        self.assertIsInstance(result, RestoreResult)
        self.assertTrue(result.success, result.error)
        self.assertEqual(result.restored_files, 4)
        self.assertEqual(result.restored_bytes, sum(len(c) for c in SOURCE_FILES.values()))
        self.assertEqual(self.restored_files(), SOURCE_FILES)

    def test_selective_restore(self):
        """Test that only the requested subset is extracted."""
        result = self.engine.run(self.request(files=["b.txt", "docs/report.md"]))

        self.assertTrue(result.success, result.error)
        self.assertEqual(result.restored_files, 2)
        self.assertEqual(sorted(self.restored_files()), ["b.txt", "docs/report.md"])

    def test_unknown_file_requested(self):
        """Test that requesting a path not in the backup fails up front."""
        result = self.engine.run(self.request(files=["b.txt", "nope.txt"]))

        self.assertFalse(result.success)
        self.assertEqual(result.error_kind, "ManifestError")
        self.assertIn("nope.txt", result.error)
        self.assertFalse(self.target.exists())

    def test_overwrite_false_skips_existing(self):
        """Test that existing files are left untouched."""
        self.target.mkdir()
        (self.target / "a.txt").write_bytes(b"local edit")

        result = self.engine.run(self.request(overwrite=False))

        self.assertTrue(result.success)
        self.assertEqual(result.skipped_files, 1)
        self.assertEqual(result.restored_files, 3)
        self.assertEqual((self.target / "a.txt").read_bytes(), b"local edit")

    def test_overwrite_true_replaces_existing(self):
        """Test that overwrite replaces existing files."""
        self.target.mkdir()
        (self.target / "a.txt").write_bytes(b"local edit")

        result = self.engine.run(self.request(overwrite=True))

        self.assertEqual(result.skipped_files, 0)
        self.assertEqual((self.target / "a.txt").read_bytes(), SOURCE_FILES["a.txt"])

    def test_preserves_mtime(self):
        """Test that modification times are restored."""
        os.utime(self.source / "b.txt", (1_600_000_000, 1_600_000_000))
        BackupEngine(self.settings).run(BackupRequest(self.source, self.dest))

        self.engine.run(self.request(files=["b.txt"]))

        self.assertAlmostEqual(os.stat(self.target / "b.txt").st_mtime, 1_600_000_000, places=3)

    def test_missing_manifest(self):
        """Test that a directory without a manifest is a ManifestError."""
        result = self.engine.run(
            RestoreRequest(backup_dir=self.target, restore_dir=self.dest / "out")
        )

        self.assertFalse(result.success)
        self.assertEqual(result.error_kind, "ManifestError")

    def test_missing_blob(self):
        """Test that a deleted blob aborts the restore."""
        self.blob("b.txt").unlink()

        result = self.engine.run(self.request())

        self.assertFalse(result.success)
        self.assertEqual(result.error_kind, "BackupIOError")
        self.assertEqual(result.restored_files, 1)

    def test_corrupt_blob(self):
        """Test that a damaged compressed blob is a CompressionError."""
        self.blob("a.txt").write_bytes(b"not a zstd frame")

        result = self.engine.run(self.request(files=["a.txt"]))

        self.assertFalse(result.success)
        self.assertEqual(result.error_kind, "CompressionError")
        self.assertFalse((self.target / "a.txt").exists())

    def test_hash_mismatch(self):
        """Test that a blob not matching its recorded hash is rejected."""
        manifest_path = self.dest / "manifest.json"
        data = json.loads(manifest_path.read_text())
        for record in data["files"]:
            if record["path"] == "b.txt":
                record["hash"] = "0" * 64
        manifest_path.write_text(json.dumps(data))

        result = self.engine.run(self.request(files=["b.txt"]))

        self.assertFalse(result.success)
        self.assertEqual(result.error_kind, "IntegrityError")

    def test_unsafe_manifest_path(self):
        """Test that a manifest path escaping the target is refused."""
        manifest_path = self.dest / "manifest.json"
        data = json.loads(manifest_path.read_text())
        data["files"][0]["path"] = "../escape.txt"
        manifest_path.write_text(json.dumps(data))

        result = self.engine.run(self.request())

        self.assertFalse(result.success)
        self.assertEqual(result.error_kind, "ManifestError")
        self.assertFalse((self.target.parent / "escape.txt").exists())

    def test_unsafe_blob_name(self):
        """Test that a blob name escaping the data directory is refused."""
        manifest_path = self.dest / "manifest.json"
        data = json.loads(manifest_path.read_text())
        data["files"][0]["blob"] = "../../manifest.json"
        manifest_path.write_text(json.dumps(data))

        result = self.engine.run(self.request())

        self.assertFalse(result.success)
        self.assertEqual(result.error_kind, "ManifestError")
        self.assertFalse(self.target.exists())

    def test_wrongly_typed_manifest_fields(self):
        """Test that fields of the wrong type are reported as ManifestError."""
        manifest_path = self.dest / "manifest.json"
        original = json.loads(manifest_path.read_text())

        for key, value in (
            ("kdf", "abc"),
            ("stats", {"backup_count": "x"}),
            ("stats", ["not", "a", "dict"]),
            ("password_check", 42),
        ):
            with self.subTest(key=key, value=value):
                data = dict(original)
                data[key] = value
                manifest_path.write_text(json.dumps(data))

                result = self.engine.run(self.request())

                self.assertFalse(result.success)
                self.assertEqual(result.error_kind, "ManifestError")
                self.assertEqual(result.restored_files, 0)

    def test_progress_after_restore(self):
        """Test the final progress snapshot."""
        self.engine.run(self.request())

        state = self.engine.progress()
        self.assertEqual(state.status, OperationStatus.COMPLETED)
        self.assertEqual(state.processed_files, 4)
        self.assertFalse(state.active)

    def test_cancel(self):
        """Test that a cancelled restore stops at a file boundary."""
        from securebackup.backup import fileio

        gate, entered = threading.Event(), threading.Event()

        def blocking_read(path):
            entered.set()
            gate.wait(5)
            return fileio.read_bytes(path)

        with patch("securebackup.backup.restore.read_bytes", side_effect=blocking_read):
            handle = self.engine.start(self.request())
            self.assertTrue(entered.wait(5))
            self.engine.cancel()
            gate.set()
            result = handle.wait(30)

        self.assertFalse(result.success)
        self.assertTrue(result.cancelled)
        self.assertEqual(result.restored_files, 1)
        self.assertEqual(self.engine.progress().status, OperationStatus.CANCELLED)


class TestEncryptedRestore(RestoreTestCase):
    """Restores from an encrypted backup."""

    encrypt = True

    def test_round_trip(self):
        """Test that the right password restores everything."""
        result = self.engine.run(self.request(password=PASSWORD))

        self.assertTrue(result.success, result.error)
        self.assertEqual(self.restored_files(), SOURCE_FILES)

    def test_wrong_password(self):
        """Test that a wrong password fails before anything is written."""
        result = self.engine.run(self.request(password="wrong password"))

        self.assertFalse(result.success)
        self.assertEqual(result.error_kind, "CryptoError")
        self.assertEqual(result.restored_files, 0)
        self.assertFalse(self.target.exists())

    def test_missing_password(self):
        """Test that an encrypted backup demands a password."""
        result = self.engine.run(self.request())

        self.assertFalse(result.success)
        self.assertEqual(result.error_kind, "PasswordRequiredError")

    def test_tampered_blob(self):
        """Test that a modified ciphertext is detected."""
        blob_path = self.blob("b.txt")
        blob = bytearray(blob_path.read_bytes())
        blob[-1] ^= 0xFF
        blob_path.write_bytes(bytes(blob))

        result = self.engine.run(self.request(password=PASSWORD, files=["b.txt"]))

        self.assertFalse(result.success)
        self.assertEqual(result.error_kind, "CryptoError")
        self.assertFalse((self.target / "b.txt").exists())

    def test_swapped_blobs_detected(self):
        """Test that blobs cannot be swapped between paths."""
        a_blob = self.blob("a.txt")
        b_blob = self.blob("b.txt")
        a_bytes, b_bytes = a_blob.read_bytes(), b_blob.read_bytes()
        a_blob.write_bytes(b_bytes)
        b_blob.write_bytes(a_bytes)

        result = self.engine.run(self.request(password=PASSWORD, files=["a.txt"]))

        self.assertFalse(result.success)
        self.assertEqual(result.error_kind, "CryptoError")


if __name__ == "__main__":
    unittest.main()
