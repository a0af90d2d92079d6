"""Tests for password-based key derivation and per-file encryption."""

import unittest

from securebackup.backup.crypto import (
    ENCRYPTION_OVERHEAD,
    KDF_ALGORITHM,
    KEY_LENGTH,
    NONCE_LENGTH,
    SALT_LENGTH,
    CryptoCodec,
    KdfParams,
    derive_key,
)
from securebackup.backup.errors import CryptoError

TEST_ITERATIONS = 1000


class TestKdfParams(unittest.TestCase):
    """Tests for KdfParams."""

    def test_generate_uses_fresh_salt(self):
        """Test that every generated salt is random and full length."""
        first = KdfParams.generate(iterations=TEST_ITERATIONS)
        second = KdfParams.generate(iterations=TEST_ITERATIONS)

        self.assertEqual(len(first.salt), SALT_LENGTH)
        self.assertNotEqual(first.salt, second.salt)
        self.assertEqual(first.algorithm, KDF_ALGORITHM)

    def test_dict_round_trip(self):
        """Test that parameters survive serialization."""
        params = KdfParams.generate(iterations=TEST_ITERATIONS, salt_length=16)

        restored = KdfParams.from_dict(params.to_dict())

        self.assertEqual(restored, params)
        self.assertIsInstance(params.to_dict()["salt"], str)

    def test_from_dict_rejects_unknown_algorithm(self):
        """Test that an unsupported algorithm is refused."""
        data = KdfParams.generate(iterations=TEST_ITERATIONS).to_dict()
        data["algorithm"] = "md5"

        with self.assertRaises(ValueError):
            KdfParams.from_dict(data)


class TestDeriveKey(unittest.TestCase):
    """Tests for derive_key."""

    def setUp(self):
        self.params = KdfParams(salt=b"s" * SALT_LENGTH, iterations=TEST_ITERATIONS)

    def test_key_length(self):
        """Test that the derived key is 256 bits."""
        key = derive_key("correct horse", self.params)

        self.assertIsInstance(key, bytearray)
        self.assertEqual(len(key), KEY_LENGTH)

    def test_deterministic(self):
        """Test that the same password and salt derive the same key."""
        self.assertEqual(
            derive_key("correct horse", self.params),
            derive_key("correct horse", self.params),
        )

    def test_salt_changes_key(self):
        """Test that a different salt derives a different key."""
        other = KdfParams(salt=b"t" * SALT_LENGTH, iterations=TEST_ITERATIONS)

        self.assertNotEqual(
            derive_key("correct horse", self.params),
            derive_key("correct horse", other),
        )


class TestCryptoCodec(unittest.TestCase):
    """Tests for CryptoCodec."""

    def setUp(self):
        self.params = KdfParams.generate(iterations=TEST_ITERATIONS)
        self.codec = CryptoCodec.from_password("correct horse", self.params)

    def tearDown(self):
        self.codec.clear()

    def test_encrypt_decrypt(self):
        """Test a basic round trip."""
        blob = self.codec.encrypt(b"secret data")

        self.assertEqual(self.codec.decrypt(blob), b"secret data")
        self.assertEqual(len(blob), len(b"secret data") + ENCRYPTION_OVERHEAD)

    def test_empty_plaintext(self):
        """Test that empty files encrypt to nonce and tag only."""
        blob = self.codec.encrypt(b"")

        self.assertEqual(len(blob), ENCRYPTION_OVERHEAD)
        self.assertEqual(self.codec.decrypt(blob), b"")

    def test_fresh_nonce_per_call(self):
        """Test that identical plaintexts produce different ciphertexts."""
        first = self.codec.encrypt(b"same")
        second = self.codec.encrypt(b"same")

        self.assertNotEqual(first[:NONCE_LENGTH], second[:NONCE_LENGTH])
        self.assertNotEqual(first, second)

    def test_wrong_password(self):
        """Test that another password's key fails authentication."""
        blob = self.codec.encrypt(b"secret data")

        with CryptoCodec.from_password("wrong horse", self.params) as other:
            with self.assertRaises(CryptoError):
                other.decrypt(blob)

    def test_tampered_ciphertext(self):
        """Test that a flipped bit is detected."""
        blob = bytearray(self.codec.encrypt(b"secret data"))
        blob[NONCE_LENGTH] ^= 0x01

        with self.assertRaises(CryptoError):
            self.codec.decrypt(bytes(blob))

    def test_associated_data_binding(self):
        """Test that a blob cannot be moved to another path."""
        blob = self.codec.encrypt(b"content", associated_data=b"a.txt")

        self.assertEqual(self.codec.decrypt(blob, associated_data=b"a.txt"), b"content")
        with self.assertRaises(CryptoError):
            self.codec.decrypt(blob, associated_data=b"b.txt")

    def test_truncated_blob(self):
        """Test that a blob shorter than nonce and tag is rejected."""
        with self.assertRaises(CryptoError) as ctx:
            self.codec.decrypt(b"short")

        self.assertIn("truncated", str(ctx.exception))

    def test_password_check(self):
        """Test the password check token accepts only the same key."""
        token = self.codec.make_password_check()

        self.codec.verify_password_check(token)
        with CryptoCodec.from_password("wrong horse", self.params) as other:
            with self.assertRaises(CryptoError) as ctx:
                other.verify_password_check(token)

        self.assertIn("Incorrect password", str(ctx.exception))

    def test_corrupt_password_check(self):
        """Test that a garbled token is a CryptoError."""
        with self.assertRaises(CryptoError):
            self.codec.verify_password_check("!!not base64!!")

    def test_clear(self):
        """Test that a cleared codec refuses to work."""
        self.codec.clear()

        self.assertTrue(self.codec.is_cleared)
        with self.assertRaises(CryptoError):
            self.codec.encrypt(b"data")

    def test_context_manager_clears(self):
        """Test that leaving the with block clears the key."""
        with CryptoCodec.from_password("correct horse", self.params) as codec:
            self.assertFalse(codec.is_cleared)

        self.assertTrue(codec.is_cleared)

    def test_invalid_key_length(self):
        """Test that raw keys must be 32 bytes."""
        with self.assertRaises(ValueError):
            CryptoCodec(b"short")


if __name__ == "__main__":
    unittest.main()
