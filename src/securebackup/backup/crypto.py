"""
Per-file authenticated encryption keyed by a password.

Security Design:
    - Key derived from the password with PBKDF2-HMAC-SHA256
      (600,000 iterations by default, configurable)
    - Random salt generated per backup and stored in the manifest
    - AES-256-GCM per file with a fresh random 96-bit nonce
    - Stored blob layout: nonce (12 bytes) || ciphertext || tag (16 bytes)
    - The file's relative path is bound as associated data, so a blob moved
      to another path fails authentication
    - A password check token (the encryption of a constant) lets restore
      reject a wrong password before touching any file
    - Key material lives only for one operation and is cleared afterwards

Threat Model:
    - Protects against: reading or silently modifying the backup destination
    - Does NOT protect against: memory inspection, keyloggers, or compromise
      of the running process
"""

from __future__ import annotations

import base64
import secrets
from dataclasses import dataclass

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.ciphers.aead import AESGCM
from cryptography.hazmat.primitives.kdf.pbkdf2 import PBKDF2HMAC

from securebackup.backup.errors import CryptoError

# OWASP 2023 recommends 600,000 iterations for PBKDF2-SHA256
PBKDF2_ITERATIONS = 600_000
SALT_LENGTH = 32  # 256 bits
KEY_LENGTH = 32  # AES-256
NONCE_LENGTH = 12
TAG_LENGTH = 16
KDF_ALGORITHM = "pbkdf2-sha256"

# Per-file overhead added by encryption
ENCRYPTION_OVERHEAD = NONCE_LENGTH + TAG_LENGTH

_PASSWORD_CHECK_PLAINTEXT = b"securebackup-password-check-v1"
_PASSWORD_CHECK_AAD = b"securebackup:password-check"


@dataclass(frozen=True)
class KdfParams:
    """
    Key derivation parameters stored alongside an encrypted backup.

    Attributes:
        salt: Random salt bytes.
        iterations: PBKDF2 iteration count.
        algorithm: Identifier of the derivation function.
    """

    salt: bytes
    iterations: int = PBKDF2_ITERATIONS
    algorithm: str = KDF_ALGORITHM

    @classmethod
    def generate(
        cls,
        iterations: int = PBKDF2_ITERATIONS,
        salt_length: int = SALT_LENGTH,
    ) -> KdfParams:
        """Create parameters with a fresh cryptographically secure salt."""
        return cls(salt=secrets.token_bytes(salt_length), iterations=iterations)

    def to_dict(self) -> dict[str, object]:
        return {
            "algorithm": self.algorithm,
            "iterations": self.iterations,
            "salt": base64.b64encode(self.salt).decode("ascii"),
        }

    @classmethod
    def from_dict(cls, data: dict[str, object]) -> KdfParams:
        algorithm = str(data.get("algorithm", KDF_ALGORITHM))
        if algorithm != KDF_ALGORITHM:
            raise ValueError(f"Unsupported key derivation algorithm: {algorithm}")
        salt = base64.b64decode(str(data["salt"]), validate=True)
        iterations = int(data["iterations"])  # type: ignore[call-overload]
        if not salt or iterations < 1:
            raise ValueError("Salt must be non-empty and iterations positive")
        return cls(salt=salt, iterations=iterations, algorithm=algorithm)


def derive_key(password: str, params: KdfParams) -> bytearray:
    """
    Derive an encryption key from password and salt.

    Returns a bytearray so the caller can scrub it once done.
    """
    kdf = PBKDF2HMAC(
        algorithm=hashes.SHA256(),
        length=KEY_LENGTH,
        salt=params.salt,
        iterations=params.iterations,
    )
    return bytearray(kdf.derive(password.encode("utf-8")))


class CryptoCodec:
    """
    AES-256-GCM codec bound to a single derived key.

    Use as a context manager so the key is cleared when the operation ends:

        with CryptoCodec.from_password(password, params) as codec:
            blob = codec.encrypt(data, associated_data=b"docs/a.txt")
            data = codec.decrypt(blob, associated_data=b"docs/a.txt")
    """

    def __init__(self, key: bytearray | bytes) -> None:
        if len(key) != KEY_LENGTH:
            raise ValueError(f"Key must be {KEY_LENGTH} bytes")
        self._key: bytearray | None = bytearray(key)
        self._aead: AESGCM | None = AESGCM(bytes(self._key))

    @classmethod
    def from_password(cls, password: str, params: KdfParams) -> CryptoCodec:
        """Derive a key from password and build a codec around it."""
        key = derive_key(password, params)
        try:
            return cls(key)
        finally:
            _scrub(key)

    def __enter__(self) -> CryptoCodec:
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.clear()

    @property
    def is_cleared(self) -> bool:
        return self._aead is None

    def encrypt(self, plaintext: bytes, associated_data: bytes | None = None) -> bytes:
        """Encrypt plaintext, returning nonce || ciphertext || tag."""
        aead = self._require_key()
        nonce = secrets.token_bytes(NONCE_LENGTH)
        return nonce + aead.encrypt(nonce, plaintext, associated_data)

    def decrypt(self, blob: bytes, associated_data: bytes | None = None) -> bytes:
        """
        Authenticate and decrypt a blob produced by encrypt().

        Raises:
            CryptoError: If the blob is malformed, the key is wrong, or the
                data or associated data were tampered with.
        """
        aead = self._require_key()
        if len(blob) < ENCRYPTION_OVERHEAD:
            raise CryptoError("Encrypted data is truncated")
        nonce, ciphertext = blob[:NONCE_LENGTH], blob[NONCE_LENGTH:]
        try:
            return aead.decrypt(nonce, ciphertext, associated_data)
        except InvalidTag as e:
            raise CryptoError(
                "Authentication failed: wrong password or tampered data"
            ) from e

    def make_password_check(self) -> str:
        """Create a token that verify_password_check() accepts only for this key."""
        blob = self.encrypt(_PASSWORD_CHECK_PLAINTEXT, _PASSWORD_CHECK_AAD)
        return base64.b64encode(blob).decode("ascii")

    def verify_password_check(self, token: str) -> None:
        """
        Verify a password check token.

        Raises:
            CryptoError: If the token was made with a different key.
        """
        try:
            blob = base64.b64decode(token, validate=True)
        except ValueError as e:
            raise CryptoError("Password check token is corrupt") from e
        try:
            plaintext = self.decrypt(blob, _PASSWORD_CHECK_AAD)
        except CryptoError as e:
            raise CryptoError("Incorrect password") from e
        if plaintext != _PASSWORD_CHECK_PLAINTEXT:
            raise CryptoError("Incorrect password")

    def clear(self) -> None:
        """
        Clear key material from memory.

        Note: Python does not guarantee immediate memory clearing, and the
        AESGCM object keeps its own copy until garbage collected. This is a
        best-effort attempt to reduce the window of exposure.
        """
        if self._key is not None:
            _scrub(self._key)
            self._key = None
        self._aead = None

    def _require_key(self) -> AESGCM:
        if self._aead is None:
            raise CryptoError("Key material has been cleared")
        return self._aead


def _scrub(buffer: bytearray) -> None:
    for i in range(len(buffer)):
        buffer[i] = 0
