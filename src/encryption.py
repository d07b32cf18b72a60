"""
InfraShare - Field Encryption

Protects investor bank account numbers at rest in persisted claim
documents. Uses AES-256-GCM with keys derived by PBKDF2-HMAC-SHA256.

Encrypted values look like ``ENC:1:<salt>:<nonce+ciphertext>`` (base64
parts). A ``FieldCipher`` derives its key once per salt and caches it, so
encrypting many claims costs a single key derivation.

Environment Variables:
    INFRASHARE_ENCRYPTION_KEY=<passphrase or generated key>
    INFRASHARE_ENCRYPTION_ENABLED=true
"""

import base64
import os
import secrets
import threading
from typing import Any

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.ciphers.aead import AESGCM
from cryptography.hazmat.primitives.kdf.pbkdf2 import PBKDF2HMAC

SALT_SIZE = 16  # 128 bits
NONCE_SIZE = 12  # 96 bits for GCM
KEY_SIZE = 32  # 256 bits
PBKDF2_ITERATIONS = 600_000

ENCRYPTION_KEY_ENV = "INFRASHARE_ENCRYPTION_KEY"
ENCRYPTION_ENABLED_ENV = "INFRASHARE_ENCRYPTION_ENABLED"

ENCRYPTED_PREFIX = "ENC:1:"


class EncryptionError(Exception):
    """Raised when encryption or decryption fails."""
    pass


def get_encryption_key() -> str | None:
    """Configured passphrase, or None when encryption is not set up."""
    return os.getenv(ENCRYPTION_KEY_ENV) or None


def is_encryption_enabled() -> bool:
    """True when a key is configured and encryption is not switched off."""
    enabled = os.getenv(ENCRYPTION_ENABLED_ENV, "true").lower()
    if enabled in ("false", "0", "no", "off"):
        return False
    return get_encryption_key() is not None


def generate_encryption_key() -> str:
    """Generate a random base64 key suitable for INFRASHARE_ENCRYPTION_KEY."""
    return base64.b64encode(secrets.token_bytes(KEY_SIZE)).decode("ascii")


def is_encrypted(value: Any) -> bool:
    """Check whether a value carries the encrypted prefix."""
    return isinstance(value, str) and value.startswith(ENCRYPTED_PREFIX)


def _derive_key(passphrase: str, salt: bytes, iterations: int) -> bytes:
    if not passphrase:
        raise EncryptionError("Encryption key cannot be empty")
    kdf = PBKDF2HMAC(
        algorithm=hashes.SHA256(),
        length=KEY_SIZE,
        salt=salt,
        iterations=iterations,
    )
    return kdf.derive(passphrase.encode("utf-8"))


class FieldCipher:
    """Encrypts and decrypts individual string fields."""

    def __init__(self, passphrase: str, iterations: int = PBKDF2_ITERATIONS):
        if not passphrase:
            raise EncryptionError("Encryption key cannot be empty")
        self._passphrase = passphrase
        self._iterations = iterations
        self._salt = secrets.token_bytes(SALT_SIZE)
        self._keys: dict[bytes, bytes] = {}
        self._lock = threading.Lock()

    @classmethod
    def from_env(cls) -> "FieldCipher | None":
        """Build a cipher from the environment, or None when disabled."""
        if not is_encryption_enabled():
            return None
        return cls(get_encryption_key())

    def _key_for(self, salt: bytes) -> bytes:
        with self._lock:
            key = self._keys.get(salt)
            if key is None:
                key = _derive_key(self._passphrase, salt, self._iterations)
                self._keys[salt] = key
            return key

    def encrypt(self, plaintext: str) -> str:
        """Encrypt a string. Already-encrypted values are returned as-is."""
        if is_encrypted(plaintext):
            return plaintext
        nonce = secrets.token_bytes(NONCE_SIZE)
        ciphertext = AESGCM(self._key_for(self._salt)).encrypt(
            nonce, plaintext.encode("utf-8"), None
        )
        salt_part = base64.urlsafe_b64encode(self._salt).decode("ascii")
        body_part = base64.urlsafe_b64encode(nonce + ciphertext).decode("ascii")
        return f"{ENCRYPTED_PREFIX}{salt_part}:{body_part}"

    def decrypt(self, value: str) -> str:
        """
        Decrypt a value produced by :meth:`encrypt`.

        Raises:
            EncryptionError: If the value is malformed or the key is wrong
        """
        if not is_encrypted(value):
            return value
        try:
            salt_part, body_part = value[len(ENCRYPTED_PREFIX):].split(":", 1)
            salt = base64.urlsafe_b64decode(salt_part)
            body = base64.urlsafe_b64decode(body_part)
        except (ValueError, TypeError) as e:
            raise EncryptionError("Malformed encrypted value") from e

        nonce, ciphertext = body[:NONCE_SIZE], body[NONCE_SIZE:]
        try:
            plaintext = AESGCM(self._key_for(salt)).decrypt(nonce, ciphertext, None)
        except InvalidTag as e:
            raise EncryptionError("Decryption failed: wrong key or tampered data") from e
        return plaintext.decode("utf-8")


def encrypt_claim_document(document: dict[str, Any], cipher: FieldCipher | None) -> dict[str, Any]:
    """Return a copy of a claim document with its bank account encrypted."""
    payment = document.get("paymentDetails")
    if cipher is None or not payment or not payment.get("bankAccount"):
        return document
    encrypted = dict(document)
    encrypted["paymentDetails"] = dict(payment, bankAccount=cipher.encrypt(payment["bankAccount"]))
    return encrypted


def decrypt_claim_document(document: dict[str, Any], cipher: FieldCipher | None) -> dict[str, Any]:
    """Return a copy of a claim document with its bank account decrypted."""
    payment = document.get("paymentDetails")
    if not payment or not is_encrypted(payment.get("bankAccount")):
        return document
    if cipher is None:
        raise EncryptionError(
            f"Claim {document.get('id')} is encrypted but {ENCRYPTION_KEY_ENV} is not set"
        )
    decrypted = dict(document)
    decrypted["paymentDetails"] = dict(payment, bankAccount=cipher.decrypt(payment["bankAccount"]))
    return decrypted
