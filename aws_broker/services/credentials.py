"""
Credential generation and protection for instance passwords.

Passwords are generated once at creation time and persisted only in
encrypted form. Encryption uses AES-256-GCM with a key derived (HKDF-SHA256)
from the process-wide broker key and a random per-secret salt, so the
stored salt is all that is needed, together with the key, to decrypt.
"""
from __future__ import annotations

import base64
import binascii
import logging
import os
import secrets
import string
from dataclasses import dataclass
from typing import Optional

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.ciphers.aead import AESGCM
from cryptography.hazmat.primitives.kdf.hkdf import HKDF

from ..errors import DecryptionFailed, EncryptionError

LOGGER = logging.getLogger(__name__)

SALT_BYTES = 16
NONCE_BYTES = 12
KEY_INFO = b"aws-broker-instance-password"

MIN_PASSWORD_LENGTH = 16
DEFAULT_PASSWORD_LENGTH = 32
USERNAME_LENGTH = 16

PASSWORD_ALPHABET = string.ascii_letters + string.digits
NAME_ALPHABET = string.ascii_lowercase + string.digits


@dataclass(frozen=True)
class EncryptedSecret:
    """Base64 ciphertext (nonce prefixed) and the salt used to derive its key."""

    ciphertext: str
    salt: str


class CredentialCodec:
    """Symmetric encryption of generated secrets before persistence."""

    def __init__(self, key: str) -> None:
        if not key:
            raise EncryptionError("Encryption key is not configured")
        self._key = key.encode("utf-8")

    def _derive(self, salt: bytes) -> AESGCM:
        hkdf = HKDF(algorithm=hashes.SHA256(), length=32, salt=salt, info=KEY_INFO)
        return AESGCM(hkdf.derive(self._key))

    def encrypt(self, plaintext: str) -> EncryptedSecret:
        """
        Encrypt a secret.

        Args:
            plaintext: Secret to protect

        Returns:
            EncryptedSecret holding base64 ciphertext and salt
        """
        salt = os.urandom(SALT_BYTES)
        nonce = os.urandom(NONCE_BYTES)
        try:
            sealed = self._derive(salt).encrypt(nonce, plaintext.encode("utf-8"), None)
        except (TypeError, ValueError) as exc:
            raise EncryptionError(f"Unable to encrypt secret: {exc}") from exc
        return EncryptedSecret(
            ciphertext=base64.b64encode(nonce + sealed).decode("ascii"),
            salt=base64.b64encode(salt).decode("ascii"),
        )

    def decrypt(self, secret: EncryptedSecret) -> str:
        """
        Decrypt a secret produced by :meth:`encrypt`.

        Raises:
            DecryptionFailed: malformed ciphertext or wrong key
        """
        try:
            blob = base64.b64decode(secret.ciphertext, validate=True)
            salt = base64.b64decode(secret.salt, validate=True)
        except (binascii.Error, TypeError, ValueError) as exc:
            raise DecryptionFailed("Ciphertext is not valid base64") from exc
        if len(blob) <= NONCE_BYTES or len(salt) != SALT_BYTES:
            raise DecryptionFailed("Ciphertext is truncated")
        nonce, sealed = blob[:NONCE_BYTES], blob[NONCE_BYTES:]
        try:
            plaintext = self._derive(salt).decrypt(nonce, sealed, None)
        except InvalidTag as exc:
            LOGGER.warning("Stored secret failed authentication; the encryption key may have changed")
            raise DecryptionFailed("Unable to decrypt secret with the configured key") from exc
        return plaintext.decode("utf-8")


def encrypt(plaintext: str, key: str) -> EncryptedSecret:
    return CredentialCodec(key).encrypt(plaintext)


def decrypt(secret: EncryptedSecret, key: str) -> str:
    return CredentialCodec(key).decrypt(secret)


def generate_password(length: int = DEFAULT_PASSWORD_LENGTH) -> str:
    """
    Generate a secure random password accepted by RDS and ElastiCache.

    Only letters and digits are used; at least one uppercase letter, one
    lowercase letter and one digit are always present.
    """
    if length < MIN_PASSWORD_LENGTH:
        raise ValueError(f"Password length must be at least {MIN_PASSWORD_LENGTH}")

    password = [
        secrets.choice(string.ascii_uppercase),
        secrets.choice(string.ascii_lowercase),
        secrets.choice(string.digits),
    ]
    password.extend(secrets.choice(PASSWORD_ALPHABET) for _ in range(length - 3))

    # Shuffle so the guaranteed classes are not always in front
    secrets.SystemRandom().shuffle(password)
    return "".join(password)


def generate_username(length: int = USERNAME_LENGTH) -> str:
    """Random username starting with a letter, e.g. ``u3k9x0...``."""
    return "u" + "".join(secrets.choice(NAME_ALPHABET) for _ in range(length - 1))


def generate_database_name(length: int = 15) -> str:
    return "db" + "".join(secrets.choice(NAME_ALPHABET) for _ in range(length))


def secret_from_record(ciphertext: Optional[str], salt: Optional[str]) -> EncryptedSecret:
    if not ciphertext or not salt:
        raise DecryptionFailed("Instance has no stored password")
    return EncryptedSecret(ciphertext=ciphertext, salt=salt)


__all__ = [
    "EncryptedSecret",
    "CredentialCodec",
    "encrypt",
    "decrypt",
    "generate_password",
    "generate_username",
    "generate_database_name",
    "secret_from_record",
]
