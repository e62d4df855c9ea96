"""
AES-256-GCM authenticated encryption for secrets at rest.

A sealed blob is laid out as ``nonce || ciphertext || tag`` and is stored
prefixed with the version of the key that sealed it, see ``SealedValue``.
Nothing in this module logs or keeps plaintext around.
"""

import base64
import binascii
import secrets
from dataclasses import dataclass

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.ciphers.aead import AESGCM

from core.errors import EncryptionKeyError, FormatError, TamperError

ALGORITHM = "aes-256-gcm"
KEY_LENGTH = 32
NONCE_LENGTH = 12
TAG_LENGTH = 16
MIN_SEALED_LENGTH = NONCE_LENGTH + TAG_LENGTH

VERSION_SEPARATOR = ":"


def _check_key(key: bytes) -> None:
    if not isinstance(key, (bytes, bytearray)) or len(key) != KEY_LENGTH:
        raise EncryptionKeyError(f"Key must be {KEY_LENGTH} bytes")


def seal(plaintext: bytes, key: bytes) -> bytes:
    """Encrypt ``plaintext`` under ``key`` with a fresh random nonce."""
    _check_key(key)
    nonce = secrets.token_bytes(NONCE_LENGTH)
    # AESGCM appends the 16 byte tag to the ciphertext
    return nonce + AESGCM(bytes(key)).encrypt(nonce, plaintext, None)


def open_sealed(blob: bytes, key: bytes) -> bytes:
    """Authenticate and decrypt a blob produced by ``seal``.

    Raises:
        FormatError: blob is shorter than nonce + tag.
        TamperError: authentication failed, the blob was altered or sealed
            under another key.
        EncryptionKeyError: key has the wrong size.
    """
    _check_key(key)
    if len(blob) < MIN_SEALED_LENGTH:
        raise FormatError(f"Encrypted value too short. Must be at least {MIN_SEALED_LENGTH} bytes.")

    nonce, body = blob[:NONCE_LENGTH], blob[NONCE_LENGTH:]
    try:
        return AESGCM(bytes(key)).decrypt(nonce, body, None)
    except InvalidTag:
        raise TamperError() from None


class Cipher:
    """Object form of ``seal``/``open_sealed`` for injection into services."""

    def seal(self, plaintext: bytes, key: bytes) -> bytes:
        return seal(plaintext, key)

    def open(self, blob: bytes, key: bytes) -> bytes:
        return open_sealed(blob, key)


@dataclass(frozen=True)
class SealedValue:
    """A sealed blob tagged with the version of the key that sealed it."""

    key_version: int
    payload: bytes

    def encode(self) -> str:
        encoded = base64.b64encode(self.payload).decode("ascii")
        return f"{self.key_version}{VERSION_SEPARATOR}{encoded}"

    @classmethod
    def decode(cls, stored: str) -> "SealedValue":
        if not isinstance(stored, str) or not stored:
            raise FormatError("Encrypted value cannot be empty")

        index = stored.find(VERSION_SEPARATOR)
        if index <= 0:
            raise FormatError("Invalid encrypted value format")

        version_part, payload_part = stored[:index], stored[index + 1:]
        if not (version_part.isascii() and version_part.isdigit()):
            raise FormatError("Key version must be a positive integer")
        key_version = int(version_part)
        if key_version < 1:
            raise FormatError("Key version must be a positive integer")

        try:
            payload = base64.b64decode(payload_part, validate=True)
        except (binascii.Error, ValueError):
            raise FormatError("Encrypted payload is not valid base64") from None

        if len(payload) < MIN_SEALED_LENGTH:
            raise FormatError(f"Encrypted value too short. Must be at least {MIN_SEALED_LENGTH} bytes.")

        return cls(key_version=key_version, payload=payload)


def generate_key() -> str:
    """Hex encoded 32 byte key, same shape as ``openssl rand -hex 32``."""
    return secrets.token_hex(KEY_LENGTH)


def algorithm_info() -> dict:
    return {
        "algorithm": ALGORITHM,
        "key_length": KEY_LENGTH,
        "nonce_length": NONCE_LENGTH,
        "tag_length": TAG_LENGTH,
    }
