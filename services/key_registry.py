import logging
import re
from dataclasses import dataclass, field
from datetime import datetime

from core.errors import EncryptionKeyError, KeyNotFoundError
from services.cipher import KEY_LENGTH, SealedValue, open_sealed, seal
from utils.clock import utcnow

logger = logging.getLogger(__name__)

KEY_HEX_PATTERN = re.compile(r"^[0-9a-fA-F]{64}$")
KEY_HINT = "Generate a secure key with: openssl rand -hex 32"


@dataclass(frozen=True)
class EncryptionKey:
    key: bytes = field(repr=False)
    version: int
    created_at: datetime = field(default_factory=utcnow)

    @classmethod
    def from_hex(cls, key_hex: str | None, version: int) -> "EncryptionKey":
        if not key_hex:
            raise EncryptionKeyError(f"Master key not found. Set SECRETS_MASTER_KEY. {KEY_HINT}")
        if not KEY_HEX_PATTERN.match(key_hex.strip()):
            raise EncryptionKeyError(f"Master key must be 64 hex characters ({KEY_LENGTH} bytes). {KEY_HINT}")
        if version < 1:
            raise EncryptionKeyError("Key version must be a positive integer")
        return cls(key=bytes.fromhex(key_hex.strip()), version=version)


def parse_retired_keys(raw: str | None) -> list[EncryptionKey]:
    """Parse ``"1:<hex>,2:<hex>"`` into keys."""
    keys = []
    if not raw:
        return keys
    for entry in raw.split(","):
        entry = entry.strip()
        if not entry:
            continue
        version, sep, key_hex = entry.partition(":")
        if not sep or not version.strip().isdigit():
            raise EncryptionKeyError("Retired keys must be formatted as <version>:<hex>")
        keys.append(EncryptionKey.from_hex(key_hex, int(version)))
    return keys


class KeyRegistry:
    """Resolves key versions to key material.

    Exactly one key is current and used for every new encryption. Older keys
    stay addressable by version so existing ciphertexts keep decrypting.
    Built once at process start and handed to whoever needs it.
    """

    def __init__(self, current: EncryptionKey, retired: list[EncryptionKey] | None = None):
        self._keys: dict[int, EncryptionKey] = {}
        for key in retired or []:
            self._keys[key.version] = key
        self._keys[current.version] = current
        self._current_version = current.version

    @classmethod
    def from_settings(cls, settings) -> "KeyRegistry":
        current = EncryptionKey.from_hex(settings.SECRETS_MASTER_KEY, settings.SECRETS_MASTER_KEY_VERSION)
        retired = parse_retired_keys(settings.SECRETS_RETIRED_KEYS)
        for key in retired:
            if key.version == current.version and key.key != current.key:
                raise EncryptionKeyError(f"Retired key version {key.version} conflicts with the master key")
        registry = cls(current, retired)
        logger.info(
            f"Key registry loaded: current version {registry.current_version}, "
            f"{len(registry.versions) - 1} retired"
        )
        return registry

    @property
    def current_version(self) -> int:
        return self._current_version

    @property
    def versions(self) -> list[int]:
        return sorted(self._keys)

    def current(self) -> tuple[bytes, int]:
        key = self._keys[self._current_version]
        return key.key, key.version

    def by_version(self, version: int) -> bytes:
        key = self._keys.get(version)
        if key is None:
            raise KeyNotFoundError(version)
        return key.key

    def rotate_to(self, new_key: EncryptionKey) -> None:
        """Make ``new_key`` current, keeping the previous one for decrypts.

        Stored secrets are untouched; re-encrypting them is a separate step.
        """
        existing = self._keys.get(new_key.version)
        if existing is not None and existing.key != new_key.key:
            raise EncryptionKeyError(f"Key version {new_key.version} is already registered")
        if new_key.version <= self._current_version and existing is None:
            raise EncryptionKeyError("New key version must be greater than the current version")
        self._keys[new_key.version] = new_key
        self._current_version = new_key.version
        logger.info(f"Current encryption key rotated to version {new_key.version}")

    def encrypt_for_storage(self, plaintext: str) -> str:
        key, version = self.current()
        return SealedValue(key_version=version, payload=seal(plaintext.encode("utf-8"), key)).encode()

    def decrypt_from_storage(self, stored: str) -> str:
        sealed = SealedValue.decode(stored)
        return open_sealed(sealed.payload, self.by_version(sealed.key_version)).decode("utf-8")

    def reencrypt_for_storage(self, stored: str) -> str:
        """Move a stored value onto the current key."""
        sealed = SealedValue.decode(stored)
        key, version = self.current()
        if sealed.key_version == version:
            return stored
        payload = reencrypt(self.by_version(sealed.key_version), key, sealed.payload)
        return SealedValue(key_version=version, payload=payload).encode()


def reencrypt(old_key: bytes, new_key: bytes, blob: bytes) -> bytes:
    """Open ``blob`` with ``old_key`` and seal the result under ``new_key``."""
    return seal(open_sealed(blob, old_key), new_key)
