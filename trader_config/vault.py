"""
Field-level envelope encryption for secrets stored in the config store.

Encrypted values carry a versioned marker prefix (``ENC:v1:``) followed by a
Fernet token, so readers can tell ciphertext from legacy plaintext written
before encryption was enabled. The vault degrades instead of failing:

- no key material: encrypt and decrypt are the identity
- unmarked value: returned unchanged by decrypt (legacy plaintext)
- corrupt token or wrong key: warning logged, value returned unchanged

Key objects are built once in ``__init__`` and only read afterwards, so a
single vault can be shared by any number of concurrent callers.
"""

import base64
from typing import Optional, Sequence, Union

from cryptography.fernet import Fernet, InvalidToken, MultiFernet
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.kdf.pbkdf2 import PBKDF2HMAC

from .config import VaultConfig
from .exceptions import CryptoError
from .logger import LogEvent, get_logger, log_store_event

logger = get_logger(__name__)

ENVELOPE_PREFIX = "ENC:v1:"
KDF_ITERATIONS = 390_000

KeyMaterial = Union[str, bytes]


def derive_key(passphrase: str, salt: str, iterations: int = KDF_ITERATIONS) -> bytes:
    """Stretch a passphrase into a urlsafe-base64 Fernet key."""
    kdf = PBKDF2HMAC(
        algorithm=hashes.SHA256(),
        length=32,
        salt=salt.encode("utf-8"),
        iterations=iterations,
    )
    return base64.urlsafe_b64encode(kdf.derive(passphrase.encode("utf-8")))


class CredentialVault:
    """Encrypts and decrypts individual secret field values."""

    def __init__(self, keys: Optional[Sequence[KeyMaterial]] = None):
        """
        Args:
            keys: Fernet keys, newest first. The first key encrypts; every key
                is tried on decrypt, which allows rotation. ``None`` or empty
                disables encryption.

        Raises:
            CryptoError: If a key is not a valid Fernet key
        """
        self._fernet: Optional[MultiFernet] = None
        if keys:
            try:
                self._fernet = MultiFernet([Fernet(k) for k in keys])
            except (ValueError, TypeError) as e:
                raise CryptoError(f"Invalid vault key material: {e}") from e

    @classmethod
    def from_passphrase(cls, passphrase: str, salt: str = "trader-config") -> "CredentialVault":
        return cls([derive_key(passphrase, salt)])

    @classmethod
    def from_config(cls, config: VaultConfig) -> "CredentialVault":
        """Build a vault from configuration; explicit keys win over a passphrase."""
        keys = list(config.keys)
        if config.passphrase:
            keys.append(derive_key(config.passphrase, config.salt).decode("ascii"))
        if not keys:
            log_store_event(
                logger,
                LogEvent.VAULT_DISABLED,
                "No vault key material configured; secrets will be stored in plaintext",
                level="warning",
            )
        return cls(keys)

    @staticmethod
    def generate_key() -> str:
        return Fernet.generate_key().decode("ascii")

    @property
    def enabled(self) -> bool:
        return self._fernet is not None

    @staticmethod
    def is_encrypted_storage_value(value: str) -> bool:
        """Whether ``value`` carries the envelope marker."""
        return isinstance(value, str) and value.startswith(ENVELOPE_PREFIX)

    def encrypt_for_storage(self, plaintext: str) -> str:
        """Envelope-encrypt ``plaintext``; identity when disabled or empty."""
        if self._fernet is None or not plaintext:
            return plaintext

        try:
            token = self._fernet.encrypt(plaintext.encode("utf-8"))
        except (TypeError, ValueError) as e:
            log_store_event(
                logger,
                LogEvent.ENCRYPT_FAILED,
                f"Encryption failed, storing plaintext: {e}",
                level="warning",
            )
            return plaintext
        return ENVELOPE_PREFIX + token.decode("ascii")

    def decrypt_from_storage(self, value: str) -> str:
        """Decrypt an enveloped value; anything else is returned unchanged."""
        if self._fernet is None or not self.is_encrypted_storage_value(value):
            return value

        token = value[len(ENVELOPE_PREFIX):]
        try:
            return self._fernet.decrypt(token.encode("ascii")).decode("utf-8")
        except (InvalidToken, UnicodeError, ValueError) as e:
            log_store_event(
                logger,
                LogEvent.DECRYPT_FAILED,
                f"Decryption failed, returning stored value: {type(e).__name__}",
                level="warning",
            )
            return value

    def rotate(self, value: str) -> str:
        """Re-encrypt an enveloped value under the newest key."""
        if self._fernet is None or not self.is_encrypted_storage_value(value):
            return value
        token = value[len(ENVELOPE_PREFIX):]
        try:
            rotated = self._fernet.rotate(token.encode("ascii"))
        except InvalidToken:
            return value
        return ENVELOPE_PREFIX + rotated.decode("ascii")
