"""
Card Secret Encryption Module

Symmetric encryption of card numbers and CVV codes at rest. Uses the
cryptography library (Fernet/AES-GCM). The key is injected through
configuration; retired keys stay readable during a rotation.
"""

import os
import base64
import hashlib
import hmac
import logging
from abc import ABC, abstractmethod
from typing import Any, Dict, List, Optional, Sequence, Union

from cryptography.fernet import Fernet, InvalidToken
from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.kdf.pbkdf2 import PBKDF2HMAC
from cryptography.hazmat.primitives.ciphers.aead import AESGCM

from .errors import EncryptionError
from .storage import StorageInterface


logger = logging.getLogger(__name__)

# Encryption marker prefix
ENCRYPTION_PREFIX = "ENC:"

# Secret fields per table
SECRET_FIELDS = {
    "cards": ["number", "cvv"],
}

DEFAULT_SALT = b"bank_cards_salt_v1"


class EncryptionProvider(ABC):
    """Abstract base class for encryption providers"""

    name = "abstract"

    @abstractmethod
    def encrypt(self, plaintext: str) -> str:
        """Encrypt plaintext and return tagged ciphertext"""
        pass

    @abstractmethod
    def decrypt(self, ciphertext: str) -> str:
        """Decrypt tagged ciphertext and return plaintext"""
        pass

    @staticmethod
    def _payload(ciphertext: str) -> bytes:
        if not isinstance(ciphertext, str) or not ciphertext.startswith(ENCRYPTION_PREFIX):
            raise EncryptionError("Value is not encrypted")
        try:
            return base64.urlsafe_b64decode(ciphertext[len(ENCRYPTION_PREFIX):].encode("ascii"))
        except (ValueError, UnicodeEncodeError):
            raise EncryptionError("Malformed ciphertext")


class FernetEncryptionProvider(EncryptionProvider):
    """Fernet encryption provider using cryptography library (AES-128-CBC + HMAC-SHA256)"""

    name = "fernet"

    def __init__(self, master_key: str, salt: Optional[bytes] = None):
        self.salt = salt or DEFAULT_SALT

        # Derive Fernet key from master key using PBKDF2
        kdf = PBKDF2HMAC(
            algorithm=hashes.SHA256(),
            length=32,
            salt=self.salt,
            iterations=100000,  # OWASP recommended minimum
        )
        derived_key = kdf.derive(master_key.encode("utf-8"))
        self.fernet = Fernet(base64.urlsafe_b64encode(derived_key))

    def encrypt(self, plaintext: str) -> str:
        """Encrypt plaintext using Fernet"""
        encrypted_bytes = self.fernet.encrypt(str(plaintext).encode("utf-8"))
        encoded = base64.urlsafe_b64encode(encrypted_bytes).decode("ascii")
        return f"{ENCRYPTION_PREFIX}{encoded}"

    def decrypt(self, ciphertext: str) -> str:
        """Decrypt ciphertext using Fernet"""
        encrypted_bytes = self._payload(ciphertext)
        try:
            return self.fernet.decrypt(encrypted_bytes).decode("utf-8")
        except (InvalidToken, UnicodeDecodeError):
            raise EncryptionError("Failed to decrypt value")


class AESGCMEncryptionProvider(EncryptionProvider):
    """AES-256-GCM encryption provider (authenticated encryption)"""

    name = "aesgcm"

    def __init__(self, master_key: Union[str, bytes]):
        if isinstance(master_key, str):
            master_key = master_key.encode("utf-8")

        # Derive 32-byte key from master key using SHA-256
        self.aesgcm = AESGCM(hashlib.sha256(master_key).digest())

    def encrypt(self, plaintext: str) -> str:
        """Encrypt plaintext using AES-256-GCM with random nonce"""
        nonce = os.urandom(12)
        encrypted_bytes = self.aesgcm.encrypt(nonce, str(plaintext).encode("utf-8"), None)

        # Prefix ciphertext with nonce for decryption
        encoded = base64.urlsafe_b64encode(nonce + encrypted_bytes).decode("ascii")
        return f"{ENCRYPTION_PREFIX}{encoded}"

    def decrypt(self, ciphertext: str) -> str:
        """Decrypt ciphertext using AES-256-GCM"""
        combined = self._payload(ciphertext)
        if len(combined) <= 12:
            raise EncryptionError("Malformed ciphertext")
        try:
            return self.aesgcm.decrypt(combined[:12], combined[12:], None).decode("utf-8")
        except (InvalidTag, UnicodeDecodeError):
            raise EncryptionError("Failed to decrypt value")


def create_encryption_provider(provider_type: str, master_key: str,
                               salt: Optional[bytes] = None) -> EncryptionProvider:
    """
    Factory function to create encryption provider

    Args:
        provider_type: "fernet" or "aesgcm"
        master_key: Master encryption key
        salt: Key derivation salt (fernet only)

    Returns:
        EncryptionProvider instance
    """
    if not master_key:
        raise EncryptionError("Encryption master key is not configured")

    provider_type = (provider_type or "").lower()
    if provider_type == "fernet":
        return FernetEncryptionProvider(master_key, salt)
    if provider_type == "aesgcm":
        return AESGCMEncryptionProvider(master_key)
    raise EncryptionError(f"Unknown encryption provider: {provider_type}")


class SecretCodec:
    """
    Encrypts with the primary provider and decrypts with the primary or any
    retired provider. Decryption never falls back to returning stored text.

    Number fingerprints follow the same keys: new fingerprints use the
    primary key, and lookups also try each retired key so cards written
    before a key change still collide until rotation rewrites them.
    """

    def __init__(self, primary: EncryptionProvider,
                 retired: Optional[Sequence[EncryptionProvider]] = None,
                 fingerprint_key: Union[str, bytes] = b"",
                 retired_fingerprint_keys: Optional[Sequence[Union[str, bytes]]] = None):
        self.primary = primary
        self.retired = list(retired or [])
        self._fingerprint_key = self._derive_fingerprint_key(fingerprint_key)
        self._retired_fingerprint_keys = [
            self._derive_fingerprint_key(key) for key in (retired_fingerprint_keys or [])
        ]

    @staticmethod
    def _derive_fingerprint_key(key: Union[str, bytes]) -> bytes:
        if isinstance(key, str):
            key = key.encode("utf-8")
        return hashlib.sha256(b"fingerprint:" + key).digest()

    @classmethod
    def from_config(cls, config) -> "SecretCodec":
        """Build a codec from CardLedgerConfig"""
        salt = config.encryption_salt.encode("utf-8")
        primary = create_encryption_provider(config.encryption_provider, config.encryption_master_key, salt)
        retired = [
            create_encryption_provider(config.encryption_provider, key, salt)
            for key in config.retired_keys
        ]
        logger.info(
            "Secret codec initialized",
            extra={"extra": {"provider": primary.name, "retired_keys": len(retired)}},
        )
        return cls(
            primary,
            retired,
            fingerprint_key=config.encryption_master_key,
            retired_fingerprint_keys=config.retired_keys,
        )

    def encrypt(self, plaintext: str) -> str:
        if plaintext is None:
            raise EncryptionError("Cannot encrypt a missing value")
        return self.primary.encrypt(str(plaintext))

    def decrypt(self, ciphertext: str) -> str:
        """Decrypt with the first key that accepts the ciphertext"""
        try:
            return self.primary.decrypt(ciphertext)
        except EncryptionError as primary_error:
            for provider in self.retired:
                try:
                    return provider.decrypt(ciphertext)
                except EncryptionError:
                    continue
            logger.error(f"Failed to decrypt stored secret: {primary_error.message}")
            raise

    def needs_rotation(self, ciphertext: str) -> bool:
        """True when the value is readable only with a retired key"""
        try:
            self.primary.decrypt(ciphertext)
            return False
        except EncryptionError:
            return True

    def reencrypt(self, ciphertext: str) -> str:
        """Re-encrypt a stored value under the primary key"""
        return self.encrypt(self.decrypt(ciphertext))

    def fingerprint(self, value: str) -> str:
        """Keyed, deterministic digest used for uniqueness checks"""
        return self._digest(self._fingerprint_key, value)

    def fingerprints(self, value: str) -> List[str]:
        """Digests of value under the primary and every retired fingerprint key"""
        keys = [self._fingerprint_key] + self._retired_fingerprint_keys
        return [self._digest(key, value) for key in keys]

    @staticmethod
    def _digest(key: bytes, value: str) -> str:
        return hmac.new(key, str(value).encode("utf-8"), hashlib.sha256).hexdigest()

    def status(self) -> Dict[str, Any]:
        return {
            "provider": self.primary.name,
            "retired_keys": len(self.retired),
            "secret_fields": SECRET_FIELDS,
        }


class KeyManager:
    """Key rotation over stored card secrets"""

    def rotate(self, storage: StorageInterface, codec: SecretCodec) -> int:
        """
        Re-encrypt every card secret under the primary key and recompute
        number fingerprints. All cards are rewritten in one transaction
        while their row locks are held, so transfers wait for rotation.

        Returns:
            Number of cards rewritten
        """
        card_ids = [record["id"] for record in storage.load_all("cards")]

        rotated = 0
        with storage.lock("cards", card_ids):
            with storage.atomic():
                for card_id in card_ids:
                    record = storage.load("cards", card_id)
                    if record is None:
                        continue
                    changed = False
                    for field in SECRET_FIELDS["cards"]:
                        value = record.get(field)
                        if value and codec.needs_rotation(value):
                            record[field] = codec.reencrypt(value)
                            changed = True
                    fingerprint = codec.fingerprint(codec.decrypt(record["number"]))
                    if record.get("number_fingerprint") != fingerprint:
                        record["number_fingerprint"] = fingerprint
                        changed = True
                    if changed:
                        storage.save("cards", card_id, record)
                        rotated += 1

        logger.info(f"Key rotation rewrote {rotated} cards")
        return rotated
