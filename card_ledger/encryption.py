"""
PII Encryption at Rest Module

Provides field-level encryption for cardholder PII that is transparent to the
repositories. Encryption happens on the way into a storage backend and
decryption on the way out, so the in-memory ledger only ever sees plaintext.
"""

import base64
import logging
from abc import ABC, abstractmethod
from typing import Dict, List, Optional, Any

from cryptography.fernet import Fernet, InvalidToken
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.kdf.pbkdf2 import PBKDF2HMAC

from .errors import PersistenceError
from .storage import StorageInterface, ACCOUNTS_COLLECTION

logger = logging.getLogger("card_ledger.encryption")


# PII field definitions per collection
PII_FIELDS = {
    ACCOUNTS_COLLECTION: ["holderName"],
}

# Encryption marker prefix
ENCRYPTION_PREFIX = "ENC:"


class EncryptionProvider(ABC):
    """Abstract base class for encryption providers"""

    @abstractmethod
    def encrypt(self, plaintext: str) -> str:
        """Encrypt plaintext and return ciphertext"""
        pass

    @abstractmethod
    def decrypt(self, ciphertext: str) -> str:
        """Decrypt ciphertext and return plaintext"""
        pass


class NoOpEncryptionProvider(EncryptionProvider):
    """No-operation encryption provider for development/testing"""

    def encrypt(self, plaintext: str) -> str:
        return plaintext

    def decrypt(self, ciphertext: str) -> str:
        return ciphertext


class FernetEncryptionProvider(EncryptionProvider):
    """Fernet encryption provider (AES-128-CBC + HMAC-SHA256)"""

    def __init__(self, master_key: str, salt: Optional[bytes] = None):
        if not master_key:
            raise ValueError("Encryption master key must not be empty")

        self.salt = salt or b'card_ledger_pii_salt'

        # Derive Fernet key from master key using PBKDF2
        kdf = PBKDF2HMAC(
            algorithm=hashes.SHA256(),
            length=32,
            salt=self.salt,
            iterations=100000,  # OWASP recommended minimum
        )
        derived_key = kdf.derive(master_key.encode('utf-8'))
        self.fernet = Fernet(base64.urlsafe_b64encode(derived_key))

    def encrypt(self, plaintext: str) -> str:
        token = self.fernet.encrypt(plaintext.encode('utf-8'))
        return f"{ENCRYPTION_PREFIX}{token.decode('ascii')}"

    def decrypt(self, ciphertext: str) -> str:
        if ciphertext.startswith(ENCRYPTION_PREFIX):
            ciphertext = ciphertext[len(ENCRYPTION_PREFIX):]
        try:
            return self.fernet.decrypt(ciphertext.encode('ascii')).decode('utf-8')
        except (InvalidToken, ValueError) as e:
            logger.error(f"Failed to decrypt data: {type(e).__name__}")
            raise ValueError("Failed to decrypt data") from e


class EncryptedStorage(StorageInterface):
    """
    Storage wrapper that encrypts PII fields on save and decrypts on load.
    Wraps any StorageInterface implementation.
    """

    def __init__(
        self,
        inner: StorageInterface,
        encryption_provider: EncryptionProvider,
        pii_fields: Optional[Dict[str, List[str]]] = None
    ):
        self.inner = inner
        self.provider = encryption_provider
        self.pii_fields = pii_fields or PII_FIELDS
        logger.info(f"EncryptedStorage initialized with {type(encryption_provider).__name__}")

    def load_collection(self, name: str) -> Optional[List[Dict[str, Any]]]:
        records = self.inner.load_collection(name)
        if records is None:
            return None
        return [self._decrypt_pii(name, record) for record in records]

    def save_collection(self, name: str, records: List[Dict[str, Any]]) -> None:
        self.inner.save_collection(name, [self._encrypt_pii(name, record) for record in records])

    def close(self) -> None:
        self.inner.close()

    @staticmethod
    def _is_encrypted(value: Any) -> bool:
        return isinstance(value, str) and value.startswith(ENCRYPTION_PREFIX)

    def _encrypt_pii(self, name: str, record: Dict[str, Any]) -> Dict[str, Any]:
        """Encrypt PII fields in a copy of the record"""
        data = dict(record)
        for field in self.pii_fields.get(name, []):
            if data.get(field) is not None and not self._is_encrypted(data[field]):
                data[field] = self.provider.encrypt(str(data[field]))
        return data

    def _decrypt_pii(self, name: str, record: Dict[str, Any]) -> Dict[str, Any]:
        """Decrypt PII fields in a copy of the record"""
        data = dict(record)
        for field in self.pii_fields.get(name, []):
            if self._is_encrypted(data.get(field)):
                try:
                    data[field] = self.provider.decrypt(data[field])
                except ValueError as e:
                    raise PersistenceError(f"Cannot decrypt {field} in collection {name}") from e
        return data


def create_encrypted_storage(inner: StorageInterface, config) -> EncryptedStorage:
    """Wrap a storage backend using the master key from a LedgerConfig"""
    if not config.encryption_master_key:
        raise ValueError("encryption_enabled requires encryption_master_key")
    return EncryptedStorage(inner, FernetEncryptionProvider(config.encryption_master_key))
