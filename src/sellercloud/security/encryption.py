"""
Encryption utilities for securing marketplace credentials.

Uses Fernet symmetric encryption with master key rotation support.
"""

import os
from typing import List, Optional

from cryptography.fernet import Fernet, MultiFernet, InvalidToken

from sellercloud.utils.exceptions import ConfigurationError, CredentialError
from sellercloud.utils.logger import get_logger


logger = get_logger(__name__)

MASTER_KEY_ENV = "SELLERCLOUD_ENCRYPTION_MASTER_KEY"
SECONDARY_KEY_ENV = "SELLERCLOUD_ENCRYPTION_SECONDARY_KEY"


class CredentialEncryptor:
    """
    Encrypts and decrypts marketplace credentials using Fernet.

    Supports key rotation through MultiFernet: the first key encrypts, every
    key can decrypt.
    """

    def __init__(self, master_key: Optional[str] = None, secondary_key: Optional[str] = None):
        """
        Initialize encryptor with master key.

        Args:
            master_key: Base64-encoded Fernet key. If None, loads from env.
            secondary_key: Previous key kept for decryption during rotation.
        """
        self.master_key = master_key or os.getenv(MASTER_KEY_ENV)

        if not self.master_key:
            raise ConfigurationError(
                f"{MASTER_KEY_ENV} is required to store credentials. "
                "Generate one with: sellercloud config generate-key"
            )

        self.keys = self._load_keys(secondary_key or os.getenv(SECONDARY_KEY_ENV))
        try:
            self.fernet = MultiFernet([Fernet(key) for key in self.keys])
        except ValueError as e:
            raise ConfigurationError(f"Invalid encryption key: {e}")

        logger.debug(f"Initialized credential encryptor with {len(self.keys)} key(s)")

    def _load_keys(self, secondary: Optional[str]) -> List[bytes]:
        keys = [self.master_key.encode()]

        if secondary:
            keys.append(secondary.encode())
            logger.info("Secondary encryption key loaded for rotation")

        return keys

    def encrypt(self, plaintext: str) -> str:
        """
        Encrypt plaintext string.

        Args:
            plaintext: String to encrypt

        Returns:
            Base64-encoded encrypted string
        """
        if not plaintext:
            raise ValueError("Cannot encrypt empty string")

        return self.fernet.encrypt(plaintext.encode()).decode()

    def decrypt(self, ciphertext: str) -> str:
        """
        Decrypt ciphertext string.

        Args:
            ciphertext: Base64-encoded encrypted string

        Returns:
            Decrypted plaintext string

        Raises:
            CredentialError: If no key can decrypt the token
        """
        if not ciphertext:
            raise ValueError("Cannot decrypt empty string")

        try:
            return self.fernet.decrypt(ciphertext.encode()).decode()
        except InvalidToken:
            logger.error("Decryption failed - invalid token or corrupted data")
            raise CredentialError("Stored credentials cannot be decrypted with the configured keys")

    def reencrypt(self, ciphertext: str) -> str:
        """Re-encrypt a token under the current primary key."""
        try:
            return self.fernet.rotate(ciphertext.encode()).decode()
        except InvalidToken:
            raise CredentialError("Stored credentials cannot be decrypted with the configured keys")

    def rotate_key(self, new_key: str) -> None:
        """
        Add new encryption key for rotation.

        Args:
            new_key: New Fernet key to add
        """
        self.keys.insert(0, new_key.encode())  # New key becomes primary
        self.fernet = MultiFernet([Fernet(key) for key in self.keys])

        logger.info(f"Key rotation complete - now using {len(self.keys)} keys")

    @staticmethod
    def generate_key() -> str:
        """
        Generate a new Fernet encryption key.

        Returns:
            Base64-encoded Fernet key
        """
        return Fernet.generate_key().decode()
