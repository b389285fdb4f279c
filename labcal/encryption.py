"""Encryption utilities for credentials held at rest."""

import base64
import os
import secrets
from typing import Union

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.ciphers.aead import AESGCM

NONCE_SIZE = 12


class EncryptionManager:
    """Handles encryption and decryption of sensitive data using AES-256-GCM."""

    def __init__(self, key: bytes):
        """Initialize with a 32-byte encryption key."""
        if len(key) < 32:
            raise ValueError("Encryption key must be at least 32 bytes")
        self._aesgcm = AESGCM(key[:32])

    def encrypt(self, plaintext: Union[str, bytes], associated_data: bytes | None = None) -> bytes:
        """
        Encrypt plaintext data.

        Args:
            plaintext: Data to encrypt (string or bytes)
            associated_data: Optional bytes bound to the ciphertext (e.g. a record key)

        Returns:
            Encrypted data as bytes (nonce + ciphertext)
        """
        if isinstance(plaintext, str):
            plaintext = plaintext.encode("utf-8")

        nonce = os.urandom(NONCE_SIZE)
        ciphertext = self._aesgcm.encrypt(nonce, plaintext, associated_data)
        return nonce + ciphertext

    def decrypt(self, encrypted_data: bytes, associated_data: bytes | None = None) -> str:
        """
        Decrypt encrypted data.

        Raises:
            ValueError: if the data is truncated or fails authentication
        """
        if len(encrypted_data) < NONCE_SIZE:
            raise ValueError("Invalid encrypted data: too short")

        nonce = encrypted_data[:NONCE_SIZE]
        ciphertext = encrypted_data[NONCE_SIZE:]

        try:
            plaintext = self._aesgcm.decrypt(nonce, ciphertext, associated_data)
        except InvalidTag as e:
            raise ValueError("Invalid encrypted data: authentication failed") from e

        return plaintext.decode("utf-8")


def generate_encryption_key() -> bytes:
    """Generate a new 32-byte encryption key."""
    return secrets.token_bytes(32)


def key_to_base64(key: bytes) -> str:
    """Convert key to base64 string for display/storage."""
    return base64.b64encode(key).decode("ascii")


def key_from_base64(key_base64: str) -> bytes:
    """Convert base64 string back to key bytes."""
    return base64.b64decode(key_base64)
