"""Tests for encryption module."""

import pytest

from labcal.encryption import (
    EncryptionManager,
    generate_encryption_key,
    key_from_base64,
    key_to_base64,
)


def test_generate_encryption_key():
    """Test encryption key generation."""
    key = generate_encryption_key()
    assert len(key) == 32
    assert isinstance(key, bytes)


def test_key_base64_roundtrip():
    key = generate_encryption_key()
    assert key_from_base64(key_to_base64(key)) == key


def test_encryption_manager_encrypt_decrypt():
    """Test basic encryption and decryption."""
    manager = EncryptionManager(generate_encryption_key())

    plaintext = '{"access_token": "ya29.secret"}'
    encrypted = manager.encrypt(plaintext)

    assert manager.decrypt(encrypted) == plaintext
    assert b"ya29.secret" not in encrypted


def test_nonce_makes_ciphertexts_differ():
    manager = EncryptionManager(generate_encryption_key())
    assert manager.encrypt("same") != manager.encrypt("same")


def test_associated_data_must_match():
    """A payload copied under another record key does not decrypt."""
    manager = EncryptionManager(generate_encryption_key())
    encrypted = manager.encrypt("token", associated_data=b"google-c1")

    assert manager.decrypt(encrypted, associated_data=b"google-c1") == "token"
    with pytest.raises(ValueError):
        manager.decrypt(encrypted, associated_data=b"google-c2")


def test_wrong_key_fails():
    encrypted = EncryptionManager(generate_encryption_key()).encrypt("token")
    with pytest.raises(ValueError):
        EncryptionManager(generate_encryption_key()).decrypt(encrypted)


def test_truncated_data_rejected():
    manager = EncryptionManager(generate_encryption_key())
    with pytest.raises(ValueError, match="too short"):
        manager.decrypt(b"short")


def test_short_key_rejected():
    with pytest.raises(ValueError):
        EncryptionManager(b"too-short")
