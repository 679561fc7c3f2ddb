"""
Security utilities for the automation engine.

Includes:
- AES-256-CBC encryption/decryption of integration credentials
"""

import hashlib
import json
import os
from typing import Any, Optional

from cryptography.hazmat.primitives import padding
from cryptography.hazmat.primitives.ciphers import Cipher, algorithms, modes

from app.config import get_settings
from core.exceptions import CredentialDecryptionError

IV_LENGTH = 16


def _derive_key(secret: str) -> bytes:
    """SHA-256 of the shared secret gives the 32-byte AES key."""
    return hashlib.sha256(secret.encode("utf-8")).digest()


class CredentialVault:
    """
    Encrypts and decrypts integration credentials with AES-256-CBC.

    Stored format is ``<iv_hex>:<ciphertext_hex>``; plaintext is the JSON
    serialization of the credentials object.
    """

    def __init__(self, key: Optional[str] = None):
        """
        Initialize the vault with a shared secret.

        Args:
            key: Shared secret. If None, uses ENCRYPTION_KEY from settings.
        """
        if key is None:
            key = get_settings().ENCRYPTION_KEY
        self._key = _derive_key(key)

    def encrypt(self, credentials: dict[str, Any]) -> str:
        """
        Encrypt a credentials object.

        Args:
            credentials: JSON-serializable credentials

        Returns:
            ``iv_hex:ciphertext_hex`` string
        """
        iv = os.urandom(IV_LENGTH)
        padder = padding.PKCS7(algorithms.AES.block_size).padder()
        data = padder.update(json.dumps(credentials).encode("utf-8")) + padder.finalize()

        encryptor = Cipher(algorithms.AES(self._key), modes.CBC(iv)).encryptor()
        ciphertext = encryptor.update(data) + encryptor.finalize()
        return f"{iv.hex()}:{ciphertext.hex()}"

    def decrypt(self, encrypted: str) -> dict[str, Any]:
        """
        Decrypt a stored credentials string.

        Args:
            encrypted: ``iv_hex:ciphertext_hex`` string

        Returns:
            The decrypted credentials object

        Raises:
            CredentialDecryptionError: If the payload is malformed, the key is
                wrong, or the plaintext is not JSON
        """
        try:
            iv_hex, _, cipher_hex = (encrypted or "").partition(":")
            iv = bytes.fromhex(iv_hex)
            ciphertext = bytes.fromhex(cipher_hex)
            if len(iv) != IV_LENGTH or not ciphertext:
                raise ValueError("malformed credential payload")

            decryptor = Cipher(algorithms.AES(self._key), modes.CBC(iv)).decryptor()
            padded = decryptor.update(ciphertext) + decryptor.finalize()
            unpadder = padding.PKCS7(algorithms.AES.block_size).unpadder()
            plaintext = unpadder.update(padded) + unpadder.finalize()
            return json.loads(plaintext.decode("utf-8"))
        except (ValueError, UnicodeDecodeError) as e:
            # json.JSONDecodeError is a ValueError subclass
            raise CredentialDecryptionError(
                f"Failed to decrypt integration credentials: {e}"
            ) from e


def encrypt_credentials(credentials: dict[str, Any], key: Optional[str] = None) -> str:
    """Encrypt credentials with the configured (or given) shared secret."""
    return CredentialVault(key).encrypt(credentials)


def decrypt_credentials(encrypted: str, key: Optional[str] = None) -> dict[str, Any]:
    """Decrypt credentials with the configured (or given) shared secret."""
    return CredentialVault(key).decrypt(encrypted)
