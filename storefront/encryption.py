"""
Credential vault for OAuth tokens at rest

Tokens are stored as "ivhex:cipherhex" (AES-256-CBC, PKCS7, fresh IV per call)
so that every stored value carries what is needed to decrypt it.
"""

import logging
import os

from cryptography.hazmat.primitives import padding
from cryptography.hazmat.primitives.ciphers import Cipher, algorithms, modes

from .config import Settings
from .errors import ConfigurationError

logger = logging.getLogger(__name__)

KEY_BYTES = 32
IV_BYTES = 16


class CredentialVault:
    """Encrypt/decrypt secrets with the configured ENCRYPTION_KEY"""

    def __init__(self, key_hex: str | None):
        if not key_hex:
            raise ConfigurationError("ENCRYPTION_KEY not configured")
        try:
            key = bytes.fromhex(key_hex)
        except ValueError as e:
            raise ConfigurationError("ENCRYPTION_KEY must be hex encoded") from e
        if len(key) != KEY_BYTES:
            raise ConfigurationError(f"ENCRYPTION_KEY must be {KEY_BYTES} bytes hex")
        self._key = key

    @classmethod
    def from_settings(cls, settings: Settings) -> "CredentialVault":
        return cls(settings.encryption_key)

    @property
    def key(self) -> bytes:
        """Raw key material, shared with the OAuth state signer"""
        return self._key

    def encrypt(self, plaintext: str) -> str:
        iv = os.urandom(IV_BYTES)
        padder = padding.PKCS7(algorithms.AES.block_size).padder()
        padded = padder.update(plaintext.encode("utf-8")) + padder.finalize()
        encryptor = Cipher(algorithms.AES(self._key), modes.CBC(iv)).encryptor()
        ciphertext = encryptor.update(padded) + encryptor.finalize()
        return f"{iv.hex()}:{ciphertext.hex()}"

    def decrypt(self, token: str) -> str:
        iv_hex, sep, ciphertext_hex = token.partition(":")
        if not sep or not iv_hex or not ciphertext_hex:
            raise ValueError("Malformed encrypted token")
        iv = bytes.fromhex(iv_hex)
        if len(iv) != IV_BYTES:
            raise ValueError("Malformed encrypted token")
        decryptor = Cipher(algorithms.AES(self._key), modes.CBC(iv)).decryptor()
        padded = decryptor.update(bytes.fromhex(ciphertext_hex)) + decryptor.finalize()
        unpadder = padding.PKCS7(algorithms.AES.block_size).unpadder()
        return (unpadder.update(padded) + unpadder.finalize()).decode("utf-8")
