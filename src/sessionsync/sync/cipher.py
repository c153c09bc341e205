"""
Encryption collaborator -- payloads leave the device sealed.

The sync engine only ever calls ``encrypt``/``decrypt`` and never looks
at plaintext past this boundary. ``FernetCipher`` is the stock
implementation (AES-128-CBC + HMAC-SHA256); anything with the same two
methods can replace it.
"""

from __future__ import annotations

import base64
from abc import ABC, abstractmethod

from cryptography.fernet import Fernet, InvalidToken
from cryptography.hazmat.primitives.hashes import SHA256
from cryptography.hazmat.primitives.kdf.hkdf import HKDF

from ..errors import CompressionFailure

KEY_INFO = b"sessionsync:payload-encryption"


def derive_key(secret: bytes, info: bytes = KEY_INFO, length: int = 32) -> bytes:
    """Derive payload key material from a shared secret with HKDF-SHA256.

    Args:
        secret: Input keying material shared by the user's devices.
        info: Context string binding the key to its purpose.
        length: Output length in bytes.
    """
    hkdf = HKDF(algorithm=SHA256(), length=length, salt=None, info=info)
    return hkdf.derive(secret)


class Cipher(ABC):
    """Abstract encryption capability."""

    @abstractmethod
    def encrypt(self, data: bytes, key: bytes) -> bytes:
        """Seal ``data`` under ``key``."""

    @abstractmethod
    def decrypt(self, data: bytes, key: bytes) -> bytes:
        """Open ``data`` sealed under ``key``."""


class NullCipher(Cipher):
    """Pass-through cipher for unencrypted stores."""

    def encrypt(self, data: bytes, key: bytes) -> bytes:
        return data

    def decrypt(self, data: bytes, key: bytes) -> bytes:
        return data


class FernetCipher(Cipher):
    """Fernet over the first 32 bytes of the key material."""

    @staticmethod
    def _fernet(key: bytes) -> Fernet:
        if len(key) < 32:
            raise ValueError("Fernet needs at least 32 bytes of key material")
        return Fernet(base64.urlsafe_b64encode(key[:32]))

    def encrypt(self, data: bytes, key: bytes) -> bytes:
        return self._fernet(key).encrypt(data)

    def decrypt(self, data: bytes, key: bytes) -> bytes:
        """Decrypt a Fernet token.

        Raises:
            CompressionFailure: If the token is malformed or was sealed
                under a different key.
        """
        try:
            return self._fernet(key).decrypt(data)
        except InvalidToken as exc:
            raise CompressionFailure(
                "Payload could not be decrypted", size=len(data)
            ) from exc
