"""Credential encryption behind a narrow encrypt/decrypt capability.

Stored tokens use AES-256-GCM with a key derived from the configured secret
via scrypt, serialized as ``iv:tag:ciphertext`` in hex.
"""

from __future__ import annotations

import os
from typing import Protocol

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.ciphers.aead import AESGCM
from cryptography.hazmat.primitives.kdf.scrypt import Scrypt

IV_LENGTH = 16
TAG_LENGTH = 16
KEY_SALT = b"torbox-salt"


class CipherError(Exception):
    """Raised when a credential cannot be encrypted or decrypted."""


class CredentialCipher(Protocol):
    """Anything that can seal and open stored account credentials."""

    def encrypt(self, plaintext: str) -> str: ...

    def decrypt(self, token: str) -> str: ...


def derive_key(secret: str, salt: bytes = KEY_SALT) -> bytes:
    """Derive a 32-byte AES key from a configured secret."""
    kdf = Scrypt(salt=salt, length=32, n=2**14, r=8, p=1)
    return kdf.derive(secret.encode("utf-8"))


class AesGcmCipher:
    """AES-256-GCM cipher keyed from a secret string."""

    def __init__(self, secret: str) -> None:
        if not secret:
            raise CipherError("encryption key is not configured")
        self._aead = AESGCM(derive_key(secret))

    def encrypt(self, plaintext: str) -> str:
        iv = os.urandom(IV_LENGTH)
        sealed = self._aead.encrypt(iv, plaintext.encode("utf-8"), None)
        ciphertext, tag = sealed[:-TAG_LENGTH], sealed[-TAG_LENGTH:]
        return f"{iv.hex()}:{tag.hex()}:{ciphertext.hex()}"

    def decrypt(self, token: str) -> str:
        parts = token.split(":")
        if len(parts) != 3:
            raise CipherError("invalid encrypted data format")
        try:
            iv, tag, ciphertext = (bytes.fromhex(p) for p in parts)
        except ValueError as exc:
            raise CipherError("invalid encrypted data format") from exc
        if len(iv) != IV_LENGTH or len(tag) != TAG_LENGTH:
            raise CipherError("invalid encrypted data format")
        try:
            plaintext = self._aead.decrypt(iv, ciphertext + tag, None)
        except InvalidTag as exc:
            raise CipherError("decryption failed") from exc
        return plaintext.decode("utf-8")


__all__ = ["AesGcmCipher", "CipherError", "CredentialCipher", "derive_key"]
