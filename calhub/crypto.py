"""AES-256-GCM encryption for credentials at rest.

Token format: ``base64(nonce[12] || ciphertext || tag[16])``. A fresh random
nonce is drawn for every call, and the GCM tag authenticates the whole payload,
so any tampering surfaces as :class:`DecryptionFailedError` instead of garbage
plaintext.
"""

from __future__ import annotations

import base64
import binascii
import os

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.ciphers.aead import AESGCM

from calhub.errors import DecryptionFailedError, EncryptionFailedError, EncryptionKeyError

KEY_LENGTH = 32
NONCE_LENGTH = 12
TAG_LENGTH = 16


class AesGcmCipher:
    def __init__(self, key: bytes) -> None:
        if len(key) != KEY_LENGTH:
            raise EncryptionKeyError(
                f"Encryption key must be {KEY_LENGTH} bytes, got {len(key)}. "
                "Generate one with: openssl rand -base64 32"
            )
        self._aead = AESGCM(key)

    @classmethod
    def from_base64_key(cls, key_b64: str | None) -> "AesGcmCipher":
        if not key_b64:
            raise EncryptionKeyError("Encryption key is required")
        try:
            key = base64.b64decode(key_b64.strip(), validate=True)
        except (binascii.Error, ValueError) as exc:
            raise EncryptionKeyError(f"Encryption key is not valid base64: {exc}") from exc
        return cls(key)

    @staticmethod
    def generate_key() -> str:
        return base64.b64encode(AESGCM.generate_key(bit_length=256)).decode("ascii")

    def encrypt(self, plaintext: str) -> str:
        try:
            nonce = os.urandom(NONCE_LENGTH)
            sealed = self._aead.encrypt(nonce, plaintext.encode("utf-8"), None)
        except (TypeError, ValueError, AttributeError) as exc:
            raise EncryptionFailedError(f"Encryption failed: {exc}") from exc
        return base64.b64encode(nonce + sealed).decode("ascii")

    def decrypt(self, token: str) -> str:
        try:
            combined = base64.b64decode(token, validate=True)
        except (binascii.Error, ValueError, TypeError) as exc:
            raise DecryptionFailedError("Encrypted value is not valid base64") from exc
        if len(combined) < NONCE_LENGTH + TAG_LENGTH:
            raise DecryptionFailedError("Encrypted value is truncated")
        nonce, sealed = combined[:NONCE_LENGTH], combined[NONCE_LENGTH:]
        try:
            plaintext = self._aead.decrypt(nonce, sealed, None)
        except InvalidTag as exc:
            raise DecryptionFailedError(
                "Decryption failed: data is corrupted or was sealed with a different key"
            ) from exc
        try:
            return plaintext.decode("utf-8")
        except UnicodeDecodeError as exc:
            raise DecryptionFailedError("Decrypted value is not valid UTF-8") from exc
