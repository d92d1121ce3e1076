"""
AES-256-GCM Authenticated Encryption
====================================

Record-level encryption under a single derived key.

Security Properties:
    - 256-bit key (128-bit security level)
    - 96-bit random nonce per encryption (NIST recommended)
    - 128-bit authentication tag

Wire format:
    base64( nonce[12] || ciphertext || tag[16] )

WARNING:
    - The key is derived from fixed inputs. It keeps stored records from
      being read or edited casually; it is not a per-user secret.
"""

from __future__ import annotations

import base64
import binascii
import hmac
import secrets
from typing import Final, Optional

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.ciphers.aead import AESGCM

AES_KEY_SIZE: Final[int] = 32  # 256 bits
AES_NONCE_SIZE: Final[int] = 12  # 96 bits (NIST recommended for GCM)
AES_TAG_SIZE: Final[int] = 16  # 128 bits


class EncryptionError(Exception):
    """Raised when the cipher cannot encrypt (provider unusable or misconfigured)."""


class DecryptionError(Exception):
    """Raised when a payload cannot be decoded, authenticated or decrypted."""


class AesGcmCipher:
    """
    AES-256-GCM cipher bound to one key.

    Usage:
        cipher = AesGcmCipher(key)
        token = cipher.encrypt_text("payload")
        assert cipher.decrypt_text(token) == "payload"

    Security Notes:
        - A fresh nonce is generated for every call, so encrypting the same
          text twice yields different tokens
        - Integrity is verified before any plaintext is returned
    """

    __slots__ = ("_aesgcm",)

    def __init__(self, key: bytes) -> None:
        """
        Args:
            key: 32-byte AES key

        Raises:
            EncryptionError: If the key is the wrong size or the provider
                rejects it
        """
        if len(key) != AES_KEY_SIZE:
            raise EncryptionError(f"Key must be exactly {AES_KEY_SIZE} bytes")
        try:
            self._aesgcm = AESGCM(key)
        except Exception as e:
            raise EncryptionError(f"Cipher initialization failed: {type(e).__name__}") from e

    def __repr__(self) -> str:
        """Safe representation without key material."""
        return "AesGcmCipher(algorithm='AES-256-GCM')"

    @staticmethod
    def generate_nonce() -> bytes:
        """Generate a cryptographically secure random 96-bit nonce."""
        return secrets.token_bytes(AES_NONCE_SIZE)

    def encrypt(self, plaintext: bytes, aad: Optional[bytes] = None) -> bytes:
        """
        Encrypt and return ``nonce || ciphertext || tag``.

        Raises:
            EncryptionError: If the provider fails
        """
        nonce = self.generate_nonce()
        try:
            return nonce + self._aesgcm.encrypt(nonce, plaintext, aad)
        except Exception as e:
            raise EncryptionError(f"Encryption failed: {type(e).__name__}") from e

    def decrypt(self, blob: bytes, aad: Optional[bytes] = None) -> bytes:
        """
        Split off the nonce, verify the tag and decrypt.

        Raises:
            DecryptionError: If the blob is too short or authentication fails
        """
        if len(blob) < AES_NONCE_SIZE + AES_TAG_SIZE:
            raise DecryptionError("Ciphertext too short (missing nonce or authentication tag)")

        nonce, ciphertext = blob[:AES_NONCE_SIZE], blob[AES_NONCE_SIZE:]
        try:
            return self._aesgcm.decrypt(nonce, ciphertext, aad)
        except InvalidTag as e:
            raise DecryptionError("Authentication tag mismatch") from e

    def encrypt_text(self, plaintext: str) -> str:
        """Encrypt UTF-8 text into a base64 token."""
        return base64.b64encode(self.encrypt(plaintext.encode("utf-8"))).decode("ascii")

    def decrypt_text(self, token: str) -> str:
        """
        Decrypt a base64 token produced by :meth:`encrypt_text`.

        Raises:
            DecryptionError: On bad base64, a failed tag check or bad UTF-8
        """
        try:
            blob = base64.b64decode(token.encode("ascii"), validate=True)
        except (binascii.Error, UnicodeEncodeError, ValueError) as e:
            raise DecryptionError("Payload is not valid base64") from e

        plaintext = self.decrypt(blob)
        try:
            return plaintext.decode("utf-8")
        except UnicodeDecodeError as e:
            raise DecryptionError("Decrypted payload is not valid UTF-8") from e

    @staticmethod
    def constant_time_compare(a: bytes, b: bytes) -> bool:
        """Constant-time comparison of two byte strings."""
        return hmac.compare_digest(a, b)
