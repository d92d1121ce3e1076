"""
AuthGuard Cryptographic Core
============================

Authenticated encryption and key derivation for stored security state.

Security Properties:
    - All encryption is authenticated (AEAD)
    - Fresh random nonce per record
    - Key derived once per process and held in memory only
"""

from authguard.core.crypto.aes_gcm import AesGcmCipher, DecryptionError, EncryptionError
from authguard.core.crypto.kdf import derive_storage_key

__all__ = [
    "AesGcmCipher",
    "DecryptionError",
    "EncryptionError",
    "derive_storage_key",
]
