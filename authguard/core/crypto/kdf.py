"""
Key Derivation Functions
========================

Derives the storage obfuscation key from a fixed passphrase and salt.

Implements:
    - PBKDF2-HMAC-SHA256 (default)
    - Argon2id for memory-hard derivation

The derivation is deterministic, so every process on a machine arrives at
the same key and can read records written by the others. Derived keys are
cached per parameter set; derivation runs at most once per process.
"""

from __future__ import annotations

from functools import lru_cache
from typing import Final

from argon2.low_level import Type, hash_secret_raw
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.kdf.pbkdf2 import PBKDF2HMAC

# Argon2id parameters (OWASP recommended)
ARGON2_TIME_COST: Final[int] = 3
ARGON2_MEMORY_COST: Final[int] = 65536  # 64 MB
ARGON2_PARALLELISM: Final[int] = 4

PBKDF2_ITERATIONS: Final[int] = 100_000
DERIVED_KEY_LENGTH: Final[int] = 32


def derive_key_pbkdf2(
    passphrase: str,
    salt: bytes,
    iterations: int = PBKDF2_ITERATIONS,
    length: int = DERIVED_KEY_LENGTH,
) -> bytes:
    """
    Derive a key using PBKDF2-HMAC-SHA256.

    Args:
        passphrase: Input secret
        salt: Salt bytes
        iterations: PBKDF2 iteration count
        length: Output key length

    Returns:
        Derived key bytes
    """
    kdf = PBKDF2HMAC(
        algorithm=hashes.SHA256(),
        length=length,
        salt=salt,
        iterations=iterations,
    )
    return kdf.derive(passphrase.encode("utf-8"))


def derive_key_argon2(
    passphrase: str,
    salt: bytes,
    length: int = DERIVED_KEY_LENGTH,
) -> bytes:
    """
    Derive a key using Argon2id.

    Args:
        passphrase: Input secret
        salt: Salt bytes (at least 8 bytes)
        length: Output key length

    Returns:
        Derived key bytes
    """
    return hash_secret_raw(
        secret=passphrase.encode("utf-8"),
        salt=salt,
        time_cost=ARGON2_TIME_COST,
        memory_cost=ARGON2_MEMORY_COST,
        parallelism=ARGON2_PARALLELISM,
        hash_len=length,
        type=Type.ID,
    )


@lru_cache(maxsize=8)
def derive_storage_key(
    passphrase: str,
    salt: bytes,
    iterations: int = PBKDF2_ITERATIONS,
    kdf: str = "pbkdf2",
) -> bytes:
    """
    Derive (once) the 256-bit key used to obfuscate stored records.

    Args:
        passphrase: Fixed passphrase from configuration
        salt: Fixed salt from configuration
        iterations: PBKDF2 iteration count (ignored for argon2id)
        kdf: "pbkdf2" or "argon2id"

    Returns:
        32-byte key

    Raises:
        ValueError: If the KDF name is unknown
    """
    if kdf == "pbkdf2":
        return derive_key_pbkdf2(passphrase, salt, iterations)
    if kdf == "argon2id":
        return derive_key_argon2(passphrase, salt)
    raise ValueError(f"Unsupported key derivation function: {kdf}")
