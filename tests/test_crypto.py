import pytest

from authguard.core.crypto import AesGcmCipher, DecryptionError, EncryptionError, derive_storage_key
from authguard.core.crypto.kdf import derive_key_argon2, derive_key_pbkdf2
from authguard.security.hardening import CryptoSelfTest, SecurityCheckResult, verify_cipher

SALT = b"authguard-test-salt"


class _FixedNonceCipher(AesGcmCipher):
    __slots__ = ()

    @staticmethod
    def generate_nonce():
        return b"\x00" * 12


def _cipher():
    return AesGcmCipher(derive_key_pbkdf2("passphrase", SALT, iterations=1000))


def test_text_round_trip_uses_fresh_nonces():
    cipher = _cipher()

    first = cipher.encrypt_text("payload")
    second = cipher.encrypt_text("payload")

    assert first != second
    assert cipher.decrypt_text(first) == "payload"
    assert repr(cipher) == "AesGcmCipher(algorithm='AES-256-GCM')"


def test_wrong_key_size_is_rejected():
    with pytest.raises(EncryptionError):
        AesGcmCipher(b"short")


@pytest.mark.parametrize("token", ["not base64!", "AAAA", ""])
def test_malformed_tokens_fail_to_decrypt(token):
    with pytest.raises(DecryptionError):
        _cipher().decrypt_text(token)


def test_other_key_cannot_decrypt():
    token = _cipher().encrypt_text("payload")
    other = AesGcmCipher(derive_key_pbkdf2("different", SALT, iterations=1000))

    with pytest.raises(DecryptionError):
        other.decrypt_text(token)


def test_storage_key_is_deterministic_and_cached():
    derive_storage_key.cache_clear()

    first = derive_storage_key("passphrase", SALT, 1000)
    second = derive_storage_key("passphrase", SALT, 1000)

    assert first == second
    assert len(first) == 32
    assert derive_storage_key.cache_info().hits == 1
    assert derive_storage_key("passphrase", SALT, 2000) != first


def test_argon2_derivation():
    key = derive_storage_key("passphrase", SALT, kdf="argon2id")

    assert key == derive_key_argon2("passphrase", SALT)
    assert len(key) == 32
    with pytest.raises(ValueError):
        derive_storage_key("passphrase", SALT, kdf="md5")


def test_self_tests_pass_for_healthy_cipher():
    results = CryptoSelfTest.run_all_tests(_cipher())

    assert [r.name for r in results] == ["AES-256-GCM", "GCM-Tag", "CSPRNG"]
    assert results[0].result is SecurityCheckResult.PASS
    assert results[1].result is SecurityCheckResult.PASS
    assert results[2].result is not SecurityCheckResult.FAIL
    assert verify_cipher(_cipher())


def test_nonce_reuse_fails_self_test():
    cipher = _FixedNonceCipher(derive_key_pbkdf2("passphrase", SALT, iterations=1000))

    result = CryptoSelfTest.test_aes_gcm(cipher)

    assert result.result is SecurityCheckResult.FAIL
    assert result.message == "Nonce reuse detected"
    assert not verify_cipher(cipher)
