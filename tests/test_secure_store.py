import base64
import logging
import json

import pytest

from authguard.core.config import StorageConfig
from authguard.core.crypto.aes_gcm import EncryptionError
from authguard.storage.secure_store import CorruptRecordError, SecureStore, StorageRecord
from authguard.storage.tiers import MemoryTier, StorageTier


class _BrokenTier(StorageTier):
    name = "broken"

    def get(self, key):
        raise OSError("disk unavailable")

    def set(self, key, value):
        raise OSError("disk unavailable")

    def delete(self, key):
        raise OSError("disk unavailable")

    def keys(self):
        raise OSError("disk unavailable")

    def clear(self):
        raise OSError("disk unavailable")

    def change_token(self):
        raise OSError("disk unavailable")


class _FlakyTier(MemoryTier):
    name = "flaky"

    def __init__(self):
        super().__init__()
        self.fail_writes = False
        self.fail_deletes = False

    def set(self, key, value):
        if self.fail_writes:
            raise OSError("database is locked")
        super().set(key, value)

    def delete(self, key):
        if self.fail_deletes:
            raise OSError("database is locked")
        super().delete(key)


def _memory_config(**overrides):
    return StorageConfig(durable_path=None, enable_session_tier=False, **overrides)


def _rewrite(tier, key, **fields):
    raw = json.loads(tier.get(key))
    raw.update(fields)
    tier.set(key, json.dumps(raw))


def test_round_trip_is_encrypted_at_rest(memory_store):
    assert memory_store.encryption_active
    assert memory_store.store("security_state_a", '{"failedAttempts": 1}') == "memory"

    raw = memory_store.tiers[-1].get("security_state_a")
    assert "failedAttempts" not in raw
    assert memory_store.retrieve("security_state_a") == '{"failedAttempts": 1}'


def test_same_plaintext_encrypts_differently(memory_store):
    assert memory_store.encrypt("same") != memory_store.encrypt("same")
    assert memory_store.decrypt(memory_store.encrypt("same")) == "same"


def test_missing_key_reads_as_none(memory_store):
    assert memory_store.retrieve("nope") is None
    assert not memory_store.exists("nope")


def test_checksum_mismatch_purges_record_and_reports(memory_store):
    reports = []
    memory_store.add_corruption_listener(lambda key, reason: reports.append((key, reason)))
    memory_store.store("k", "value")
    tier = memory_store.tiers[-1]

    _rewrite(tier, "k", checksum=SecureStore.checksum("something else"))

    assert memory_store.retrieve("k") is None
    assert tier.get("k") is None
    assert reports == [("k", "checksum mismatch")]


def test_tampered_ciphertext_is_purged(memory_store):
    reports = []
    memory_store.add_corruption_listener(lambda key, reason: reports.append(reason))
    memory_store.store("k", "value")
    tier = memory_store.tiers[-1]

    blob = bytearray(base64.b64decode(json.loads(tier.get("k"))["data"]))
    blob[-1] ^= 0x01
    _rewrite(tier, "k", data=base64.b64encode(bytes(blob)).decode("ascii"))

    assert memory_store.retrieve("k") is None
    assert tier.get("k") is None
    assert reports[0].startswith("decryption failed")


def test_unparsable_envelope_is_purged(memory_store):
    reports = []
    memory_store.add_corruption_listener(lambda key, reason: reports.append(reason))
    memory_store.tiers[-1].set("k", "{not json")

    assert memory_store.retrieve("k") is None
    assert memory_store.keys() == []
    assert reports == ["unparsable envelope"]


def test_envelope_validation_rejects_wrong_types():
    with pytest.raises(CorruptRecordError):
        StorageRecord.from_json('{"data": "x", "checksum": "y", "timestamp": "soon", "version": 1}')
    with pytest.raises(CorruptRecordError):
        StorageRecord.from_json('{"data": "x", "checksum": "y", "timestamp": 1}')
    with pytest.raises(CorruptRecordError):
        StorageRecord.from_json("[1, 2]")


def test_failing_listener_does_not_break_reads(memory_store):
    def explode(key, reason):
        raise RuntimeError("listener bug")

    memory_store.add_corruption_listener(explode)
    memory_store.tiers[-1].set("k", "garbage")

    assert memory_store.retrieve("k") is None


def test_write_falls_back_past_failing_tier(clock, caplog):
    store = SecureStore(_memory_config(), tiers=[_BrokenTier()], clock=clock)

    assert [t.name for t in store.tiers] == ["broken", "memory"]
    with caplog.at_level(logging.WARNING, logger="authguard.storage"):
        assert store.store("k", "v") == "memory"
    assert "Write to broken tier failed, falling back: disk unavailable" in caplog.messages
    assert store.retrieve("k") == "v"
    assert store.keys() == ["k"]
    store.remove("k")
    assert store.retrieve("k") is None


def test_fallback_write_drops_stale_copy_above(clock):
    flaky = _FlakyTier()
    store = SecureStore(_memory_config(), tiers=[flaky, MemoryTier()], clock=clock)
    assert store.store("k", "attempts=4") == "flaky"

    flaky.fail_writes = True
    assert store.store("k", "attempts=5-locked") == "memory"

    assert flaky.get("k") is None
    assert store.retrieve("k") == "attempts=5-locked"

    flaky.fail_writes = False
    assert store.retrieve("k") == "attempts=5-locked"


def test_newest_copy_wins_when_stale_copy_cannot_be_dropped(clock):
    flaky = _FlakyTier()
    store = SecureStore(_memory_config(), tiers=[flaky, MemoryTier()], clock=clock)
    store.store("k", "attempts=4")

    flaky.fail_writes = flaky.fail_deletes = True
    clock.advance(10)
    store.store("k", "attempts=5-locked")

    assert flaky.get("k") is not None
    assert store.retrieve("k") == "attempts=5-locked"


def test_durable_tier_survives_new_instance(tmp_path, clock):
    config = StorageConfig(durable_path=tmp_path / "state.db", enable_session_tier=False)

    first = SecureStore(config, clock=clock)
    assert first.store("k", "persisted") == "durable"
    first.close()

    second = SecureStore(config, clock=clock)
    assert second.retrieve("k") == "persisted"
    assert second.get_metadata("k").tier == "durable"
    second.close()


def test_session_tier_writes_owner_only_files(tmp_path, clock):
    session_dir = tmp_path / "session"
    store = SecureStore(
        StorageConfig(durable_path=None, session_dir=session_dir), clock=clock,
    )

    assert store.store("security_state_x", "secret payload") == "session"

    files = [p for p in session_dir.iterdir() if p.is_file()]
    assert len(files) == 1
    assert files[0].stat().st_mode & 0o077 == 0
    assert "secret payload" not in files[0].read_text()
    assert store.keys(prefix="security_state_") == ["security_state_x"]


def test_plaintext_mode_still_checks_integrity(clock):
    store = SecureStore(_memory_config(enable_encryption=False), clock=clock)
    assert not store.encryption_active
    with pytest.raises(EncryptionError):
        store.encrypt("x")

    store.store("k", "plain")
    tier = store.tiers[-1]
    assert json.loads(tier.get("k"))["data"] == "plain"

    _rewrite(tier, "k", data="edited")
    assert store.retrieve("k") is None


def test_integrity_validation_can_be_disabled(clock):
    store = SecureStore(
        _memory_config(enable_encryption=False, enable_integrity_validation=False), clock=clock,
    )
    store.store("k", "plain")
    _rewrite(store.tiers[-1], "k", data="edited")

    assert store.retrieve("k") == "edited"


def test_cleanup_expired_uses_envelope_timestamp(memory_store, clock):
    memory_store.store("old", "a")
    clock.advance(10_000)
    memory_store.store("new", "b")
    memory_store.tiers[-1].set("junk", "not an envelope")

    assert memory_store.cleanup_expired(5_000) == 2
    assert memory_store.keys() == ["new"]


def test_cleanup_expired_respects_prefix(memory_store, clock):
    memory_store.store("security_state_a", "a")
    memory_store.store("other", "b")
    clock.advance(10_000)

    assert memory_store.cleanup_expired(5_000, prefix="security_state_") == 1
    assert memory_store.keys() == ["other"]


def test_clear_with_prefix(memory_store):
    for key in ("security_state_a", "security_state_b", "unrelated"):
        memory_store.store(key, "v")

    memory_store.clear(prefix="security_state_")
    assert memory_store.keys() == ["unrelated"]

    memory_store.clear()
    assert memory_store.keys() == []


def test_metadata_reads_envelope_without_payload(memory_store, clock):
    memory_store.store("k", "v")
    meta = memory_store.get_metadata("k")

    assert meta.timestamp == clock()
    assert meta.version == 1
    assert meta.tier == "memory"
    assert memory_store.get_metadata("missing") is None


def test_change_token_moves_on_write(memory_store):
    before = memory_store.change_token()
    memory_store.store("k", "v")
    assert memory_store.change_token() != before


def test_memory_tier_always_terminates_chain(clock):
    memory = MemoryTier()
    store = SecureStore(_memory_config(), tiers=[memory], clock=clock)
    assert store.tiers == (memory,)
