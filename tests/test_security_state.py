import json

import pytest

from authguard.core.config import HOUR_MS, StateConfig
from authguard.security.state import SecurityStateManager, SecurityStateRecord
from authguard.storage.secure_store import StorageError


def _raw_record(identifier="user@example.com", **fields):
    data = {
        "identifier": identifier,
        "failedAttempts": 1,
        "createdAt": 1_700_000_000_000,
        "updatedAt": 1_700_000_000_000,
        "version": 1,
    }
    data.update(fields)
    return data


def test_set_then_get_round_trips(state_manager, clock):
    stored = state_manager.set_security_state("user@example.com", failed_attempts=2)
    loaded = state_manager.get_security_state("user@example.com")

    assert loaded == stored
    assert loaded.failed_attempts == 2
    assert loaded.created_at == clock()
    assert loaded.last_attempt == clock()
    assert loaded.progressive_delay == 0
    assert loaded.lockout_until is None


def test_set_merges_over_existing_record(state_manager, clock):
    first = state_manager.set_security_state("u", failed_attempts=3, progressive_delay=4000)
    clock.advance(1000)
    second = state_manager.set_security_state("u", lockout_until=clock() + 60_000)

    assert second.failed_attempts == 3
    assert second.progressive_delay == 4000
    assert second.created_at == first.created_at
    assert second.updated_at == first.updated_at + 1000

    cleared = state_manager.set_security_state("u", lockout_until=None)
    assert cleared.lockout_until is None


def test_invalid_write_is_refused_and_nothing_stored(state_manager):
    with pytest.raises(StorageError, match="Failed to store security state"):
        state_manager.set_security_state("u", failed_attempts=-1)

    assert state_manager.get_security_state("u") is None


def test_expired_record_reads_as_absent_and_is_removed(state_manager, memory_store, clock):
    state_manager.set_security_state("u", failed_attempts=1)
    key = state_manager.storage_key("u")

    clock.advance(24 * HOUR_MS + 1)

    assert state_manager.get_security_state("u") is None
    assert memory_store.retrieve(key) is None


def test_get_is_idempotent_without_intervening_writes(state_manager):
    state_manager.set_security_state("u", failed_attempts=1)

    assert state_manager.get_security_state("u") == state_manager.get_security_state("u")


def test_semantically_invalid_record_is_removed_on_read(state_manager, memory_store):
    key = state_manager.storage_key("u")
    memory_store.store(key, json.dumps(_raw_record("u", failedAttempts=-4)))

    assert state_manager.get_security_state("u") is None
    assert memory_store.retrieve(key) is None


def test_storage_key_round_trips_identifier(state_manager):
    key = state_manager.storage_key("user@example.com")

    assert key.startswith("security_state_")
    assert "@" not in key
    assert state_manager.identifier_from_key(key) == "user@example.com"
    assert state_manager.identifier_from_key("other_prefix_abc") is None


def test_validate_state_reports_and_corrects_negative_attempts(state_manager, clock):
    result = state_manager.validate_state(_raw_record(failedAttempts=-1))

    assert not result.is_valid
    assert "Failed attempts must be a non-negative number" in result.errors
    assert result.corrected_state.failed_attempts == 0
    assert result.corrected_state.updated_at == clock()


def test_validate_state_rejects_far_lockout(state_manager, clock):
    result = state_manager.validate_state(_raw_record(lockoutUntil=clock() + 25 * HOUR_MS))

    assert result.errors == ["Lockout time is too far in the future"]
    assert result.corrected_state.lockout_until is None


def test_validate_state_rejects_time_travel(state_manager):
    result = state_manager.validate_state(_raw_record(createdAt=2_000, updatedAt=1_000))

    assert "Updated timestamp cannot be before created timestamp" in result.errors


def test_validate_state_non_mapping(state_manager):
    result = state_manager.validate_state(["not", "a", "record"])

    assert not result.is_valid
    assert result.corrected_state is None


def test_validate_state_accepts_record_objects(state_manager):
    record = state_manager.set_security_state("u", failed_attempts=1)

    assert state_manager.validate_state(record).is_valid


def test_clear_removes_record_and_notifies(state_manager):
    seen = []
    state_manager.add_state_change_listener("u", seen.append)
    state_manager.set_security_state("u", failed_attempts=1)

    state_manager.clear_security_state("u")

    assert state_manager.get_security_state("u") is None
    assert seen[0].failed_attempts == 1
    assert seen[1] is None


def test_listener_errors_are_contained(state_manager):
    calls = []

    def broken(record):
        raise RuntimeError("listener bug")

    state_manager.add_state_change_listener("u", broken)
    state_manager.add_state_change_listener("u", calls.append)

    state_manager.set_security_state("u", failed_attempts=1)
    assert len(calls) == 1

    state_manager.remove_state_change_listener("u", calls.append)
    state_manager.set_security_state("u", failed_attempts=2)
    assert len(calls) == 1


def test_cleanup_removes_only_expired(state_manager, clock):
    state_manager.set_security_state("old", failed_attempts=1)
    clock.advance(20 * HOUR_MS)
    state_manager.set_security_state("fresh", failed_attempts=1)
    clock.advance(5 * HOUR_MS)

    assert state_manager.cleanup_expired_states() == 1
    assert [r.identifier for r in state_manager.get_all_security_states()] == ["fresh"]
    assert state_manager.run_cleanup_once() == 0


def test_statistics_exclude_expired_records(state_manager, clock):
    state_manager.set_security_state("stale", failed_attempts=1)
    clock.advance(24 * HOUR_MS + 1)
    state_manager.set_security_state("locked", failed_attempts=5, lockout_until=clock() + 60_000)
    state_manager.set_security_state("open", failed_attempts=1)

    stats = state_manager.get_statistics()

    assert stats.total_states == 2
    assert stats.expired_states == 1
    assert stats.locked_states == 1
    assert stats.oldest_state.tzinfo is not None
    assert stats.oldest_state <= stats.newest_state


def test_sync_notifies_changes_written_by_another_manager(memory_store, clock):
    config = StateConfig(enable_background_tasks=False)
    local = SecurityStateManager(memory_store, config, clock=clock)
    remote = SecurityStateManager(memory_store, config, clock=clock)
    seen = []
    local.add_state_change_listener("u", seen.append)

    assert local.sync_now() == 0

    remote.set_security_state("u", failed_attempts=2)
    assert local.sync_now() == 1
    assert seen[-1].failed_attempts == 2

    # Nothing moved, nothing to report
    assert local.sync_now() == 0

    remote.clear_security_state("u")
    assert local.sync_now() == 1
    assert seen[-1] is None


def test_sync_skips_own_writes(state_manager):
    seen = []
    state_manager.add_state_change_listener("u", seen.append)
    state_manager.set_security_state("u", failed_attempts=1)

    assert state_manager.sync_now(force=True) == 0
    assert len(seen) == 1


def test_background_tasks_respect_config(memory_store, clock):
    manager = SecurityStateManager(memory_store, StateConfig(enable_background_tasks=False), clock=clock)
    manager.start()
    assert not manager.running


def test_background_tasks_start_and_stop(memory_store, clock):
    manager = SecurityStateManager(memory_store, StateConfig(), clock=clock)
    with manager:
        assert manager.running
        manager.update_config(sync_interval_ms=10_000)
        assert manager.running
        assert manager.get_config().sync_interval_ms == 10_000
    assert not manager.running
    manager.cleanup()


def test_record_serialization_uses_stable_field_names():
    record = SecurityStateRecord(
        identifier="u", failed_attempts=1, created_at=1, updated_at=2, version=1, lockout_until=5,
    )

    assert record.to_dict() == {
        "identifier": "u",
        "failedAttempts": 1,
        "createdAt": 1,
        "updatedAt": 2,
        "version": 1,
        "lockoutUntil": 5,
    }
    assert SecurityStateRecord.from_dict(json.loads(record.to_json())) == record
