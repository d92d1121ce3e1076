import json
import logging
import threading

import pytest

from authguard.core.logging import SecureLogFilter, get_secure_logger
from authguard.storage.tiers import SessionTier
from authguard.utils.clock import ms_to_datetime
from authguard.utils.paths import filename_to_key, key_to_filename
from authguard.utils.periodic import PeriodicTask
from authguard.utils.validators import ValidationError, normalize_identifier


def test_normalize_identifier():
    assert normalize_identifier("  Bob@Example.COM ") == "bob@example.com"

    for bad in ("", "   ", "bob\x00@example.com", "a" * 321):
        with pytest.raises(ValidationError):
            normalize_identifier(bad)
    with pytest.raises(ValidationError):
        normalize_identifier(None)


def test_ms_to_datetime_is_utc():
    moment = ms_to_datetime(0)

    assert moment.year == 1970
    assert moment.utcoffset().total_seconds() == 0


def test_key_filename_mapping_is_reversible():
    name = key_to_filename("security_state_Ym9i/+")

    assert "/" not in name
    assert filename_to_key(name) == "security_state_Ym9i/+"
    with pytest.raises(ValueError):
        key_to_filename("")


def test_session_tier_skips_foreign_files(tmp_path):
    tier = SessionTier(tmp_path)
    tier.set("k", "v")
    (tmp_path / "notes.txt").write_text("not a record")

    assert tier.keys() == ["k"]
    tier.clear()
    assert tier.keys() == []


def test_periodic_task_runs_and_stops():
    fired = threading.Event()
    task = PeriodicTask("test-task", fired.set, interval_ms=10)

    task.start()
    assert fired.wait(2.0)
    assert task.running

    task.stop()
    task.stop()
    assert not task.running


def test_periodic_task_survives_errors():
    calls = []

    def flaky():
        calls.append(1)
        if len(calls) == 1:
            raise RuntimeError("first run fails")

    done = threading.Event()
    task = PeriodicTask("flaky-task", lambda: (flaky(), len(calls) >= 2 and done.set()), interval_ms=10)

    task.start()
    try:
        assert done.wait(2.0)
    finally:
        task.stop()


def test_log_filter_masks_emails_and_secrets():
    sanitized = SecureLogFilter().sanitize("login bob@example.com password=hunter2 token: abc")

    assert "bob@" not in sanitized
    assert "b***@example.com" in sanitized
    assert "hunter2" not in sanitized
    assert "abc" not in sanitized


def test_secure_logger_writes_filtered_json(tmp_path):
    logger = get_secure_logger(
        "authguard.test_file_logger", enable_console=False, log_dir=tmp_path, enable_json=True,
    )
    try:
        logger.warning("lockout for bob@example.com secret=s3cr3t")
        for handler in logger.handlers:
            handler.flush()

        entry = json.loads((tmp_path / "authguard_test_file_logger.log").read_text().splitlines()[-1])
        assert entry["level"] == "WARNING"
        assert "bob@example.com" not in entry["message"]
        assert "s3cr3t" not in entry["message"]
    finally:
        for handler in list(logger.handlers):
            handler.close()
            logger.removeHandler(handler)


def test_secure_logger_configures_once():
    first = get_secure_logger("authguard.test_once", enable_console=False)
    second = get_secure_logger("authguard.test_once", level="ERROR", enable_console=False)

    assert first is second
    assert len(second.handlers) == 1
    assert second.level == logging.ERROR
    assert not second.propagate
