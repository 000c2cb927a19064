import threading

import pytest

from spokable.credentials import BACKUP, PRIMARY, CredentialSet


def test_acquire_returns_primary_first():
    credentials = CredentialSet(["primary-key-0001", "backup-key-0002"])

    assert credentials.acquire() == (PRIMARY, "primary-key-0001")
    assert credentials.has_backup
    assert len(credentials) == 2


def test_empty_keys_are_dropped():
    credentials = CredentialSet(["primary-key", "", "  "])

    assert len(credentials) == 1
    assert not credentials.has_backup
    assert credentials.report_failure(PRIMARY) is False


def test_no_keys_acquire_nothing():
    credentials = CredentialSet([])

    assert credentials.acquire() == (None, None)
    assert credentials.current_key_redacted() == "No key"


def test_more_than_two_keys_rejected():
    with pytest.raises(ValueError):
        CredentialSet(["a", "b", "c"])


def test_failure_switches_once_and_success_resets():
    credentials = CredentialSet(["primary-key-0001", "backup-key-0002"])

    assert credentials.report_failure(PRIMARY) is True
    assert credentials.acquire() == (BACKUP, "backup-key-0002")
    # A stale report for the primary key does not flip the index back.
    assert credentials.report_failure(PRIMARY) is False
    assert credentials.report_failure(BACKUP) is False
    assert credentials.active_index == BACKUP

    credentials.report_success(BACKUP)
    assert credentials.active_index == PRIMARY
    assert credentials.switch_count == 1


def test_simultaneous_failures_switch_exactly_once():
    credentials = CredentialSet(["primary-key-0001", "backup-key-0002"])
    barrier = threading.Barrier(8)
    results = []
    lock = threading.Lock()

    def worker():
        barrier.wait()
        switched = credentials.report_failure(PRIMARY)
        with lock:
            results.append(switched)

    threads = [threading.Thread(target=worker) for _ in range(8)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()

    assert results.count(True) == 1
    assert credentials.active_index == BACKUP
    assert credentials.switch_count == 1
