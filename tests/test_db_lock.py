import os
import threading
from datetime import datetime, timedelta, timezone

import pytest

from programlock.lib.clock import FixedClock
from programlock.lib.database import InMemoryAdapter, get_engine, get_sessionmaker, init_db
from programlock.lib.db_lock import DatabaseLock, LockNotAvailable, acquire_lock
from programlock.lib.identity import default_process_name


T0 = datetime(2024, 1, 1, 12, 0, 0, 123456, tzinfo=timezone.utc)


def make_locks(*processes, program="jobX"):
    """One lock per process, all sharing a database and a clock."""
    adapter = InMemoryAdapter()
    clock = FixedClock(T0)
    locks = [DatabaseLock(adapter.session(), program, p, clock=clock) for p in processes]
    return clock, locks


def test_only_one_of_many_contenders_acquires():
    clock, locks = make_locks("a", "b", "c", "d")

    winners = []
    for lock in locks:
        try:
            lock.acquire(60)
            winners.append(lock.process)
        except LockNotAvailable:
            pass

    assert winners == ["a"]
    assert locks[0].show()["process"] == "a"


def test_concurrent_acquires_have_a_single_winner(tmp_path):
    engine = get_engine(f"sqlite:///{tmp_path / 'locks.db'}")
    init_db(engine)
    # start the workers with an empty pool so each thread opens its own connection
    engine.dispose()
    Session = get_sessionmaker(engine)
    clock = FixedClock(T0)
    contenders = 8
    barrier = threading.Barrier(contenders)
    results = []

    def contend(i):
        lock = DatabaseLock(Session(), "jobX", f"worker-{i}", clock=clock, ensure_schema=False)
        barrier.wait()
        try:
            lock.acquire(60)
            results.append("won")
        except LockNotAvailable:
            results.append("lost")
        except Exception as e:
            results.append(repr(e))

    threads = [threading.Thread(target=contend, args=(i,)) for i in range(contenders)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()
    engine.dispose()

    assert sorted(results) == ["lost"] * (contenders - 1) + ["won"]


def test_expired_lock_is_taken_over():
    clock, (a, b) = make_locks("A", "B")

    a.acquire(60)
    with pytest.raises(LockNotAvailable) as excinfo:
        b.acquire(60)
    assert "B cannot acquire a lock for the program jobX" in str(excinfo.value)
    assert excinfo.value.program == "jobX"
    assert excinfo.value.process == "B"

    clock.advance(61)
    b.acquire(60)

    record = b.show()
    assert record["process"] == "B"
    assert datetime.fromisoformat(record["acquired_at"]) == T0 + timedelta(seconds=61)


def test_lock_is_still_held_at_expiration_instant():
    clock, (a, b) = make_locks("A", "B")
    a.acquire(60)

    clock.advance(60)
    with pytest.raises(LockNotAvailable):
        b.acquire(60)


def test_acquire_after_release_succeeds():
    clock, (a, b) = make_locks("A", "B")

    a.acquire()
    a.release()
    b.acquire()

    assert b.show()["process"] == "B"


def test_holder_cannot_acquire_twice():
    clock, (a,) = make_locks("A")
    a.acquire(60)

    with pytest.raises(LockNotAvailable):
        a.acquire(60)


def test_refresh_extends_expiration():
    clock, (a, b) = make_locks("A", "B")
    a.acquire(60)

    clock.advance(50)
    a.refresh(60)
    assert datetime.fromisoformat(a.show()["expires_at"]) == T0 + timedelta(seconds=110)

    # would have expired without the refresh
    clock.advance(20)
    with pytest.raises(LockNotAvailable):
        b.acquire(60)


def test_refresh_by_non_holder_fails():
    clock, (a, b) = make_locks("A", "B")
    a.acquire(60)

    with pytest.raises(LockNotAvailable) as excinfo:
        b.refresh(60)
    assert "B cannot refresh the lock for the program jobX" in str(excinfo.value)
    assert datetime.fromisoformat(a.show()["expires_at"]) == T0 + timedelta(seconds=60)


def test_refresh_after_expiration_fails():
    clock, (a,) = make_locks("A")
    a.acquire(60)

    clock.advance(61)
    with pytest.raises(LockNotAvailable):
        a.refresh(60)
    # the refresh swept the stale row
    assert a.show() is None


def test_refresh_without_row_count_falls_back_to_existence(monkeypatch):
    clock, (a, b) = make_locks("A", "B")
    for lock in (a, b):
        monkeypatch.setattr(lock.repository, "update_expiration", lambda *args: None)

    with pytest.raises(LockNotAvailable):
        a.refresh(60)

    a.acquire(60)
    a.refresh(60)
    # known caveat: without a row count, any existing row counts as success
    b.refresh(60)


def test_release_by_non_holder_keeps_the_lock():
    clock, (a, b) = make_locks("A", "B")
    a.acquire(60)

    with pytest.raises(LockNotAvailable) as excinfo:
        b.release()
    assert "B does not have a lock for jobX to release" in str(excinfo.value)
    assert a.show()["process"] == "A"


def test_forced_release_removes_any_holder():
    clock, (a, b) = make_locks("A", "B")
    a.acquire(60)

    b.release(force=True)

    assert a.show() is None
    b.acquire(60)


def test_release_without_lock_fails():
    clock, (a,) = make_locks("A")

    with pytest.raises(LockNotAvailable):
        a.release()
    with pytest.raises(LockNotAvailable):
        a.release(force=True)


def test_show_on_untouched_program_returns_none():
    clock, (a,) = make_locks("A")

    assert a.show() is None


def test_show_timestamps_round_trip_through_iso8601():
    clock, (a,) = make_locks("A")
    a.acquire(90)

    record = a.show()
    assert record == {
        "program": "jobX",
        "process": "A",
        "acquired_at": "2024-01-01T12:00:00.123456+00:00",
        "expires_at": "2024-01-01T12:01:30.123456+00:00",
    }
    assert datetime.fromisoformat(record["acquired_at"]) == T0
    assert datetime.fromisoformat(record["expires_at"]) == T0 + timedelta(seconds=90)


def test_show_reports_expired_rows_until_swept():
    clock, (a,) = make_locks("A")
    a.acquire(60)

    clock.advance(3600)
    assert a.show()["process"] == "A"


def test_locks_on_different_programs_are_independent():
    adapter = InMemoryAdapter()
    clock = FixedClock(T0)
    first = DatabaseLock(adapter.session(), "import", "A", clock=clock)
    second = DatabaseLock(adapter.session(), "export", "B", clock=clock)

    first.acquire(60)
    second.acquire(60)

    assert first.show()["process"] == "A"
    assert second.show()["process"] == "B"


@pytest.mark.parametrize("duration", [0, -5])
def test_non_positive_duration_is_rejected(duration):
    clock, (a,) = make_locks("A")

    with pytest.raises(ValueError):
        a.acquire(duration)
    a.acquire(60)
    with pytest.raises(ValueError):
        a.refresh(duration)


def test_context_manager_acquires_and_releases():
    clock, (a, b) = make_locks("A", "B")
    a.duration = 120

    with a as held:
        assert held is a
        assert datetime.fromisoformat(b.show()["expires_at"]) == T0 + timedelta(seconds=120)
        with pytest.raises(LockNotAvailable):
            b.acquire()

    assert b.show() is None


def test_context_manager_keeps_body_error_when_lock_was_lost():
    clock, (a, b) = make_locks("A", "B")
    a.duration = 60

    with pytest.raises(RuntimeError, match="body failure"):
        with a:
            clock.advance(120)
            b.acquire(60)
            raise RuntimeError("body failure")

    # the new holder keeps its lock
    assert b.show()["process"] == "B"


def test_context_manager_reports_lost_lock_when_body_succeeds():
    clock, (a, b) = make_locks("A", "B")
    a.duration = 60

    with pytest.raises(LockNotAvailable):
        with a:
            clock.advance(120)
            b.acquire(60)


def test_acquire_lock_helper_keeps_body_error():
    adapter = InMemoryAdapter()
    clock = FixedClock(T0)
    other = DatabaseLock(adapter.session(), "purge", "worker-2", clock=clock)

    with pytest.raises(ValueError, match="bad row"):
        with acquire_lock(adapter.session(), "purge", duration=30, process="worker-1", clock=clock):
            other.release(force=True)
            raise ValueError("bad row")

    assert other.show() is None


def test_acquire_lock_helper():
    adapter = InMemoryAdapter()
    clock = FixedClock(T0)

    with acquire_lock(adapter.session(), "purge", duration=30, process="worker-1", clock=clock) as lock:
        assert lock.show()["process"] == "worker-1"
        with pytest.raises(LockNotAvailable):
            with acquire_lock(adapter.session(), "purge", process="worker-2", clock=clock):
                pass

    assert lock.show() is None


def test_for_program_uses_host_and_pid():
    adapter = InMemoryAdapter()

    lock = DatabaseLock.for_program("jobX", adapter.session())

    assert lock.process == default_process_name()
    assert lock.process.endswith(f":{os.getpid()}")
