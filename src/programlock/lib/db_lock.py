"""Database-level locking for coordinating processes across machines.

A lock is a row in the ``program_locks`` table. The UNIQUE index on the
program name lets the database decide which of several concurrent inserts
wins; every row carries an expiration so that a lock held by a crashed
process is reclaimed by the next acquirer.

The lock is best-effort: once ``expires_at`` has passed another process may
take over even if the original holder is still running, so long-running
holders must call ``refresh`` before their lock expires.
"""
from __future__ import annotations

import logging
import time
from contextlib import contextmanager
from datetime import timedelta
from typing import Callable, Generator, Optional

from sqlalchemy.orm import Session

from programlock.lib.clock import Clock, SystemClock
from programlock.lib.identity import default_process_name
from programlock.lib.timestamps import to_iso8601
from programlock.services.repository import LockRepository
from programlock.services.sweeper import ExpirationSweeper


logger = logging.getLogger(__name__)

DEFAULT_DURATION = 3600
DEFAULT_POLLING = 30
DEFAULT_MAXIMUM_WAIT = 3600


class LockNotAvailable(Exception):
    """Raised when another process prevents the requested lock operation."""

    def __init__(self, message: str, program: str, process: str):
        super().__init__(message)
        self.program = program
        self.process = process


class DatabaseLock:
    """TTL lock on a named program, shared through a database table.

    Usage:
        lock = DatabaseLock.for_program("nightly-import", session)
        lock.acquire(duration=600)
        try:
            ...
            lock.refresh(duration=600)
        finally:
            lock.release()

    or as a context manager, which acquires on entry and releases on exit:

        with DatabaseLock(session, "nightly-import", "worker-1", duration=600):
            ...

    Nothing about the lock is cached locally: every call goes to the database.
    """

    def __init__(
        self,
        session: Session,
        program: str,
        process: str,
        clock: Optional[Clock] = None,
        sleep: Callable[[float], None] = time.sleep,
        duration: int = DEFAULT_DURATION,
        ensure_schema: bool = True,
    ):
        """Initialize the lock.

        Args:
            session: SQLAlchemy session bound to the shared database
            program: Name of the protected resource
            process: Identity of this holder (see ``default_process_name``)
            clock: Time source (default: ``SystemClock``)
            sleep: Delay function used by ``wait`` (default: ``time.sleep``)
            duration: Lock lifetime in seconds used by the context manager
            ensure_schema: Create the lock table and unique index if missing
        """
        self.repository = LockRepository(session)
        self.sweeper = ExpirationSweeper(self.repository)
        self.program = program
        self.process = process
        self.clock = clock or SystemClock()
        self.sleep = sleep
        self.duration = duration
        if ensure_schema:
            self.repository.ensure_schema()

    @classmethod
    def for_program(cls, program: str, session: Session, **kwargs) -> "DatabaseLock":
        """Build a lock identified by this host name and process id."""
        return cls(session, program, default_process_name(), **kwargs)

    def acquire(self, duration: int = DEFAULT_DURATION) -> None:
        """Take the lock for ``duration`` seconds.

        Expired locks for the program are removed first.

        Raises:
            LockNotAvailable: If another live lock exists for the program
            ValueError: If duration is not positive
        """
        _check_duration(duration)
        now = self.clock.current()
        self.sweeper.remove_expired_locks(self.program, now)

        inserted = self.repository.insert(
            self.program, self.process, now, now + timedelta(seconds=duration)
        )
        if not inserted:
            logger.info("%s could not acquire %s: already held", self.process, self.program)
            raise LockNotAvailable(
                f"{self.process} cannot acquire a lock for the program {self.program}",
                self.program,
                self.process,
            )
        logger.info("%s acquired %s for %ss", self.process, self.program, duration)

    def refresh(self, duration: int = DEFAULT_DURATION) -> None:
        """Extend a held lock so it expires ``duration`` seconds from now.

        Raises:
            LockNotAvailable: If this process no longer holds the lock
            ValueError: If duration is not positive
        """
        _check_duration(duration)
        now = self.clock.current()
        self.sweeper.remove_expired_locks(self.program, now)

        updated = self.repository.update_expiration(
            self.program, self.process, now + timedelta(seconds=duration)
        )
        if not self._refreshed(updated):
            raise LockNotAvailable(
                f"{self.process} cannot refresh the lock for the program {self.program}",
                self.program,
                self.process,
            )
        logger.info("%s refreshed %s for %ss", self.process, self.program, duration)

    def _refreshed(self, updated: Optional[int]) -> bool:
        if updated is not None:
            return updated == 1
        # The driver could not report a row count, so fall back to checking
        # that a lock row still exists. This cannot tell our row apart from
        # one written by another process.
        return self.show() is not None

    def release(self, force: bool = False) -> None:
        """Delete the lock row.

        Args:
            force: Remove the lock whoever holds it

        Raises:
            LockNotAvailable: If no lock (held by this process, unless forced) exists
        """
        deleted = self.repository.delete(self.program, None if force else self.process)
        if deleted != 1:
            raise LockNotAvailable(
                f"{self.process} does not have a lock for {self.program} to release",
                self.program,
                self.process,
            )
        logger.info("%s released %s%s", self.process, self.program, " (forced)" if force else "")

    def show(self) -> Optional[dict]:
        """Return the stored lock for the program, or None.

        Expired rows that have not been swept yet are reported as they are.
        """
        record = self.repository.find(self.program)
        if record is None:
            return None
        return {
            "program": record.program,
            "process": record.process,
            "acquired_at": to_iso8601(record.acquired_at),
            "expires_at": to_iso8601(record.expires_at),
        }

    def wait(self, polling: int = DEFAULT_POLLING, maximum_wait: int = DEFAULT_MAXIMUM_WAIT) -> None:
        """Block until no live lock exists for the program.

        The lock is not acquired: callers still have to race for it with
        ``acquire``.

        Args:
            polling: Seconds to sleep between checks
            maximum_wait: Seconds after which to give up

        Raises:
            LockNotAvailable: If the lock is still held after ``maximum_wait``
        """
        if polling <= 0:
            raise ValueError(f"polling must be positive, got {polling}")
        if maximum_wait < 0:
            raise ValueError(f"maximum_wait must not be negative, got {maximum_wait}")

        deadline = self.clock.current() + timedelta(seconds=maximum_wait)
        while True:
            now = self.clock.current()
            if not self.repository.count_live(self.program, now):
                return
            if now > deadline:
                raise LockNotAvailable(
                    f"{self.process} has been waiting up until {deadline.isoformat()} "
                    f"for the lock {self.program} ({maximum_wait} seconds polling every "
                    f"{polling} seconds), but it is still not available "
                    f"(now is {now.isoformat()}).",
                    self.program,
                    self.process,
                )
            logger.debug("%s is held, checking again in %ss", self.program, polling)
            self.sleep(polling)

    def __enter__(self) -> DatabaseLock:
        self.acquire(self.duration)
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> None:
        if exc_type is None:
            self.release()
            return
        # keep the body's exception; a lost lock is only worth a warning here
        try:
            self.release()
        except LockNotAvailable as e:
            logger.warning("Could not release %s after error: %s", self.program, e)


def _check_duration(duration: int) -> None:
    if duration <= 0:
        raise ValueError(f"duration must be positive, got {duration}")


@contextmanager
def acquire_lock(
    session: Session,
    program: str,
    duration: int = DEFAULT_DURATION,
    process: Optional[str] = None,
    clock: Optional[Clock] = None,
) -> Generator[DatabaseLock, None, None]:
    """Convenience context manager for holding a program lock.

    Raises:
        LockNotAvailable: If the lock is already held

    Example:
        with acquire_lock(session, "purge", duration=7200) as lock:
            ...
            lock.refresh(7200)
    """
    lock = DatabaseLock(
        session,
        program,
        process or default_process_name(),
        clock=clock,
        duration=duration,
    )
    with lock:
        yield lock
