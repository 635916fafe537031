from __future__ import annotations

from datetime import datetime
from typing import Optional

from sqlalchemy import delete, func, insert, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from programlock.lib.timestamps import to_store
from programlock.models import Base
from programlock.models.lock import LockRecord


# SQLSTATE for unique_violation (PostgreSQL) and ER_DUP_ENTRY (MySQL)
PG_UNIQUE_VIOLATION = "23505"
MYSQL_DUP_ENTRY = 1062


def is_duplicate_key(exc: IntegrityError) -> bool:
    """Tell whether an IntegrityError comes from a unique index violation."""
    orig = getattr(exc, "orig", None)
    if orig is None:
        return False
    sqlstate = getattr(orig, "sqlstate", None) or getattr(orig, "pgcode", None)
    if sqlstate == PG_UNIQUE_VIOLATION:
        return True
    args = getattr(orig, "args", ())
    if args and args[0] == MYSQL_DUP_ENTRY:
        return True
    message = str(orig)
    return "UNIQUE constraint failed" in message or "Duplicate entry" in message


class LockRepository:
    """Primitive operations on the lock table.

    Each method runs its own short transaction and commits it; on failure the
    session is rolled back and the error re-raised. Results are reported as
    the database gives them (row counts, found rows) without deciding whether
    the caller holds a lock.
    """

    def __init__(self, session: Session):
        self.session = session

    def ensure_schema(self) -> None:
        """Create the lock table and its unique index if missing."""
        Base.metadata.create_all(self.session.get_bind(), tables=[LockRecord.__table__])

    def insert(self, program: str, process: str, acquired_at: datetime, expires_at: datetime) -> bool:
        """Insert a lock row.

        Returns:
            True if the row was written, False if a row for ``program``
            already exists
        """
        stmt = insert(LockRecord).values(
            program=program,
            process=process,
            acquired_at=to_store(acquired_at),
            expires_at=to_store(expires_at),
        )
        try:
            self.session.execute(stmt)
            self.session.commit()
        except IntegrityError as e:
            self.session.rollback()
            if is_duplicate_key(e):
                return False
            raise
        except Exception:
            self.session.rollback()
            raise
        return True

    def update_expiration(self, program: str, process: str, expires_at: datetime) -> Optional[int]:
        """Move ``expires_at`` of the row held by ``process``.

        Returns:
            Number of rows updated, or None when the driver cannot report it
        """
        stmt = (
            update(LockRecord)
            .where(LockRecord.program == program, LockRecord.process == process)
            .values(expires_at=to_store(expires_at))
        )
        result = self._write(stmt)
        if not result.supports_sane_rowcount() or result.rowcount is None or result.rowcount < 0:
            return None
        return result.rowcount

    def delete(self, program: str, process: Optional[str] = None) -> int:
        """Delete the row for ``program``, only if held by ``process`` when given."""
        stmt = delete(LockRecord).where(LockRecord.program == program)
        if process is not None:
            stmt = stmt.where(LockRecord.process == process)
        return self._write(stmt).rowcount

    def delete_expired(self, now: datetime, program: Optional[str] = None) -> int:
        stmt = delete(LockRecord).where(LockRecord.expires_at < to_store(now))
        if program is not None:
            stmt = stmt.where(LockRecord.program == program)
        return self._write(stmt).rowcount

    def count_live(self, program: str, now: datetime) -> int:
        stmt = (
            select(func.count())
            .select_from(LockRecord)
            .where(LockRecord.program == program, LockRecord.expires_at >= to_store(now))
        )
        count = self.session.execute(stmt).scalar_one()
        # end the read transaction so the next poll sees other processes' writes
        self.session.commit()
        return count

    def find(self, program: str) -> Optional[LockRecord]:
        record = self.session.execute(
            select(LockRecord).where(LockRecord.program == program)
        ).scalar_one_or_none()
        if record is not None:
            # detach so attribute access after commit does not hit the database
            self.session.expunge(record)
        self.session.commit()
        return record

    def _write(self, stmt):
        try:
            result = self.session.execute(stmt)
            self.session.commit()
        except Exception:
            self.session.rollback()
            raise
        return result
