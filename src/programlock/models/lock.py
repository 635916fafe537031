"""Lock record model shared by every process coordinating on a program."""
from sqlalchemy import Column, Integer, String, DateTime, Index
from sqlalchemy.dialects import mysql
from programlock.models import Base


# MySQL DATETIME drops fractional seconds unless fsp is given
Timestamp = DateTime().with_variant(mysql.DATETIME(fsp=6), "mysql")


class LockRecord(Base):
    """One row per locked program.

    The UNIQUE constraint on ``program`` is what makes the lock mutually
    exclusive: whichever insert the database accepts first wins.

    Timestamps are naive UTC values; convert with ``programlock.lib.timestamps``.
    """
    __tablename__ = "program_locks"

    id = Column(Integer, primary_key=True)
    # String(255) so the unique index fits MySQL key length limits
    program = Column(String(255), nullable=False)
    process = Column(String(255), nullable=False)
    acquired_at = Column(Timestamp, nullable=False)
    expires_at = Column(Timestamp, nullable=False)

    __table_args__ = (
        Index("ux_program_locks_program", "program", unique=True),
        Index("ix_program_locks_expires_at", "expires_at"),
    )

    def __repr__(self) -> str:
        return f"<LockRecord program={self.program!r} process={self.process!r} expires_at={self.expires_at}>"
