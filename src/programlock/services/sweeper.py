import logging
from datetime import datetime

from programlock.services.repository import LockRepository


logger = logging.getLogger(__name__)


class ExpirationSweeper:
    """Removes lock rows whose ``expires_at`` has passed.

    There is no background task: the lock protocol calls the sweeper before
    each acquire and refresh, which is how a crashed holder's lock is
    eventually reclaimed.
    """

    def __init__(self, repository: LockRepository):
        self.repository = repository

    def remove_expired_locks(self, program: str, now: datetime) -> int:
        removed = self.repository.delete_expired(now, program=program)
        if removed:
            logger.debug("Removed %d expired lock(s) for %s", removed, program)
        return removed

    def sweep_all(self, now: datetime) -> int:
        """Remove expired locks of every program."""
        removed = self.repository.delete_expired(now)
        if removed:
            logger.info("Removed %d expired lock(s)", removed)
        return removed
