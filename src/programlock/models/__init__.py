from sqlalchemy.orm import declarative_base

Base = declarative_base()

from .lock import LockRecord  # noqa: F401
