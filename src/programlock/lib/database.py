from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool
from urllib.parse import quote_plus, unquote_plus, urlparse, urlunparse
import os


MEMORY_URL = "sqlite:///:memory:"


def get_engine(url: str | None = None):
    """Create a SQLAlchemy engine. Defaults to in-memory SQLite when url is None.

    In-memory SQLite uses a single shared connection so that every session
    created from the engine sees the same lock table.
    """
    url = normalize_db_url(url or MEMORY_URL)
    if url in (MEMORY_URL, "sqlite://"):
        return create_engine(
            url,
            echo=False,
            future=True,
            connect_args={"check_same_thread": False},
            poolclass=StaticPool,
        )
    # pool_pre_ping avoids handing out connections the server already dropped
    return create_engine(url, echo=False, future=True, pool_pre_ping=True)


def normalize_db_url(value: str) -> str:
    """Normalize different DB connection representations into a SQLAlchemy URL.

    - URLs (containing '://') are returned as-is, except that credentials are
      percent-encoded.
    - Semicolon-separated MySQL-style strings (server=..;user=..;...) become
      ``mysql+pymysql`` URLs.
    - Anything that looks like a filesystem path becomes a SQLite URL.
    """
    if not value:
        return value

    if "://" in value:
        return _encode_credentials(value)

    if "=" in value and ";" in value:
        url = _mysql_dsn_to_url(value)
        if url:
            return url

    path = value.replace("\\", "/")
    if os.path.exists(path) or "/" in path or path.endswith(".db"):
        return f"sqlite:///{path}"

    return value


def _encode_credentials(value: str) -> str:
    parsed = urlparse(value)
    if not (parsed.username or parsed.password):
        return value
    # unquote first so already-encoded credentials are not double-encoded
    username = quote_plus(unquote_plus(parsed.username)) if parsed.username else ""
    userinfo = username
    if parsed.password is not None:
        userinfo = f"{userinfo}:{quote_plus(unquote_plus(parsed.password))}"
    hostport = parsed.hostname or ""
    if parsed.port:
        hostport = f"{hostport}:{parsed.port}"
    return urlunparse(parsed._replace(netloc=f"{userinfo}@{hostport}"))


def _mysql_dsn_to_url(value: str) -> str | None:
    kv = {}
    for part in value.split(";"):
        if "=" in part:
            k, v = part.split("=", 1)
            kv[k.strip().lower()] = v.strip()

    host = kv.get("server") or kv.get("host")
    user = kv.get("user") or kv.get("uid") or kv.get("username")
    password = kv.get("password") or kv.get("pwd") or ""
    database = kv.get("database") or kv.get("initial catalog") or kv.get("dbname")
    if not (host and user and database):
        return None

    port = f":{kv['port']}" if kv.get("port") else ""
    return f"mysql+pymysql://{quote_plus(user)}:{quote_plus(password)}@{host}{port}/{database}"


def get_sessionmaker(engine):
    return sessionmaker(bind=engine, expire_on_commit=False)


def init_db(engine):
    """Create the lock table and its indexes if they do not exist yet."""
    # Import models lazily to avoid circular imports at package import time
    from programlock.models import Base

    Base.metadata.create_all(engine)


class InMemoryAdapter:
    """Lightweight in-memory DB adapter for tests.

    Every session shares one database, so several ``DatabaseLock`` instances
    built from ``adapter.session()`` behave like independent processes.

    Usage:
        adapter = InMemoryAdapter()
        session = adapter.session()
    """

    def __init__(self):
        self.engine = get_engine(MEMORY_URL)
        self.Session = get_sessionmaker(self.engine)
        init_db(self.engine)

    def session(self):
        return self.Session()
