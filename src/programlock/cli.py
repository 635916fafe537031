import argparse
import json
import logging
import time
from typing import Optional

from programlock.lib.clock import SystemClock
from programlock.lib.config import LockConfig, load_config
from programlock.lib.database import get_engine, get_sessionmaker, normalize_db_url
from programlock.lib.db_lock import DatabaseLock, LockNotAvailable
from programlock.lib.identity import default_process_name
from programlock.services.repository import LockRepository
from programlock.services.sweeper import ExpirationSweeper


def _resolve_config(args) -> LockConfig:
    cfg = load_config(getattr(args, "config", None))
    # CLI overrides (if provided) take precedence over config file and environment
    if getattr(args, "database", None):
        cfg.database = normalize_db_url(args.database)
    if getattr(args, "program", None):
        cfg.program = args.program
    if getattr(args, "process", None):
        cfg.process = args.process
    return cfg


def _pick(args, name: str, default: int) -> int:
    value = getattr(args, name, None)
    return default if value is None else value


def _build_lock(args, session, cfg: LockConfig) -> DatabaseLock:
    return DatabaseLock(
        session,
        cfg.program,
        cfg.process or default_process_name(),
        clock=getattr(args, "clock", None),
        sleep=getattr(args, "sleep", None) or time.sleep,
    )


def acquire(args, lock: DatabaseLock, cfg: LockConfig) -> int:
    duration = _pick(args, "duration", cfg.duration)
    lock.acquire(duration)
    print(f"Lock acquired: {lock.program} by {lock.process} for {duration}s")
    return 0


def refresh(args, lock: DatabaseLock, cfg: LockConfig) -> int:
    duration = _pick(args, "duration", cfg.duration)
    lock.refresh(duration)
    print(f"Lock refreshed: {lock.program} by {lock.process} for {duration}s")
    return 0


def release(args, lock: DatabaseLock, cfg: LockConfig) -> int:
    force = bool(getattr(args, "force", False))
    lock.release(force=force)
    print(f"Lock released: {lock.program}{' (forced)' if force else ''}")
    return 0


def show(args, lock: DatabaseLock, cfg: LockConfig) -> int:
    record = lock.show()
    if record is None:
        print(f"No lock held for {lock.program}")
        return 1
    print(json.dumps(record, indent=2))
    return 0


def wait(args, lock: DatabaseLock, cfg: LockConfig) -> int:
    polling = _pick(args, "polling", cfg.polling)
    maximum_wait = _pick(args, "maximum_wait", cfg.maximum_wait)
    print(f"Waiting for {lock.program} (polling every {polling}s, at most {maximum_wait}s)...")
    lock.wait(polling, maximum_wait)
    print(f"Lock {lock.program} is available")
    return 0


def sweep(args, session, cfg: LockConfig) -> int:
    """Remove expired locks of every program."""
    repository = LockRepository(session)
    repository.ensure_schema()
    clock = getattr(args, "clock", None) or SystemClock()
    removed = ExpirationSweeper(repository).sweep_all(clock.current())
    print(f"Removed {removed} expired lock(s)")
    return 0


def run(args) -> int:
    # sessions passed in by the caller are left open for them
    session = getattr(args, "session", None)
    owned = session is None
    try:
        cfg = _resolve_config(args)
        if args.cmd != "sweep" and not cfg.program:
            print("ERROR: no program given (use --program or set it in config.json)")
            return 2
        if owned:
            session = get_sessionmaker(get_engine(cfg.database))()
        if args.cmd == "sweep":
            return sweep(args, session, cfg)
        lock = _build_lock(args, session, cfg)
        return args.func(args, lock, cfg)
    except (LockNotAvailable, ValueError) as e:
        print(f"ERROR: {e}")
        return 1
    finally:
        if owned and session is not None:
            engine = session.get_bind()
            session.close()
            engine.dispose()


def main(argv: Optional[list] = None) -> int:
    parser = argparse.ArgumentParser(prog="programlock", description="Database-backed program locks")
    parser.add_argument("--config", help="Path to JSON config file (default: config.json)")
    parser.add_argument("--database", help="Override config: database URL or SQLite path")
    parser.add_argument("--program", help="Override config: name of the program to lock")
    parser.add_argument("--process", help="Override config: holder identity (default: hostname:pid)")
    parser.add_argument("--verbose", action="store_true", help="Log lock activity to stderr")
    sub = parser.add_subparsers(dest="cmd")

    p_acquire = sub.add_parser("acquire", help="Take the lock")
    p_acquire.add_argument("--duration", type=int, help="Seconds the lock stays valid")
    p_acquire.set_defaults(func=acquire)

    p_refresh = sub.add_parser("refresh", help="Extend a held lock")
    p_refresh.add_argument("--duration", type=int, help="Seconds from now the lock stays valid")
    p_refresh.set_defaults(func=refresh)

    p_release = sub.add_parser("release", help="Give the lock back")
    p_release.add_argument("--force", action="store_true", help="Release even if another process holds it")
    p_release.set_defaults(func=release)

    p_show = sub.add_parser("show", help="Print the stored lock as JSON")
    p_show.set_defaults(func=show)

    p_wait = sub.add_parser("wait", help="Block until the lock is free")
    p_wait.add_argument("--polling", type=int, help="Seconds between checks")
    p_wait.add_argument("--maximum-wait", type=int, help="Seconds to wait before giving up")
    p_wait.set_defaults(func=wait)

    p_sweep = sub.add_parser("sweep", help="Remove expired locks of all programs")
    p_sweep.set_defaults(func=sweep)

    args = parser.parse_args(argv)
    if args.verbose:
        logging.basicConfig(level=logging.DEBUG, format="%(asctime)s %(name)s %(levelname)s: %(message)s")
    if hasattr(args, "func"):
        return run(args)
    parser.print_help()
    return 1


if __name__ == "__main__":
    raise SystemExit(main())
