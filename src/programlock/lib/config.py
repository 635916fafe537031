"""Configuration loading for the programlock CLI.

Settings come from a JSON object (``config.json`` by default), are overridden
by ``PROGRAMLOCK_*`` environment variables, and finally by command-line flags.

Example config.json:
    {
        "database": "mysql+pymysql://locks:secret@db/locks",
        "program": "nightly-import",
        "duration": 7200,
        "polling": 15,
        "maximum_wait": 1800
    }
"""
from __future__ import annotations

import json
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Mapping, Optional

from programlock.lib.database import normalize_db_url


DEFAULT_CONFIG_PATH = "config.json"
DEFAULT_DATABASE = "sqlite:///programlock.db"

ENV_OVERRIDES = {
    "PROGRAMLOCK_DATABASE": "database",
    "PROGRAMLOCK_PROGRAM": "program",
    "PROGRAMLOCK_PROCESS": "process",
}


class ConfigError(ValueError):
    """Raised when the configuration file or its values are invalid."""
    pass


@dataclass
class LockConfig:
    database: str = DEFAULT_DATABASE
    program: Optional[str] = None
    process: Optional[str] = None
    duration: int = 3600
    polling: int = 30
    maximum_wait: int = 3600
    source: Optional[Path] = field(default=None, compare=False)


def load_config(path: Optional[str] = None, environ: Optional[Mapping[str, str]] = None) -> LockConfig:
    """Load settings from ``path`` and apply environment overrides.

    A missing file is not an error: defaults are used. When ``path`` is None
    the ``config.json`` in the current directory is tried.

    Raises:
        ConfigError: If the file cannot be parsed or a value is invalid
    """
    environ = os.environ if environ is None else environ
    p = Path(path or DEFAULT_CONFIG_PATH)

    raw: dict[str, Any] = {}
    source = None
    if p.exists():
        try:
            with p.open("r", encoding="utf-8") as fh:
                raw = json.load(fh)
        except (OSError, json.JSONDecodeError) as e:
            raise ConfigError(f"failed to load config from {p}: {e}") from e
        if not isinstance(raw, dict):
            raise ConfigError(f"config file {p} must contain a JSON object")
        source = p
    elif path:
        raise ConfigError(f"config file not found: {p}")

    for env_name, key in ENV_OVERRIDES.items():
        if environ.get(env_name):
            raw[key] = environ[env_name]

    return _validate(raw, source)


def _validate(raw: dict[str, Any], source: Optional[Path]) -> LockConfig:
    cfg = LockConfig(source=source)
    cfg.database = normalize_db_url(str(raw.get("database") or DEFAULT_DATABASE))
    cfg.program = str(raw["program"]) if raw.get("program") else None
    cfg.process = str(raw["process"]) if raw.get("process") else None
    cfg.duration = _positive_int(raw, "duration", cfg.duration)
    cfg.polling = _positive_int(raw, "polling", cfg.polling)
    cfg.maximum_wait = _positive_int(raw, "maximum_wait", cfg.maximum_wait, allow_zero=True)
    return cfg


def _positive_int(raw: dict[str, Any], key: str, default: int, allow_zero: bool = False) -> int:
    value = raw.get(key)
    if value is None:
        return default
    # bool is an int subclass; reject it explicitly
    if isinstance(value, bool):
        raise ConfigError(f"{key} must be an integer number of seconds, got {value!r}")
    try:
        number = int(value)
    except (TypeError, ValueError):
        raise ConfigError(f"{key} must be an integer number of seconds, got {value!r}")
    if number < 0 or (number == 0 and not allow_zero):
        raise ConfigError(f"{key} must be positive, got {number}")
    return number
