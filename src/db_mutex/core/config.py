"""Configuration dataclasses for db-mutex.

These dataclasses centralize the options needed to build a mutex. They can be
created from environment variables, from parsed command-line arguments, or
used directly in code.
"""

from __future__ import annotations

import argparse
import os
from dataclasses import dataclass, field

from dotenv import find_dotenv, load_dotenv

from db_mutex.core.constants import (
    BACKEND_AUTO,
    DEFAULT_POLL_INTERVAL,
    DEFAULT_TIMEOUT,
    ENV_AUTO_RELEASE,
    ENV_BACKEND,
    ENV_DEFAULT_TIMEOUT,
    ENV_DSN,
    ENV_LOG_FORMAT,
    ENV_LOG_LEVEL,
    ENV_POLL_INTERVAL,
    FALSY_ENV_VALUES,
    TRUTHY_ENV_VALUES,
)
from db_mutex.core.exceptions import ConfigurationError


@dataclass
class LogConfig:
    """Configuration for logging behavior.

    Attributes:
        level: Logging level string (default: "INFO")
        format: "text" or "json" (default: "text")
        file: Optional log file path; console only when unset
    """

    level: str = "INFO"
    format: str = "text"
    file: str | None = None


@dataclass
class MutexConfig:
    """Configuration for building a database-backed mutex.

    Attributes:
        dsn: SQLAlchemy database URL of the primary (writable) node
        backend: Adapter name: auto, mysql, postgresql or memory (default: auto)
        default_timeout: Seconds to wait when acquire() gets no timeout (default: 0)
        auto_release: Release held locks at interpreter exit (default: True)
        poll_interval: Seconds between attempts for polling adapters (default: 0.1)
        log: Logging configuration
    """

    dsn: str | None = None
    backend: str = BACKEND_AUTO
    default_timeout: float = DEFAULT_TIMEOUT
    auto_release: bool = True
    poll_interval: float = DEFAULT_POLL_INTERVAL
    log: LogConfig = field(default_factory=LogConfig)

    @classmethod
    def from_env(cls, *, dotenv: bool = True) -> MutexConfig:
        """Create configuration from environment variables (and a .env file)."""
        if dotenv:
            load_dotenv(find_dotenv(usecwd=True))
        return cls(
            dsn=os.environ.get(ENV_DSN) or None,
            backend=os.environ.get(ENV_BACKEND, BACKEND_AUTO),
            default_timeout=_env_float(ENV_DEFAULT_TIMEOUT, DEFAULT_TIMEOUT),
            auto_release=_env_bool(ENV_AUTO_RELEASE, True),
            poll_interval=_env_float(ENV_POLL_INTERVAL, DEFAULT_POLL_INTERVAL),
            log=LogConfig(
                level=os.environ.get(ENV_LOG_LEVEL, "INFO"),
                format=os.environ.get(ENV_LOG_FORMAT, "text"),
            ),
        )

    @classmethod
    def from_args(cls, args: argparse.Namespace, base: MutexConfig | None = None) -> MutexConfig:
        """Create configuration from parsed command-line arguments.

        Values missing from ``args`` (or left as ``None``) fall back to ``base``.
        """
        base = base or cls()

        def _pick(name: str, default: object) -> object:
            value = getattr(args, name, None)
            return default if value is None else value

        return cls(
            dsn=_pick("dsn", base.dsn),
            backend=_pick("backend", base.backend),
            default_timeout=_pick("timeout", base.default_timeout),
            auto_release=base.auto_release,
            poll_interval=_pick("poll_interval", base.poll_interval),
            log=LogConfig(
                level=_pick("log_level", base.log.level),
                format=_pick("log_format", base.log.format),
                file=_pick("log_file", base.log.file),
            ),
        )


def _env_float(name: str, default: float) -> float:
    raw = os.environ.get(name)
    if raw is None or not raw.strip():
        return default
    try:
        return float(raw)
    except ValueError as e:
        raise ConfigurationError(f"Invalid number in {name}", field=name, details=repr(raw)) from e


def _env_bool(name: str, default: bool) -> bool:
    raw = os.environ.get(name)
    if raw is None or not raw.strip():
        return default
    value = raw.strip().lower()
    if value in TRUTHY_ENV_VALUES:
        return True
    if value in FALSY_ENV_VALUES:
        return False
    raise ConfigurationError(f"Invalid boolean in {name}", field=name, details=repr(raw))
