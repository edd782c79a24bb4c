"""Lock backend implementations.

Design principles:
- Ownership is defined by backend lock state (database session or registry).
- Every acquire/release is a single round trip to the primary node.
- A contested lock is a normal ``False`` outcome; only driver and transport
  failures surface as ``BackendError``.
"""

from __future__ import annotations

import hashlib
import logging
import math
import threading
import time
import uuid
from collections.abc import Callable
from dataclasses import dataclass
from enum import Enum
from typing import Any, Protocol, TypeVar

from sqlalchemy import create_engine, text
from sqlalchemy.engine import Connection, Engine
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.pool import NullPool

from db_mutex.core.constants import (
    BACKEND_MEMORY,
    BACKEND_MYSQL,
    BACKEND_POSTGRESQL,
    DEFAULT_POLL_INTERVAL,
    MYSQL_MAX_LOCK_NAME_LENGTH,
)
from db_mutex.core.exceptions import BackendError, ConfigurationError

T = TypeVar("T")


class AcquireStatus(Enum):
    """Outcome of a single acquire attempt."""

    ACQUIRED = "acquired"
    TIMED_OUT = "timed_out"  # Backend understood the request but did not grant the lock
    FAILED = "failed"  # Backend primitive itself errored


@dataclass
class AcquireResult:
    status: AcquireStatus
    error: BackendError | None = None


class LockBackend(Protocol):
    """Backend abstraction for named lock acquisition and release."""

    name: str
    max_name_length: int | None

    @property
    def session_id(self) -> object:
        """Identity of the open backend session, or None when no session is open.

        Locks belong to the session that took them. A different value means
        they were lost together with an earlier session.
        """

    def acquire_lock(self, name: str, timeout: float) -> bool:
        """Try acquiring ``name``, waiting up to ``timeout`` seconds. Returns True if acquired."""

    def release_lock(self, name: str) -> bool:
        """Release ``name``. Returns the backend's verdict on the release."""

    def close(self) -> None:
        """Close the backend session, releasing whatever the session still holds."""


def scalar_to_bool(value: Any) -> bool:
    """Interpret a lock function result: only an explicit success counts as True."""
    if value is None:
        return False
    if isinstance(value, bool):
        return value
    try:
        return int(value) == 1
    except (TypeError, ValueError):
        return False


class SqlLockConnection:
    """Dedicated database session used only for lock statements.

    Some lock functions tie ownership to the session that took the lock, so
    lock statements never go through a pool shared with ordinary queries. The
    engine must point at the primary (writable) node.
    """

    def __init__(self, engine: Engine, *, logger: logging.Logger | None = None):
        self.engine = engine
        self.logger = logger or logging.getLogger(__name__)
        self._connection: Connection | None = None
        self._generation = 0
        self._lock = threading.RLock()

    @classmethod
    def from_url(cls, dsn: str, *, logger: logging.Logger | None = None, **engine_kwargs: Any) -> SqlLockConnection:
        """Build a lock connection for the primary node at ``dsn``."""
        engine_kwargs.setdefault("poolclass", NullPool)
        try:
            engine = create_engine(dsn, **engine_kwargs)
        except (SQLAlchemyError, ImportError, ValueError) as e:
            raise ConfigurationError("Cannot create database engine", field="dsn", details=str(e)) from e
        return cls(engine, logger=logger)

    @property
    def driver_name(self) -> str:
        return self.engine.dialect.name

    @property
    def connected(self) -> bool:
        return self.session_generation is not None

    @property
    def session_generation(self) -> int | None:
        """Number of the open session, counting every reconnect; None when no usable session is open."""
        connection = self._connection
        if connection is None or connection.closed or connection.invalidated:
            return None
        return self._generation

    def use_primary(self, callback: Callable[[Connection], T]) -> T:
        """Run ``callback`` with the dedicated connection to the primary node."""
        with self._lock:
            connection = self._ensure_connection()
            try:
                return callback(connection)
            except SQLAlchemyError:
                if connection.invalidated or connection.closed:
                    self.logger.warning("Lock connection to %s was lost; it will be reopened", self.driver_name)
                    self._discard_connection()
                raise

    def query_scalar(self, sql: str, params: dict[str, Any]) -> Any:
        """Execute a parameterized statement and return its first column of the first row."""
        return self.use_primary(lambda connection: connection.execute(text(sql), params).scalar())

    def close(self) -> None:
        with self._lock:
            self._discard_connection()

    def _ensure_connection(self) -> Connection:
        if self._connection is not None and self._connection.invalidated:
            # An invalidated connection would silently reconnect under a new server session.
            self._discard_connection()
        if self._connection is None or self._connection.closed:
            connection = self.engine.connect()
            # Lock functions are session scoped; never leave them inside an open transaction.
            connection.execution_options(isolation_level="AUTOCOMMIT")
            self._connection = connection
            self._generation += 1
        return self._connection

    def _discard_connection(self) -> None:
        connection = self._connection
        self._connection = None
        if connection is None:
            return
        try:
            connection.close()
        except SQLAlchemyError:
            self.logger.debug("Ignoring error while closing lock connection", exc_info=True)


class _SqlLockBackend:
    """Shared plumbing for adapters that speak SQL through a ``SqlLockConnection``."""

    name = ""
    max_name_length: int | None = None
    supported_drivers: frozenset[str] = frozenset()

    def __init__(self, connection: SqlLockConnection):
        if connection.driver_name not in self.supported_drivers:
            raise ConfigurationError(
                f"In order to use {type(self).__name__} the connection must be configured for "
                f"{' or '.join(sorted(self.supported_drivers))}",
                field="dsn",
                driver_name=connection.driver_name,
            )
        self.connection = connection

    @property
    def session_id(self) -> int | None:
        return self.connection.session_generation

    def close(self) -> None:
        self.connection.close()

    def _query_scalar(self, operation: str, lock_name: str, sql: str, params: dict[str, Any]) -> Any:
        try:
            return self.connection.query_scalar(sql, params)
        except SQLAlchemyError as e:
            raise BackendError(
                f"{self.name} lock backend failed",
                operation=operation,
                lock_name=lock_name,
                details=str(e).splitlines()[0] if str(e) else type(e).__name__,
                original_error=e,
            ) from e


class MysqlLockBackend(_SqlLockBackend):
    """MySQL/MariaDB named locks via ``GET_LOCK`` and ``RELEASE_LOCK``.

    ``GET_LOCK`` returns 1 when granted, 0 on timeout and NULL on error (for
    example a killed thread); anything but 1 is reported as not acquired.
    ``GET_LOCK(name, 0)`` is a non-blocking single attempt.
    """

    name = BACKEND_MYSQL
    max_name_length = MYSQL_MAX_LOCK_NAME_LENGTH
    supported_drivers = frozenset({"mysql", "mariadb"})

    def acquire_lock(self, name: str, timeout: float) -> bool:
        # GET_LOCK takes whole seconds.
        seconds = math.ceil(timeout)
        result = self._query_scalar(
            "acquire", name, "SELECT GET_LOCK(:name, :timeout)", {"name": name, "timeout": seconds}
        )
        return scalar_to_bool(result)

    def release_lock(self, name: str) -> bool:
        result = self._query_scalar("release", name, "SELECT RELEASE_LOCK(:name)", {"name": name})
        return scalar_to_bool(result)


def advisory_lock_key(name: str) -> int:
    """Map a lock name onto the signed 64-bit key space of Postgres advisory locks."""
    digest = hashlib.blake2b(name.encode("utf-8"), digest_size=8).digest()
    return int.from_bytes(digest, "big", signed=True)


class PostgresLockBackend(_SqlLockBackend):
    """Postgres session-level advisory locks.

    Postgres has no timed variant of ``pg_try_advisory_lock``, so a positive
    timeout is emulated by re-trying every ``poll_interval`` seconds until the
    deadline passes. Lock names are hashed to 64-bit keys; there is no name
    length limit.
    """

    name = BACKEND_POSTGRESQL
    max_name_length = None
    supported_drivers = frozenset({"postgresql"})

    def __init__(self, connection: SqlLockConnection, poll_interval: float = DEFAULT_POLL_INTERVAL):
        super().__init__(connection)
        if poll_interval <= 0:
            raise ConfigurationError("poll_interval must be positive", field="poll_interval")
        self.poll_interval = poll_interval

    def acquire_lock(self, name: str, timeout: float) -> bool:
        params = {"key": advisory_lock_key(name)}
        deadline = time.monotonic() + timeout
        while True:
            if scalar_to_bool(self._query_scalar("acquire", name, "SELECT pg_try_advisory_lock(:key)", params)):
                return True
            remaining = deadline - time.monotonic()
            if remaining <= 0:
                return False
            time.sleep(min(self.poll_interval, remaining))

    def release_lock(self, name: str) -> bool:
        result = self._query_scalar(
            "release", name, "SELECT pg_advisory_unlock(:key)", {"key": advisory_lock_key(name)}
        )
        return scalar_to_bool(result)


class MemoryLockRegistry:
    """Process-local lock table with atomic test-and-set and timed waits."""

    def __init__(self) -> None:
        self._owners: dict[str, str] = {}
        self._condition = threading.Condition()

    def try_acquire(self, name: str, owner: str, timeout: float) -> bool:
        deadline = time.monotonic() + timeout
        with self._condition:
            while True:
                current = self._owners.get(name)
                if current is None or current == owner:
                    self._owners[name] = owner
                    return True
                remaining = deadline - time.monotonic()
                if remaining <= 0:
                    return False
                self._condition.wait(remaining)

    def release(self, name: str, owner: str) -> bool:
        with self._condition:
            if self._owners.get(name) != owner:
                return False
            del self._owners[name]
            self._condition.notify_all()
            return True

    def release_owner(self, owner: str) -> list[str]:
        """Drop every lock held by ``owner``, like a closed database session."""
        with self._condition:
            released = [name for name, current in self._owners.items() if current == owner]
            for name in released:
                del self._owners[name]
            if released:
                self._condition.notify_all()
            return released

    def owner_of(self, name: str) -> str | None:
        with self._condition:
            return self._owners.get(name)


_DEFAULT_MEMORY_REGISTRY = MemoryLockRegistry()


class MemoryLockBackend:
    """In-process backend; every instance acts as one session of the registry."""

    name = BACKEND_MEMORY

    def __init__(self, registry: MemoryLockRegistry | None = None, max_name_length: int | None = None):
        self.registry = registry or _DEFAULT_MEMORY_REGISTRY
        self.max_name_length = max_name_length
        self.session_id = str(uuid.uuid4())

    def acquire_lock(self, name: str, timeout: float) -> bool:
        return self.registry.try_acquire(name, self.session_id, timeout)

    def release_lock(self, name: str) -> bool:
        return self.registry.release(name, self.session_id)

    def close(self) -> None:
        self.registry.release_owner(self.session_id)
