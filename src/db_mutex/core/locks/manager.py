"""Mutex orchestrating held-lock bookkeeping on top of a lock backend."""

from __future__ import annotations

import atexit
import logging
import math
import numbers
import threading
import types
import weakref
from collections.abc import Callable, Iterator
from contextlib import contextmanager

from db_mutex.core.config import MutexConfig
from db_mutex.core.constants import (
    BACKEND_AUTO,
    BACKEND_MEMORY,
    BACKEND_MYSQL,
    BACKEND_POSTGRESQL,
    DEFAULT_POLL_INTERVAL,
    DEFAULT_TIMEOUT,
    DIALECT_TO_BACKEND,
    SUPPORTED_BACKENDS,
)
from db_mutex.core.exceptions import BackendError, ConfigurationError, LockNotAcquiredError, ValidationError
from db_mutex.core.locks.backends import (
    AcquireResult,
    AcquireStatus,
    LockBackend,
    MemoryLockBackend,
    MysqlLockBackend,
    PostgresLockBackend,
    SqlLockConnection,
)
from db_mutex.core.logging import with_log_context


def create_lock_backend(
    backend_name: str | None = None,
    connection: SqlLockConnection | None = None,
    *,
    poll_interval: float = DEFAULT_POLL_INTERVAL,
) -> LockBackend:
    """Create a lock backend by name, or from the connection's dialect for ``auto``."""
    requested = (backend_name or BACKEND_AUTO).strip().lower()
    if requested not in SUPPORTED_BACKENDS:
        raise ConfigurationError(
            f"Unknown lock backend '{requested}'",
            field="backend",
            details=f"expected one of {', '.join(SUPPORTED_BACKENDS)}",
        )

    if requested == BACKEND_MEMORY:
        return MemoryLockBackend()

    if connection is None:
        raise ConfigurationError(f"Lock backend '{requested}' requires a database connection", field="dsn")

    if requested == BACKEND_AUTO:
        requested = DIALECT_TO_BACKEND.get(connection.driver_name, "")
        if not requested:
            raise ConfigurationError(
                "No lock backend supports this database",
                field="backend",
                driver_name=connection.driver_name,
            )

    if requested == BACKEND_POSTGRESQL:
        return PostgresLockBackend(connection, poll_interval=poll_interval)
    return MysqlLockBackend(connection)


def create_mutex(config: MutexConfig, *, logger: logging.Logger | None = None) -> Mutex:
    """Build a mutex from configuration: engine, dedicated connection, adapter."""
    backend_name = (config.backend or BACKEND_AUTO).strip().lower()
    connection = None
    if backend_name != BACKEND_MEMORY:
        if not config.dsn:
            raise ConfigurationError("A database URL is required for database-backed locks", field="dsn")
        connection = SqlLockConnection.from_url(config.dsn, logger=logger)
    backend = create_lock_backend(backend_name, connection, poll_interval=config.poll_interval)
    return Mutex(
        backend,
        default_timeout=config.default_timeout,
        auto_release=config.auto_release,
        logger=logger,
    )


def _release_on_exit(mutex_ref: weakref.ReferenceType[Mutex]) -> None:
    mutex = mutex_ref()
    if mutex is not None:
        mutex.close()


class _NameLock:
    """Per-name operation lock, counted so idle names can be dropped."""

    __slots__ = ("lock", "users")

    def __init__(self) -> None:
        self.lock = threading.Lock()
        self.users = 0


class Mutex:
    """Named locks held in a shared database, with per-instance ownership tracking.

    The instance remembers which names it acquired and under which backend
    session. Acquiring a held name again succeeds without contacting the
    backend, and releasing a name this instance does not hold never reaches
    the backend, so another holder's lock is never released by mistake. Names
    taken under a session that has since been lost are forgotten.
    """

    def __init__(
        self,
        backend: LockBackend,
        *,
        default_timeout: float = DEFAULT_TIMEOUT,
        auto_release: bool = True,
        logger: logging.Logger | None = None,
    ):
        self.backend = backend
        self.default_timeout = self._validate_timeout(default_timeout)
        self.logger = with_log_context(logger or logging.getLogger(__name__), lock_backend=backend.name)

        # name -> backend session that took it
        self._held: dict[str, object] = {}
        self._state_lock = threading.RLock()
        self._name_locks: dict[str, _NameLock] = {}
        # name -> (open locked() blocks, whether those blocks acquired it)
        self._locked_blocks: dict[str, tuple[int, bool]] = {}
        self._closed = False

        self._atexit_hook: Callable[[], None] | None = None
        if auto_release:
            self._register_auto_release()

    def __enter__(self) -> Mutex:
        return self

    def __exit__(
        self,
        exc_type: type[BaseException] | None,
        exc_val: BaseException | None,
        exc_tb: types.TracebackType | None,
    ) -> None:
        self.close()

    @property
    def held_locks(self) -> frozenset[str]:
        self._forget_lost_locks()
        with self._state_lock:
            return frozenset(self._held)

    def is_held(self, name: str) -> bool:
        self._forget_lost_locks()
        with self._state_lock:
            return name in self._held

    def acquire(self, name: str, timeout: float | None = None) -> bool:
        """Acquire lock ``name``, waiting up to ``timeout`` seconds.

        Args:
            name: Lock name
            timeout: Seconds to wait; 0 tries once. Defaults to ``default_timeout``.

        Returns:
            True if this instance holds the lock, False if it was not granted in time.

        Raises:
            ValidationError: If the name or timeout is invalid for the backend
            BackendError: If the backend could not be reached
        """
        self._validate_name(name)
        wait = self.default_timeout if timeout is None else self._validate_timeout(timeout)

        with self._name_lock(name):
            return self._acquire(name, wait) is not None

    def release(self, name: str) -> bool:
        """Release lock ``name`` if this instance holds it.

        Returns:
            False without contacting the backend when the name is not held;
            otherwise the backend's verdict on the release.

        Raises:
            BackendError: If the backend could not be reached. The name stays
                held locally so the release can be retried.
        """
        self._validate_name(name)

        with self._name_lock(name):
            return self._release(name)

    def release_all(self) -> dict[str, bool]:
        """Release every held lock.

        All names are attempted even when some releases fail; the first
        ``BackendError`` is re-raised afterwards.
        """
        results: dict[str, bool] = {}
        errors: list[BackendError] = []
        for name in sorted(self.held_locks):
            try:
                results[name] = self.release(name)
            except BackendError as e:
                errors.append(e)
        if errors:
            raise errors[0]
        return results

    @contextmanager
    def locked(self, name: str, timeout: float | None = None) -> Iterator[Mutex]:
        """Hold ``name`` for the duration of a ``with`` block.

        Blocks on the same name may nest or run in several threads sharing this
        instance. The name is released when the last open block exits, and only
        if one of the blocks acquired it; a name taken with ``acquire()`` stays held.

        Raises:
            LockNotAcquiredError: If the lock was not granted in time
        """
        self._validate_name(name)
        wait = self.default_timeout if timeout is None else self._validate_timeout(timeout)

        with self._name_lock(name):
            acquired = self._acquire(name, wait)
            if acquired is None:
                raise LockNotAcquiredError(name, wait)
            with self._state_lock:
                depth, owned = self._locked_blocks.get(name, (0, False))
                self._locked_blocks[name] = (depth + 1, owned or acquired)
        try:
            yield self
        finally:
            with self._name_lock(name):
                with self._state_lock:
                    depth, owned = self._locked_blocks.pop(name)
                    if depth > 1:
                        self._locked_blocks[name] = (depth - 1, owned)
                if depth == 1 and owned:
                    self._release(name)

    def close(self) -> None:
        """Release all held locks and close the backend session."""
        with self._state_lock:
            if self._closed:
                return
            self._closed = True
        self._unregister_auto_release()
        try:
            self.release_all()
        finally:
            self.backend.close()

    def _acquire(self, name: str, wait: float) -> bool | None:
        """Acquire ``name`` with its name lock held.

        Returns None when not granted, True when the backend granted it now
        and False when this instance already held it.
        """
        if self.is_held(name):
            self.logger.debug("Lock '%s' already held by this instance", name)
            return False

        result = self._acquire_with_result(name, wait)
        if result.status == AcquireStatus.FAILED:
            assert result.error is not None  # For type checkers.
            self.logger.warning("Acquiring lock '%s' failed: %s", name, result.error)
            raise result.error

        if result.status == AcquireStatus.TIMED_OUT:
            self.logger.debug("Lock '%s' not acquired within %ss", name, wait)
            return None

        with self._state_lock:
            self._held[name] = self.backend.session_id
        self.logger.info("Lock '%s' acquired", name)
        return True

    def _release(self, name: str) -> bool:
        """Release ``name`` with its name lock held."""
        if not self.is_held(name):
            self.logger.debug("Lock '%s' is not held by this instance; nothing to release", name)
            return False

        try:
            released = self.backend.release_lock(name)
        except BackendError:
            self.logger.warning("Releasing lock '%s' failed; it is still considered held", name)
            raise

        with self._state_lock:
            self._held.pop(name, None)
        if released:
            self.logger.info("Lock '%s' released", name)
        else:
            self.logger.warning("Backend reported lock '%s' was not held at release", name)
        return released

    def _acquire_with_result(self, name: str, timeout: float) -> AcquireResult:
        try:
            acquired = self.backend.acquire_lock(name, timeout)
        except BackendError as e:
            return AcquireResult(status=AcquireStatus.FAILED, error=e)
        if acquired:
            return AcquireResult(status=AcquireStatus.ACQUIRED)
        return AcquireResult(status=AcquireStatus.TIMED_OUT)

    def _forget_lost_locks(self) -> None:
        """Drop names taken under a backend session that no longer exists."""
        with self._state_lock:
            session = self.backend.session_id
            lost = sorted(name for name, owner in self._held.items() if owner is None or owner != session)
            for name in lost:
                del self._held[name]
        if lost:
            self.logger.warning("Backend session was lost with these locks: %s", ", ".join(lost))

    @contextmanager
    def _name_lock(self, name: str) -> Iterator[None]:
        with self._state_lock:
            entry = self._name_locks.get(name)
            if entry is None:
                entry = self._name_locks[name] = _NameLock()
            entry.users += 1
        try:
            with entry.lock:
                yield
        finally:
            with self._state_lock:
                entry.users -= 1
                if entry.users == 0:
                    del self._name_locks[name]

    def _validate_name(self, name: object) -> None:
        if not isinstance(name, str) or not name:
            raise ValidationError("Lock name must be a non-empty string", lock_name=name)
        limit = self.backend.max_name_length
        if limit is not None and len(name) > limit:
            raise ValidationError(
                f"Lock name is longer than {limit} characters allowed by the {self.backend.name} backend",
                lock_name=name,
                details=f"{len(name)} characters",
            )

    @staticmethod
    def _validate_timeout(timeout: object) -> float:
        if isinstance(timeout, bool) or not isinstance(timeout, numbers.Real):
            raise ValidationError("Timeout must be a number of seconds", details=repr(timeout))
        if not math.isfinite(timeout) or timeout < 0:
            raise ValidationError("Timeout must be a finite, non-negative number", details=repr(timeout))
        return timeout

    def _register_auto_release(self) -> None:
        mutex_ref = weakref.ref(self)

        def _hook() -> None:
            _release_on_exit(mutex_ref)

        self._atexit_hook = _hook
        atexit.register(_hook)

    def _unregister_auto_release(self) -> None:
        if self._atexit_hook is not None:
            atexit.unregister(self._atexit_hook)
            self._atexit_hook = None
