"""Tests for lock backend adapters and backend selection."""

from __future__ import annotations

import logging
import threading
import time
from unittest.mock import Mock

import pytest
from sqlalchemy import create_engine, event
from sqlalchemy.exc import OperationalError
from sqlalchemy.pool import NullPool

from db_mutex.core.config import MutexConfig
from db_mutex.core.exceptions import BackendError, ConfigurationError
from db_mutex.core.locks.backends import (
    MemoryLockBackend,
    MemoryLockRegistry,
    MysqlLockBackend,
    PostgresLockBackend,
    SqlLockConnection,
    advisory_lock_key,
    scalar_to_bool,
)
from db_mutex.core.locks.manager import Mutex, create_lock_backend, create_mutex


def _mock_connection(driver_name: str, result: object = 1) -> Mock:
    connection = Mock(spec=SqlLockConnection)
    connection.driver_name = driver_name
    connection.query_scalar.return_value = result
    return connection


def _lost_connection_error() -> OperationalError:
    return OperationalError("SELECT GET_LOCK(%s, %s)", {}, Exception("Lost connection to server"))


class _SqliteNamedLocks(MysqlLockBackend):
    """MySQL adapter pointed at SQLite with GET_LOCK/RELEASE_LOCK registered as functions."""

    supported_drivers = frozenset({"sqlite"})


def _sqlite_lock_connection(server: dict[str, str], session: str) -> SqlLockConnection:
    """A SQLite session emulating MySQL named locks over a shared lock table."""
    engine = create_engine("sqlite://", poolclass=NullPool)
    guard = threading.Lock()

    def get_lock(name: str, timeout: int) -> int:
        with guard:
            if server.get(name, session) != session:
                return 0
            server[name] = session
            return 1

    def release_lock(name: str) -> int | None:
        with guard:
            if name not in server:
                return None
            if server[name] != session:
                return 0
            del server[name]
            return 1

    @event.listens_for(engine, "connect")
    def _register_functions(dbapi_connection, connection_record) -> None:  # type: ignore[no-untyped-def]
        dbapi_connection.create_function("GET_LOCK", 2, get_lock)
        dbapi_connection.create_function("RELEASE_LOCK", 1, release_lock)

    return SqlLockConnection(engine)


@pytest.mark.parametrize(
    ("value", "expected"),
    [(1, True), (0, False), (None, False), (True, True), (False, False), ("1", True), ("abc", False)],
)
def test_scalar_to_bool_counts_only_explicit_success(value: object, expected: bool) -> None:
    assert scalar_to_bool(value) is expected


class TestMysqlLockBackend:
    """MySQL GET_LOCK/RELEASE_LOCK adapter"""

    def test_acquire_binds_name_and_timeout(self):
        connection = _mock_connection("mysql", 1)
        backend = MysqlLockBackend(connection)

        assert backend.acquire_lock("job-42", 10) is True
        connection.query_scalar.assert_called_once_with(
            "SELECT GET_LOCK(:name, :timeout)", {"name": "job-42", "timeout": 10}
        )

    def test_fractional_timeout_rounds_up_to_whole_seconds(self):
        connection = _mock_connection("mysql", 1)
        MysqlLockBackend(connection).acquire_lock("job-42", 0.2)

        assert connection.query_scalar.call_args.args[1]["timeout"] == 1

    @pytest.mark.parametrize("result", [0, None])
    def test_timeout_and_null_mean_not_acquired(self, result):
        backend = MysqlLockBackend(_mock_connection("mysql", result))

        assert backend.acquire_lock("job-42", 0) is False

    def test_release_binds_name(self):
        connection = _mock_connection("mysql", 1)
        backend = MysqlLockBackend(connection)

        assert backend.release_lock("job-42") is True
        connection.query_scalar.assert_called_once_with("SELECT RELEASE_LOCK(:name)", {"name": "job-42"})

    @pytest.mark.parametrize("result", [0, None])
    def test_release_of_lock_not_owned_returns_false(self, result):
        assert MysqlLockBackend(_mock_connection("mysql", result)).release_lock("job-42") is False

    def test_driver_errors_become_backend_errors(self):
        connection = _mock_connection("mysql")
        connection.query_scalar.side_effect = _lost_connection_error()
        backend = MysqlLockBackend(connection)

        with pytest.raises(BackendError, match="Lost connection") as exc_info:
            backend.acquire_lock("job-42", 0)

        assert exc_info.value.operation == "acquire"
        assert exc_info.value.lock_name == "job-42"
        assert isinstance(exc_info.value.original_error, OperationalError)

    def test_mariadb_dialect_is_accepted(self):
        assert MysqlLockBackend(_mock_connection("mariadb")).max_name_length == 64

    def test_other_database_engines_are_rejected(self):
        with pytest.raises(ConfigurationError, match="mysql") as exc_info:
            MysqlLockBackend(_mock_connection("postgresql"))

        assert exc_info.value.driver_name == "postgresql"

    def test_close_closes_dedicated_connection(self):
        connection = _mock_connection("mysql")
        MysqlLockBackend(connection).close()

        connection.close.assert_called_once_with()


class TestPostgresLockBackend:
    """Postgres advisory lock adapter"""

    def test_lock_key_is_stable_signed_64_bit(self):
        key = advisory_lock_key("job-42")

        assert key == advisory_lock_key("job-42")
        assert key != advisory_lock_key("job-43")
        assert -(2**63) <= key < 2**63

    def test_zero_timeout_is_single_try(self):
        connection = _mock_connection("postgresql", False)
        backend = PostgresLockBackend(connection)

        assert backend.acquire_lock("job-42", 0) is False
        connection.query_scalar.assert_called_once_with(
            "SELECT pg_try_advisory_lock(:key)", {"key": advisory_lock_key("job-42")}
        )

    def test_positive_timeout_polls_until_deadline(self):
        connection = _mock_connection("postgresql", False)
        backend = PostgresLockBackend(connection, poll_interval=0.05)

        start = time.monotonic()
        assert backend.acquire_lock("job-42", 0.3) is False
        elapsed = time.monotonic() - start

        assert 0.25 <= elapsed < 2.0
        assert connection.query_scalar.call_count >= 3

    def test_polling_stops_once_granted(self):
        connection = _mock_connection("postgresql")
        connection.query_scalar.side_effect = [False, False, True]
        backend = PostgresLockBackend(connection, poll_interval=0.01)

        assert backend.acquire_lock("job-42", 5) is True
        assert connection.query_scalar.call_count == 3

    def test_release_uses_advisory_unlock(self):
        connection = _mock_connection("postgresql", True)

        assert PostgresLockBackend(connection).release_lock("job-42") is True
        connection.query_scalar.assert_called_once_with(
            "SELECT pg_advisory_unlock(:key)", {"key": advisory_lock_key("job-42")}
        )

    def test_error_while_polling_is_raised(self):
        connection = _mock_connection("postgresql")
        connection.query_scalar.side_effect = [False, _lost_connection_error()]
        backend = PostgresLockBackend(connection, poll_interval=0.01)

        with pytest.raises(BackendError):
            backend.acquire_lock("job-42", 5)

    def test_non_positive_poll_interval_rejected(self):
        with pytest.raises(ConfigurationError):
            PostgresLockBackend(_mock_connection("postgresql"), poll_interval=0)

    def test_mysql_connection_rejected(self):
        with pytest.raises(ConfigurationError):
            PostgresLockBackend(_mock_connection("mysql"))


class TestMemoryLockBackend:
    """In-process backend"""

    def test_sessions_exclude_each_other(self, memory_registry: MemoryLockRegistry):
        first = MemoryLockBackend(memory_registry)
        second = MemoryLockBackend(memory_registry)

        assert first.acquire_lock("job", 0) is True
        assert second.acquire_lock("job", 0) is False
        assert second.release_lock("job") is False
        assert memory_registry.owner_of("job") == first.session_id

    def test_close_releases_session_locks(self, memory_registry: MemoryLockRegistry):
        first = MemoryLockBackend(memory_registry)
        second = MemoryLockBackend(memory_registry)
        first.acquire_lock("a", 0)
        first.acquire_lock("b", 0)

        first.close()

        assert second.acquire_lock("a", 0) is True
        assert second.acquire_lock("b", 0) is True

    def test_default_registry_is_shared(self):
        assert MemoryLockBackend().registry is MemoryLockBackend().registry


class TestCreateLockBackend:
    """Backend selection"""

    @pytest.mark.parametrize(
        ("driver_name", "expected"),
        [("mysql", MysqlLockBackend), ("mariadb", MysqlLockBackend), ("postgresql", PostgresLockBackend)],
    )
    def test_auto_selects_from_dialect(self, driver_name, expected):
        backend = create_lock_backend("auto", _mock_connection(driver_name))

        assert isinstance(backend, expected)

    def test_explicit_name_is_case_insensitive(self):
        assert isinstance(create_lock_backend(" MySQL ", _mock_connection("mysql")), MysqlLockBackend)

    def test_unsupported_dialect_rejected(self):
        with pytest.raises(ConfigurationError, match="No lock backend") as exc_info:
            create_lock_backend("auto", _mock_connection("sqlite"))

        assert exc_info.value.driver_name == "sqlite"

    def test_unknown_backend_name_rejected(self):
        with pytest.raises(ConfigurationError, match="Unknown lock backend"):
            create_lock_backend("zookeeper", _mock_connection("mysql"))

    def test_database_backend_without_connection_rejected(self):
        with pytest.raises(ConfigurationError, match="requires a database connection"):
            create_lock_backend("postgresql")

    def test_memory_needs_no_connection(self):
        assert isinstance(create_lock_backend("memory"), MemoryLockBackend)

    def test_poll_interval_passed_to_postgres(self):
        backend = create_lock_backend("postgresql", _mock_connection("postgresql"), poll_interval=0.5)

        assert backend.poll_interval == 0.5


class TestCreateMutex:
    """Building a mutex from configuration"""

    def test_memory_backend_without_dsn(self):
        mutex = create_mutex(MutexConfig(backend="memory", default_timeout=2, auto_release=False))

        assert isinstance(mutex.backend, MemoryLockBackend)
        assert mutex.default_timeout == 2
        mutex.close()

    def test_database_backend_requires_dsn(self):
        with pytest.raises(ConfigurationError, match="database URL"):
            create_mutex(MutexConfig(backend="auto"))

    def test_unsupported_database_rejected(self):
        with pytest.raises(ConfigurationError):
            create_mutex(MutexConfig(dsn="sqlite://", auto_release=False))

    def test_mysql_backend_with_sqlite_url_rejected(self):
        with pytest.raises(ConfigurationError, match="MysqlLockBackend"):
            create_mutex(MutexConfig(dsn="sqlite://", backend="mysql", auto_release=False))

    @pytest.mark.parametrize("dsn", ["not a database url", "mysql+nosuchdriver://user@host/db"])
    def test_bad_urls_are_configuration_errors(self, dsn):
        with pytest.raises(ConfigurationError):
            create_mutex(MutexConfig(dsn=dsn, auto_release=False))


class TestSqlLockConnection:
    """Dedicated lock connection against a real SQLAlchemy engine"""

    def test_query_scalar_binds_parameters(self):
        connection = SqlLockConnection(create_engine("sqlite://", poolclass=NullPool))

        assert connection.query_scalar("SELECT :value || '-suffix'", {"value": "job"}) == "job-suffix"
        assert connection.connected
        connection.close()
        assert not connection.connected

    def test_statements_share_one_session(self):
        connection = SqlLockConnection(create_engine("sqlite://", poolclass=NullPool))

        first = connection.use_primary(lambda conn: conn)
        second = connection.use_primary(lambda conn: conn)

        assert first is second
        connection.close()

    def test_invalidated_connection_is_reopened(self):
        connection = SqlLockConnection(create_engine("sqlite://", poolclass=NullPool))
        first = connection.use_primary(lambda conn: conn)

        def _lose_connection(conn):  # type: ignore[no-untyped-def]
            conn.invalidate()
            raise _lost_connection_error()

        with pytest.raises(OperationalError):
            connection.use_primary(_lose_connection)
        assert not connection.connected

        assert connection.query_scalar("SELECT 1", {}) == 1
        assert connection.use_primary(lambda conn: conn) is not first
        connection.close()

    def test_sql_errors_surface_through_adapter(self):
        connection = SqlLockConnection(create_engine("sqlite://", poolclass=NullPool))
        mutex = Mutex(_SqliteNamedLocks(connection), auto_release=False)

        # Plain SQLite has no GET_LOCK function.
        with pytest.raises(BackendError, match="GET_LOCK"):
            mutex.acquire("job-42")
        assert mutex.held_locks == frozenset()
        connection.close()

    def test_round_trip_between_sessions(self):
        server: dict[str, str] = {}
        first = Mutex(_SqliteNamedLocks(_sqlite_lock_connection(server, "first")), auto_release=False)
        second = Mutex(_SqliteNamedLocks(_sqlite_lock_connection(server, "second")), auto_release=False)

        assert first.acquire("job-42", 0) is True
        assert second.acquire("job-42", 0) is False
        assert first.release("job-42") is True
        assert second.acquire("job-42", 0) is True
        assert server == {"job-42": "second"}

        second.close()
        first.close()
        assert server == {}

    def test_lost_session_does_not_keep_ownership(self, caplog):
        server: dict[str, str] = {}
        first_connection = _sqlite_lock_connection(server, "first")
        first = Mutex(_SqliteNamedLocks(first_connection), auto_release=False)
        second = Mutex(_SqliteNamedLocks(_sqlite_lock_connection(server, "second")), auto_release=False)
        assert first.acquire("job-42", 0) is True

        # The server drops the first session together with its named locks.
        first_connection.use_primary(lambda conn: conn).invalidate()
        server.clear()

        assert second.acquire("job-42", 0) is True
        with caplog.at_level(logging.WARNING):
            assert first.acquire("job-42", 0) is False
        assert not first.is_held("job-42")
        assert "job-42" in caplog.text
        assert server == {"job-42": "second"}

        second.close()
        first.close()
        assert server == {}

    def test_reconnect_starts_new_session_generation(self):
        connection = SqlLockConnection(create_engine("sqlite://", poolclass=NullPool))
        assert connection.session_generation is None

        connection.query_scalar("SELECT 1", {})
        generation = connection.session_generation
        connection.use_primary(lambda conn: conn).invalidate()

        assert connection.session_generation is None
        connection.query_scalar("SELECT 1", {})
        assert connection.session_generation == generation + 1
        connection.close()
