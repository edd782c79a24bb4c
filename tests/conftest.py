"""Pytest configuration and fixtures for db-mutex tests"""

from __future__ import annotations

import pytest

from db_mutex.core.exceptions import BackendError
from db_mutex.core.locks.backends import MemoryLockRegistry


class RecordingBackend:
    """Fake lock backend that records every call and returns scripted results."""

    name = "recording"

    def __init__(self, max_name_length: int | None = None):
        self.max_name_length = max_name_length
        # Tests assign a new value to simulate a dropped session.
        self.session_id: object = "session-1"
        self.calls: list[tuple] = []
        self.acquire_results: list[bool | Exception] = []
        self.release_results: list[bool | Exception] = []
        self.closed = False

    def acquire_lock(self, name: str, timeout: float) -> bool:
        self.calls.append(("acquire", name, timeout))
        return self._next(self.acquire_results)

    def release_lock(self, name: str) -> bool:
        self.calls.append(("release", name))
        return self._next(self.release_results)

    def close(self) -> None:
        self.calls.append(("close",))
        self.closed = True

    def calls_for(self, operation: str) -> list[tuple]:
        return [call for call in self.calls if call[0] == operation]

    @staticmethod
    def _next(results: list[bool | Exception]) -> bool:
        outcome = results.pop(0) if results else True
        if isinstance(outcome, Exception):
            raise outcome
        return outcome


def backend_failure(operation: str = "acquire", lock_name: str = "job-42") -> BackendError:
    return BackendError(
        "recording lock backend failed",
        operation=operation,
        lock_name=lock_name,
        details="connection reset by peer",
    )


@pytest.fixture
def recording_backend():
    """A recording fake backend that grants every request by default"""
    return RecordingBackend()


@pytest.fixture
def memory_registry():
    """An isolated in-process lock registry"""
    return MemoryLockRegistry()


@pytest.fixture
def clean_env(monkeypatch):
    """Remove db-mutex settings from the environment"""
    for name in (
        "DB_MUTEX_DSN",
        "DB_MUTEX_BACKEND",
        "DB_MUTEX_DEFAULT_TIMEOUT",
        "DB_MUTEX_AUTO_RELEASE",
        "DB_MUTEX_POLL_INTERVAL",
        "LOG_LEVEL",
        "LOG_FORMAT",
    ):
        monkeypatch.delenv(name, raising=False)
    return monkeypatch
