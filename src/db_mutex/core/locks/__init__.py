"""Locking subsystem for cross-process coordination.

This package keeps held-lock bookkeeping in ``Mutex`` and puts each database's
lock functions behind a backend abstraction so callers use one stable API.
"""

from db_mutex.core.locks.backends import (
    AcquireResult,
    AcquireStatus,
    LockBackend,
    MemoryLockBackend,
    MemoryLockRegistry,
    MysqlLockBackend,
    PostgresLockBackend,
    SqlLockConnection,
)
from db_mutex.core.locks.manager import Mutex, create_lock_backend, create_mutex

__all__ = [
    "AcquireResult",
    "AcquireStatus",
    "LockBackend",
    "MemoryLockBackend",
    "MemoryLockRegistry",
    "Mutex",
    "MysqlLockBackend",
    "PostgresLockBackend",
    "SqlLockConnection",
    "create_lock_backend",
    "create_mutex",
]
