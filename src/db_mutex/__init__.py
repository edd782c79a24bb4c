"""
db-mutex - Named mutual exclusion backed by a shared database

Processes on different machines coordinate exclusive access to a named
resource through advisory locks held by the primary database node.
"""

from __future__ import annotations

import importlib
from typing import TYPE_CHECKING, Any

_EXPORTS = {
    "__version__": "db_mutex.core.version",
    "Mutex": "db_mutex.core.locks.manager",
    "create_mutex": "db_mutex.core.locks.manager",
    "create_lock_backend": "db_mutex.core.locks.manager",
    "MutexConfig": "db_mutex.core.config",
    "DBMutexError": "db_mutex.core.exceptions",
    "ConfigurationError": "db_mutex.core.exceptions",
    "ValidationError": "db_mutex.core.exceptions",
    "BackendError": "db_mutex.core.exceptions",
    "LockNotAcquiredError": "db_mutex.core.exceptions",
}

__all__ = list(_EXPORTS)

if TYPE_CHECKING:
    from db_mutex.core.config import MutexConfig
    from db_mutex.core.exceptions import (
        BackendError,
        ConfigurationError,
        DBMutexError,
        LockNotAcquiredError,
        ValidationError,
    )
    from db_mutex.core.locks.manager import Mutex, create_lock_backend, create_mutex
    from db_mutex.core.version import __version__


def __getattr__(name: str) -> Any:
    if name in _EXPORTS:
        module = importlib.import_module(_EXPORTS[name])
        return getattr(module, name)
    raise AttributeError(f"module {__name__!r} has no attribute {name!r}")
