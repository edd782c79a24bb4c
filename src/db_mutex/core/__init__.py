"""Core module - Foundation components of db-mutex.

This module provides the basic building blocks used throughout the package:
- Version information
- Custom exceptions
- Configuration dataclasses
- Constants and defaults
"""

from db_mutex.core.version import __version__

from db_mutex.core.exceptions import (
    DBMutexError,
    ConfigurationError,
    ValidationError,
    BackendError,
    LockNotAcquiredError,
)

from db_mutex.core.config import (
    LogConfig,
    MutexConfig,
)

from db_mutex.core.constants import (
    SUPPORTED_BACKENDS,
    MYSQL_MAX_LOCK_NAME_LENGTH,
    DEFAULT_POLL_INTERVAL,
    DEFAULT_TIMEOUT,
    EXIT_ERROR,
    EXIT_LOCK_NOT_ACQUIRED,
)

__all__ = [
    # Version
    '__version__',
    # Exceptions
    'DBMutexError',
    'ConfigurationError',
    'ValidationError',
    'BackendError',
    'LockNotAcquiredError',
    # Config dataclasses
    'LogConfig',
    'MutexConfig',
    # Constants
    'SUPPORTED_BACKENDS',
    'MYSQL_MAX_LOCK_NAME_LENGTH',
    'DEFAULT_POLL_INTERVAL',
    'DEFAULT_TIMEOUT',
    'EXIT_ERROR',
    'EXIT_LOCK_NOT_ACQUIRED',
]
