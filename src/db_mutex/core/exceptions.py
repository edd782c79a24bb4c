"""Custom exceptions for db-mutex.

All exception classes carry a short message plus optional details so callers
can tell a misconfigured mutex apart from an unavailable database.
"""


class DBMutexError(Exception):
    """Base exception for all db-mutex errors."""

    def __init__(self, message: str, details: str | None = None):
        self.message = message
        self.details = details
        super().__init__(self.message)

    def __str__(self) -> str:
        if self.details:
            return f"{self.message}: {self.details}"
        return self.message


class ConfigurationError(DBMutexError):
    """Exception raised when a mutex cannot be built from its configuration.

    Examples:
        - MySQL adapter given a connection to a different database engine
        - Unknown backend name
        - Missing database URL
    """

    def __init__(
        self,
        message: str,
        field: str | None = None,
        driver_name: str | None = None,
        details: str | None = None,
    ):
        self.field = field
        self.driver_name = driver_name
        super().__init__(message, details)


class ValidationError(DBMutexError):
    """Exception raised when a lock request violates backend constraints.

    Raised before any statement is sent to the database.
    """

    def __init__(self, message: str, lock_name: object = None, details: str | None = None):
        self.lock_name = lock_name
        super().__init__(message, details)


class BackendError(DBMutexError):
    """Exception raised when the lock backend could not be reached or failed.

    Wraps driver and transport errors with the operation and lock name that
    were in flight. A contested lock is never reported through this class.
    """

    def __init__(
        self,
        message: str,
        operation: str | None = None,
        lock_name: str | None = None,
        details: str | None = None,
        original_error: Exception | None = None,
    ):
        self.operation = operation
        self.lock_name = lock_name
        self.original_error = original_error
        super().__init__(message, details)

    def __str__(self) -> str:
        parts = [self.message]
        if self.operation:
            parts.append(f"during {self.operation}")
        if self.lock_name:
            parts.append(f"lock '{self.lock_name}'")
        if self.details:
            parts.append(self.details)
        return " - ".join(parts)


class LockNotAcquiredError(DBMutexError):
    """Exception raised by ``Mutex.locked()`` when the lock was not obtained in time.

    Attributes:
        lock_name: Name of the contested lock
        timeout: Seconds waited before giving up
    """

    def __init__(self, lock_name: str, timeout: float):
        self.lock_name = lock_name
        self.timeout = timeout
        super().__init__(f"Could not acquire lock '{lock_name}'", f"waited {timeout:g}s")
