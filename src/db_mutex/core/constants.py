"""Constants and default values for db-mutex.

This module centralizes backend limits, environment variable names and
default settings used throughout the package.
"""

# ==================== BACKEND NAMES ====================

BACKEND_AUTO: str = "auto"
BACKEND_MYSQL: str = "mysql"
BACKEND_POSTGRESQL: str = "postgresql"
BACKEND_MEMORY: str = "memory"

SUPPORTED_BACKENDS: tuple[str, ...] = (BACKEND_AUTO, BACKEND_MYSQL, BACKEND_POSTGRESQL, BACKEND_MEMORY)

# SQLAlchemy dialect name -> backend name used by "auto" selection
DIALECT_TO_BACKEND: dict[str, str] = {
    "mysql": BACKEND_MYSQL,
    "mariadb": BACKEND_MYSQL,
    "postgresql": BACKEND_POSTGRESQL,
}

# ==================== BACKEND LIMITS ====================

MYSQL_MAX_LOCK_NAME_LENGTH: int = 64  # GET_LOCK() rejects longer names since MySQL 5.7
DEFAULT_POLL_INTERVAL: float = 0.1  # Seconds between pg_try_advisory_lock attempts
DEFAULT_TIMEOUT: float = 0  # Try once, do not wait

# ==================== LOGGING DEFAULTS ====================

LOG_FILE_MAX_BYTES: int = 10 * 1024 * 1024  # 10MB max per log file
LOG_FILE_BACKUP_COUNT: int = 5  # Number of backup log files to keep
VALID_LOG_LEVELS: tuple[str, ...] = ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL")
VALID_LOG_FORMATS: tuple[str, ...] = ("text", "json")

# ==================== ENVIRONMENT ====================

ENV_DSN: str = "DB_MUTEX_DSN"
ENV_BACKEND: str = "DB_MUTEX_BACKEND"
ENV_DEFAULT_TIMEOUT: str = "DB_MUTEX_DEFAULT_TIMEOUT"
ENV_AUTO_RELEASE: str = "DB_MUTEX_AUTO_RELEASE"
ENV_POLL_INTERVAL: str = "DB_MUTEX_POLL_INTERVAL"
ENV_LOG_LEVEL: str = "LOG_LEVEL"
ENV_LOG_FORMAT: str = "LOG_FORMAT"

TRUTHY_ENV_VALUES: frozenset[str] = frozenset({"1", "true", "yes", "on"})
FALSY_ENV_VALUES: frozenset[str] = frozenset({"0", "false", "no", "off"})

# ==================== CLI EXIT CODES ====================

EXIT_ERROR: int = 1
EXIT_LOCK_NOT_ACQUIRED: int = 75  # EX_TEMPFAIL from sysexits.h
EXIT_COMMAND_NOT_FOUND: int = 127
