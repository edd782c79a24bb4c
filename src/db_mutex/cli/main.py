"""Run a command while holding a named database lock."""

from __future__ import annotations

import argparse
import subprocess
import sys

from db_mutex.core.config import MutexConfig
from db_mutex.core.constants import (
    EXIT_COMMAND_NOT_FOUND,
    EXIT_ERROR,
    EXIT_LOCK_NOT_ACQUIRED,
    SUPPORTED_BACKENDS,
    VALID_LOG_FORMATS,
    VALID_LOG_LEVELS,
)
from db_mutex.core.exceptions import DBMutexError, LockNotAcquiredError
from db_mutex.core.locks.manager import create_mutex
from db_mutex.core.logging import setup_logging
from db_mutex.core.version import __version__

# Attempt to load argcomplete for shell tab-completion (optional dependency)
_ARGCOMPLETE_AVAILABLE = False
try:
    import argcomplete

    _ARGCOMPLETE_AVAILABLE = True
except ImportError:
    pass  # argcomplete not installed


def parse_arguments(argv: list[str] | None = None) -> argparse.Namespace:
    """Parse command-line arguments"""
    parser = argparse.ArgumentParser(
        prog="db-mutex",
        description="Coordinate processes through named locks held by a shared database",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  # Run a job unless another host is already running it
  db-mutex run nightly-report --dsn mysql+pymysql://app@db-primary/app -- ./report.sh

  # Wait up to 30 seconds for the lock
  db-mutex run job-42 --timeout 30 -- python sync.py

  # Database URL from the environment (or a .env file)
  DB_MUTEX_DSN=postgresql+psycopg://app@db-primary/app db-mutex run job-42 -- make deploy

Exit codes:
  The command's own status, 75 when the lock is held elsewhere,
  1 on configuration or database errors.
""",
    )
    parser.add_argument("--version", action="version", version=f"%(prog)s {__version__}")

    subparsers = parser.add_subparsers(dest="action", required=True)
    run_parser = subparsers.add_parser(
        "run", help="Run a command while holding a lock", usage="db-mutex run NAME [options] -- COMMAND [ARGS...]"
    )
    run_parser.add_argument("name", help="Lock name")
    run_parser.add_argument("--timeout", type=float, default=None, help="Seconds to wait for the lock (default: 0)")
    run_parser.add_argument("--dsn", default=None, help="Database URL of the primary node (env: DB_MUTEX_DSN)")
    run_parser.add_argument(
        "--backend",
        choices=SUPPORTED_BACKENDS,
        default=None,
        help="Lock backend (default: auto, from the database URL)",
    )
    run_parser.add_argument("--poll-interval", type=float, default=None, help="Seconds between lock attempts")
    run_parser.add_argument("--log-level", choices=VALID_LOG_LEVELS, default=None, help="Logging level")
    run_parser.add_argument("--log-format", choices=VALID_LOG_FORMATS, default=None, help="Log output format")
    run_parser.add_argument("--log-file", default=None, help="Also write logs to this file")

    # Enable shell tab-completion if argcomplete is installed
    if _ARGCOMPLETE_AVAILABLE:
        argcomplete.autocomplete(parser)

    # Everything after "--" is the command to run, untouched by option parsing.
    argv = list(sys.argv[1:] if argv is None else argv)
    command: list[str] = []
    if "--" in argv:
        separator = argv.index("--")
        argv, command = argv[:separator], argv[separator + 1 :]

    args = parser.parse_args(argv)
    if args.action == "run" and not command:
        parser.error("a command to run is required after \"--\"")
    args.command = command
    return args


def main(argv: list[str] | None = None) -> int:
    """Entry point for the ``db-mutex`` command."""
    args = parse_arguments(argv)

    try:
        config = MutexConfig.from_args(args, base=MutexConfig.from_env())
    except DBMutexError as e:
        print(f"Error: {e}", file=sys.stderr)
        return EXIT_ERROR

    logger = setup_logging(config.log.level, config.log.format, config.log.file)

    returncode: int | None = None
    try:
        with create_mutex(config, logger=logger) as mutex:
            with mutex.locked(args.name, config.default_timeout):
                logger.info("Running %s while holding '%s'", args.command[0], args.name)
                returncode = subprocess.run(args.command, check=False).returncode
                return returncode
    except LockNotAcquiredError as e:
        logger.error("%s", e)
        return EXIT_LOCK_NOT_ACQUIRED
    except FileNotFoundError:
        logger.error("Command not found: %s", args.command[0])
        return EXIT_COMMAND_NOT_FOUND
    except OSError as e:
        logger.error("Cannot run %s: %s", args.command[0], e)
        return EXIT_ERROR
    except DBMutexError as e:
        if returncode is not None:
            # The command ran; its status wins over a failed release.
            logger.error("Command finished but releasing '%s' failed: %s", args.name, e)
            return returncode
        logger.error("%s", e)
        return EXIT_ERROR


if __name__ == "__main__":
    sys.exit(main())
