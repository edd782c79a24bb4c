"""Command-line interface for db-mutex."""

from db_mutex.cli.main import main, parse_arguments

__all__ = ["main", "parse_arguments"]
