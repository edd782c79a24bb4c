"""Version information for db-mutex."""

__version__ = "1.0.0"
