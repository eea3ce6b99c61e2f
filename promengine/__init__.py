"""Query engine front end: runs supplied parsers and executors, then shapes, sorts and validates the results."""

__version__ = "0.1.0"
__all__ = ["engine", "model", "remote", "sorting"]