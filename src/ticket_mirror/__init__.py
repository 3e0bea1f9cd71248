"""Resilient incremental mirror of remote ticket records."""

__version__ = "0.1.0"
