"""WSGI admin API for dead-letter replay: access control, rate limiting and replay jobs."""

__version__ = "0.1.0"