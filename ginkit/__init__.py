"""Request context, errors, debug output and file-system helpers for HTTP handlers."""

__version__ = "0.1.0"
__all__ = ["context", "debug", "errors", "fs", "http"]