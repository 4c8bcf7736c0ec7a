"""Small helpers shared across donegate modules."""

from .slug import abbreviate, sanitize_name

__all__ = ["abbreviate", "sanitize_name"]
