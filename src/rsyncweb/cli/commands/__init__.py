"""CLI command implementations."""

from .history import history, status
from .serve import serve

__all__ = ["history", "serve", "status"]
