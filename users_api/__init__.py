"""Core utilities for the users API service."""

from __future__ import annotations

from typing import Any

from .config import Settings, load_settings
from .database import Database, UserQuery


def create_app(*args: Any, **kwargs: Any):
    """Factory function that returns the users HTTP application."""

    from .service import create_app as _create_app

    return _create_app(*args, **kwargs)


__all__ = [
    "Database",
    "Settings",
    "UserQuery",
    "create_app",
    "load_settings",
]
