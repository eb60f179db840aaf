"""Domain models for the users service."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import Iterable, List, Optional

DEFAULT_ROLES = ("user",)


@dataclass(frozen=True)
class Address:
    city: Optional[str] = None
    zip: Optional[str] = None


@dataclass(frozen=True)
class User:
    """Represents a user document stored in the users collection."""

    id: str
    name: str
    email: str
    created_at: datetime
    age: Optional[int] = None
    roles: List[str] = field(default_factory=lambda: list(DEFAULT_ROLES))
    address: Optional[Address] = None


def normalize_roles(roles: Optional[Iterable[str]]) -> List[str]:
    """Return ``roles`` as a list, substituting the default role when empty."""

    normalized = list(roles) if roles is not None else []
    if not normalized:
        return list(DEFAULT_ROLES)
    return normalized


__all__ = ["Address", "DEFAULT_ROLES", "User", "normalize_roles"]
