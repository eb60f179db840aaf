"""MongoDB-backed persistence for user documents."""
from __future__ import annotations

import logging
import re
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Dict, List, Mapping, Optional, Tuple

from bson import ObjectId
from bson.errors import InvalidDocument, InvalidId
from pymongo import ASCENDING, DESCENDING, MongoClient, ReturnDocument
from pymongo.collection import Collection
from pymongo.errors import DuplicateKeyError

from .config import DEFAULT_COLLECTION_NAME, DEFAULT_MONGODB_URI, Settings, database_name_from_uri
from .models import Address, User, normalize_roles

logger = logging.getLogger("usersapi.database")

DEFAULT_PAGE_SIZE = 10
DEFAULT_SORT = "name"
MAX_INT64 = 2**63 - 1

# Public field names that differ from the stored document keys.
_SORT_FIELD_ALIASES: Dict[str, str] = {
    "id": "_id",
    "created_at": "createdAt",
}

_UPDATABLE_FIELDS = ("name", "email", "age", "roles", "address")
_NULLABLE_FIELDS = {"age", "address"}

# Errors raised while encoding a command or document to BSON.
_ENCODING_ERRORS = (OverflowError, InvalidDocument)


class InvalidUserId(ValueError):
    """Raised when an identifier is not a valid ObjectId."""


class DuplicateEmailError(ValueError):
    """Raised when a write would violate the unique email index."""


@dataclass(frozen=True)
class UserQuery:
    """Filter, ordering and paging options for :meth:`Database.list_users`."""

    min_age: Optional[float] = None
    role: Optional[str] = None
    q: Optional[str] = None
    limit: int = DEFAULT_PAGE_SIZE
    page: int = 1
    sort: str = DEFAULT_SORT

    @property
    def skip(self) -> int:
        return (self.page - 1) * self.limit


def build_filter(query: UserQuery) -> Dict[str, Any]:
    """Translate the supplied query options into a MongoDB filter document.

    Only options that are present constrain the result; ``q`` is matched as a
    literal, case-insensitive substring of ``name``.
    """

    document: Dict[str, Any] = {}
    if query.min_age is not None:
        document["age"] = {"$gte": query.min_age}
    if query.role:
        document["roles"] = query.role
    if query.q:
        document["name"] = {"$regex": re.escape(query.q), "$options": "i"}
    return document


def build_sort(sort: str) -> List[Tuple[str, int]]:
    """Parse a sort expression such as ``name``, ``-age`` or ``name -age`` into sort keys.

    Keys may be separated by whitespace or commas; a leading ``-`` sorts that
    key in descending order.
    """

    tokens = [token for token in re.split(r"[\s,]+", (sort or "").strip()) if token]
    if not tokens:
        tokens = [DEFAULT_SORT]

    keys: List[Tuple[str, int]] = []
    seen = set()
    for token in tokens:
        direction = ASCENDING
        name = token
        if name.startswith("-"):
            direction = DESCENDING
            name = name[1:]
        elif name.startswith("+"):
            name = name[1:]
        if not name or name.startswith(("-", "+", "$")):
            raise ValueError(f"Invalid sort expression: {sort!r}")

        field = _SORT_FIELD_ALIASES.get(name, name)
        if field in seen:
            raise ValueError(f"Duplicate sort key {name!r} in {sort!r}")
        seen.add(field)
        keys.append((field, direction))

    if "_id" not in seen:
        # Stable ordering across pages when the sort fields have duplicates.
        keys.append(("_id", ASCENDING))
    return keys


def parse_user_id(user_id: str) -> ObjectId:
    try:
        return ObjectId(user_id)
    except (InvalidId, TypeError) as exc:
        raise InvalidUserId(str(exc)) from exc


def _current_timestamp() -> datetime:
    # BSON dates carry millisecond precision.
    now = datetime.now(timezone.utc)
    return now.replace(microsecond=(now.microsecond // 1000) * 1000)


def _address_to_document(address: Address | Mapping[str, Any] | None) -> Optional[Dict[str, Any]]:
    if address is None:
        return None
    if isinstance(address, Address):
        return {"city": address.city, "zip": address.zip}
    return {"city": address.get("city"), "zip": address.get("zip")}


def _require_text(field: str, value: Optional[str]) -> str:
    if value is None or not str(value).strip():
        raise ValueError(f"Path `{field}` is required.")
    return str(value).strip()


def _check_age(age: Optional[int]) -> None:
    if age is None:
        return
    if age < 0:
        raise ValueError(f"Path `age` ({age}) is less than minimum allowed value (0).")
    if age > MAX_INT64:
        raise ValueError(f"Path `age` ({age}) is more than maximum allowed value ({MAX_INT64}).")


class Database:
    """Thin wrapper around the MongoDB users collection."""

    def __init__(
        self,
        uri: str = DEFAULT_MONGODB_URI,
        *,
        database_name: Optional[str] = None,
        collection_name: str = DEFAULT_COLLECTION_NAME,
        client: Optional[MongoClient] = None,
    ) -> None:
        self._owns_client = client is None
        self._client = client if client is not None else MongoClient(uri, tz_aware=True)
        self._database_name = database_name or database_name_from_uri(uri)
        self._collection: Collection = self._client[self._database_name][collection_name]

    @classmethod
    def from_settings(cls, settings: Settings, *, client: Optional[MongoClient] = None) -> "Database":
        return cls(
            settings.mongodb_uri,
            database_name=settings.resolved_database_name,
            collection_name=settings.collection_name,
            client=client,
        )

    @property
    def collection(self) -> Collection:
        return self._collection

    def initialize(self) -> None:
        """Ensure the indexes backing the users collection exist."""

        self._collection.create_index([("email", ASCENDING)], unique=True)
        self._collection.create_index([("name", ASCENDING)])
        logger.info(
            "Users collection ready (%s.%s)",
            self._database_name,
            self._collection.name,
        )

    def close(self) -> None:
        if self._owns_client:
            self._client.close()
            logger.info("Closed MongoDB connection")

    # ------------------------------------------------------------------
    # User management
    # ------------------------------------------------------------------
    def create_user(
        self,
        name: str,
        email: str,
        *,
        age: Optional[int] = None,
        roles: Optional[List[str]] = None,
        address: Address | Mapping[str, Any] | None = None,
        created_at: Optional[datetime] = None,
    ) -> User:
        """Insert a new user document and return the stored record."""

        _check_age(age)
        document: Dict[str, Any] = {
            "name": _require_text("name", name),
            "email": _require_text("email", email),
            "roles": normalize_roles(roles),
            "createdAt": created_at or _current_timestamp(),
        }
        if age is not None:
            document["age"] = age
        address_doc = _address_to_document(address)
        if address_doc is not None:
            document["address"] = address_doc

        try:
            result = self._collection.insert_one(document)
        except DuplicateKeyError as exc:
            raise DuplicateEmailError(str(exc)) from exc
        except _ENCODING_ERRORS as exc:
            raise ValueError(str(exc)) from exc

        document["_id"] = result.inserted_id
        logger.info("Created user %s", result.inserted_id)
        return self._document_to_user(document)

    def list_users(self, query: UserQuery | None = None) -> List[User]:
        query = query or UserQuery()
        document_filter = build_filter(query)
        logger.debug("Listing users with filter %s", document_filter)
        cursor = (
            self._collection.find(document_filter)
            .sort(build_sort(query.sort))
            .skip(query.skip)
            .limit(query.limit)
        )
        try:
            return [self._document_to_user(document) for document in cursor]
        except _ENCODING_ERRORS as exc:
            raise ValueError(str(exc)) from exc

    def get_user(self, user_id: str) -> Optional[User]:
        document = self._collection.find_one({"_id": parse_user_id(user_id)})
        if document is None:
            return None
        return self._document_to_user(document)

    def update_user(self, user_id: str, **fields: Any) -> Optional[User]:
        """Merge ``fields`` into an existing user, returning the updated record.

        Returns ``None`` when no user matches ``user_id``.
        """

        object_id = parse_user_id(user_id)
        unknown = set(fields) - set(_UPDATABLE_FIELDS)
        if unknown:
            raise ValueError(f"Fields cannot be updated: {', '.join(sorted(unknown))}")

        to_set: Dict[str, Any] = {}
        to_unset: Dict[str, str] = {}
        for key in _UPDATABLE_FIELDS:
            if key not in fields:
                continue
            value = fields[key]
            if value is None and key in _NULLABLE_FIELDS:
                to_unset[key] = ""
                continue
            if key in {"name", "email"}:
                value = _require_text(key, value)
            elif key == "age":
                _check_age(value)
            elif key == "roles":
                value = normalize_roles(value)
            elif key == "address":
                value = _address_to_document(value)
            to_set[key] = value

        if not to_set and not to_unset:
            return self.get_user(user_id)

        update: Dict[str, Any] = {}
        if to_set:
            update["$set"] = to_set
        if to_unset:
            update["$unset"] = to_unset

        try:
            document = self._collection.find_one_and_update(
                {"_id": object_id},
                update,
                return_document=ReturnDocument.AFTER,
            )
        except DuplicateKeyError as exc:
            raise DuplicateEmailError(str(exc)) from exc
        except _ENCODING_ERRORS as exc:
            raise ValueError(str(exc)) from exc

        if document is None:
            return None
        logger.info("Updated user %s (%s)", object_id, ", ".join(sorted({**to_set, **to_unset})))
        return self._document_to_user(document)

    def delete_user(self, user_id: str) -> Optional[str]:
        """Remove a user, returning its identifier or ``None`` if nothing matched."""

        document = self._collection.find_one_and_delete({"_id": parse_user_id(user_id)})
        if document is None:
            return None
        logger.info("Deleted user %s", document["_id"])
        return str(document["_id"])

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------
    def _document_to_user(self, document: Mapping[str, Any]) -> User:
        created_at = document["createdAt"]
        if created_at.tzinfo is None:
            created_at = created_at.replace(tzinfo=timezone.utc)
        else:
            created_at = created_at.astimezone(timezone.utc)

        raw_address = document.get("address")
        address = None
        if raw_address is not None:
            address = Address(city=raw_address.get("city"), zip=raw_address.get("zip"))

        age = document.get("age")
        return User(
            id=str(document["_id"]),
            name=str(document["name"]),
            email=str(document["email"]),
            age=int(age) if age is not None else None,
            roles=normalize_roles(document.get("roles")),
            address=address,
            created_at=created_at,
        )


__all__ = [
    "Database",
    "DuplicateEmailError",
    "InvalidUserId",
    "UserQuery",
    "build_filter",
    "build_sort",
    "parse_user_id",
]
