"""
Error kinds surfaced by the data access layer.

Both adapters translate native failures (SQLAlchemy, google-api-core) into
these classes so callers can handle one set of exceptions.
"""

from __future__ import annotations

from typing import Any, Dict, Optional


class DataAccessError(Exception):
    """Base class for every failure the data access layer raises."""

    kind = "DataAccessError"

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        self.message = message
        self.details = details or {}
        super().__init__(self.message)


class RecordNotFoundError(DataAccessError):
    """Raised when an update targets an id that does not exist."""

    kind = "NotFound"

    def __init__(self, collection: str, record_id: str):
        super().__init__(
            f"No record with id '{record_id}' in {collection}",
            details={"collection": collection, "id": record_id},
        )


class DuplicateIdError(DataAccessError):
    """Raised when the local store already holds a record with the same id."""

    kind = "DuplicateId"

    def __init__(self, collection: str, record_id: str):
        super().__init__(
            f"A record with id '{record_id}' already exists in {collection}",
            details={"collection": collection, "id": record_id},
        )


class CollectionMissingError(DataAccessError):
    kind = "CollectionMissing"

    def __init__(self, collection: str):
        super().__init__(
            f"Collection {collection} does not exist in the local store",
            details={"collection": collection},
        )


class TransientError(DataAccessError):
    """Network or temporary backend failure; the caller may retry."""

    kind = "Transient"


class QuotaExceededError(DataAccessError):
    kind = "QuotaExceeded"


class InvalidFilterError(DataAccessError, ValueError):
    kind = "InvalidFilter"


class PermissionDeniedError(DataAccessError):
    kind = "PermissionDenied"


class SchemaVersionError(DataAccessError):
    """The local database on disk is newer than this code understands."""

    kind = "SchemaVersion"
