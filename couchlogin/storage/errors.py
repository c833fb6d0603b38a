from __future__ import annotations

from typing import Any, Dict, Optional


class StorageError(Exception):
    """Base class for document-store errors."""

    status: int = 500

    def __init__(self, message: str, detail: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.detail = detail or {}


class DocumentConflict(StorageError):
    """Raised when a write carries a stale revision (optimistic concurrency)."""

    status = 409


class DocumentNotFound(StorageError):
    """Raised when a document or database does not exist."""

    status = 404


class DatabaseExists(StorageError):
    """Raised when creating a database that already exists."""

    status = 412


class StoreUnavailable(StorageError):
    """Raised when the store cannot be reached or answers with a server error."""

    status = 503


__all__ = [
    "StorageError",
    "DocumentConflict",
    "DocumentNotFound",
    "DatabaseExists",
    "StoreUnavailable",
]
