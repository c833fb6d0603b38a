"""Storage contracts shared between the in-memory and CouchDB backends.

The engine only ever talks to these protocols, so tests can run against
``MemoryServer`` while production talks HTTP to a CouchDB-compatible server.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import (
    Any,
    AsyncIterator,
    Dict,
    Iterable,
    List,
    Optional,
    Protocol,
    Set,
    Union,
    runtime_checkable,
)

# One key, or several; normalized through ``as_key_set`` on entry.
KeyInput = Union[str, Iterable[str], None]


def as_key_set(keys: KeyInput) -> Set[str]:
    """Normalize a one-or-many key argument to a set of non-empty strings."""
    if keys is None:
        return set()
    if isinstance(keys, str):
        return {keys} if keys else set()
    return {k for k in keys if k}


@dataclass
class ViewRow:
    """One row of a secondary-index query."""

    id: str
    key: Any
    value: Any = None
    doc: Optional[Dict[str, Any]] = None


@dataclass
class BulkResult:
    id: str
    ok: bool
    rev: Optional[str] = None
    error: Optional[str] = None


@dataclass
class Change:
    """One entry of a database change feed."""

    id: str
    seq: Any
    deleted: bool = False
    doc: Optional[Dict[str, Any]] = None


@runtime_checkable
class DocumentStore(Protocol):
    """A single database holding JSON documents keyed by ``_id``."""

    name: str

    async def get(self, doc_id: str) -> Dict[str, Any]:
        """Return the document; raises ``DocumentNotFound``."""
        ...

    async def put(self, doc: Dict[str, Any]) -> Dict[str, Any]:
        """Write ``doc``; a stale or missing ``_rev`` on an existing id raises
        ``DocumentConflict``. Returns the document with its new ``_rev``."""
        ...

    async def bulk_docs(self, docs: List[Dict[str, Any]]) -> List[BulkResult]:
        ...

    async def delete(self, doc_id: str, rev: Optional[str] = None) -> None:
        ...

    async def last_revision(self, doc_id: str) -> Dict[str, Any]:
        """Body of a deleted document as it was just before the deletion."""
        ...

    async def all_docs(
        self, keys: Iterable[str], include_docs: bool = True
    ) -> List[ViewRow]:
        ...

    async def query(
        self,
        view: str,
        *,
        key: Any = None,
        endkey: Any = None,
        include_docs: bool = False,
    ) -> List[ViewRow]:
        """Exact match on ``key``, or every row up to ``endkey`` inclusive."""
        ...

    def changes(self, *, since: Any = "now") -> AsyncIterator[Change]:
        ...

    async def seed_design(self, design: Dict[str, Any]) -> bool:
        """Install or update a design document; returns True when it changed."""
        ...

    async def close(self) -> None:
        ...


@runtime_checkable
class DatabaseServer(Protocol):
    """Administration surface of the document database server."""

    async def create_database(self, name: str) -> None:
        """Raises ``DatabaseExists`` when the database is already there."""
        ...

    async def destroy_database(self, name: str) -> None:
        ...

    def database(self, name: str) -> DocumentStore:
        ...

    async def get_security(self, name: str) -> Dict[str, Any]:
        ...

    async def put_security(self, name: str, security: Dict[str, Any]) -> None:
        ...

    async def issue_api_key(self) -> Dict[str, Any]:
        """Managed hosting only: returns ``{"key", "password", "ok"}``."""
        ...

    def url(self, name: str = "") -> str:
        ...

    async def close(self) -> None:
        ...
