from __future__ import annotations

import asyncio
import copy
import secrets
import threading
import uuid
from typing import Any, Dict, Iterable, List, Optional

from couchlogin.logging import get_logger
from couchlogin.storage.common import BulkResult, Change, ViewRow
from couchlogin.storage.design import MapFunction, python_views, view_path
from couchlogin.storage.errors import (
    DatabaseExists,
    DocumentConflict,
    DocumentNotFound,
)


def _next_rev(rev: Optional[str]) -> str:
    generation = int(rev.split("-", 1)[0]) + 1 if rev else 1
    return f"{generation}-{uuid.uuid4().hex}"


class _ChangeSubscription:
    """Async iterator over one subscriber's queue of changes.

    Registration happens on construction so changes made right after
    ``changes()`` returns are never missed.
    """

    def __init__(self, store: "MemoryDocumentStore") -> None:
        self._store = store
        self._queue: asyncio.Queue[Optional[Change]] = asyncio.Queue()
        store._subscribers.append(self._queue)

    def __aiter__(self) -> "_ChangeSubscription":
        return self

    async def __anext__(self) -> Change:
        change = await self._queue.get()
        if change is None:
            raise StopAsyncIteration
        return change

    async def aclose(self) -> None:
        if self._queue in self._store._subscribers:
            self._store._subscribers.remove(self._queue)
        self._queue.put_nowait(None)


class MemoryDocumentStore:
    """In-process stand-in for one CouchDB database.

    Revisions are checked on every write, views are Python map functions and
    the change feed fans out to every open subscription.
    """

    def __init__(self, name: str) -> None:
        self.name = name
        self.logger = get_logger(__name__)
        self.docs: Dict[str, Dict[str, Any]] = {}
        self._tombstones: Dict[str, Dict[str, Any]] = {}
        self.security: Dict[str, Any] = {}
        self._views: Dict[str, MapFunction] = {}
        self._seq = 0
        self._subscribers: List[asyncio.Queue] = []
        # RLock for all data operations; views run under it too
        self._data_lock = threading.RLock()

    def register_views(self, design_id: str, views: Dict[str, MapFunction]) -> None:
        with self._data_lock:
            for name, fn in views.items():
                self._views[view_path(design_id, name)] = fn

    def _publish(self, doc_id: str, deleted: bool, doc: Optional[Dict[str, Any]]) -> None:
        self._seq += 1
        change = Change(id=doc_id, seq=self._seq, deleted=deleted, doc=copy.deepcopy(doc))
        for queue in list(self._subscribers):
            queue.put_nowait(change)

    def _write(self, doc: Dict[str, Any]) -> Dict[str, Any]:
        doc_id = doc.get("_id") or uuid.uuid4().hex
        current = self.docs.get(doc_id)
        incoming_rev = doc.get("_rev")
        if current is not None and current["_rev"] != incoming_rev:
            raise DocumentConflict("Document update conflict", {"id": doc_id})
        if current is None and incoming_rev:
            raise DocumentConflict("Document update conflict", {"id": doc_id})
        if doc.get("_deleted"):
            if current is None:
                raise DocumentNotFound("missing", {"id": doc_id})
            self._tombstones[doc_id] = current
            del self.docs[doc_id]
            self._publish(doc_id, True, None)
            return {"_id": doc_id, "_rev": _next_rev(incoming_rev), "_deleted": True}
        stored = copy.deepcopy(doc)
        stored["_id"] = doc_id
        stored["_rev"] = _next_rev(current["_rev"] if current else None)
        self.docs[doc_id] = stored
        self._publish(doc_id, False, stored)
        return copy.deepcopy(stored)

    async def get(self, doc_id: str) -> Dict[str, Any]:
        with self._data_lock:
            doc = self.docs.get(doc_id)
            if doc is None:
                raise DocumentNotFound("missing", {"id": doc_id})
            return copy.deepcopy(doc)

    async def last_revision(self, doc_id: str) -> Dict[str, Any]:
        with self._data_lock:
            doc = self._tombstones.get(doc_id)
            if doc is None or doc_id in self.docs:
                raise DocumentNotFound("no deleted revision", {"id": doc_id})
            return copy.deepcopy(doc)

    async def put(self, doc: Dict[str, Any]) -> Dict[str, Any]:
        with self._data_lock:
            return self._write(doc)

    async def bulk_docs(self, docs: List[Dict[str, Any]]) -> List[BulkResult]:
        results: List[BulkResult] = []
        with self._data_lock:
            for doc in docs:
                try:
                    written = self._write(doc)
                except DocumentConflict:
                    results.append(BulkResult(id=doc.get("_id", ""), ok=False, error="conflict"))
                except DocumentNotFound:
                    results.append(BulkResult(id=doc.get("_id", ""), ok=False, error="not_found"))
                else:
                    results.append(BulkResult(id=written["_id"], ok=True, rev=written["_rev"]))
        return results

    async def delete(self, doc_id: str, rev: Optional[str] = None) -> None:
        with self._data_lock:
            current = self.docs.get(doc_id)
            if current is None:
                raise DocumentNotFound("missing", {"id": doc_id})
            self._write({"_id": doc_id, "_rev": rev or current["_rev"], "_deleted": True})

    async def all_docs(self, keys: Iterable[str], include_docs: bool = True) -> List[ViewRow]:
        rows: List[ViewRow] = []
        with self._data_lock:
            for key in keys:
                doc = self.docs.get(key)
                if doc is None:
                    continue
                rows.append(
                    ViewRow(
                        id=key,
                        key=key,
                        value={"rev": doc["_rev"]},
                        doc=copy.deepcopy(doc) if include_docs else None,
                    )
                )
        return rows

    async def query(
        self,
        view: str,
        *,
        key: Any = None,
        endkey: Any = None,
        include_docs: bool = False,
    ) -> List[ViewRow]:
        with self._data_lock:
            fn = self._views.get(view)
            if fn is None:
                raise DocumentNotFound(f"missing view {view}", {"view": view})
            rows: List[ViewRow] = []
            for doc_id, doc in self.docs.items():
                for emitted_key, value in fn(doc):
                    if key is not None and emitted_key != key:
                        continue
                    if endkey is not None and (emitted_key is None or emitted_key > endkey):
                        continue
                    rows.append(
                        ViewRow(
                            id=doc_id,
                            key=emitted_key,
                            value=copy.deepcopy(value),
                            doc=copy.deepcopy(doc) if include_docs else None,
                        )
                    )
            rows.sort(key=lambda row: (row.key is None, row.key, row.id))
            return rows

    def changes(self, *, since: Any = "now") -> _ChangeSubscription:
        return _ChangeSubscription(self)

    async def seed_design(self, design: Dict[str, Any]) -> bool:
        design_id = design["_id"]
        self.register_views(design_id, python_views(design))
        with self._data_lock:
            current = self.docs.get(design_id)
            body = {k: v for k, v in design.items() if k != "_rev"}
            if current is not None:
                existing = {k: v for k, v in current.items() if k != "_rev"}
                if existing == body:
                    return False
                body["_rev"] = current["_rev"]
            self._write(body)
            return True

    def _shutdown(self) -> None:
        for queue in list(self._subscribers):
            queue.put_nowait(None)
        self._subscribers.clear()

    async def close(self) -> None:
        """Handles share state with the server; only the server shuts feeds down."""
        return None


class MemoryServer:
    """In-process database server holding ``MemoryDocumentStore`` instances."""

    def __init__(
        self, base_url: str = "http://localhost:5984", *, databases: Iterable[str] = ()
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self.logger = get_logger(__name__)
        self.databases: Dict[str, MemoryDocumentStore] = {
            name: MemoryDocumentStore(name) for name in databases
        }
        self.issued_api_keys: Dict[str, str] = {}
        self._data_lock = threading.RLock()

    def _require(self, name: str) -> MemoryDocumentStore:
        db = self.databases.get(name)
        if db is None:
            raise DocumentNotFound("Database does not exist.", {"db": name})
        return db

    async def create_database(self, name: str) -> None:
        with self._data_lock:
            if name in self.databases:
                raise DatabaseExists("The database could not be created, the file already exists.", {"db": name})
            self.databases[name] = MemoryDocumentStore(name)
        self.logger.info("database_created", db=name)

    async def destroy_database(self, name: str) -> None:
        with self._data_lock:
            db = self._require(name)
            del self.databases[name]
        db._shutdown()
        self.logger.info("database_destroyed", db=name)

    def database(self, name: str) -> MemoryDocumentStore:
        with self._data_lock:
            return self._require(name)

    async def get_security(self, name: str) -> Dict[str, Any]:
        with self._data_lock:
            return copy.deepcopy(self._require(name).security)

    async def put_security(self, name: str, security: Dict[str, Any]) -> None:
        with self._data_lock:
            self._require(name).security = copy.deepcopy(security)

    async def issue_api_key(self) -> Dict[str, Any]:
        key = secrets.token_hex(12)
        password = secrets.token_urlsafe(24)
        self.issued_api_keys[key] = password
        return {"key": key, "password": password, "ok": True}

    def url(self, name: str = "") -> str:
        return f"{self.base_url}/{name}" if name else self.base_url

    async def close(self) -> None:
        for db in list(self.databases.values()):
            db._shutdown()
