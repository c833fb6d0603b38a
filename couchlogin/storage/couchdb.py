from __future__ import annotations

import json
from typing import Any, AsyncIterator, Dict, Iterable, List, Optional
from urllib.parse import quote

import httpx

from couchlogin.logging import get_logger
from couchlogin.storage.common import BulkResult, Change, ViewRow
from couchlogin.storage.errors import (
    DatabaseExists,
    DocumentConflict,
    DocumentNotFound,
    StorageError,
    StoreUnavailable,
)

logger = get_logger(__name__)

# Long-poll window for the change feed, in milliseconds
CHANGES_TIMEOUT_MS = 30_000


def _quote_db(name: str) -> str:
    return quote(name, safe="")


def _quote_id(doc_id: str) -> str:
    if doc_id.startswith("_design/"):
        return "_design/" + quote(doc_id[len("_design/"):], safe="")
    return quote(doc_id, safe="")


def _raise_for_status(response: httpx.Response, **context: Any) -> None:
    if response.status_code < 400:
        return
    try:
        body = response.json()
    except ValueError:
        body = {"reason": response.text}
    reason = body.get("reason") or body.get("error") or response.reason_phrase
    detail = {"status": response.status_code, "error": body.get("error"), **context}
    if response.status_code == 404:
        raise DocumentNotFound(reason, detail)
    if response.status_code == 409:
        raise DocumentConflict(reason, detail)
    if response.status_code == 412:
        raise DatabaseExists(reason, detail)
    if response.status_code >= 500:
        raise StoreUnavailable(reason, detail)
    raise StorageError(reason, detail)


class CouchServer:
    """HTTP client for a CouchDB-compatible server (CouchDB or Cloudant)."""

    def __init__(
        self,
        base_url: str,
        *,
        user: Optional[str] = None,
        password: Optional[str] = None,
        timeout_seconds: float = 10.0,
        client: Optional[httpx.AsyncClient] = None,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self.user = user
        self.password = password
        self.timeout_seconds = timeout_seconds
        self._client: Optional[httpx.AsyncClient] = client

    async def _get_client(self) -> httpx.AsyncClient:
        """Get or create the shared HTTP client."""
        if self._client is None:
            auth = httpx.BasicAuth(self.user, self.password) if self.user else None
            self._client = httpx.AsyncClient(
                base_url=self.base_url,
                auth=auth,
                timeout=httpx.Timeout(self.timeout_seconds, connect=5.0),
                headers={"Accept": "application/json"},
            )
        return self._client

    async def request(self, method: str, path: str, **kwargs: Any) -> httpx.Response:
        """Issue a request; transport failures surface as ``StoreUnavailable``."""
        client = await self._get_client()
        try:
            return await client.request(method, path, **kwargs)
        except httpx.TimeoutException as exc:
            logger.error("couch_request_timeout", method=method, path=path, error=str(exc))
            raise StoreUnavailable("Document store timed out", {"path": path}) from exc
        except httpx.HTTPError as exc:
            logger.error("couch_request_failed", method=method, path=path, error=str(exc))
            raise StoreUnavailable("Document store unreachable", {"path": path}) from exc

    async def create_database(self, name: str) -> None:
        response = await self.request("PUT", f"/{_quote_db(name)}")
        _raise_for_status(response, db=name)
        logger.info("database_created", db=name)

    async def destroy_database(self, name: str) -> None:
        response = await self.request("DELETE", f"/{_quote_db(name)}")
        _raise_for_status(response, db=name)
        logger.info("database_destroyed", db=name)

    def database(self, name: str) -> "CouchDocumentStore":
        return CouchDocumentStore(self, name)

    async def get_security(self, name: str) -> Dict[str, Any]:
        response = await self.request("GET", f"/{_quote_db(name)}/_security")
        _raise_for_status(response, db=name)
        return response.json() or {}

    async def put_security(self, name: str, security: Dict[str, Any]) -> None:
        response = await self.request("PUT", f"/{_quote_db(name)}/_security", json=security)
        _raise_for_status(response, db=name)

    async def issue_api_key(self) -> Dict[str, Any]:
        response = await self.request("POST", "/_api/v2/api_keys")
        _raise_for_status(response, path="/_api/v2/api_keys")
        return response.json()

    def url(self, name: str = "") -> str:
        return f"{self.base_url}/{_quote_db(name)}" if name else self.base_url

    async def close(self) -> None:
        if self._client is not None:
            await self._client.aclose()
            self._client = None


class CouchDocumentStore:
    """One database on a :class:`CouchServer`."""

    def __init__(self, server: CouchServer, name: str) -> None:
        self.server = server
        self.name = name
        self._path = f"/{_quote_db(name)}"

    async def get(self, doc_id: str) -> Dict[str, Any]:
        response = await self.server.request("GET", f"{self._path}/{_quote_id(doc_id)}")
        _raise_for_status(response, db=self.name, id=doc_id)
        return response.json()

    async def put(self, doc: Dict[str, Any]) -> Dict[str, Any]:
        doc_id = doc["_id"]
        response = await self.server.request(
            "PUT", f"{self._path}/{_quote_id(doc_id)}", json=doc
        )
        _raise_for_status(response, db=self.name, id=doc_id)
        body = response.json()
        return {**doc, "_rev": body["rev"]}

    async def bulk_docs(self, docs: List[Dict[str, Any]]) -> List[BulkResult]:
        if not docs:
            return []
        response = await self.server.request(
            "POST", f"{self._path}/_bulk_docs", json={"docs": docs}
        )
        _raise_for_status(response, db=self.name)
        return [
            BulkResult(
                id=row.get("id", ""),
                ok=bool(row.get("ok")) or ("rev" in row and "error" not in row),
                rev=row.get("rev"),
                error=row.get("error"),
            )
            for row in response.json()
        ]

    async def delete(self, doc_id: str, rev: Optional[str] = None) -> None:
        if rev is None:
            rev = (await self.get(doc_id))["_rev"]
        response = await self.server.request(
            "DELETE", f"{self._path}/{_quote_id(doc_id)}", params={"rev": rev}
        )
        _raise_for_status(response, db=self.name, id=doc_id)

    async def last_revision(self, doc_id: str) -> Dict[str, Any]:
        path = f"{self._path}/{_quote_id(doc_id)}"
        response = await self.server.request(
            "GET",
            path,
            params={"revs": "true", "open_revs": "all"},
        )
        _raise_for_status(response, db=self.name, id=doc_id)
        infos = response.json()
        revisions: Dict[str, Any] = {}
        if infos:
            revisions = (infos[0].get("ok") or {}).get("_revisions") or {}
        ids = revisions.get("ids") or []
        if len(ids) < 2:
            raise DocumentNotFound("no deleted revision", {"id": doc_id})
        # ids[0] is the tombstone itself
        previous = f"{revisions['start'] - 1}-{ids[1]}"
        response = await self.server.request("GET", path, params={"rev": previous})
        _raise_for_status(response, db=self.name, id=doc_id)
        return response.json()

    async def all_docs(self, keys: Iterable[str], include_docs: bool = True) -> List[ViewRow]:
        response = await self.server.request(
            "POST",
            f"{self._path}/_all_docs",
            params={"include_docs": json.dumps(include_docs)},
            json={"keys": list(keys)},
        )
        _raise_for_status(response, db=self.name)
        rows: List[ViewRow] = []
        for row in response.json().get("rows", []):
            value = row.get("value") or {}
            if row.get("error") or value.get("deleted"):
                continue
            rows.append(ViewRow(id=row["id"], key=row["key"], value=value, doc=row.get("doc")))
        return rows

    async def query(
        self,
        view: str,
        *,
        key: Any = None,
        endkey: Any = None,
        include_docs: bool = False,
    ) -> List[ViewRow]:
        design, name = view.split("/", 1)
        params: Dict[str, str] = {"include_docs": json.dumps(include_docs)}
        if key is not None:
            params["key"] = json.dumps(key)
        if endkey is not None:
            params["endkey"] = json.dumps(endkey)
        response = await self.server.request(
            "GET",
            f"{self._path}/_design/{quote(design, safe='')}/_view/{quote(name, safe='')}",
            params=params,
        )
        _raise_for_status(response, db=self.name, view=view)
        return [
            ViewRow(id=row["id"], key=row.get("key"), value=row.get("value"), doc=row.get("doc"))
            for row in response.json().get("rows", [])
        ]

    async def changes(self, *, since: Any = "now") -> AsyncIterator[Change]:
        """Follow the change feed with repeated long-poll requests."""
        last_seq = since
        while True:
            response = await self.server.request(
                "GET",
                f"{self._path}/_changes",
                params={
                    "feed": "longpoll",
                    "since": last_seq,
                    "include_docs": "true",
                    "timeout": str(CHANGES_TIMEOUT_MS),
                },
                timeout=httpx.Timeout(CHANGES_TIMEOUT_MS / 1000 + 10, connect=5.0),
            )
            _raise_for_status(response, db=self.name)
            body = response.json()
            for row in body.get("results", []):
                yield Change(
                    id=row["id"],
                    seq=row.get("seq"),
                    deleted=bool(row.get("deleted")),
                    doc=row.get("doc"),
                )
            last_seq = body.get("last_seq", last_seq)

    async def seed_design(self, design: Dict[str, Any]) -> bool:
        body = {k: v for k, v in design.items() if k != "_rev"}
        try:
            current = await self.get(design["_id"])
        except DocumentNotFound:
            current = None
        if current is not None:
            existing = {k: v for k, v in current.items() if k != "_rev"}
            if existing == body:
                return False
            body["_rev"] = current["_rev"]
        await self.put(body)
        logger.info("design_doc_seeded", db=self.name, design=design["_id"])
        return True

    async def close(self) -> None:
        """Handles share the server's client; nothing to release per database."""
        return None
