"""Secondary indexes over the user and credentials databases.

Every view is declared twice: as JavaScript for a real CouchDB server and as a
Python map function for ``MemoryDocumentStore``. Both emit identical rows.
"""

from __future__ import annotations

import json
from pathlib import Path
from typing import Any, Callable, Dict, Iterable, Iterator, List, Optional, Tuple

from couchlogin.logging import get_logger

logger = get_logger(__name__)

MapFunction = Callable[[Dict[str, Any]], Iterable[Tuple[Any, Any]]]

USER_DESIGN_ID = "_design/auth"
CREDENTIALS_DESIGN_ID = "_design/couchlogin"


def _username(doc: Dict[str, Any]) -> Iterator[Tuple[Any, Any]]:
    if doc.get("type") == "user":
        yield doc["_id"], None


def _email(doc: Dict[str, Any]) -> Iterator[Tuple[Any, Any]]:
    if doc.get("type") != "user":
        return
    if doc.get("email"):
        yield doc["email"], None
    elif (doc.get("unverifiedEmail") or {}).get("email"):
        yield doc["unverifiedEmail"]["email"], None


def _email_username(doc: Dict[str, Any]) -> Iterator[Tuple[Any, Any]]:
    if doc.get("type") != "user":
        return
    yield doc["_id"], None
    if doc.get("email"):
        yield doc["email"], None
    elif (doc.get("unverifiedEmail") or {}).get("email"):
        yield doc["unverifiedEmail"]["email"], None


def _session(doc: Dict[str, Any]) -> Iterator[Tuple[Any, Any]]:
    if doc.get("type") == "user" and isinstance(doc.get("session"), dict):
        for key in doc["session"]:
            yield key, None


def _expired_keys(doc: Dict[str, Any]) -> Iterator[Tuple[Any, Any]]:
    if doc.get("type") == "user" and isinstance(doc.get("session"), dict):
        for key, entry in doc["session"].items():
            if entry.get("expires"):
                yield entry["expires"], {"key": key, "user": doc["_id"]}


def _password_reset(doc: Dict[str, Any]) -> Iterator[Tuple[Any, Any]]:
    token = (doc.get("forgotPassword") or {}).get("token")
    if doc.get("type") == "user" and token:
        yield token, None


def _password_reset_expiry(doc: Dict[str, Any]) -> Iterator[Tuple[Any, Any]]:
    expires = (doc.get("forgotPassword") or {}).get("expires")
    if doc.get("type") == "user" and expires:
        yield expires, None


def _verify_email(doc: Dict[str, Any]) -> Iterator[Tuple[Any, Any]]:
    token = (doc.get("unverifiedEmail") or {}).get("token")
    if doc.get("type") == "user" and token:
        yield token, None


def _provider_view(provider: str) -> MapFunction:
    def _map(doc: Dict[str, Any]) -> Iterator[Tuple[Any, Any]]:
        profile = (doc.get(provider) or {}).get("profile") or {}
        if doc.get("type") == "user" and profile.get("id") is not None:
            yield str(profile["id"]).lower(), None

    return _map


def _expiration(doc: Dict[str, Any]) -> Iterator[Tuple[Any, Any]]:
    if doc.get("user_id"):
        yield doc.get("expires"), {"user": doc["user_id"]}


_USER_VIEWS_JS: Dict[str, str] = {
    "username": "function (doc) { if (doc.type === 'user') { emit(doc._id, null); } }",
    "email": (
        "function (doc) { if (doc.type === 'user') {"
        " if (doc.email) { emit(doc.email, null); }"
        " else if (doc.unverifiedEmail && doc.unverifiedEmail.email) {"
        " emit(doc.unverifiedEmail.email, null); } } }"
    ),
    "emailUsername": (
        "function (doc) { if (doc.type === 'user') { emit(doc._id, null);"
        " if (doc.email) { emit(doc.email, null); }"
        " else if (doc.unverifiedEmail && doc.unverifiedEmail.email) {"
        " emit(doc.unverifiedEmail.email, null); } } }"
    ),
    "session": (
        "function (doc) { if (doc.type === 'user' && doc.session) {"
        " for (var key in doc.session) { if (doc.session.hasOwnProperty(key)) {"
        " emit(key, null); } } } }"
    ),
    "expiredKeys": (
        "function (doc) { if (doc.type === 'user' && doc.session) {"
        " for (var key in doc.session) { if (doc.session.hasOwnProperty(key)"
        " && doc.session[key].expires) {"
        " emit(doc.session[key].expires, {key: key, user: doc._id}); } } } }"
    ),
    "passwordReset": (
        "function (doc) { if (doc.type === 'user' && doc.forgotPassword"
        " && doc.forgotPassword.token) { emit(doc.forgotPassword.token, null); } }"
    ),
    "passwordResetExpiry": (
        "function (doc) { if (doc.type === 'user' && doc.forgotPassword"
        " && doc.forgotPassword.expires) { emit(doc.forgotPassword.expires, null); } }"
    ),
    "verifyEmail": (
        "function (doc) { if (doc.type === 'user' && doc.unverifiedEmail"
        " && doc.unverifiedEmail.token) { emit(doc.unverifiedEmail.token, null); } }"
    ),
}

_PROVIDER_VIEW_JS = (
    "function (doc) { if (doc.type === 'user' && doc['%PROVIDER%']"
    " && doc['%PROVIDER%'].profile) {"
    " emit(String(doc['%PROVIDER%'].profile.id).toLowerCase(), null); } }"
)

_USER_VIEWS_PY: Dict[str, MapFunction] = {
    "username": _username,
    "email": _email,
    "emailUsername": _email_username,
    "session": _session,
    "expiredKeys": _expired_keys,
    "passwordReset": _password_reset,
    "passwordResetExpiry": _password_reset_expiry,
    "verifyEmail": _verify_email,
}


def user_design_doc(providers: Iterable[str] = ()) -> Dict[str, Any]:
    """Design document for the user database, one extra view per provider."""
    views = {name: {"map": js} for name, js in _USER_VIEWS_JS.items()}
    for provider in providers:
        views[provider] = {"map": _PROVIDER_VIEW_JS.replace("%PROVIDER%", provider)}
    return {"_id": USER_DESIGN_ID, "views": views}


def credentials_design_doc() -> Dict[str, Any]:
    return {
        "_id": CREDENTIALS_DESIGN_ID,
        "views": {
            "expiration": {
                "map": (
                    "function (doc) { if (doc.user_id) {"
                    " emit(doc.expires, {user: doc.user_id}); } }"
                )
            }
        },
    }


def user_map_functions(providers: Iterable[str] = ()) -> Dict[str, MapFunction]:
    """Python equivalents of :func:`user_design_doc` for the in-memory store."""
    views = dict(_USER_VIEWS_PY)
    for provider in providers:
        views[provider] = _provider_view(provider)
    return views


def credentials_map_functions() -> Dict[str, MapFunction]:
    return {"expiration": _expiration}


def python_views(design: Dict[str, Any]) -> Dict[str, MapFunction]:
    """Map functions matching a JavaScript design document we generated.

    Foreign design documents (seeded into personal databases) have no Python
    counterpart and yield an empty mapping.
    """
    views = design.get("views") or {}
    if design.get("_id") == USER_DESIGN_ID:
        providers = [name for name in views if name not in _USER_VIEWS_PY]
        return {
            name: fn for name, fn in user_map_functions(providers).items() if name in views
        }
    if design.get("_id") == CREDENTIALS_DESIGN_ID:
        return credentials_map_functions()
    return {}


def view_path(design_id: str, view: str) -> str:
    """``_design/auth`` + ``email`` -> ``auth/email``."""
    return f"{design_id.split('/', 1)[-1]}/{view}"


def load_design_docs(names: Iterable[str], design_doc_dir: Optional[str]) -> List[Dict[str, Any]]:
    """Read named design documents (``<dir>/<name>.json``) for personal databases.

    Missing or unreadable files are logged and skipped.
    """
    docs: List[Dict[str, Any]] = []
    if not design_doc_dir:
        names = list(names)
        if names:
            logger.warning("design_doc_dir_not_configured", design_docs=names)
        return docs
    root = Path(design_doc_dir)
    for name in names:
        if not name:
            continue
        path = root / f"{name}.json"
        try:
            doc = json.loads(path.read_text(encoding="utf-8"))
        except FileNotFoundError:
            logger.warning("design_doc_not_found", design_doc=name, path=str(path))
            continue
        except (OSError, json.JSONDecodeError) as exc:
            logger.warning("design_doc_unreadable", design_doc=name, error=str(exc))
            continue
        doc.setdefault("_id", f"_design/{name}")
        docs.append(doc)
    return docs
