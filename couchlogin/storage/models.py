from __future__ import annotations

import json
import time
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

# Document fields the dataclass maps explicitly; everything else is carried in
# UserRecord.extra so foreign fields survive a read-modify-write cycle.
_USER_FIELDS = {
    "_id",
    "_rev",
    "type",
    "name",
    "email",
    "roles",
    "localRoles",
    "providers",
    "local",
    "session",
    "personalDBs",
    "activity",
    "unverifiedEmail",
    "forgotPassword",
    "signUp",
    "profile",
}


def now_ms() -> int:
    """Milliseconds since the epoch, the unit of every session timestamp."""
    return int(time.time() * 1000)


def session_expired(expires: int, ends: int, now: int) -> bool:
    """A session is over once ``min(ends, expires)`` (or ``expires``) is in the past."""
    if ends and ends > 0:
        return min(ends, expires) < now
    return expires < now


@dataclass
class RequestContext:
    """What the engine needs to know about the caller of an operation."""

    ip: Optional[str] = None
    user_agent: Optional[str] = None
    lang: Optional[str] = None
    # Key of the session that issued the request, when authenticated
    session_key: Optional[str] = None
    provider: str = "local"


@dataclass
class SessionEntry:
    """Session sub-record stored in the user document (no key, no secret)."""

    issued: int
    refreshed: int
    expires: int
    ends: int = 0
    provider: Optional[str] = None
    ip: Optional[str] = None

    def is_expired(self, now: int) -> bool:
        return session_expired(self.expires, self.ends, now)

    def to_doc(self) -> Dict[str, Any]:
        return {
            "issued": self.issued,
            "refreshed": self.refreshed,
            "expires": self.expires,
            "ends": self.ends,
            "provider": self.provider,
            "ip": self.ip,
        }

    @classmethod
    def from_doc(cls, doc: Dict[str, Any]) -> "SessionEntry":
        return cls(
            issued=int(doc.get("issued") or 0),
            refreshed=int(doc.get("refreshed") or 0),
            expires=int(doc.get("expires") or 0),
            ends=int(doc.get("ends") or 0),
            provider=doc.get("provider"),
            ip=doc.get("ip"),
        )


@dataclass
class PersonalDB:
    name: str
    type: str = "private"
    # None means "resolve from the database model on every session"
    permissions: Optional[List[str]] = None
    delete_with_user: bool = False

    def to_doc(self) -> Dict[str, Any]:
        doc: Dict[str, Any] = {
            "name": self.name,
            "type": self.type,
            "deleteWithUser": self.delete_with_user,
        }
        if self.permissions is not None:
            doc["permissions"] = list(self.permissions)
        return doc

    @classmethod
    def from_doc(cls, doc: Dict[str, Any]) -> "PersonalDB":
        permissions = doc.get("permissions")
        return cls(
            name=doc.get("name", ""),
            type=doc.get("type") or "private",
            permissions=list(permissions) if permissions is not None else None,
            delete_with_user=bool(doc.get("deleteWithUser", False)),
        )


@dataclass
class ActivityEntry:
    timestamp: str
    action: str
    provider: Optional[str] = None
    ip: Optional[str] = None

    def to_doc(self) -> Dict[str, Any]:
        return {
            "timestamp": self.timestamp,
            "action": self.action,
            "provider": self.provider,
            "ip": self.ip,
        }

    @classmethod
    def from_doc(cls, doc: Dict[str, Any]) -> "ActivityEntry":
        return cls(
            timestamp=doc.get("timestamp", ""),
            action=doc.get("action", ""),
            provider=doc.get("provider"),
            ip=doc.get("ip"),
        )


@dataclass
class ProviderLink:
    """Credentials and profile of one linked federated provider."""

    auth: Dict[str, Any] = field(default_factory=dict)
    profile: Dict[str, Any] = field(default_factory=dict)

    @property
    def profile_id(self) -> Optional[str]:
        raw = self.profile.get("id")
        return str(raw).lower() if raw is not None else None

    def to_doc(self) -> Dict[str, Any]:
        return {"auth": dict(self.auth), "profile": dict(self.profile)}

    @classmethod
    def from_doc(cls, doc: Dict[str, Any]) -> "ProviderLink":
        return cls(auth=dict(doc.get("auth") or {}), profile=dict(doc.get("profile") or {}))


@dataclass
class LocalCredential:
    """Local password hash plus failed-login bookkeeping."""

    password_hash: Optional[Dict[str, Any]] = None
    failed_login_attempts: int = 0
    locked_until: Optional[int] = None

    @property
    def has_password(self) -> bool:
        ph = self.password_hash or {}
        return bool(ph.get("salt") and ph.get("derived_key"))

    def to_doc(self) -> Dict[str, Any]:
        doc: Dict[str, Any] = dict(self.password_hash or {})
        doc["failedLoginAttempts"] = self.failed_login_attempts
        if self.locked_until is not None:
            doc["lockedUntil"] = self.locked_until
        return doc

    @classmethod
    def from_doc(cls, doc: Dict[str, Any]) -> "LocalCredential":
        hash_fields = {
            k: v for k, v in doc.items() if k not in ("failedLoginAttempts", "lockedUntil")
        }
        return cls(
            password_hash=hash_fields or None,
            failed_login_attempts=int(doc.get("failedLoginAttempts") or 0),
            locked_until=doc.get("lockedUntil"),
        )


@dataclass
class UserRecord:
    id: str
    rev: Optional[str] = None
    name: Optional[str] = None
    email: Optional[str] = None
    roles: List[str] = field(default_factory=list)
    local_roles: List[str] = field(default_factory=list)
    providers: List[str] = field(default_factory=list)
    provider_data: Dict[str, ProviderLink] = field(default_factory=dict)
    local: Optional[LocalCredential] = None
    session: Dict[str, SessionEntry] = field(default_factory=dict)
    personal_dbs: Dict[str, PersonalDB] = field(default_factory=dict)
    activity: List[ActivityEntry] = field(default_factory=list)
    unverified_email: Optional[Dict[str, Any]] = None
    forgot_password: Optional[Dict[str, Any]] = None
    sign_up: Optional[Dict[str, Any]] = None
    profile: Optional[Dict[str, Any]] = None
    extra: Dict[str, Any] = field(default_factory=dict)

    def session_keys(self) -> List[str]:
        return list(self.session.keys())

    def expired_session_keys(self, now: int) -> List[str]:
        return [key for key, entry in self.session.items() if entry.is_expired(now)]

    def live_session_keys(self, now: int) -> List[str]:
        return [key for key, entry in self.session.items() if entry.expires > now]

    def to_doc(self) -> Dict[str, Any]:
        doc: Dict[str, Any] = dict(self.extra)
        doc["_id"] = self.id
        if self.rev:
            doc["_rev"] = self.rev
        doc["type"] = "user"
        if self.name is not None:
            doc["name"] = self.name
        if self.email is not None:
            doc["email"] = self.email
        doc["roles"] = list(self.roles)
        if self.local_roles:
            doc["localRoles"] = list(self.local_roles)
        doc["providers"] = list(self.providers)
        for provider, link in self.provider_data.items():
            doc[provider] = link.to_doc()
        if self.local is not None:
            doc["local"] = self.local.to_doc()
        if self.session:
            doc["session"] = {key: entry.to_doc() for key, entry in self.session.items()}
        if self.personal_dbs:
            doc["personalDBs"] = {
                name: pdb.to_doc() for name, pdb in self.personal_dbs.items()
            }
        if self.activity:
            doc["activity"] = [entry.to_doc() for entry in self.activity]
        if self.unverified_email is not None:
            doc["unverifiedEmail"] = dict(self.unverified_email)
        if self.forgot_password is not None:
            doc["forgotPassword"] = dict(self.forgot_password)
        if self.sign_up is not None:
            doc["signUp"] = dict(self.sign_up)
        if self.profile is not None:
            doc["profile"] = dict(self.profile)
        return doc

    @classmethod
    def from_doc(cls, doc: Dict[str, Any]) -> "UserRecord":
        providers = list(doc.get("providers") or [])
        provider_data = {
            p: ProviderLink.from_doc(doc[p])
            for p in providers
            if p != "local" and isinstance(doc.get(p), dict)
        }
        extra = {
            k: v
            for k, v in doc.items()
            if k not in _USER_FIELDS and k not in provider_data
        }
        local = doc.get("local")
        return cls(
            id=doc["_id"],
            rev=doc.get("_rev"),
            name=doc.get("name"),
            email=doc.get("email"),
            roles=list(doc.get("roles") or []),
            local_roles=list(doc.get("localRoles") or []),
            providers=providers,
            provider_data=provider_data,
            local=LocalCredential.from_doc(local) if isinstance(local, dict) else None,
            session={
                key: SessionEntry.from_doc(entry)
                for key, entry in (doc.get("session") or {}).items()
            },
            personal_dbs={
                name: PersonalDB.from_doc(pdb)
                for name, pdb in (doc.get("personalDBs") or {}).items()
            },
            activity=[ActivityEntry.from_doc(a) for a in (doc.get("activity") or [])],
            unverified_email=doc.get("unverifiedEmail"),
            forgot_password=doc.get("forgotPassword"),
            sign_up=doc.get("signUp"),
            profile=doc.get("profile"),
            extra=extra,
        )


@dataclass
class SessionToken:
    """Server-side session state kept in the TokenStore.

    ``password`` is only populated between minting and the first store; the
    serialized form carries ``secret_hash`` instead.
    """

    key: str
    user_id: str
    issued: int
    refreshed: int
    expires: int
    ends: int = 0
    roles: List[str] = field(default_factory=list)
    provider: Optional[str] = None
    password: Optional[str] = None
    secret_hash: Optional[Dict[str, Any]] = None

    def is_expired(self, now: int) -> bool:
        return session_expired(self.expires, self.ends, now)

    def to_entry(self, ip: Optional[str] = None) -> SessionEntry:
        return SessionEntry(
            issued=self.issued,
            refreshed=self.refreshed,
            expires=self.expires,
            ends=self.ends,
            provider=self.provider,
            ip=ip,
        )

    def to_json(self) -> str:
        return json.dumps(
            {
                "key": self.key,
                "user_id": self.user_id,
                "issued": self.issued,
                "refreshed": self.refreshed,
                "expires": self.expires,
                "ends": self.ends,
                "roles": list(self.roles),
                "provider": self.provider,
                "secret": self.secret_hash,
            }
        )

    @classmethod
    def from_json(cls, raw: str) -> "SessionToken":
        data = json.loads(raw)
        return cls(
            key=data["key"],
            user_id=data["user_id"],
            issued=int(data.get("issued") or 0),
            refreshed=int(data.get("refreshed") or 0),
            expires=int(data.get("expires") or 0),
            ends=int(data.get("ends") or 0),
            roles=list(data.get("roles") or []),
            provider=data.get("provider"),
            secret_hash=data.get("secret"),
        )


@dataclass
class SessionDescriptor:
    """Public view of a session returned to callers."""

    token: str
    user_id: str
    issued: int
    refreshed: int
    expires: int
    ends: int
    roles: List[str]
    provider: Optional[str] = None
    password: Optional[str] = None
    ip: Optional[str] = None
    user_dbs: Optional[Dict[str, str]] = None
    profile: Optional[Dict[str, Any]] = None

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {
            "token": self.token,
            "user_id": self.user_id,
            "issued": self.issued,
            "refreshed": self.refreshed,
            "expires": self.expires,
            "ends": self.ends,
            "roles": list(self.roles),
            "provider": self.provider,
        }
        if self.password is not None:
            data["password"] = self.password
        if self.ip is not None:
            data["ip"] = self.ip
        if self.user_dbs is not None:
            data["userDBs"] = dict(self.user_dbs)
        if self.profile is not None:
            data["profile"] = dict(self.profile)
        return data


@dataclass
class DBConfig:
    """Resolved provisioning template for one personal database."""

    name: str
    type: str = "private"
    admin_roles: List[str] = field(default_factory=list)
    member_roles: List[str] = field(default_factory=list)
    permissions: Optional[List[str]] = None
    design_docs: List[str] = field(default_factory=list)
    delete_with_user: bool = False
