from __future__ import annotations

import json
import os
from enum import Enum
from typing import Any, Dict, List, Optional

from dotenv import dotenv_values
from pydantic import BaseModel, ConfigDict, Field, field_validator

from couchlogin.logging import get_logger

logger = get_logger(__name__)


class TokenStoreBackend(str, Enum):
    """Where session tokens live between requests."""

    MEMORY = "memory"
    FILE = "file"
    REDIS = "redis"


class DatabaseType(str, Enum):
    PRIVATE = "private"
    SHARED = "shared"


def env_field(default: Any, env: str, **kwargs):
    extra = kwargs.pop("json_schema_extra", {}) or {}
    extra = {**extra, "env": env}
    return Field(default, json_schema_extra=extra, **kwargs)


class SecuritySettings(BaseModel):
    """Session lifetimes, lockout policy and hashing cost."""

    # Session token life in seconds, renewable via refresh
    session_life: int = 86400
    # Hard limit in seconds that refresh can never extend; 0 disables it
    session_max_life: int = 0
    # Password-reset token life in seconds
    token_life: int = 86400
    max_failed_logins: int = 0
    lockout_time: int = 600
    user_activity_log_size: int = 10
    default_roles: List[str] = Field(default_factory=lambda: ["user"])
    hash_time_cost: int = 3
    hash_memory_cost: int = 65536
    hash_parallelism: int = 4

    model_config = ConfigDict(extra="ignore")


class CouchSettings(BaseModel):
    """Connection details for the document database server."""

    protocol: str = "http://"
    host: str = "localhost:5984"
    user: Optional[str] = None
    password: Optional[str] = None
    public_url: Optional[str] = None
    user_db: str = "sl-users"
    couch_auth_db: str = "_users"
    # Managed hosting that issues its own API keys instead of _users docs
    cloudant: bool = False
    timeout_seconds: float = 10.0

    model_config = ConfigDict(extra="ignore")


class TokenStoreSettings(BaseModel):
    adapter: TokenStoreBackend = TokenStoreBackend.MEMORY
    sessions_root: str = ".sessions"
    redis_url: str = "redis://localhost:6379/0"

    model_config = ConfigDict(extra="ignore")


class DBModel(BaseModel):
    """Per-database template; ``_default`` applies to unnamed databases."""

    permissions: Optional[List[str]] = None
    design_docs: List[str] = Field(default_factory=list)
    type: Optional[DatabaseType] = None
    admin_roles: List[str] = Field(default_factory=list)
    member_roles: List[str] = Field(default_factory=list)

    model_config = ConfigDict(extra="ignore")


class DefaultDBs(BaseModel):
    private: List[str] = Field(default_factory=list)
    shared: List[str] = Field(default_factory=list)


class SecurityRoles(BaseModel):
    admins: List[str] = Field(default_factory=list)
    members: List[str] = Field(default_factory=list)


class DeleteWithUser(BaseModel):
    private: bool = False
    shared: bool = False


class UserDBSettings(BaseModel):
    """Personal database provisioning templates."""

    default_dbs: DefaultDBs = Field(default_factory=DefaultDBs)
    model: Dict[str, DBModel] = Field(default_factory=dict)
    default_security_roles: SecurityRoles = Field(default_factory=SecurityRoles)
    private_prefix: str = ""
    delete_with_user: DeleteWithUser = Field(default_factory=DeleteWithUser)
    design_doc_dir: Optional[str] = None

    model_config = ConfigDict(extra="ignore")

    @property
    def has_default_dbs(self) -> bool:
        return bool(self.default_dbs.private or self.default_dbs.shared)


class LocalSettings(BaseModel):
    """Local (username/password) account policy."""

    email_username: bool = False
    send_confirm_email: bool = False
    require_email_confirm: bool = False
    token_length: int = 8
    password_min_length: int = 6
    default_roles: List[str] = Field(default_factory=list)

    model_config = ConfigDict(extra="ignore")


class ProviderSettings(BaseModel):
    """Federated provider account policy."""

    default_roles: List[str] = Field(default_factory=list)
    email_username: bool = False
    error_on_duplicate: bool = False

    model_config = ConfigDict(extra="ignore")


_NESTED_FIELDS = (
    "security",
    "couch",
    "session_store",
    "userdbs",
    "local",
    "providers",
)


class Settings(BaseModel):
    """Runtime settings.

    Nested sections can be supplied as JSON in their environment variable
    (``USERDBS='{"default_dbs": {"private": ["notes"]}}'``) or field by
    field with a double underscore (``SECURITY__SESSION_LIFE=3600``).
    """

    security: SecuritySettings = env_field(SecuritySettings(), "SECURITY")
    couch: CouchSettings = env_field(CouchSettings(), "COUCH")
    session_store: TokenStoreSettings = env_field(TokenStoreSettings(), "SESSION_STORE")
    userdbs: UserDBSettings = env_field(UserDBSettings(), "USERDBS")
    local: LocalSettings = env_field(LocalSettings(), "LOCAL")
    providers: Dict[str, ProviderSettings] = env_field({}, "PROVIDERS")

    use_memory_store: bool = env_field(False, "USE_MEMORY_STORE")
    test_mode: bool = env_field(
        False,
        "TEST_MODE",
        description="Skip outbound email and allow in-memory fallbacks",
    )
    sweep_interval_seconds: int = env_field(
        3 * 60 * 60,
        "SWEEP_INTERVAL_SECONDS",
        description="Interval of the expired-key sweep; 0 disables the worker",
    )
    relay_timeout_seconds: float = env_field(25.0, "RELAY_TIMEOUT_SECONDS")
    app_base_url: str = env_field("http://localhost:8000", "APP_BASE_URL")
    # Email service settings
    smtp_host: str | None = env_field(None, "SMTP_HOST")
    smtp_port: int = env_field(587, "SMTP_PORT")
    smtp_user: str | None = env_field(None, "SMTP_USER")
    smtp_password: str | None = env_field(None, "SMTP_PASSWORD")
    smtp_use_tls: bool = env_field(True, "SMTP_USE_TLS")
    email_from_address: str | None = env_field(None, "EMAIL_FROM_ADDRESS")
    email_from_name: str = env_field("couchlogin", "EMAIL_FROM_NAME")

    model_config = ConfigDict(extra="ignore")

    @classmethod
    def from_env(cls) -> "Settings":
        env_file_values = dotenv_values(".env")
        sources = [env_file_values, os.environ]
        merged: dict[str, Any] = {}
        for name, field in cls.model_fields.items():
            extra = field.json_schema_extra or {}
            env_key = extra.get("env") if isinstance(extra, dict) else None
            env_name = env_key or name.upper()
            # os.environ wins over .env
            for source in sources:
                if env_name in source and source[env_name] is not None:
                    merged[name] = source[env_name]
            if name in _NESTED_FIELDS:
                overrides: dict[str, Any] = {}
                prefix = f"{env_name}__"
                for source in sources:
                    for key, value in source.items():
                        if key.startswith(prefix) and value is not None:
                            overrides[key[len(prefix):].lower()] = value
                if overrides:
                    base = _as_mapping(merged.get(name))
                    merged[name] = {**base, **overrides}
        return cls(**merged)

    @field_validator(*_NESTED_FIELDS, mode="before")
    @classmethod
    def _parse_json_sections(cls, value: Any) -> Any:
        if isinstance(value, str):
            try:
                return json.loads(value)
            except json.JSONDecodeError as exc:
                raise ValueError(f"invalid JSON configuration section: {exc}") from exc
        return value

    def provider(self, name: str) -> ProviderSettings:
        return self.providers.get(name) or ProviderSettings()


def _as_mapping(value: Any) -> dict[str, Any]:
    if value is None:
        return {}
    if isinstance(value, str):
        return json.loads(value)
    if isinstance(value, BaseModel):
        return value.model_dump()
    return dict(value)


def get_settings() -> Settings:
    global _settings_cache
    if _settings_cache is None:
        _settings_cache = Settings.from_env()
        logger.debug("settings_loaded", use_memory_store=_settings_cache.use_memory_store)
    return _settings_cache


_settings_cache: Settings | None = None


def reset_settings_cache() -> None:
    """Clear cached settings so future calls re-read the environment."""

    global _settings_cache
    _settings_cache = None
