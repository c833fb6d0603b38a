"""Account lifecycle on top of the session engine.

Registration, local and federated login, provider linking, the password and
email lifecycles, personal database management and account removal. Session
state itself is always delegated to :class:`SessionLifecycleEngine`.
"""

from __future__ import annotations

import inspect
import math
import secrets
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, Dict, List, Mapping, Optional, Union

from couchlogin.config import DatabaseType, LocalSettings, Settings
from couchlogin.logging import get_logger
from couchlogin.service.email import Mailer
from couchlogin.service.errors import (
    AuthenticationError,
    ConflictError,
    NotFoundError,
    UpstreamStoreFailure,
    ValidationFailedError,
)
from couchlogin.service.passwords import PasswordHasher, hash_token
from couchlogin.service.security_keys import trim_roles
from couchlogin.service.sessions import LOGOUT_ALL, SessionLifecycleEngine
from couchlogin.service.userdbs import DatabaseAccessCoordinator
from couchlogin.storage.errors import DocumentConflict, StorageError
from couchlogin.storage.models import (
    LocalCredential,
    PersonalDB,
    ProviderLink,
    RequestContext,
    SessionDescriptor,
    UserRecord,
    now_ms,
)
from couchlogin.storage.users import EMAIL_REGEX, USERNAME_REGEX, UserRecordStore

logger = get_logger(__name__)

INVALID_LOGIN = "Invalid username or password"
# Upper-case letters and digits without look-alikes (0/O, 1/I/L)
OTP_ALPHABET = "ABCDEFGHJKMNPQRSTUVWXYZ23456789"
_USERNAME_BATCH = 20

UserHook = Callable[[UserRecord, str], Union[UserRecord, Awaitable[UserRecord]]]


def one_time_password(length: int = 8) -> str:
    """Short human-typeable token for email confirmation and password reset."""
    return "".join(secrets.choice(OTP_ALPHABET) for _ in range(max(length, 1)))


def _label(field: str) -> str:
    words: List[str] = []
    current = ""
    for char in field:
        if char.isupper() and current:
            words.append(current)
            current = char.lower()
        else:
            current += char
    words.append(current)
    text = " ".join(words)
    return text[:1].upper() + text[1:]


def _blank(value: Any) -> bool:
    return value is None or (isinstance(value, str) and not value.strip())


def _add_error(errors: Dict[str, List[str]], field: str, message: str) -> None:
    errors.setdefault(field, []).append(f"{_label(field)} {message}")


def _utc_now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def _first_email(profile: Mapping[str, Any]) -> Optional[str]:
    emails = profile.get("emails") or []
    if emails and isinstance(emails[0], Mapping) and emails[0].get("value"):
        return str(emails[0]["value"])
    return None


class AccountService:
    def __init__(
        self,
        users: UserRecordStore,
        engine: SessionLifecycleEngine,
        coordinator: DatabaseAccessCoordinator,
        hasher: PasswordHasher,
        mailer: Mailer,
        settings: Settings,
        *,
        clock: Callable[[], int] = now_ms,
    ) -> None:
        self.users = users
        self.engine = engine
        self.coordinator = coordinator
        self.hasher = hasher
        self.mailer = mailer
        self.settings = settings
        self.events = engine.events
        self._now = clock
        self._create_hooks: List[UserHook] = []
        self._link_hooks: List[UserHook] = []

    @property
    def local(self) -> LocalSettings:
        return self.settings.local

    # -- hooks -------------------------------------------------------------

    def on_create(self, hook: UserHook) -> UserHook:
        """Register a transform applied to every new account before it is saved."""
        if not callable(hook):
            raise TypeError("on_create: hook must be callable")
        self._create_hooks.append(hook)
        return hook

    def on_link(self, hook: UserHook) -> UserHook:
        """Register a transform applied whenever a provider is linked or used."""
        if not callable(hook):
            raise TypeError("on_link: hook must be callable")
        self._link_hooks.append(hook)
        return hook

    async def _apply_hooks(self, hooks: List[UserHook], user: UserRecord, provider: str) -> UserRecord:
        for hook in hooks:
            result = hook(user, provider)
            if inspect.isawaitable(result):
                result = await result
            if result is not None:
                user = result
        return user

    # -- persistence -------------------------------------------------------

    async def _load(self, user_id: str) -> UserRecord:
        try:
            user = await self.users.get(user_id)
        except StorageError as exc:
            raise UpstreamStoreFailure("cannot load user", doc={"_id": user_id}, cause=exc) from exc
        if user is None:
            raise NotFoundError("User not found", detail={"user_id": user_id})
        return user

    async def _save(self, user: UserRecord, message: str = "cannot save user") -> UserRecord:
        try:
            return await self.users.save(user)
        except StorageError as exc:
            logger.error("user_save_failed", user_id=user.id, reason=message, error=str(exc))
            raise UpstreamStoreFailure(message, doc={"_id": user.id}, cause=exc) from exc

    async def _insert(self, user: UserRecord) -> UserRecord:
        try:
            return await self.users.save(user)
        except DocumentConflict as exc:
            raise ConflictError("User already exists", detail={"user_id": user.id}) from exc
        except StorageError as exc:
            logger.error("user_create_failed", user_id=user.id, error=str(exc))
            raise UpstreamStoreFailure("cannot create user", doc={"_id": user.id}, cause=exc) from exc

    # -- validation --------------------------------------------------------

    async def validate_username(self, username: Optional[str]) -> Optional[str]:
        """``None`` when ``username`` is usable, else ``"invalid"`` / ``"already in use"``."""
        if not username:
            return None
        if not USERNAME_REGEX.match(username):
            return "invalid"
        if await self.users.by_username(username) is not None:
            return "already in use"
        return None

    async def validate_email(self, email: Optional[str]) -> Optional[str]:
        if not email:
            return None
        email = email.lower()
        if not EMAIL_REGEX.match(email):
            return "invalid"
        if await self.users.by_email(email) is not None:
            return "already in use"
        return None

    async def validate_email_username(self, email: Optional[str]) -> Optional[str]:
        if not email:
            return None
        email = email.lower()
        if not EMAIL_REGEX.match(email):
            return "invalid"
        if await self.users.by_email_username(email) is not None:
            return "already in use"
        return None

    def _check_password(
        self,
        errors: Dict[str, List[str]],
        form: Mapping[str, Any],
        field: str,
        confirm_field: str = "confirmPassword",
    ) -> None:
        password = form.get(field)
        if _blank(password):
            _add_error(errors, field, "can't be blank")
        else:
            minimum = self.local.password_min_length
            if len(password) < minimum:
                _add_error(errors, field, f"must be at least {minimum} characters")
            if form.get(confirm_field) != password:
                _add_error(errors, field, f"does not match {confirm_field}")
        if _blank(form.get(confirm_field)):
            _add_error(errors, confirm_field, "can't be blank")

    # -- registration and login ------------------------------------------

    async def create(self, form: Mapping[str, Any], ctx: Optional[RequestContext] = None) -> UserRecord:
        """Register a local account from a sign-up form.

        ``form`` holds ``username`` (unless emails are usernames), ``email``,
        ``password``, ``confirmPassword`` and optionally ``name``.
        """
        ctx = ctx or RequestContext()
        name = (form.get("name") or "").strip() or None
        username = (form.get("username") or "").strip().lower()
        email = (form.get("email") or "").strip().lower()

        errors: Dict[str, List[str]] = {}
        if not email:
            _add_error(errors, "email", "can't be blank")
        else:
            if self.local.email_username:
                problem = await self.validate_email_username(email)
            else:
                problem = await self.validate_email(email)
            if problem:
                _add_error(errors, "email", problem)
        if not self.local.email_username:
            if not username:
                _add_error(errors, "username", "can't be blank")
            else:
                problem = await self.validate_username(username)
                if problem:
                    _add_error(errors, "username", problem)
        self._check_password(errors, form, "password")
        if errors:
            raise ValidationFailedError("Validation failed", errors)

        user = UserRecord(
            id=email if self.local.email_username else username,
            name=name,
            email=email,
            roles=trim_roles(
                [*self.settings.security.default_roles, *self.local.default_roles]
            ),
            providers=["local"],
        )
        if self.local.send_confirm_email:
            user.unverified_email = {
                "email": email,
                "token": one_time_password(self.local.token_length),
            }
            user.email = None
        hashed = await self.hasher.hash_async(form["password"])
        user.local = LocalCredential(password_hash=hashed.to_doc())
        user.sign_up = {"provider": "local", "timestamp": _utc_now_iso(), "ip": ctx.ip}
        await self._add_default_dbs(user)
        await self.users.log_activity(user, "signup", "local", ctx)
        user = await self._apply_hooks(self._create_hooks, user, "local")
        user = await self._insert(user)
        logger.info("user_registered", user_id=user.id, provider="local")

        if self.local.send_confirm_email and user.unverified_email:
            await self.mailer.send_email(
                "confirmEmail",
                user.unverified_email["email"],
                {
                    "name": user.name or user.id,
                    "user_id": user.id,
                    "token": user.unverified_email["token"],
                    "lang": ctx.lang,
                },
            )
        await self.events.emit("signup", user, "local")
        return user

    def _locked_error(self, locked_until: int) -> AuthenticationError:
        minutes = max(1, math.ceil((locked_until - self._now()) / 60000))
        unit = "minute" if minutes == 1 else "minutes"
        return AuthenticationError(
            f"Your account is currently locked. Please wait {minutes} {unit} and try again.",
            detail={"locked": True},
        )

    async def login(
        self, login: str, password: str, ctx: Optional[RequestContext] = None
    ) -> SessionDescriptor:
        """Check a local username (or email) and password and open a session.

        Every credential failure reads ``Invalid username or password``.
        """
        ctx = ctx or RequestContext()
        login = (login or "").strip()
        user = None
        if login:
            user = await self.users.by_login(login, email_username=self.local.email_username)
        if user is None:
            raise AuthenticationError(INVALID_LOGIN)
        credential = user.local
        if credential and credential.locked_until and credential.locked_until > self._now():
            raise self._locked_error(credential.locked_until)
        if credential is None or not credential.has_password:
            raise AuthenticationError(INVALID_LOGIN)
        if not await self.hasher.verify_async(credential.password_hash, password):
            if await self.engine.handle_failed_login(user, ctx):
                raise self._locked_error(user.local.locked_until or self._now())
            raise AuthenticationError(INVALID_LOGIN)
        if self.local.require_email_confirm and not user.email:
            raise AuthenticationError("You must confirm your email address.")
        if self.hasher.needs_upgrade(credential.password_hash):
            hashed = await self.hasher.hash_async(password)
            credential.password_hash = hashed.to_doc()
            await self._save(user, "cannot upgrade password hash")
            logger.info("password_hash_upgraded", user_id=user.id)
        return await self.engine.create_session(user.id, "local", ctx)

    async def get_user(self, login: str) -> Optional[UserRecord]:
        return await self.users.by_login(login, email_username=self.local.email_username)

    # -- federated accounts ------------------------------------------------

    async def generate_username(self, base: str, error_on_duplicate: bool = False) -> str:
        """``base`` if free, else ``base`` plus the smallest free numeric suffix."""
        base = base.lower()
        if base not in await self.users.existing_ids([base]):
            return base
        if error_on_duplicate:
            raise ConflictError(f"account name already exists: {base}")
        start = 1
        while True:
            candidates = [f"{base}{n}" for n in range(start, start + _USERNAME_BATCH)]
            taken = await self.users.existing_ids(candidates)
            for candidate in candidates:
                if candidate not in taken:
                    return candidate
            start += _USERNAME_BATCH

    def _email_conflict(self) -> ConflictError:
        return ConflictError(
            "Email already in use",
            detail={
                "message": "Your email is already in use. Try signing in first and then "
                "linking this account."
            },
        )

    async def social_auth(
        self,
        provider: str,
        auth: Mapping[str, Any],
        profile: Mapping[str, Any],
        ctx: Optional[RequestContext] = None,
    ) -> UserRecord:
        """Find or create the account behind a federated provider profile."""
        ctx = ctx or RequestContext()
        profile_id = profile.get("id")
        if profile_id is None or profile_id == "":
            raise ValidationFailedError("Missing profile id", detail={"provider": provider})
        provider_settings = self.settings.provider(provider)

        user = await self.users.by_provider(provider, str(profile_id))
        new_account = user is None
        if user is None:
            email = _first_email(profile)
            if provider_settings.email_username:
                username = profile.get("username")
                if not email and username and EMAIL_REGEX.match(str(username)):
                    email = str(username)
                if not email:
                    raise ValidationFailedError(
                        "No email provided",
                        detail={
                            "message": f"An email is required for registration, but {provider} "
                            "didn't supply one."
                        },
                    )
                if await self.validate_email_username(email):
                    raise self._email_conflict()
                user_id = email.lower()
            else:
                if profile.get("username"):
                    base = str(profile["username"])
                elif email:
                    base = email.split("@", 1)[0]
                elif profile.get("displayName"):
                    base = "".join(str(profile["displayName"]).split())
                else:
                    base = str(profile_id)
                if email and await self.validate_email(email):
                    raise self._email_conflict()
                user_id = await self.generate_username(
                    base, provider_settings.error_on_duplicate
                )
            user = UserRecord(
                id=user_id,
                email=email.lower() if email else None,
                providers=[provider],
                roles=trim_roles(
                    [*self.settings.security.default_roles, *provider_settings.default_roles]
                ),
                sign_up={"provider": provider, "timestamp": _utc_now_iso(), "ip": ctx.ip},
            )

        clean_profile = {k: v for k, v in profile.items() if k != "_raw"}
        user.provider_data[provider] = ProviderLink(auth=dict(auth), profile=clean_profile)
        if provider not in user.providers:
            user.providers.append(provider)
        if not user.name:
            user.name = profile.get("displayName")
        if new_account:
            await self._add_default_dbs(user)
        await self.users.log_activity(user, "signup" if new_account else "login", provider, ctx)
        hooks = self._create_hooks if new_account else self._link_hooks
        user = await self._apply_hooks(hooks, user, provider)
        if new_account:
            user = await self._insert(user)
            logger.info("user_registered", user_id=user.id, provider=provider)
            await self.events.emit("signup", user, provider)
        else:
            user = await self._save(user, "cannot update provider profile")
        return user

    async def social_login(
        self,
        provider: str,
        auth: Mapping[str, Any],
        profile: Mapping[str, Any],
        ctx: Optional[RequestContext] = None,
    ) -> SessionDescriptor:
        """``social_auth`` followed by a session for the resolved account."""
        user = await self.social_auth(provider, auth, profile, ctx)
        return await self.engine.create_session(user.id, provider, ctx)

    async def link_social(
        self,
        user_id: str,
        provider: str,
        auth: Mapping[str, Any],
        profile: Mapping[str, Any],
        ctx: Optional[RequestContext] = None,
    ) -> UserRecord:
        """Attach a federated profile to an existing account."""
        ctx = ctx or RequestContext()
        profile_id = str(profile.get("id") or "")
        if not profile_id:
            raise ValidationFailedError("Missing profile id", detail={"provider": provider})
        owner = await self.users.by_provider(provider, profile_id)
        if owner is not None and owner.id != user_id:
            raise ConflictError(
                "Conflict",
                detail={"message": f"This {provider} profile is already in use by another account."},
            )
        user = await self._load(user_id)
        existing = user.provider_data.get(provider)
        if existing is not None and existing.profile_id != profile_id.lower():
            raise ConflictError(
                "Conflict",
                detail={"message": f"Your account is already linked with another {provider} profile."},
            )
        email = _first_email(profile)
        if email:
            if self.settings.provider(provider).email_username:
                other = await self.users.by_email_username(email)
            else:
                other = await self.users.by_email(email)
            if other is not None and other.id != user_id:
                raise ConflictError(
                    "Conflict",
                    detail={"message": f"The email {email} is already in use by another account."},
                )

        clean_profile = {k: v for k, v in profile.items() if k != "_raw"}
        user.provider_data[provider] = ProviderLink(auth=dict(auth), profile=clean_profile)
        if provider not in user.providers:
            user.providers.append(provider)
        if not user.name:
            user.name = profile.get("displayName")
        await self.users.log_activity(user, "link", provider, ctx)
        user = await self._apply_hooks(self._link_hooks, user, provider)
        user = await self._save(user, "cannot link provider")
        logger.info("provider_linked", user_id=user.id, provider=provider)
        return user

    async def unlink(self, user_id: str, provider: Optional[str]) -> UserRecord:
        user = await self._load(user_id)
        if not provider:
            raise ValidationFailedError(
                "Unlink failed", detail={"message": "You must specify a provider to unlink."}
            )
        has_password = bool(user.local and user.local.has_password)
        if not has_password and len(user.providers) < 2:
            raise ValidationFailedError(
                "Unlink failed", detail={"message": "You can't unlink your only provider!"}
            )
        if provider == "local":
            raise ValidationFailedError(
                "Unlink failed", detail={"message": "You can't unlink local."}
            )
        if provider not in user.provider_data:
            raise NotFoundError(
                "Unlink failed",
                detail={"message": f"Provider: {provider[:1].upper()}{provider[1:]} not found."},
            )
        del user.provider_data[provider]
        if provider in user.providers:
            user.providers.remove(provider)
        user = await self._save(user, "cannot unlink provider")
        logger.info("provider_unlinked", user_id=user.id, provider=provider)
        return user

    # -- password lifecycle ------------------------------------------------

    async def forgot_password(
        self, email: Optional[str], ctx: Optional[RequestContext] = None
    ) -> Dict[str, Any]:
        """Issue a password-reset token and mail it; only its hash is stored."""
        ctx = ctx or RequestContext()
        if not email:
            raise ValidationFailedError("Email not specified")
        user = await self.users.by_email(email.lower())
        if user is None:
            raise NotFoundError("User not found")
        token = one_time_password(self.local.token_length)
        now = self._now()
        user.forgot_password = {
            "token": hash_token(token),
            "issued": now,
            "expires": now + self.settings.security.token_life * 1000,
        }
        await self.users.log_activity(user, "forgot password", "local", ctx)
        user = await self._save(user, "cannot store password reset token")
        recipient = user.email or (user.unverified_email or {}).get("email")
        await self.mailer.send_email(
            "forgotPassword",
            recipient,
            {
                "name": user.name or user.id,
                "user_id": user.id,
                "token": token,
                "token_life_hours": round(self.settings.security.token_life / 3600, 1),
                "lang": ctx.lang,
            },
        )
        await self.events.emit("forgot-password", user)
        return dict(user.forgot_password)

    async def reset_password(
        self, form: Mapping[str, Any], ctx: Optional[RequestContext] = None
    ) -> UserRecord:
        """Set a new password from a reset token and log out every session."""
        ctx = ctx or RequestContext()
        errors: Dict[str, List[str]] = {}
        if _blank(form.get("token")):
            _add_error(errors, "token", "can't be blank")
        self._check_password(errors, form, "password")
        if errors:
            raise ValidationFailedError("Validation failed", errors)
        user = await self.users.by_password_reset(hash_token(str(form["token"])))
        if user is None or not user.forgot_password:
            raise ValidationFailedError("Invalid token")
        if int(user.forgot_password.get("expires") or 0) < self._now():
            raise ValidationFailedError("Token expired")

        hashed = await self.hasher.hash_async(form["password"])
        user.local = user.local or LocalCredential()
        user.local.password_hash = hashed.to_doc()
        if "local" not in user.providers:
            user.providers.append("local")
        user = await self.engine.logout_user_sessions(user, LOGOUT_ALL)
        user.forgot_password = None
        await self.users.log_activity(user, "reset password", "local", ctx)
        user = await self._save(user, "cannot reset password")
        logger.info("password_reset_completed", user_id=user.id)
        await self.events.emit("password-reset", user)
        return user

    async def change_password(
        self,
        user_id: str,
        new_password: str,
        user: Optional[UserRecord] = None,
        ctx: Optional[RequestContext] = None,
    ) -> UserRecord:
        """Replace the local password without checking the old one."""
        user = user or await self._load(user_id)
        hashed = await self.hasher.hash_async(new_password)
        user.local = user.local or LocalCredential()
        user.local.password_hash = hashed.to_doc()
        if "local" not in user.providers:
            user.providers.append("local")
        await self.users.log_activity(user, "changed password", "local", ctx)
        user = await self._save(user, "cannot change password")
        await self.events.emit("password-change", user)
        return user

    async def change_password_secure(
        self, user_id: str, form: Mapping[str, Any], ctx: Optional[RequestContext] = None
    ) -> UserRecord:
        """Change the password after checking ``currentPassword`` when one is set.

        Every other session of the user is logged out afterwards.
        """
        ctx = ctx or RequestContext()
        errors: Dict[str, List[str]] = {}
        self._check_password(errors, form, "newPassword")
        if errors:
            raise ValidationFailedError("Validation failed", errors)
        user = await self._load(user_id)
        if user.local and user.local.has_password:
            current = form.get("currentPassword")
            if not current:
                raise ValidationFailedError(
                    "Password change failed",
                    detail={"message": "You must supply your current password in order to change it."},
                )
            if not await self.hasher.verify_async(user.local.password_hash, current):
                raise ValidationFailedError(
                    "Password change failed",
                    detail={"message": "The current password you supplied is incorrect."},
                )
        user = await self.change_password(user.id, form["newPassword"], user=user, ctx=ctx)
        if ctx.session_key:
            await self.engine.logout_others(ctx.session_key)
        return user

    async def clear_expired_password_resets(self) -> int:
        """Drop reset tokens past their expiry; returns how many were cleared."""
        stale = await self.users.expired_password_resets(self._now())
        for user in stale:
            user.forgot_password = None
        if not stale:
            return 0
        results = await self.users.save_many(stale)
        cleared = sum(1 for result in results if result.ok)
        logger.info("password_resets_expired", cleared=cleared)
        return cleared

    # -- email lifecycle ---------------------------------------------------

    async def verify_email(self, token: Optional[str], ctx: Optional[RequestContext] = None) -> UserRecord:
        user = await self.users.by_verify_email(token) if token else None
        if user is None or not user.unverified_email:
            raise ValidationFailedError("Invalid token")
        user.email = user.unverified_email["email"]
        user.unverified_email = None
        await self.events.emit("email-verified", user)
        await self.users.log_activity(user, "verified email", "local", ctx)
        return await self._save(user, "cannot verify email")

    async def change_email(
        self, user_id: str, new_email: Optional[str], ctx: Optional[RequestContext] = None
    ) -> UserRecord:
        """Switch the account email, through confirmation when that is enabled."""
        ctx = ctx or RequestContext()
        if not new_email:
            raise ValidationFailedError("Email required")
        problem = await self.validate_email(new_email)
        if problem == "invalid":
            raise ValidationFailedError("Validation failed", {"email": ["Email invalid"]})
        if problem:
            raise ConflictError(f"Email {problem}")
        user = await self._load(user_id)
        new_email = new_email.lower()
        if self.local.send_confirm_email:
            user.unverified_email = {
                "email": new_email,
                "token": one_time_password(self.local.token_length),
            }
            await self.mailer.send_email(
                "confirmEmail",
                new_email,
                {
                    "name": user.name or user.id,
                    "user_id": user.id,
                    "token": user.unverified_email["token"],
                    "lang": ctx.lang,
                },
            )
        else:
            user.email = new_email
        await self.events.emit("email-changed", user)
        await self.users.log_activity(user, "changed email", ctx.provider, ctx)
        return await self._save(user, "cannot change email")

    # -- personal databases ------------------------------------------------

    async def _add_default_dbs(self, user: UserRecord) -> None:
        defaults = self.settings.userdbs.default_dbs
        for db_type, names in (
            (DatabaseType.PRIVATE.value, defaults.private),
            (DatabaseType.SHARED.value, defaults.shared),
        ):
            for db_name in names:
                config = self.coordinator.compute_database_config(db_name)
                final_name = await self.coordinator.provision_user_database(
                    user,
                    db_name,
                    config.design_docs,
                    db_type,
                    config.permissions,
                    config.admin_roles,
                    config.member_roles,
                )
                user.personal_dbs[final_name] = PersonalDB(
                    name=db_name, type=db_type, delete_with_user=config.delete_with_user
                )

    async def add_user_db(
        self,
        user_id: str,
        db_name: str,
        db_type: Optional[str] = None,
        design_docs: Optional[List[str]] = None,
        permissions: Optional[List[str]] = None,
    ) -> UserRecord:
        """Provision ``db_name`` for an existing user and grant their live sessions."""
        config = self.coordinator.compute_database_config(
            db_name, db_type or DatabaseType.PRIVATE.value
        )
        user = await self._load(user_id)
        final_name = await self.coordinator.provision_user_database(
            user,
            db_name,
            design_docs or config.design_docs,
            config.type,
            permissions or config.permissions,
            config.admin_roles,
            config.member_roles,
        )
        # Explicit permissions are pinned; otherwise they resolve from the model per session
        entry = PersonalDB(
            name=db_name,
            type=config.type,
            permissions=list(permissions) if permissions else None,
            delete_with_user=config.delete_with_user,
        )
        modified = user.personal_dbs.get(final_name) != entry
        user.personal_dbs[final_name] = entry
        await self.events.emit("user-db-added", user.id, db_name)
        if modified:
            user = await self._save(user, "cannot record personal database")
        return user

    async def remove_user_db(
        self,
        user_id: str,
        db_name: str,
        delete_private: bool = False,
        delete_shared: bool = False,
    ) -> UserRecord:
        """Detach ``db_name`` from the user, optionally destroying the database."""
        user = await self._load(user_id)
        matches = [physical for physical, pdb in user.personal_dbs.items() if pdb.name == db_name]
        if not matches:
            return user
        for physical in matches:
            pdb = user.personal_dbs.pop(physical)
            destroy = (pdb.type == DatabaseType.PRIVATE.value and delete_private) or (
                pdb.type == DatabaseType.SHARED.value and delete_shared
            )
            if destroy:
                await self.coordinator.remove_database(physical)
            elif user.session:
                await self.coordinator.adapter.deauthorize_keys(physical, user.session_keys())
        await self.events.emit("user-db-removed", user.id, db_name)
        return await self._save(user, "cannot remove personal database")

    # -- removal -----------------------------------------------------------

    async def remove(self, user_id: str, destroy_dbs: bool = False) -> None:
        """Log the user out everywhere and delete the account.

        With ``destroy_dbs`` the user's private databases are destroyed too.
        """
        user = await self._load(user_id)
        user = await self.engine.logout_user_sessions(user, LOGOUT_ALL)
        # The deletion watcher sees the last stored body; it must not list revoked sessions
        user = await self._save(user, "cannot log out user")
        if destroy_dbs:
            for physical, pdb in user.personal_dbs.items():
                if pdb.type == DatabaseType.PRIVATE.value:
                    await self.coordinator.remove_database(physical)
        try:
            await self.users.remove(user)
        except StorageError as exc:
            logger.error("user_remove_failed", user_id=user.id, error=str(exc))
            raise UpstreamStoreFailure("cannot remove user", doc={"_id": user.id}, cause=exc) from exc
        logger.info("user_removed", user_id=user.id, destroy_dbs=destroy_dbs)

    async def handle_user_deleted(self, user: UserRecord) -> None:
        """Clean up after a user document disappeared from the user database.

        Databases flagged ``deleteWithUser`` are destroyed and every session
        the record still lists is revoked.
        """
        for physical, pdb in list(user.personal_dbs.items()):
            config = self.coordinator.compute_database_config(pdb.name, pdb.type)
            if pdb.delete_with_user or config.delete_with_user:
                await self.coordinator.remove_database(physical)
                # Nothing left to deauthorize on a destroyed database
                del user.personal_dbs[physical]
        await self.engine.logout_user_sessions(user, LOGOUT_ALL)
        logger.info("deleted_user_cleaned_up", user_id=user.id)
