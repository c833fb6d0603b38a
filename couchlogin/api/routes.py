from __future__ import annotations

from typing import Callable, Iterable, Optional

from fastapi import APIRouter, Depends, Header, Request, Response

from couchlogin.api.schemas import (
    ChangeEmailRequest,
    ForgotPasswordRequest,
    LoginRequest,
    MessageResponse,
    PasswordChangeRequest,
    PasswordResetRequest,
    RegisterRequest,
    RelayOpenResponse,
    SessionInfoResponse,
    SessionResponse,
    ValidationResponse,
)
from couchlogin.logging import get_logger
from couchlogin.service.errors import (
    AuthenticationError,
    ConflictError,
    ForbiddenError,
    ValidationFailedError,
)
from couchlogin.service.runtime import Runtime, get_runtime
from couchlogin.storage.models import RequestContext, SessionDescriptor, SessionToken

logger = get_logger(__name__)

router = APIRouter(prefix="/auth", tags=["auth"])


def _bearer(authorization: Optional[str]) -> str:
    if not authorization:
        raise AuthenticationError("unauthorized")
    scheme, _, credential = authorization.partition(" ")
    if scheme.lower() != "bearer" or not credential.strip():
        raise AuthenticationError("unauthorized")
    return credential.strip()


def _context(request: Request, session: Optional[SessionToken] = None) -> RequestContext:
    return RequestContext(
        ip=request.client.host if request.client else None,
        user_agent=request.headers.get("user-agent"),
        lang=request.headers.get("accept-language"),
        session_key=session.key if session else None,
        provider=(session.provider if session and session.provider else "local"),
    )


def _session_response(descriptor: SessionDescriptor) -> SessionResponse:
    return SessionResponse(**descriptor.to_dict())


async def get_session(
    authorization: Optional[str] = Header(None),
    runtime: Runtime = Depends(get_runtime),
) -> SessionToken:
    """Resolve ``Authorization: Bearer key:password`` to its live session."""
    key, sep, password = _bearer(authorization).partition(":")
    if not sep or not key or not password:
        raise AuthenticationError("unauthorized")
    return await runtime.engine.confirm_session(key, password)


FORBIDDEN_MESSAGE = "You do not have permission to access this resource."

SessionGuard = Callable[..., object]


def _forbidden() -> ForbiddenError:
    return ForbiddenError("Forbidden", detail={"message": FORBIDDEN_MESSAGE})


def require_role(role: str) -> SessionGuard:
    """Dependency admitting only sessions that hold ``role``."""

    async def _guard(session: SessionToken = Depends(get_session)) -> SessionToken:
        if role not in (session.roles or []):
            raise _forbidden()
        return session

    return _guard


def require_any_role(roles: Iterable[str]) -> SessionGuard:
    """Dependency admitting sessions that hold at least one of ``roles``."""
    wanted = list(roles)

    async def _guard(session: SessionToken = Depends(get_session)) -> SessionToken:
        held = set(session.roles or [])
        if not any(role in held for role in wanted):
            raise _forbidden()
        return session

    return _guard


def require_all_roles(roles: Iterable[str]) -> SessionGuard:
    """Dependency admitting sessions that hold every one of ``roles``."""
    wanted = list(roles)

    async def _guard(session: SessionToken = Depends(get_session)) -> SessionToken:
        held = set(session.roles or [])
        if not held or any(role not in held for role in wanted):
            raise _forbidden()
        return session

    return _guard


@router.post("/register", response_model=MessageResponse, status_code=201)
async def register(
    body: RegisterRequest, request: Request, runtime: Runtime = Depends(get_runtime)
):
    user = await runtime.accounts.create(body.as_form(), _context(request))
    logger.info("register_completed", user_id=user.id)
    return MessageResponse(success="User created.")


@router.post("/login", response_model=SessionResponse)
async def login(body: LoginRequest, request: Request, runtime: Runtime = Depends(get_runtime)):
    descriptor = await runtime.accounts.login(body.username, body.password, _context(request))
    return _session_response(descriptor)


@router.post("/refresh", response_model=SessionResponse)
async def refresh(
    session: SessionToken = Depends(get_session), runtime: Runtime = Depends(get_runtime)
):
    descriptor = await runtime.engine.refresh_session(session.key)
    return _session_response(descriptor)


@router.post("/logout", response_model=MessageResponse)
async def logout(
    session: SessionToken = Depends(get_session), runtime: Runtime = Depends(get_runtime)
):
    await runtime.engine.logout_session(session.key)
    return MessageResponse(success="Logged out")


@router.post("/logout-all", response_model=MessageResponse)
async def logout_all(
    session: SessionToken = Depends(get_session), runtime: Runtime = Depends(get_runtime)
):
    await runtime.engine.logout_user(key=session.key)
    return MessageResponse(success="Logged out")


@router.post("/logout-others", response_model=MessageResponse)
async def logout_others(
    session: SessionToken = Depends(get_session), runtime: Runtime = Depends(get_runtime)
):
    await runtime.engine.logout_others(session.key)
    return MessageResponse(success="Other sessions logged out")


@router.get("/session", response_model=SessionInfoResponse)
async def session_info(session: SessionToken = Depends(get_session)):
    return SessionInfoResponse(
        key=session.key,
        user_id=session.user_id,
        issued=session.issued,
        expires=session.expires,
        ends=session.ends,
        roles=list(session.roles),
        provider=session.provider,
    )


@router.post("/forgot-password", response_model=MessageResponse)
async def forgot_password(
    body: ForgotPasswordRequest, request: Request, runtime: Runtime = Depends(get_runtime)
):
    await runtime.accounts.forgot_password(body.email, _context(request))
    return MessageResponse(success="Password recovery email sent.")


@router.post("/password-reset", response_model=MessageResponse)
async def password_reset(
    body: PasswordResetRequest, request: Request, runtime: Runtime = Depends(get_runtime)
):
    await runtime.accounts.reset_password(body.as_form(), _context(request))
    return MessageResponse(success="Password successfully reset.")


@router.post("/password-change", response_model=MessageResponse)
async def password_change(
    body: PasswordChangeRequest,
    request: Request,
    session: SessionToken = Depends(get_session),
    runtime: Runtime = Depends(get_runtime),
):
    await runtime.accounts.change_password_secure(
        session.user_id, body.as_form(), _context(request, session)
    )
    return MessageResponse(success="Password changed")


@router.get("/confirm-email/{token}", response_model=MessageResponse)
async def confirm_email(token: str, request: Request, runtime: Runtime = Depends(get_runtime)):
    await runtime.accounts.verify_email(token, _context(request))
    return MessageResponse(success="Email verified.")


@router.post("/change-email", response_model=MessageResponse)
async def change_email(
    body: ChangeEmailRequest,
    request: Request,
    session: SessionToken = Depends(get_session),
    runtime: Runtime = Depends(get_runtime),
):
    await runtime.accounts.change_email(session.user_id, body.new_email, _context(request, session))
    return MessageResponse(success="Email changed")


@router.post("/unlink/{provider}", response_model=MessageResponse)
async def unlink(
    provider: str,
    session: SessionToken = Depends(get_session),
    runtime: Runtime = Depends(get_runtime),
):
    await runtime.accounts.unlink(session.user_id, provider)
    return MessageResponse(success=f"{provider[:1].upper()}{provider[1:]} unlinked")


def _raise_for_problem(field: str, problem: Optional[str]) -> None:
    if problem == "invalid":
        raise ValidationFailedError(f"{field} invalid")
    if problem:
        raise ConflictError(f"{field} {problem}")


@router.get("/validate-username/{username}", response_model=ValidationResponse)
async def validate_username(username: str, runtime: Runtime = Depends(get_runtime)):
    _raise_for_problem("Username", await runtime.accounts.validate_username(username.lower()))
    return ValidationResponse(ok=True)


@router.get("/validate-email/{email}", response_model=ValidationResponse)
async def validate_email(email: str, runtime: Runtime = Depends(get_runtime)):
    if runtime.accounts.local.email_username:
        problem = await runtime.accounts.validate_email_username(email)
    else:
        problem = await runtime.accounts.validate_email(email)
    _raise_for_problem("Email", problem)
    return ValidationResponse(ok=True)


@router.post("/relay", response_model=RelayOpenResponse, status_code=201)
async def open_relay(runtime: Runtime = Depends(get_runtime)):
    channel = runtime.relay.open()
    return RelayOpenResponse(channel=channel.id, secret=channel.secret, expires=channel.expires)


@router.get("/relay/{channel}")
async def poll_relay(
    channel: str,
    authorization: Optional[str] = Header(None),
    runtime: Runtime = Depends(get_runtime),
):
    """Long-poll for the login result; 204 when nothing arrived in time."""
    event = await runtime.relay.wait(channel, _bearer(authorization))
    if event is None:
        return Response(status_code=204)
    return event


@router.delete("/relay/{channel}", status_code=204)
async def close_relay(
    channel: str,
    authorization: Optional[str] = Header(None),
    runtime: Runtime = Depends(get_runtime),
):
    runtime.relay.destroy(channel, _bearer(authorization))
    return Response(status_code=204)
