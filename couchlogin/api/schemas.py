from __future__ import annotations

from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator

# Upper bound for free-text fields; passwords are hashed, not stored
MAX_FIELD_LENGTH = 1024


class _Form(BaseModel):
    """Request body handed to the account service as a plain mapping."""

    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    def as_form(self) -> Dict[str, Any]:
        return self.model_dump(by_alias=True, exclude_none=True)


class RegisterRequest(_Form):
    name: Optional[str] = Field(default=None, max_length=MAX_FIELD_LENGTH)
    username: Optional[str] = Field(default=None, max_length=MAX_FIELD_LENGTH)
    email: Optional[str] = Field(default=None, max_length=MAX_FIELD_LENGTH)
    password: Optional[str] = Field(default=None, max_length=MAX_FIELD_LENGTH)
    confirm_password: Optional[str] = Field(
        default=None, alias="confirmPassword", max_length=MAX_FIELD_LENGTH
    )


class LoginRequest(_Form):
    username: str = Field(..., max_length=MAX_FIELD_LENGTH)
    password: str = Field(..., max_length=MAX_FIELD_LENGTH)

    @field_validator("username")
    @classmethod
    def _strip_username(cls, value: str) -> str:
        return value.strip()


class ForgotPasswordRequest(_Form):
    email: Optional[str] = Field(default=None, max_length=MAX_FIELD_LENGTH)


class PasswordResetRequest(_Form):
    token: Optional[str] = Field(default=None, max_length=MAX_FIELD_LENGTH)
    password: Optional[str] = Field(default=None, max_length=MAX_FIELD_LENGTH)
    confirm_password: Optional[str] = Field(
        default=None, alias="confirmPassword", max_length=MAX_FIELD_LENGTH
    )


class PasswordChangeRequest(_Form):
    current_password: Optional[str] = Field(
        default=None, alias="currentPassword", max_length=MAX_FIELD_LENGTH
    )
    new_password: Optional[str] = Field(
        default=None, alias="newPassword", max_length=MAX_FIELD_LENGTH
    )
    confirm_password: Optional[str] = Field(
        default=None, alias="confirmPassword", max_length=MAX_FIELD_LENGTH
    )


class ChangeEmailRequest(_Form):
    new_email: Optional[str] = Field(default=None, alias="newEmail", max_length=MAX_FIELD_LENGTH)


class SessionResponse(BaseModel):
    """Session descriptor returned by login and refresh."""

    model_config = ConfigDict(populate_by_name=True)

    token: str
    password: Optional[str] = None
    user_id: str
    issued: int
    refreshed: int
    expires: int
    ends: int
    roles: List[str]
    provider: Optional[str] = None
    ip: Optional[str] = None
    user_dbs: Optional[Dict[str, str]] = Field(default=None, alias="userDBs")
    profile: Optional[Dict[str, Any]] = None


class SessionInfoResponse(BaseModel):
    """What an authenticated bearer learns about its own session."""

    key: str
    user_id: str
    issued: int
    expires: int
    ends: int
    roles: List[str]
    provider: Optional[str] = None


class MessageResponse(BaseModel):
    success: str


class ValidationResponse(BaseModel):
    ok: bool


class RelayOpenResponse(BaseModel):
    channel: str
    secret: str
    expires: int
