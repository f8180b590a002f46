from __future__ import annotations

import re
import unicodedata
from datetime import datetime
from typing import Any, List, Literal, Optional
from uuid import uuid4

from pydantic import BaseModel, Field, field_validator, model_validator

_VALID_ERROR_CODES = frozenset({
    "unauthorized",
    "forbidden",
    "not_found",
    "validation_error",
    "conflict",
    "service_unavailable",
    "server_error",
})

# Profile images are data URLs or http(s) links
MAX_PROFILE_IMAGE_LENGTH = 2_000_000
_PROFILE_IMAGE_PATTERN = re.compile(r"^(data:image/[a-z0-9.+-]+;base64,|https?://)", re.I)


def _normalize_unicode(value: str) -> str:
    """Normalize Unicode string using NFKC.

    Zero-width and bidi override characters are dropped first so they cannot
    be used to spoof look-alike addresses.
    """
    zero_width = '\u200b\u200c\u200d\ufeff'
    cleaned = ''.join(c for c in value if c not in zero_width)

    bidi_overrides = set(chr(c) for c in range(0x202A, 0x202F))
    bidi_overrides.update(chr(c) for c in range(0x2066, 0x206A))
    cleaned = ''.join(c for c in cleaned if c not in bidi_overrides)

    return unicodedata.normalize('NFKC', cleaned)


class ErrorBody(BaseModel):
    """Error envelope body with stable code values."""

    code: str = Field(..., description="Stable error code")
    message: str
    details: Optional[Any] = None  # object, array, or null

    @field_validator("code")
    @classmethod
    def _validate_error_code(cls, value: str) -> str:
        if value not in _VALID_ERROR_CODES:
            raise ValueError(
                f"Invalid error code '{value}'. Must be one of: {', '.join(sorted(_VALID_ERROR_CODES))}"
            )
        return value


class Envelope(BaseModel):
    """API envelope format."""

    status: str = Field(..., pattern="^(ok|error)$")
    data: Optional[Any] = None
    error: Optional[ErrorBody] = None
    request_id: str = Field(default_factory=lambda: str(uuid4()))


_EMAIL_LOCAL_PART = re.compile(r"^[a-zA-Z0-9.!#$%&'*+/=?^_`{|}~-]+$")
_EMAIL_DOMAIN_LABEL = re.compile(r"^[a-zA-Z0-9](?:[a-zA-Z0-9-]{0,61}[a-zA-Z0-9])?$")


def _validate_email(value: str) -> str:
    if not isinstance(value, str):
        raise ValueError("email must be a string")
    normalized = _normalize_unicode(value.strip().lower())
    if len(normalized) > 254:
        raise ValueError("email address too long")
    if len(normalized) < 3:
        raise ValueError("email address too short")
    local, sep, domain = normalized.partition("@")
    if not sep or not local or not domain:
        raise ValueError("invalid email address")
    if len(local) > 64:
        raise ValueError("email local part too long")
    if not _EMAIL_LOCAL_PART.match(local):
        raise ValueError("invalid email address format")
    domain_parts = domain.split(".")
    if len(domain_parts) < 2:
        raise ValueError("invalid email address format")
    for label in domain_parts:
        if len(label) > 63 or not _EMAIL_DOMAIN_LABEL.match(label):
            raise ValueError("invalid email address format")
    return normalized


def _validate_password_strength(value: str) -> str:
    """Validate password meets minimum requirements."""
    if len(value) < 8:
        raise ValueError("password must be at least 8 characters")
    if len(value) > 128:
        raise ValueError("password must be at most 128 characters")
    return value


def _validate_profile_image(value: str) -> str:
    if len(value) > MAX_PROFILE_IMAGE_LENGTH:
        raise ValueError("profile image too large")
    if not _PROFILE_IMAGE_PATTERN.match(value):
        raise ValueError("profile image must be an image data URL or http(s) URL")
    return value


class RegisterRequest(BaseModel):
    email: str
    password: str
    name: str = Field(..., min_length=1, max_length=100)
    device_fingerprint: Optional[str] = Field(default=None, max_length=256)

    @field_validator("email")
    @classmethod
    def _validate_register_email(cls, value: str) -> str:
        return _validate_email(value)

    @field_validator("password")
    @classmethod
    def _validate_password(cls, value: str) -> str:
        return _validate_password_strength(value)

    @field_validator("name")
    @classmethod
    def _strip_name(cls, value: str) -> str:
        stripped = value.strip()
        if not stripped:
            raise ValueError("name must not be blank")
        return stripped


class LoginRequest(BaseModel):
    email: str
    # Length is not checked here; a short password is just a wrong password.
    password: str = Field(..., max_length=128)
    device_fingerprint: Optional[str] = Field(default=None, max_length=256)

    @field_validator("email")
    @classmethod
    def _validate_login_email(cls, value: str) -> str:
        return _validate_email(value)


class AuthResponse(BaseModel):
    user: dict
    session_id: str
    session_expires_at: datetime
    access_token: str
    access_token_expires_at: datetime
    refresh_token: str
    refresh_token_expires_at: datetime
    token_type: str = "bearer"


class LogoutRequest(BaseModel):
    session_id: Optional[str] = Field(default=None, max_length=128)


class TokenRefreshRequest(BaseModel):
    refresh_token: Optional[str] = Field(default=None, max_length=2048)
    session_id: Optional[str] = Field(default=None, max_length=128)


class TokenRefreshResponse(BaseModel):
    access_token: str
    access_token_expires_at: datetime
    token_type: str = "bearer"


class UserProfileResponse(BaseModel):
    id: str
    email: str
    name: str
    role: str
    status: str
    profile_image: Optional[str] = None
    email_verified: bool = False
    last_login_at: Optional[datetime] = None
    created_at: datetime


class MeResponse(BaseModel):
    user_id: str
    session_id: str
    role: str
    user: UserProfileResponse


class UpdateUserRoleRequest(BaseModel):
    role: Literal["user", "admin"]


class UpdateUserStatusRequest(BaseModel):
    status: Literal["active", "inactive", "suspended"]


class UpdateProfileRequest(BaseModel):
    name: Optional[str] = Field(default=None, min_length=1, max_length=100)
    profile_image: Optional[str] = None

    @field_validator("profile_image")
    @classmethod
    def _validate_image(cls, value: Optional[str]) -> Optional[str]:
        if value is None:
            return None
        return _validate_profile_image(value)

    @model_validator(mode="after")
    def _require_change(self):
        if self.name is None and self.profile_image is None:
            raise ValueError("nothing to update")
        return self


class UpdateProfileImageRequest(BaseModel):
    profile_image: str

    @field_validator("profile_image")
    @classmethod
    def _validate_image(cls, value: str) -> str:
        return _validate_profile_image(value)


class PasswordChangeRequest(BaseModel):
    current_password: str = Field(..., max_length=128)
    new_password: str

    @field_validator("new_password")
    @classmethod
    def _validate_new_password(cls, value: str) -> str:
        return _validate_password_strength(value)

    @model_validator(mode="after")
    def _reject_same_password(self):
        if self.current_password == self.new_password:
            raise ValueError("new password must differ from the current password")
        return self


class PasswordChangeResponse(BaseModel):
    sessions_invalidated: int


class DeleteAccountRequest(BaseModel):
    password: str = Field(..., max_length=128)


class SessionInfo(BaseModel):
    id: str
    created_at: datetime
    last_activity_at: datetime
    expires_at: datetime
    user_agent: Optional[str] = None
    ip_addr: Optional[str] = None
    current: bool = False


class SessionListResponse(BaseModel):
    items: List[SessionInfo]


class LogoutOthersResponse(BaseModel):
    sessions_invalidated: int
