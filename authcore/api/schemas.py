from __future__ import annotations

import re
import unicodedata
from typing import Any, Optional
from uuid import uuid4

from pydantic import AliasChoices, BaseModel, ConfigDict, Field, field_validator

from authcore.storage.models import User

PASSWORD_MIN_LENGTH = 6
PASSWORD_MAX_LENGTH = 128
NAME_MAX_LENGTH = 100


def _normalize_unicode(value: str) -> str:
    """NFKC-normalize and strip zero-width and bidi override characters."""
    zero_width = "\u200b\u200c\u200d\ufeff"
    bidi_overrides = set(chr(c) for c in range(0x202A, 0x202F))
    bidi_overrides.update(chr(c) for c in range(0x2066, 0x206A))
    cleaned = "".join(
        c for c in value if c not in zero_width and c not in bidi_overrides
    )
    return unicodedata.normalize("NFKC", cleaned)


_VALID_ERROR_CODES = frozenset({
    "validation_error",
    "conflict",
    "unauthorized",
    "no_credentials",
    "invalid_credentials",
    "session_expired",
    "session_revoked",
    "session_invalidated",
    "user_not_found",
    "invalid_assertion",
    "not_requested",
    "expired",
    "invalid_code",
    "cooldown_active",
    "upstream_unavailable",
    "not_found",
    "internal",
})


class ErrorBody(BaseModel):
    """Error payload; ``message`` is always safe to show to the user."""

    message: str
    code: str = Field(..., description="Stable machine-readable error code")
    details: Optional[Any] = None
    request_id: str = Field(default_factory=lambda: str(uuid4()))

    @field_validator("code")
    @classmethod
    def _validate_error_code(cls, value: str) -> str:
        if value not in _VALID_ERROR_CODES:
            raise ValueError(
                f"Invalid error code '{value}'. Must be one of: {', '.join(sorted(_VALID_ERROR_CODES))}"
            )
        return value


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


def _validate_password(value: str) -> str:
    if len(value) < PASSWORD_MIN_LENGTH:
        raise ValueError(f"password must be at least {PASSWORD_MIN_LENGTH} characters")
    if len(value) > PASSWORD_MAX_LENGTH:
        raise ValueError(f"password must be at most {PASSWORD_MAX_LENGTH} characters")
    return value


def _clean_name(value: Optional[str]) -> Optional[str]:
    if value is None:
        return None
    cleaned = _normalize_unicode(value).strip()
    return cleaned or None


OTP_PATTERN = r"^\d{6}$"


class SignupOtpRequest(BaseModel):
    email: str
    name: Optional[str] = Field(default=None, max_length=NAME_MAX_LENGTH)

    @field_validator("email")
    @classmethod
    def _email(cls, value: str) -> str:
        return _validate_email(value)

    @field_validator("name")
    @classmethod
    def _name(cls, value: Optional[str]) -> Optional[str]:
        return _clean_name(value)


class SignupRequest(BaseModel):
    email: str
    password: str
    otp: str = Field(..., pattern=OTP_PATTERN)
    name: Optional[str] = Field(default=None, max_length=NAME_MAX_LENGTH)

    @field_validator("email")
    @classmethod
    def _email(cls, value: str) -> str:
        return _validate_email(value)

    @field_validator("password")
    @classmethod
    def _password(cls, value: str) -> str:
        return _validate_password(value)

    @field_validator("name")
    @classmethod
    def _name(cls, value: Optional[str]) -> Optional[str]:
        return _clean_name(value)


class LoginRequest(BaseModel):
    email: str
    password: str = Field(..., min_length=1, max_length=PASSWORD_MAX_LENGTH)

    @field_validator("email")
    @classmethod
    def _email(cls, value: str) -> str:
        return _validate_email(value)


class GoogleLoginRequest(BaseModel):
    credential: str = Field(
        ...,
        min_length=1,
        max_length=8192,
        validation_alias=AliasChoices("credential", "credentials", "idToken"),
    )


class ResetOtpRequest(BaseModel):
    email: str

    @field_validator("email")
    @classmethod
    def _email(cls, value: str) -> str:
        return _validate_email(value)


class ResetPasswordRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    email: str
    otp: str = Field(..., pattern=OTP_PATTERN)
    new_password: str = Field(..., alias="newPassword")

    @field_validator("email")
    @classmethod
    def _email(cls, value: str) -> str:
        return _validate_email(value)

    @field_validator("new_password")
    @classmethod
    def _password(cls, value: str) -> str:
        return _validate_password(value)


class UpdateProfileRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    name: Optional[str] = Field(default=None, max_length=NAME_MAX_LENGTH)
    profile_picture: Optional[str] = Field(
        default=None, alias="profilePicture", max_length=2048
    )

    @field_validator("name")
    @classmethod
    def _name(cls, value: Optional[str]) -> Optional[str]:
        if value is None:
            return None
        cleaned = _clean_name(value)
        if cleaned is None:
            raise ValueError("name cannot be empty")
        return cleaned

    @field_validator("profile_picture")
    @classmethod
    def _picture(cls, value: Optional[str]) -> Optional[str]:
        if value is None:
            return None
        if not value.startswith(("https://", "http://")):
            raise ValueError("profilePicture must be an http(s) URL")
        return value


class ChangePasswordRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    current_password: str = Field(
        ..., alias="currentPassword", min_length=1, max_length=PASSWORD_MAX_LENGTH
    )
    new_password: str = Field(..., alias="newPassword")

    @field_validator("new_password")
    @classmethod
    def _password(cls, value: str) -> str:
        return _validate_password(value)


class UserResponse(BaseModel):
    """Public user shape; never carries hashes or the token version."""

    model_config = ConfigDict(populate_by_name=True)

    id: str
    name: str
    email: str
    profile_picture: str = Field(..., alias="profilePicture")

    @classmethod
    def from_user(cls, user: User) -> "UserResponse":
        return cls(
            id=user.id,
            name=user.display_name,
            email=user.email,
            profile_picture=user.profile_picture,
        )


class UserEnvelope(BaseModel):
    user: UserResponse


class StatusResponse(BaseModel):
    success: bool = True
    message: str
