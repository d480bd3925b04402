from __future__ import annotations

import re
import unicodedata
from typing import Any, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

_VALID_ERROR_CODES = frozenset({
    "unauthorized",
    "forbidden",
    "not_found",
    "rate_limited",
    "validation_error",
    "duplicate_key",
    "server_error",
})


class ErrorBody(BaseModel):
    """Error envelope body with stable code values."""

    code: str
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
    """Response envelope shared by every endpoint."""

    success: bool
    data: Optional[Any] = None
    error: Optional[ErrorBody] = None


_EMAIL_LOCAL_PART = re.compile(r"^[a-zA-Z0-9.!#$%&'*+/=?^_`{|}~-]+$")
_EMAIL_DOMAIN_LABEL = re.compile(r"^[a-zA-Z0-9](?:[a-zA-Z0-9-]{0,61}[a-zA-Z0-9])?$")
_MOBILE_PATTERN = re.compile(r"^\d{10}$")
_ZERO_WIDTH = "\u200b\u200c\u200d\ufeff"


def _validate_email(value: str) -> str:
    if not isinstance(value, str):
        raise ValueError("Please provide a valid email")
    # Strip zero-width characters before NFKC so lookalike addresses collapse
    cleaned = "".join(c for c in value if c not in _ZERO_WIDTH)
    normalized = unicodedata.normalize("NFKC", cleaned.strip().lower())
    local, sep, domain = normalized.partition("@")
    if not sep or not local or not domain or len(normalized) > 254 or len(local) > 64:
        raise ValueError("Please provide a valid email")
    if not _EMAIL_LOCAL_PART.match(local):
        raise ValueError("Please provide a valid email")
    labels = domain.split(".")
    if len(labels) < 2 or any(
        len(label) > 63 or not _EMAIL_DOMAIN_LABEL.match(label) for label in labels
    ):
        raise ValueError("Please provide a valid email")
    return normalized


def _validate_password_strength(value: str) -> str:
    """Minimum six characters with upper, lower and digit."""
    if len(value) < 6:
        raise ValueError("Password must be at least 6 characters")
    if len(value) > 128:
        raise ValueError("Password must be at most 128 characters")
    if not re.search(r"[A-Z]", value):
        raise ValueError("Password must contain at least one uppercase letter")
    if not re.search(r"[a-z]", value):
        raise ValueError("Password must contain at least one lowercase letter")
    if not re.search(r"[0-9]", value):
        raise ValueError("Password must contain at least one digit")
    return value


def _validate_name(value: str, label: str) -> str:
    stripped = (value or "").strip()
    if not stripped:
        raise ValueError(f"{label} is required")
    if len(stripped) < 2:
        raise ValueError(f"{label} must be at least 2 characters")
    return stripped


class StudentSignupRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    first_name: str = Field(..., alias="firstName", max_length=100)
    last_name: str = Field(..., alias="lastName", max_length=100)
    email: str
    mobile_no: str = Field(..., alias="mobileNo")
    gender: Literal["male", "female", "other"]
    password: str
    confirm_password: str = Field(..., alias="confirmPassword", min_length=1)

    @field_validator("first_name")
    @classmethod
    def _first_name(cls, value: str) -> str:
        return _validate_name(value, "First name")

    @field_validator("last_name")
    @classmethod
    def _last_name(cls, value: str) -> str:
        return _validate_name(value, "Last name")

    @field_validator("email")
    @classmethod
    def _email(cls, value: str) -> str:
        return _validate_email(value)

    @field_validator("mobile_no")
    @classmethod
    def _mobile(cls, value: str) -> str:
        if not _MOBILE_PATTERN.match(value or ""):
            raise ValueError("Please provide a valid 10-digit mobile number")
        return value

    @field_validator("password")
    @classmethod
    def _password(cls, value: str) -> str:
        return _validate_password_strength(value)


class LoginRequest(BaseModel):
    email: str
    password: Optional[str] = Field(default=None, max_length=128)
    otp: Optional[str] = Field(default=None, max_length=10)

    @field_validator("email")
    @classmethod
    def _email(cls, value: str) -> str:
        return _validate_email(value)

    @model_validator(mode="after")
    def _require_credential(self):
        if not self.password and not self.otp:
            raise ValueError("Password or OTP is required")
        return self


class ForgotPasswordRequest(BaseModel):
    email: str

    @field_validator("email")
    @classmethod
    def _email(cls, value: str) -> str:
        return _validate_email(value)


class VerifyOtpRequest(BaseModel):
    email: str
    otp: str = Field(..., min_length=1, max_length=10)

    @field_validator("email")
    @classmethod
    def _email(cls, value: str) -> str:
        return _validate_email(value)


class SetPasswordRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    new_password: str = Field(..., alias="newPassword")
    confirm_password: str = Field(..., alias="confirmPassword", min_length=1)

    @field_validator("new_password")
    @classmethod
    def _password(cls, value: str) -> str:
        return _validate_password_strength(value)


class ResetPasswordForgotRequest(SetPasswordRequest):
    pass


class ResetPasswordRequest(SetPasswordRequest):
    current_password: str = Field(..., alias="currentPassword", min_length=1)


class RefreshRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    refresh_token: Optional[str] = Field(default=None, alias="refreshToken", max_length=2048)


class AddressPayload(BaseModel):
    model_config = ConfigDict(extra="ignore")

    street: Optional[str] = Field(default=None, max_length=200)
    city: Optional[str] = Field(default=None, max_length=100)
    state: Optional[str] = Field(default=None, max_length=100)
    country: Optional[str] = Field(default=None, max_length=100)
    zipCode: Optional[str] = Field(default=None, max_length=20)


class EducationPayload(BaseModel):
    model_config = ConfigDict(extra="ignore")

    qualification: Optional[str] = Field(default=None, max_length=200)
    specialization: Optional[str] = Field(default=None, max_length=200)
    institution: Optional[str] = Field(default=None, max_length=200)
    yearOfCompletion: Optional[int] = Field(default=None, ge=1900, le=2100)


class CompleteProfileRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    address: Optional[AddressPayload] = None
    education: Optional[EducationPayload] = None
    bio: Optional[str] = Field(default=None, max_length=2000)
    phone: Optional[str] = Field(default=None, max_length=20)
    profile_image: Optional[str] = Field(default=None, alias="profileImage", max_length=2048)


class CreateInstructorRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    first_name: str = Field(..., alias="firstName", max_length=100)
    last_name: str = Field(..., alias="lastName", max_length=100)
    email: str

    @field_validator("first_name")
    @classmethod
    def _first_name(cls, value: str) -> str:
        return _validate_name(value, "First name")

    @field_validator("last_name")
    @classmethod
    def _last_name(cls, value: str) -> str:
        return _validate_name(value, "Last name")

    @field_validator("email")
    @classmethod
    def _email(cls, value: str) -> str:
        return _validate_email(value)


class AdminUpdateUserRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    first_name: Optional[str] = Field(default=None, alias="firstName", max_length=100)
    last_name: Optional[str] = Field(default=None, alias="lastName", max_length=100)
    email: Optional[str] = None
    role: Optional[Literal["student", "instructor", "admin"]] = None

    @field_validator("email")
    @classmethod
    def _email(cls, value: Optional[str]) -> Optional[str]:
        return _validate_email(value) if value is not None else None


class StatusUpdateRequest(BaseModel):
    # Checked against the status set in the service for the exact error message
    status: str = Field(..., max_length=32)
