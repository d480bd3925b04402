from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional

ROLE_STUDENT = "student"
ROLE_INSTRUCTOR = "instructor"
ROLE_ADMIN = "admin"
ROLES = (ROLE_STUDENT, ROLE_INSTRUCTOR, ROLE_ADMIN)

STATUS_PENDING = "pending"
STATUS_APPROVED = "approved"
STATUS_REJECTED = "rejected"
STATUSES = (STATUS_PENDING, STATUS_APPROVED, STATUS_REJECTED)

GENDERS = ("male", "female", "other")

ADDRESS_FIELDS = ("street", "city", "state", "country", "zipCode")
EDUCATION_FIELDS = ("qualification", "specialization", "institution", "yearOfCompletion")


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _iso(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None


@dataclass
class User:
    """Identity, role and account flags.

    The password hash is not part of the record; stores keep credentials
    in a separate table so a user object can never carry it outward.
    Construct new accounts through the role factories below rather than
    the bare constructor so role-dependent defaults are always explicit.
    """

    id: str
    first_name: str
    last_name: str
    email: str
    role: str
    status: str
    is_active: bool
    is_first_login: bool
    requires_password_change: bool
    mobile_no: Optional[str] = None
    gender: Optional[str] = None
    last_login: Optional[datetime] = None
    profile_image: Optional[str] = None
    bio: Optional[str] = None
    phone: Optional[str] = None
    address: Dict[str, Any] = field(default_factory=dict)
    education: Dict[str, Any] = field(default_factory=dict)
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)

    @classmethod
    def new_student(
        cls,
        *,
        first_name: str,
        last_name: str,
        email: str,
        mobile_no: str,
        gender: str,
    ) -> "User":
        return cls(
            id=str(uuid.uuid4()),
            first_name=first_name,
            last_name=last_name,
            email=email.strip().lower(),
            role=ROLE_STUDENT,
            status=STATUS_APPROVED,
            is_active=True,
            is_first_login=False,
            requires_password_change=False,
            mobile_no=mobile_no,
            gender=gender,
        )

    @classmethod
    def new_instructor(
        cls,
        *,
        first_name: str,
        last_name: str,
        email: str,
        status: str = STATUS_APPROVED,
    ) -> "User":
        """Instructor provisioned with a temporary password.

        The account must set its own password on first login.
        """
        return cls(
            id=str(uuid.uuid4()),
            first_name=first_name,
            last_name=last_name,
            email=email.strip().lower(),
            role=ROLE_INSTRUCTOR,
            status=status,
            is_active=True,
            is_first_login=True,
            requires_password_change=True,
        )

    @classmethod
    def new_admin(cls, *, first_name: str, last_name: str, email: str) -> "User":
        return cls(
            id=str(uuid.uuid4()),
            first_name=first_name,
            last_name=last_name,
            email=email.strip().lower(),
            role=ROLE_ADMIN,
            status=STATUS_APPROVED,
            is_active=True,
            is_first_login=False,
            requires_password_change=False,
        )

    def to_public(self) -> dict:
        """Outward representation used by every API response."""
        return {
            "id": self.id,
            "firstName": self.first_name,
            "lastName": self.last_name,
            "email": self.email,
            "mobileNo": self.mobile_no,
            "gender": self.gender,
            "role": self.role,
            "status": self.status,
            "isActive": self.is_active,
            "isFirstLogin": self.is_first_login,
            "requiresPasswordChange": self.requires_password_change,
            "lastLogin": _iso(self.last_login),
            "profileImage": self.profile_image,
            "bio": self.bio,
            "phone": self.phone,
            "address": dict(self.address),
            "education": dict(self.education),
            "createdAt": _iso(self.created_at),
            "updatedAt": _iso(self.updated_at),
        }


@dataclass
class TokenRecord:
    """Persisted access/refresh pair for one login session."""

    id: str
    user_id: str
    access_token: str
    refresh_token: str
    expires_at: datetime
    is_revoked: bool = False
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)

    @classmethod
    def new(
        cls, user_id: str, access_token: str, refresh_token: str, *, ttl_days: int = 7
    ) -> "TokenRecord":
        now = utcnow()
        return cls(
            id=str(uuid.uuid4()),
            user_id=user_id,
            access_token=access_token,
            refresh_token=refresh_token,
            expires_at=now + timedelta(days=ttl_days),
            created_at=now,
            updated_at=now,
        )


@dataclass
class OtpRecord:
    id: str
    email: str
    otp: str
    expires_at: datetime
    attempts: int = 0
    max_attempts: int = 5
    is_used: bool = False
    created_at: datetime = field(default_factory=utcnow)

    @classmethod
    def new(
        cls, email: str, otp: str, *, ttl_minutes: int = 10, max_attempts: int = 5
    ) -> "OtpRecord":
        now = utcnow()
        return cls(
            id=str(uuid.uuid4()),
            email=email.strip().lower(),
            otp=otp,
            expires_at=now + timedelta(minutes=ttl_minutes),
            max_attempts=max_attempts,
            created_at=now,
        )

    def is_expired(self, now: Optional[datetime] = None) -> bool:
        return self.expires_at <= (now or utcnow())

    def is_usable(self, now: Optional[datetime] = None) -> bool:
        return (
            not self.is_used
            and not self.is_expired(now)
            and self.attempts < self.max_attempts
        )


@dataclass
class LessonProgress:
    lesson_id: str
    watched_sec: int = 0
    completed: bool = False


@dataclass
class Enrollment:
    id: str
    user_id: str
    course_id: str
    status: str = "active"
    progress: List[LessonProgress] = field(default_factory=list)
    order_id: Optional[str] = None
    payment_id: Optional[str] = None
    purchased_at: datetime = field(default_factory=utcnow)

    def to_public(self) -> dict:
        return {
            "id": self.id,
            "user": self.user_id,
            "course": self.course_id,
            "status": self.status,
            "progress": [
                {
                    "lessonId": p.lesson_id,
                    "watchedSec": p.watched_sec,
                    "completed": p.completed,
                }
                for p in self.progress
            ],
            "orderId": self.order_id,
            "paymentId": self.payment_id,
            "purchasedAt": _iso(self.purchased_at),
        }
