from __future__ import annotations

import secrets
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, FrozenSet, Mapping, Optional

from learnhub.logging import get_logger, hash_email
from learnhub.service import messages
from learnhub.service.credentials import CredentialStore
from learnhub.service.errors import (
    AuthenticationError,
    DuplicateKeyError,
    ForbiddenError,
    NotFoundError,
    ValidationError,
)
from learnhub.service.notifications import NotificationDispatcher
from learnhub.service.otp import OtpLedger
from learnhub.service.tokens import AccessContext, TokenLedger, TokenPair
from learnhub.storage.models import (
    ADDRESS_FIELDS,
    EDUCATION_FIELDS,
    ROLE_ADMIN,
    ROLE_INSTRUCTOR,
    ROLE_STUDENT,
    STATUS_APPROVED,
    User,
)

logger = get_logger(__name__)

TEMP_PASSWORD_LENGTH = 12
TEMP_PASSWORD_CHARSET = (
    "abcdefghijklmnopqrstuvwxyzABCDEFGHIJKLMNOPQRSTUVWXYZ0123456789!@#$%^&*"
)

# Capabilities
SET_INITIAL_PASSWORD = "set_initial_password"
RESET_PASSWORD = "reset_password"
COMPLETE_PROFILE = "complete_profile"
VIEW_ENROLLMENTS = "view_enrollments"
VIEW_PAYMENT_KEY = "view_payment_key"
CREATE_INSTRUCTOR = "create_instructor"
MANAGE_USERS = "manage_users"
VIEW_OTPS = "view_otps"

_COMMON: FrozenSet[str] = frozenset(
    {RESET_PASSWORD, COMPLETE_PROFILE, VIEW_ENROLLMENTS, VIEW_PAYMENT_KEY}
)

ROLE_CAPABILITIES: Mapping[str, FrozenSet[str]] = {
    ROLE_STUDENT: _COMMON,
    ROLE_INSTRUCTOR: _COMMON | {SET_INITIAL_PASSWORD},
    ROLE_ADMIN: _COMMON | {CREATE_INSTRUCTOR, MANAGE_USERS, VIEW_OTPS},
}

# Message returned when a role lacks a capability
CAPABILITY_DENIED_MESSAGES: Mapping[str, str] = {
    SET_INITIAL_PASSWORD: messages.INSTRUCTOR_REQUIRED,
    CREATE_INSTRUCTOR: messages.ADMIN_REQUIRED,
    MANAGE_USERS: messages.ADMIN_REQUIRED,
    VIEW_OTPS: messages.ADMIN_REQUIRED,
}


def role_allows(role: str, capability: str) -> bool:
    return capability in ROLE_CAPABILITIES.get(role, frozenset())


def require_capability(role: str, capability: str) -> None:
    if not role_allows(role, capability):
        raise ForbiddenError(
            CAPABILITY_DENIED_MESSAGES.get(capability, messages.UNAUTHORIZED),
            detail={"capability": capability},
        )


@dataclass
class AuthResult:
    """Tokens plus the flags a client needs to route the next screen."""

    user: User
    tokens: TokenPair
    flags: Dict[str, Any] = field(default_factory=dict)

    def to_response(self) -> dict:
        return {
            **self.tokens.as_dict(),
            "user": self.user.to_public(),
            **self.flags,
        }


class AuthService:
    """Signup, login and password flows over the credential, token and OTP ledgers."""

    def __init__(
        self,
        credentials: CredentialStore,
        tokens: TokenLedger,
        otps: OtpLedger,
        notifications: NotificationDispatcher,
    ) -> None:
        self.credentials = credentials
        self.tokens = tokens
        self.otps = otps
        self.notifications = notifications
        self.store = credentials.store

    def _now(self) -> datetime:
        return datetime.now(timezone.utc)

    def _generate_password(self) -> str:
        return "".join(
            secrets.choice(TEMP_PASSWORD_CHARSET) for _ in range(TEMP_PASSWORD_LENGTH)
        )

    def _require_user(self, user_id: str) -> User:
        user = self.credentials.find_by_id(user_id)
        if not user:
            raise NotFoundError(messages.USER_NOT_FOUND)
        return user

    def _require_active(self, user: User) -> None:
        if not user.is_active:
            raise AuthenticationError(messages.USER_DEACTIVATED)

    def _mark_login(self, user: User) -> User:
        updated = self.store.update_user(user.id, last_login=self._now())
        return updated or user

    @staticmethod
    def _require_match(new_password: str, confirm_password: str) -> None:
        if new_password != confirm_password:
            raise ValidationError(messages.PASSWORDS_NOT_MATCH)

    # -- sessions ------------------------------------------------------------

    async def signup_student(
        self,
        *,
        first_name: str,
        last_name: str,
        email: str,
        password: str,
        confirm_password: str,
        mobile_no: str,
        gender: str,
    ) -> AuthResult:
        self._require_match(password, confirm_password)
        if self.credentials.find_by_email(email):
            raise DuplicateKeyError(messages.EMAIL_EXISTS)
        user = self.credentials.create(
            User.new_student(
                first_name=first_name,
                last_name=last_name,
                email=email,
                mobile_no=mobile_no,
                gender=gender,
            ),
            password,
        )
        self.notifications.welcome(user)
        tokens = self.tokens.issue(user.id, user.role)
        logger.info("student_signup", user_id=user.id)
        return AuthResult(user=user, tokens=tokens)

    async def login(
        self,
        email: str,
        *,
        password: Optional[str] = None,
        otp: Optional[str] = None,
    ) -> AuthResult:
        """Authenticate with exactly one of ``password`` or ``otp``.

        Raises:
            ValidationError: neither credential was supplied.
            AuthenticationError: bad credentials, deactivated account, or an
                instructor account that is not approved.
            RateLimitedError: the OTP attempt budget is exhausted.
        """
        if not password and not otp:
            raise ValidationError("Password or OTP is required")
        via_password = bool(password)
        user = self.credentials.find_by_email(email)
        if not user:
            if via_password:
                self.credentials.verify_decoy(password)
            logger.info("login_failed", email_hash=hash_email(email), reason="unknown_email")
            raise AuthenticationError(messages.INVALID_CREDENTIALS)

        otp_record = None
        if via_password:
            if not self.credentials.verify_password(user, password):
                logger.info("login_failed", user_id=user.id, reason="bad_password")
                raise AuthenticationError(messages.INVALID_CREDENTIALS)
        else:
            otp_record = self.otps.verify(user.email, otp)

        # A rejected account keeps its code for later recovery
        self._require_active(user)
        if user.role == ROLE_INSTRUCTOR and user.status != STATUS_APPROVED:
            raise AuthenticationError(messages.instructor_not_approved(user.status))
        if otp_record is not None:
            self.otps.spend(otp_record)

        if (
            via_password
            and user.role == ROLE_INSTRUCTOR
            and user.requires_password_change
        ):
            # First-login gate: tokens are issued but the client must set a
            # password before the account counts as logged in
            tokens = self.tokens.issue(user.id, user.role)
            logger.info("login_requires_password_change", user_id=user.id)
            return AuthResult(
                user=user,
                tokens=tokens,
                flags={
                    "requiresPasswordChange": True,
                    "isFirstLogin": user.is_first_login,
                },
            )

        user = self._mark_login(user)
        tokens = self.tokens.issue(user.id, user.role)
        logger.info("user_login", user_id=user.id, method="password" if via_password else "otp")
        return AuthResult(
            user=user,
            tokens=tokens,
            flags={
                "requiresPasswordChange": user.requires_password_change,
                "isFirstLogin": user.is_first_login,
            },
        )

    async def forgot_password(self, email: str) -> None:
        """Issue a login OTP; the caller always answers with the same message."""
        normalized = email.strip().lower()
        code = self.otps.issue_for(normalized)
        user = self.credentials.find_by_email(normalized)
        if user:
            self.notifications.otp(user.email, code)
        logger.info(
            "password_reset_requested",
            email_hash=hash_email(normalized),
            registered=bool(user),
        )

    async def verify_otp_login(self, email: str, otp: str) -> AuthResult:
        otp_record = self.otps.verify(email, otp)
        user = self.credentials.find_by_email(email)
        if not user:
            raise AuthenticationError(messages.USER_NOT_FOUND)
        self._require_active(user)
        self.otps.spend(otp_record)
        user = self._mark_login(user)
        tokens = self.tokens.issue(user.id, user.role)
        logger.info("user_login", user_id=user.id, method="otp_recovery")
        return AuthResult(user=user, tokens=tokens, flags={"requiresPasswordReset": True})

    async def refresh(self, refresh_token: Optional[str]) -> TokenPair:
        if not refresh_token:
            raise AuthenticationError(messages.REFRESH_TOKEN_REQUIRED)
        return self.tokens.rotate(refresh_token)

    async def logout(self, refresh_token: Optional[str]) -> None:
        self.tokens.revoke(refresh_token)

    def authenticate(self, access_token: Optional[str]) -> AccessContext:
        if not access_token:
            raise AuthenticationError(messages.UNAUTHORIZED)
        return self.tokens.validate_access(access_token)

    # -- passwords -----------------------------------------------------------

    async def set_initial_password(
        self, principal: User, new_password: str, confirm_password: str
    ) -> User:
        require_capability(principal.role, SET_INITIAL_PASSWORD)
        self._require_match(new_password, confirm_password)
        user = self._require_user(principal.id)
        self._require_active(user)
        self.credentials.set_password(user.id, new_password)
        updated = self.store.update_user(
            user.id,
            is_first_login=False,
            requires_password_change=False,
            last_login=self._now(),
        )
        logger.info("instructor_password_set", user_id=user.id)
        return updated or user

    async def reset_password(
        self,
        principal: User,
        current_password: str,
        new_password: str,
        confirm_password: str,
    ) -> None:
        require_capability(principal.role, RESET_PASSWORD)
        self._require_match(new_password, confirm_password)
        user = self._require_user(principal.id)
        self._require_active(user)
        if not self.credentials.verify_password(user, current_password):
            raise AuthenticationError(messages.INVALID_PASSWORD)
        if new_password == current_password:
            raise ValidationError(messages.SAME_PASSWORD)
        self.credentials.set_password(user.id, new_password)
        logger.info("password_reset", user_id=user.id)

    async def reset_password_forgot(
        self, principal: User, new_password: str, confirm_password: str
    ) -> None:
        """Password change for a session that proved identity via OTP."""
        require_capability(principal.role, RESET_PASSWORD)
        self._require_match(new_password, confirm_password)
        user = self._require_user(principal.id)
        self._require_active(user)
        self.credentials.set_password(user.id, new_password)
        if user.requires_password_change or user.is_first_login:
            self.store.update_user(
                user.id, requires_password_change=False, is_first_login=False
            )
        logger.info("password_reset_after_otp", user_id=user.id)

    # -- provisioning --------------------------------------------------------

    async def create_instructor(
        self, actor: User, *, first_name: str, last_name: str, email: str
    ) -> User:
        require_capability(actor.role, CREATE_INSTRUCTOR)
        if self.credentials.find_by_email(email):
            raise DuplicateKeyError(messages.EMAIL_EXISTS)
        temporary_password = self._generate_password()
        user = self.credentials.create(
            User.new_instructor(first_name=first_name, last_name=last_name, email=email),
            temporary_password,
        )
        self.notifications.instructor_password(user, temporary_password)
        logger.info("instructor_created", user_id=user.id, created_by=actor.id)
        return user

    def seed_admin(
        self,
        email: str,
        password: str,
        *,
        first_name: str = "Admin",
        last_name: str = "User",
    ) -> Optional[User]:
        """Create the admin account if the email is free; None when it exists."""
        if self.credentials.find_by_email(email):
            logger.info("admin_seed_skipped", email_hash=hash_email(email))
            return None
        user = self.credentials.create(
            User.new_admin(first_name=first_name, last_name=last_name, email=email),
            password,
        )
        logger.info("admin_seeded", user_id=user.id)
        return user

    # -- profile -------------------------------------------------------------

    async def complete_profile(
        self,
        principal: User,
        *,
        address: Optional[dict] = None,
        education: Optional[dict] = None,
        bio: Optional[str] = None,
        phone: Optional[str] = None,
        profile_image: Optional[str] = None,
    ) -> User:
        require_capability(principal.role, COMPLETE_PROFILE)
        user = self._require_user(principal.id)
        updates: Dict[str, Any] = {}
        if address is not None:
            merged = dict(user.address)
            merged.update({k: v for k, v in address.items() if k in ADDRESS_FIELDS})
            updates["address"] = merged
        if education is not None:
            merged = dict(user.education)
            merged.update({k: v for k, v in education.items() if k in EDUCATION_FIELDS})
            updates["education"] = merged
        if bio is not None:
            updates["bio"] = bio
        if phone is not None:
            updates["phone"] = phone
        if profile_image is not None:
            updates["profile_image"] = profile_image
        if not updates:
            return user
        updated = self.store.update_user(user.id, **updates)
        logger.info("profile_completed", user_id=user.id, fields=sorted(updates))
        return updated or user
