from __future__ import annotations

from typing import Any, Dict, List, Optional

from learnhub.logging import get_logger
from learnhub.service import messages
from learnhub.service.auth import MANAGE_USERS, VIEW_OTPS, require_capability
from learnhub.service.credentials import CredentialStore
from learnhub.service.errors import DuplicateKeyError, NotFoundError, ValidationError
from learnhub.service.otp import OtpLedger
from learnhub.service.tokens import TokenLedger
from learnhub.storage.errors import ConstraintViolation
from learnhub.storage.models import (
    ROLE_ADMIN,
    ROLE_INSTRUCTOR,
    ROLE_STUDENT,
    ROLES,
    STATUSES,
    User,
)

logger = get_logger(__name__)

OTP_VIEW_LIMIT = 50


class AdminService:
    """User management for admin principals.

    Every operation checks the ``manage_users`` capability (``view_otps``
    for the OTP listing) before touching the store.
    """

    def __init__(
        self, credentials: CredentialStore, tokens: TokenLedger, otps: OtpLedger
    ) -> None:
        self.credentials = credentials
        self.tokens = tokens
        self.otps = otps
        self.store = credentials.store

    def _require_user(self, user_id: str) -> User:
        user = self.credentials.find_by_id(user_id)
        if not user:
            raise NotFoundError(messages.USER_NOT_FOUND, detail={"user_id": user_id})
        return user

    def list_users(
        self,
        actor: User,
        *,
        role: Optional[str] = None,
        status: Optional[str] = None,
        search: Optional[str] = None,
    ) -> List[User]:
        require_capability(actor.role, MANAGE_USERS)
        return self.store.list_users(role=role, status=status, search=search)

    def get_user(self, actor: User, user_id: str) -> User:
        require_capability(actor.role, MANAGE_USERS)
        return self._require_user(user_id)

    def update_user(self, actor: User, user_id: str, **fields: Any) -> User:
        """Patch name, email or role; ``None`` values are left untouched."""
        require_capability(actor.role, MANAGE_USERS)
        self._require_user(user_id)
        updates: Dict[str, Any] = {k: v for k, v in fields.items() if v is not None}
        if "role" in updates and updates["role"] not in ROLES:
            raise ValidationError("Invalid role", detail={"role": updates["role"]})
        if "email" in updates:
            updates["email"] = updates["email"].strip().lower()
        try:
            updated = self.store.update_user(user_id, **updates)
        except ConstraintViolation as exc:
            raise DuplicateKeyError(messages.EMAIL_EXISTS, detail=exc.detail) from exc
        if not updated:
            raise NotFoundError(messages.USER_NOT_FOUND, detail={"user_id": user_id})
        logger.info(
            "admin_user_updated",
            user_id=user_id,
            actor_id=actor.id,
            fields=sorted(updates),
        )
        return updated

    def delete_user(self, actor: User, user_id: str) -> None:
        require_capability(actor.role, MANAGE_USERS)
        user = self._require_user(user_id)
        if user.role == ROLE_ADMIN:
            raise ValidationError(messages.CANNOT_DELETE_ADMIN)
        self.store.delete_user(user_id)
        logger.info("admin_user_deleted", user_id=user_id, actor_id=actor.id)

    def update_status(self, actor: User, user_id: str, status: str) -> User:
        require_capability(actor.role, MANAGE_USERS)
        if status not in STATUSES:
            raise ValidationError(messages.INVALID_STATUS, detail={"status": status})
        self._require_user(user_id)
        updated = self.store.update_user(user_id, status=status)
        logger.info("admin_status_updated", user_id=user_id, status=status, actor_id=actor.id)
        return updated

    def set_active(self, actor: User, user_id: str, active: bool) -> User:
        """Toggle ``is_active``; deactivation also revokes every live token."""
        require_capability(actor.role, MANAGE_USERS)
        user = self._require_user(user_id)
        if not active and user.role == ROLE_ADMIN:
            raise ValidationError(messages.CANNOT_DEACTIVATE_ADMIN)
        updated = self.store.update_user(user_id, is_active=active)
        revoked = 0
        if not active:
            revoked = self.tokens.revoke_all(user_id)
        logger.info(
            "admin_activation_changed",
            user_id=user_id,
            is_active=active,
            tokens_revoked=revoked,
            actor_id=actor.id,
        )
        return updated

    def dashboard_stats(self, actor: User) -> Dict[str, int]:
        """Headline counts; ``totalUsers`` covers students and instructors only."""
        require_capability(actor.role, MANAGE_USERS)
        students = self.store.count_users(role=ROLE_STUDENT)
        instructors = self.store.count_users(role=ROLE_INSTRUCTOR)
        return {
            "totalStudents": students,
            "totalInstructors": instructors,
            "activeUsers": self.store.count_users(is_active=True),
            "inactiveUsers": self.store.count_users(is_active=False),
            "totalUsers": students + instructors,
        }

    def list_otps(self, actor: User, *, email: Optional[str] = None) -> List[dict]:
        require_capability(actor.role, VIEW_OTPS)
        normalized = email.strip().lower() if email else None
        return self.otps.list_masked(email=normalized, limit=OTP_VIEW_LIMIT)
