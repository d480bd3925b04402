from __future__ import annotations

import re
import secrets
from typing import List, Optional, Protocol, Tuple

from argon2 import PasswordHasher, Type
from argon2.exceptions import InvalidHash, VerificationError, VerifyMismatchError

from learnhub.logging import get_logger
from learnhub.service import messages
from learnhub.service.errors import DuplicateKeyError, ValidationError
from learnhub.storage.errors import ConstraintViolation
from learnhub.storage.models import GENDERS, ROLE_STUDENT, ROLES, STATUSES, User

logger = get_logger(__name__)

PASSWORD_ALGO = "argon2id"
MIN_PASSWORD_LENGTH = 6
MIN_NAME_LENGTH = 2
_EMAIL_RE = re.compile(r"^[^@\s]+@[^@\s]+\.[^@\s]+$")
_MOBILE_RE = re.compile(r"^\d{10}$")


class UserStore(Protocol):
    def create_user(self, user: User, password_hash: str, password_algo: str) -> User: ...

    def get_user(self, user_id: str) -> Optional[User]: ...

    def get_user_by_email(self, email: str) -> Optional[User]: ...

    def save_password(
        self, user_id: str, password_hash: str, password_algo: str
    ) -> None: ...

    def get_password_record(self, user_id: str) -> Optional[tuple[str, str]]: ...


class CredentialStore:
    """User records plus argon2 password hashes.

    Hashes live in the backing store's credential table and never on the
    ``User`` object, so anything returned here is already safe to serialize
    through ``User.to_public``.
    """

    def __init__(self, store: UserStore, *, hasher: Optional[PasswordHasher] = None) -> None:
        self.store = store
        self._pwd_hasher = hasher or PasswordHasher(type=Type.ID)
        self._decoy_hash: Optional[str] = None

    def _validate(self, user: User, password: str) -> None:
        errors: List[str] = []
        if len((user.first_name or "").strip()) < MIN_NAME_LENGTH:
            errors.append("First name must be at least 2 characters")
        if len((user.last_name or "").strip()) < MIN_NAME_LENGTH:
            errors.append("Last name must be at least 2 characters")
        if not user.email or not _EMAIL_RE.match(user.email):
            errors.append("Please provide a valid email")
        if not password or len(password) < MIN_PASSWORD_LENGTH:
            errors.append("Password must be at least 6 characters")
        if user.role not in ROLES:
            errors.append("Invalid role")
        if user.status not in STATUSES:
            errors.append(messages.INVALID_STATUS)
        if user.role == ROLE_STUDENT:
            if not user.mobile_no or not _MOBILE_RE.match(user.mobile_no):
                errors.append("Mobile number must be 10 digits")
            if user.gender not in GENDERS:
                errors.append("Gender is required")
        if errors:
            raise ValidationError(errors[0], detail={"errors": errors})

    def _hash_password(self, password: str) -> Tuple[str, str]:
        return self._pwd_hasher.hash(password), PASSWORD_ALGO

    def create(self, user: User, password: str) -> User:
        """Validate, hash and persist a new account."""
        self._validate(user, password)
        pwd_hash, algo = self._hash_password(password)
        try:
            created = self.store.create_user(user, pwd_hash, algo)
        except ConstraintViolation as exc:
            raise DuplicateKeyError(messages.EMAIL_EXISTS, detail=exc.detail) from exc
        logger.info("user_created", user_id=created.id, role=created.role)
        return created

    def find_by_email(self, email: str) -> Optional[User]:
        return self.store.get_user_by_email(email.strip().lower())

    def find_by_id(self, user_id: str) -> Optional[User]:
        return self.store.get_user(user_id)

    def verify_password(self, user: User, candidate: str) -> bool:
        """Constant-time hash comparison; never raises on mismatch."""
        record = self.store.get_password_record(user.id)
        if not record:
            logger.warning("password_record_missing", user_id=user.id)
            return False
        stored_hash, algo = record
        if algo != PASSWORD_ALGO:
            logger.warning("password_algo_mismatch", user_id=user.id, algo=algo)
            return False
        try:
            return self._pwd_hasher.verify(stored_hash, candidate or "")
        except (InvalidHash, VerifyMismatchError, VerificationError):
            return False

    def verify_decoy(self, candidate: Optional[str]) -> bool:
        """Run one argon2 verify against a throwaway hash and report no match.

        Lets an unknown email cost the same as a wrong password.
        """
        if self._decoy_hash is None:
            self._decoy_hash = self._pwd_hasher.hash(secrets.token_urlsafe(16))
        try:
            self._pwd_hasher.verify(self._decoy_hash, candidate or "")
        except (InvalidHash, VerifyMismatchError, VerificationError):
            pass
        return False

    def set_password(self, user_id: str, password: str) -> None:
        if not password or len(password) < MIN_PASSWORD_LENGTH:
            raise ValidationError("Password must be at least 6 characters")
        pwd_hash, algo = self._hash_password(password)
        self.store.save_password(user_id, pwd_hash, algo)
        logger.info("password_updated", user_id=user_id)
