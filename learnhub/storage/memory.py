from __future__ import annotations

import copy
import json
import threading
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, List, Optional

from learnhub.logging import get_logger
from learnhub.storage.errors import DuplicateEmail, DuplicateEnrollment, MissingUser
from learnhub.storage.models import (
    Enrollment,
    LessonProgress,
    OtpRecord,
    TokenRecord,
    User,
    utcnow,
)

_USER_UPDATABLE_FIELDS = {
    "first_name",
    "last_name",
    "email",
    "role",
    "status",
    "is_active",
    "is_first_login",
    "requires_password_change",
    "mobile_no",
    "gender",
    "last_login",
    "profile_image",
    "bio",
    "phone",
    "address",
    "education",
}


class MemoryStore:
    """In-process backing store with JSON snapshot persistence.

    Every read-modify-write runs under a single re-entrant lock, which is
    what makes OTP consumption and refresh rotation atomic here. Returned
    records are copies; mutate through the store methods.
    """

    def __init__(self, fs_root: str = "/tmp/learnhub") -> None:
        self.logger = get_logger(__name__)
        self.users: Dict[str, User] = {}
        self.credentials: Dict[str, tuple[str, str]] = {}
        self.tokens: Dict[str, TokenRecord] = {}
        self.otps: Dict[str, OtpRecord] = {}
        self.enrollments: Dict[str, Enrollment] = {}
        # RLock so helpers can re-enter from within a locked operation
        self._data_lock = threading.RLock()
        self.fs_root = Path(fs_root)
        self.fs_root.mkdir(parents=True, exist_ok=True)

        if not self._load_state():
            self._persist_state()

    def _state_path(self) -> Path:
        state_dir = self.fs_root / "state"
        state_dir.mkdir(parents=True, exist_ok=True)
        return state_dir / "memory_store.json"

    @staticmethod
    def _serialize_datetime(dt: Optional[datetime]) -> Optional[str]:
        return dt.isoformat() if dt else None

    @staticmethod
    def _deserialize_datetime(raw: Optional[str]) -> Optional[datetime]:
        return datetime.fromisoformat(raw) if raw else None

    @staticmethod
    def _copy(obj):
        return copy.deepcopy(obj) if obj is not None else None

    # -- users -------------------------------------------------------------

    def _email_taken(self, email: str, *, exclude_id: Optional[str] = None) -> bool:
        return any(
            u.email == email and u.id != exclude_id for u in self.users.values()
        )

    def create_user(self, user: User, password_hash: str, password_algo: str) -> User:
        with self._data_lock:
            if self._email_taken(user.email):
                raise DuplicateEmail()
            self.users[user.id] = self._copy(user)
            self.credentials[user.id] = (password_hash, password_algo)
            self._persist_state()
            return self._copy(user)

    def get_user(self, user_id: str) -> Optional[User]:
        with self._data_lock:
            return self._copy(self.users.get(user_id))

    def get_user_by_email(self, email: str) -> Optional[User]:
        normalized = email.strip().lower()
        with self._data_lock:
            return self._copy(
                next((u for u in self.users.values() if u.email == normalized), None)
            )

    def list_users(
        self,
        *,
        role: Optional[str] = None,
        status: Optional[str] = None,
        search: Optional[str] = None,
        limit: int = 500,
    ) -> List[User]:
        needle = search.strip().lower() if search else None
        with self._data_lock:
            results = []
            for user in self.users.values():
                if role and user.role != role:
                    continue
                if status and user.status != status:
                    continue
                if needle and not any(
                    needle in value.lower()
                    for value in (user.first_name, user.last_name, user.email)
                ):
                    continue
                results.append(user)
            ordered = sorted(results, key=lambda u: u.created_at, reverse=True)[:limit]
            return [self._copy(u) for u in ordered]

    def count_users(
        self, *, role: Optional[str] = None, is_active: Optional[bool] = None
    ) -> int:
        with self._data_lock:
            return sum(
                1
                for u in self.users.values()
                if (role is None or u.role == role)
                and (is_active is None or u.is_active == is_active)
            )

    def update_user(self, user_id: str, **fields: Any) -> Optional[User]:
        unknown = set(fields) - _USER_UPDATABLE_FIELDS
        if unknown:
            raise ValueError(f"unsupported user fields: {sorted(unknown)}")
        with self._data_lock:
            user = self.users.get(user_id)
            if not user:
                return None
            if "email" in fields:
                fields["email"] = fields["email"].strip().lower()
                if self._email_taken(fields["email"], exclude_id=user_id):
                    raise DuplicateEmail()
            for name, value in fields.items():
                setattr(user, name, copy.deepcopy(value))
            user.updated_at = utcnow()
            self._persist_state()
            return self._copy(user)

    def delete_user(self, user_id: str) -> bool:
        with self._data_lock:
            if self.users.pop(user_id, None) is None:
                return False
            self.credentials.pop(user_id, None)
            for token_id in [t.id for t in self.tokens.values() if t.user_id == user_id]:
                self.tokens.pop(token_id, None)
            for enrollment_id in [
                e.id for e in self.enrollments.values() if e.user_id == user_id
            ]:
                self.enrollments.pop(enrollment_id, None)
            self._persist_state()
            return True

    def save_password(
        self, user_id: str, password_hash: str, password_algo: str
    ) -> None:
        with self._data_lock:
            if user_id not in self.users:
                raise MissingUser(user_id)
            self.credentials[user_id] = (password_hash, password_algo)
            self.users[user_id].updated_at = utcnow()
            self._persist_state()

    def get_password_record(self, user_id: str) -> Optional[tuple[str, str]]:
        with self._data_lock:
            return self.credentials.get(user_id)

    # -- token ledger --------------------------------------------------------

    def create_token(self, record: TokenRecord) -> TokenRecord:
        with self._data_lock:
            if record.user_id not in self.users:
                raise MissingUser(record.user_id)
            self.tokens[record.id] = self._copy(record)
            self._persist_state()
            return self._copy(record)

    def get_token_by_access(self, access_token: str) -> Optional[TokenRecord]:
        with self._data_lock:
            return self._copy(
                next(
                    (t for t in self.tokens.values() if t.access_token == access_token),
                    None,
                )
            )

    def get_token_by_refresh(self, refresh_token: str) -> Optional[TokenRecord]:
        with self._data_lock:
            return self._copy(self._find_by_refresh(refresh_token))

    def _find_by_refresh(self, refresh_token: str) -> Optional[TokenRecord]:
        return next(
            (t for t in self.tokens.values() if t.refresh_token == refresh_token),
            None,
        )

    def rotate_token(
        self, old_refresh_token: str, access_token: str, refresh_token: str
    ) -> Optional[TokenRecord]:
        """Swap the token pair only if the old refresh token is still live."""
        with self._data_lock:
            record = self._find_by_refresh(old_refresh_token)
            if not record or record.is_revoked:
                return None
            record.access_token = access_token
            record.refresh_token = refresh_token
            record.updated_at = utcnow()
            self._persist_state()
            return self._copy(record)

    def revoke_token(self, refresh_token: str) -> bool:
        with self._data_lock:
            record = self._find_by_refresh(refresh_token)
            if not record:
                return False
            if not record.is_revoked:
                record.is_revoked = True
                record.updated_at = utcnow()
                self._persist_state()
            return True

    def revoke_user_tokens(self, user_id: str) -> int:
        with self._data_lock:
            revoked = 0
            for record in self.tokens.values():
                if record.user_id == user_id and not record.is_revoked:
                    record.is_revoked = True
                    record.updated_at = utcnow()
                    revoked += 1
            if revoked:
                self._persist_state()
            return revoked

    def purge_expired_tokens(self, now: Optional[datetime] = None) -> int:
        cutoff = now or utcnow()
        with self._data_lock:
            stale = [t.id for t in self.tokens.values() if t.expires_at <= cutoff]
            for token_id in stale:
                self.tokens.pop(token_id, None)
            if stale:
                self._persist_state()
            return len(stale)

    # -- OTP ledger ----------------------------------------------------------

    def replace_otp(self, record: OtpRecord) -> OtpRecord:
        """Delete every prior code for the email and store ``record``."""
        with self._data_lock:
            for otp_id in [o.id for o in self.otps.values() if o.email == record.email]:
                self.otps.pop(otp_id, None)
            self.otps[record.id] = self._copy(record)
            self._persist_state()
            return self._copy(record)

    def get_otp(self, otp_id: str) -> Optional[OtpRecord]:
        with self._data_lock:
            return self._copy(self.otps.get(otp_id))

    def find_otp(self, email: str, code: str) -> Optional[OtpRecord]:
        normalized = email.strip().lower()
        with self._data_lock:
            matches = [
                o for o in self.otps.values() if o.email == normalized and o.otp == code
            ]
            if not matches:
                return None
            return self._copy(max(matches, key=lambda o: o.created_at))

    def record_failed_otp_attempt(
        self, email: str, now: Optional[datetime] = None
    ) -> Optional[OtpRecord]:
        """Increment attempts on the newest unused, unexpired code for the email."""
        normalized = email.strip().lower()
        current = now or utcnow()
        with self._data_lock:
            live = [
                o
                for o in self.otps.values()
                if o.email == normalized and not o.is_used and o.expires_at > current
            ]
            if not live:
                return None
            record = max(live, key=lambda o: o.created_at)
            record.attempts += 1
            self._persist_state()
            return self._copy(record)

    def consume_otp(
        self, otp_id: str, now: Optional[datetime] = None
    ) -> Optional[OtpRecord]:
        """Atomically mark a usable code as used; None if it was not usable."""
        with self._data_lock:
            record = self.otps.get(otp_id)
            if not record or not record.is_usable(now):
                return None
            record.is_used = True
            self._persist_state()
            return self._copy(record)

    def list_otps(self, *, email: Optional[str] = None, limit: int = 50) -> List[OtpRecord]:
        normalized = email.strip().lower() if email else None
        with self._data_lock:
            results = [
                o for o in self.otps.values() if not normalized or o.email == normalized
            ]
            ordered = sorted(results, key=lambda o: o.created_at, reverse=True)[:limit]
            return [self._copy(o) for o in ordered]

    def purge_expired_otps(self, now: Optional[datetime] = None) -> int:
        cutoff = now or utcnow()
        with self._data_lock:
            stale = [o.id for o in self.otps.values() if o.expires_at <= cutoff]
            for otp_id in stale:
                self.otps.pop(otp_id, None)
            if stale:
                self._persist_state()
            return len(stale)

    # -- enrollments ---------------------------------------------------------

    def create_enrollment(self, enrollment: Enrollment) -> Enrollment:
        with self._data_lock:
            if enrollment.user_id not in self.users:
                raise MissingUser(enrollment.user_id)
            if any(
                e.user_id == enrollment.user_id and e.course_id == enrollment.course_id
                for e in self.enrollments.values()
            ):
                raise DuplicateEnrollment(enrollment.course_id)
            self.enrollments[enrollment.id] = self._copy(enrollment)
            self._persist_state()
            return self._copy(enrollment)

    def list_enrollments(self, user_id: str) -> List[Enrollment]:
        with self._data_lock:
            results = [e for e in self.enrollments.values() if e.user_id == user_id]
            ordered = sorted(results, key=lambda e: e.purchased_at, reverse=True)
            return [self._copy(e) for e in ordered]

    # -- persistence ---------------------------------------------------------

    def _persist_state(self) -> None:
        state = {
            "users": [self._serialize_user(u) for u in self.users.values()],
            "credentials": [
                {
                    "user_id": user_id,
                    "password_hash": creds[0],
                    "password_algo": creds[1],
                }
                for user_id, creds in self.credentials.items()
            ],
            "tokens": [self._serialize_token(t) for t in self.tokens.values()],
            "otps": [self._serialize_otp(o) for o in self.otps.values()],
            "enrollments": [
                self._serialize_enrollment(e) for e in self.enrollments.values()
            ],
        }
        path = self._state_path()
        try:
            path.write_text(json.dumps(state, indent=2))
        except OSError as exc:
            raise RuntimeError(f"failed to persist in-memory state: {exc}") from exc

    def _load_state(self) -> bool:
        path = self._state_path()
        try:
            data = json.loads(path.read_text())
        except FileNotFoundError:
            return False
        self.users = {u["id"]: self._deserialize_user(u) for u in data.get("users", [])}
        self.credentials = {
            entry["user_id"]: (entry["password_hash"], entry.get("password_algo", ""))
            for entry in data.get("credentials", [])
        }
        self.tokens = {
            t["id"]: self._deserialize_token(t) for t in data.get("tokens", [])
        }
        self.otps = {o["id"]: self._deserialize_otp(o) for o in data.get("otps", [])}
        self.enrollments = {
            e["id"]: self._deserialize_enrollment(e)
            for e in data.get("enrollments", [])
        }
        self.logger.info("memory_store_loaded", users=len(self.users), tokens=len(self.tokens))
        return True

    def _serialize_user(self, user: User) -> dict:
        return {
            "id": user.id,
            "first_name": user.first_name,
            "last_name": user.last_name,
            "email": user.email,
            "role": user.role,
            "status": user.status,
            "is_active": user.is_active,
            "is_first_login": user.is_first_login,
            "requires_password_change": user.requires_password_change,
            "mobile_no": user.mobile_no,
            "gender": user.gender,
            "last_login": self._serialize_datetime(user.last_login),
            "profile_image": user.profile_image,
            "bio": user.bio,
            "phone": user.phone,
            "address": user.address,
            "education": user.education,
            "created_at": self._serialize_datetime(user.created_at),
            "updated_at": self._serialize_datetime(user.updated_at),
        }

    def _deserialize_user(self, data: dict) -> User:
        return User(
            id=str(data["id"]),
            first_name=data.get("first_name", ""),
            last_name=data.get("last_name", ""),
            email=data["email"],
            role=data["role"],
            status=data.get("status", "approved"),
            is_active=data.get("is_active", True),
            is_first_login=data.get("is_first_login", False),
            requires_password_change=data.get("requires_password_change", False),
            mobile_no=data.get("mobile_no"),
            gender=data.get("gender"),
            last_login=self._deserialize_datetime(data.get("last_login")),
            profile_image=data.get("profile_image"),
            bio=data.get("bio"),
            phone=data.get("phone"),
            address=data.get("address") or {},
            education=data.get("education") or {},
            created_at=self._deserialize_datetime(data["created_at"]),
            updated_at=self._deserialize_datetime(
                data.get("updated_at") or data["created_at"]
            ),
        )

    def _serialize_token(self, record: TokenRecord) -> dict:
        return {
            "id": record.id,
            "user_id": record.user_id,
            "access_token": record.access_token,
            "refresh_token": record.refresh_token,
            "expires_at": self._serialize_datetime(record.expires_at),
            "is_revoked": record.is_revoked,
            "created_at": self._serialize_datetime(record.created_at),
            "updated_at": self._serialize_datetime(record.updated_at),
        }

    def _deserialize_token(self, data: dict) -> TokenRecord:
        return TokenRecord(
            id=data["id"],
            user_id=data["user_id"],
            access_token=data["access_token"],
            refresh_token=data["refresh_token"],
            expires_at=self._deserialize_datetime(data["expires_at"]),
            is_revoked=data.get("is_revoked", False),
            created_at=self._deserialize_datetime(data["created_at"]),
            updated_at=self._deserialize_datetime(
                data.get("updated_at") or data["created_at"]
            ),
        )

    def _serialize_otp(self, record: OtpRecord) -> dict:
        return {
            "id": record.id,
            "email": record.email,
            "otp": record.otp,
            "expires_at": self._serialize_datetime(record.expires_at),
            "attempts": record.attempts,
            "max_attempts": record.max_attempts,
            "is_used": record.is_used,
            "created_at": self._serialize_datetime(record.created_at),
        }

    def _deserialize_otp(self, data: dict) -> OtpRecord:
        return OtpRecord(
            id=data["id"],
            email=data["email"],
            otp=data["otp"],
            expires_at=self._deserialize_datetime(data["expires_at"]),
            attempts=data.get("attempts", 0),
            max_attempts=data.get("max_attempts", 5),
            is_used=data.get("is_used", False),
            created_at=self._deserialize_datetime(data["created_at"]),
        )

    def _serialize_enrollment(self, enrollment: Enrollment) -> dict:
        return {
            "id": enrollment.id,
            "user_id": enrollment.user_id,
            "course_id": enrollment.course_id,
            "status": enrollment.status,
            "progress": [
                {
                    "lesson_id": p.lesson_id,
                    "watched_sec": p.watched_sec,
                    "completed": p.completed,
                }
                for p in enrollment.progress
            ],
            "order_id": enrollment.order_id,
            "payment_id": enrollment.payment_id,
            "purchased_at": self._serialize_datetime(enrollment.purchased_at),
        }

    def _deserialize_enrollment(self, data: dict) -> Enrollment:
        return Enrollment(
            id=data["id"],
            user_id=data["user_id"],
            course_id=data["course_id"],
            status=data.get("status", "active"),
            progress=[
                LessonProgress(
                    lesson_id=p["lesson_id"],
                    watched_sec=p.get("watched_sec", 0),
                    completed=p.get("completed", False),
                )
                for p in data.get("progress", [])
            ],
            order_id=data.get("order_id"),
            payment_id=data.get("payment_id"),
            purchased_at=self._deserialize_datetime(data["purchased_at"]),
        )
