from __future__ import annotations

import json
from datetime import datetime
from pathlib import Path
from typing import Any, List, Optional

from psycopg import errors
from psycopg.rows import dict_row
from psycopg_pool import ConnectionPool

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

_USER_COLUMNS = (
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
)
_JSON_COLUMNS = {"address", "education"}

_SCHEMA_STATEMENTS = (
    """
    CREATE TABLE IF NOT EXISTS app_user (
        id UUID PRIMARY KEY,
        first_name TEXT NOT NULL,
        last_name TEXT NOT NULL,
        email TEXT NOT NULL UNIQUE,
        role TEXT NOT NULL,
        status TEXT NOT NULL,
        is_active BOOLEAN NOT NULL DEFAULT TRUE,
        is_first_login BOOLEAN NOT NULL DEFAULT FALSE,
        requires_password_change BOOLEAN NOT NULL DEFAULT FALSE,
        mobile_no TEXT,
        gender TEXT,
        last_login TIMESTAMPTZ,
        profile_image TEXT,
        bio TEXT,
        phone TEXT,
        address JSONB NOT NULL DEFAULT '{}'::jsonb,
        education JSONB NOT NULL DEFAULT '{}'::jsonb,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
        updated_at TIMESTAMPTZ NOT NULL DEFAULT now()
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS user_auth_credential (
        user_id UUID PRIMARY KEY REFERENCES app_user(id) ON DELETE CASCADE,
        password_hash TEXT NOT NULL,
        password_algo TEXT NOT NULL,
        last_updated_at TIMESTAMPTZ NOT NULL DEFAULT now()
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS auth_token (
        id UUID PRIMARY KEY,
        user_id UUID NOT NULL REFERENCES app_user(id) ON DELETE CASCADE,
        access_token TEXT NOT NULL UNIQUE,
        refresh_token TEXT NOT NULL UNIQUE,
        expires_at TIMESTAMPTZ NOT NULL,
        is_revoked BOOLEAN NOT NULL DEFAULT FALSE,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
        updated_at TIMESTAMPTZ NOT NULL DEFAULT now()
    )
    """,
    "CREATE INDEX IF NOT EXISTS auth_token_expires_idx ON auth_token (expires_at)",
    """
    CREATE TABLE IF NOT EXISTS otp_code (
        id UUID PRIMARY KEY,
        email TEXT NOT NULL,
        otp TEXT NOT NULL,
        expires_at TIMESTAMPTZ NOT NULL,
        attempts INTEGER NOT NULL DEFAULT 0,
        max_attempts INTEGER NOT NULL DEFAULT 5,
        is_used BOOLEAN NOT NULL DEFAULT FALSE,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now()
    )
    """,
    "CREATE INDEX IF NOT EXISTS otp_code_email_idx ON otp_code (email, created_at DESC)",
    """
    CREATE TABLE IF NOT EXISTS enrollment (
        id UUID PRIMARY KEY,
        user_id UUID NOT NULL REFERENCES app_user(id) ON DELETE CASCADE,
        course_id TEXT NOT NULL,
        status TEXT NOT NULL DEFAULT 'active',
        progress JSONB NOT NULL DEFAULT '[]'::jsonb,
        order_id TEXT,
        payment_id TEXT,
        purchased_at TIMESTAMPTZ NOT NULL DEFAULT now(),
        UNIQUE (user_id, course_id)
    )
    """,
)


class PostgresStore:
    """Postgres-backed store for users, token ledger, OTP ledger and enrollments.

    Atomic ledger transitions are single conditional UPDATE statements so
    concurrent requests race on the row lock rather than in Python.
    """

    def __init__(self, dsn: str, fs_root: str) -> None:
        self.dsn = dsn
        self.fs_root = Path(fs_root)
        self.fs_root.mkdir(parents=True, exist_ok=True)
        self.logger = get_logger(__name__)
        self.pool = ConnectionPool(
            self.dsn,
            min_size=2,
            max_size=10,
            kwargs={"row_factory": dict_row, "autocommit": False},
        )
        self._ensure_schema()

    def _connect(self):
        return self.pool.connection()

    def _ensure_schema(self) -> None:
        """Create the auth tables if they are missing."""

        with self._connect() as conn:
            for statement in _SCHEMA_STATEMENTS:
                conn.execute(statement)
        self.logger.info("postgres_schema_ready")

    # -- row mapping ---------------------------------------------------------

    @staticmethod
    def _load_json(value: Any, default: Any) -> Any:
        if value is None:
            return default
        if isinstance(value, (str, bytes)):
            return json.loads(value)
        return value

    def _row_to_user(self, row: dict) -> User:
        return User(
            id=str(row["id"]),
            first_name=row["first_name"],
            last_name=row["last_name"],
            email=row["email"],
            role=row["role"],
            status=row["status"],
            is_active=row.get("is_active", True),
            is_first_login=row.get("is_first_login", False),
            requires_password_change=row.get("requires_password_change", False),
            mobile_no=row.get("mobile_no"),
            gender=row.get("gender"),
            last_login=row.get("last_login"),
            profile_image=row.get("profile_image"),
            bio=row.get("bio"),
            phone=row.get("phone"),
            address=self._load_json(row.get("address"), {}),
            education=self._load_json(row.get("education"), {}),
            created_at=row.get("created_at") or utcnow(),
            updated_at=row.get("updated_at") or utcnow(),
        )

    @staticmethod
    def _row_to_token(row: dict) -> TokenRecord:
        return TokenRecord(
            id=str(row["id"]),
            user_id=str(row["user_id"]),
            access_token=row["access_token"],
            refresh_token=row["refresh_token"],
            expires_at=row["expires_at"],
            is_revoked=bool(row.get("is_revoked", False)),
            created_at=row.get("created_at") or utcnow(),
            updated_at=row.get("updated_at") or utcnow(),
        )

    @staticmethod
    def _row_to_otp(row: dict) -> OtpRecord:
        return OtpRecord(
            id=str(row["id"]),
            email=row["email"],
            otp=row["otp"],
            expires_at=row["expires_at"],
            attempts=int(row.get("attempts", 0)),
            max_attempts=int(row.get("max_attempts", 5)),
            is_used=bool(row.get("is_used", False)),
            created_at=row.get("created_at") or utcnow(),
        )

    def _row_to_enrollment(self, row: dict) -> Enrollment:
        progress = self._load_json(row.get("progress"), [])
        return Enrollment(
            id=str(row["id"]),
            user_id=str(row["user_id"]),
            course_id=row["course_id"],
            status=row.get("status", "active"),
            progress=[
                LessonProgress(
                    lesson_id=p["lessonId"],
                    watched_sec=p.get("watchedSec", 0),
                    completed=p.get("completed", False),
                )
                for p in progress
            ],
            order_id=row.get("order_id"),
            payment_id=row.get("payment_id"),
            purchased_at=row.get("purchased_at") or utcnow(),
        )

    # -- users ---------------------------------------------------------------

    def create_user(self, user: User, password_hash: str, password_algo: str) -> User:
        columns = ("id",) + _USER_COLUMNS + ("created_at", "updated_at")
        values = [user.id] + [self._user_value(user, c) for c in _USER_COLUMNS]
        values += [user.created_at, user.updated_at]
        try:
            with self._connect() as conn:
                conn.execute(
                    "INSERT INTO app_user ({}) VALUES ({})".format(
                        ", ".join(columns), ", ".join(["%s"] * len(columns))
                    ),
                    values,
                )
                conn.execute(
                    """
                    INSERT INTO user_auth_credential (user_id, password_hash, password_algo)
                    VALUES (%s, %s, %s)
                    """,
                    (user.id, password_hash, password_algo),
                )
        except errors.UniqueViolation:
            raise DuplicateEmail()
        return user

    @staticmethod
    def _user_value(user: User, column: str) -> Any:
        value = getattr(user, column)
        if column in _JSON_COLUMNS:
            return json.dumps(value or {})
        return value

    def get_user(self, user_id: str) -> Optional[User]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM app_user WHERE id = %s", (user_id,)
            ).fetchone()
        return self._row_to_user(row) if row else None

    def get_user_by_email(self, email: str) -> Optional[User]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM app_user WHERE email = %s", (email.strip().lower(),)
            ).fetchone()
        return self._row_to_user(row) if row else None

    def list_users(
        self,
        *,
        role: Optional[str] = None,
        status: Optional[str] = None,
        search: Optional[str] = None,
        limit: int = 500,
    ) -> List[User]:
        clauses: list[str] = []
        params: list[Any] = []
        if role:
            clauses.append("role = %s")
            params.append(role)
        if status:
            clauses.append("status = %s")
            params.append(status)
        if search:
            pattern = f"%{search.strip()}%"
            clauses.append("(first_name ILIKE %s OR last_name ILIKE %s OR email ILIKE %s)")
            params.extend([pattern, pattern, pattern])
        where = f"WHERE {' AND '.join(clauses)}" if clauses else ""
        params.append(limit)
        with self._connect() as conn:
            rows = conn.execute(
                f"SELECT * FROM app_user {where} ORDER BY created_at DESC LIMIT %s",
                params,
            ).fetchall()
        return [self._row_to_user(row) for row in rows]

    def count_users(
        self, *, role: Optional[str] = None, is_active: Optional[bool] = None
    ) -> int:
        clauses: list[str] = []
        params: list[Any] = []
        if role is not None:
            clauses.append("role = %s")
            params.append(role)
        if is_active is not None:
            clauses.append("is_active = %s")
            params.append(is_active)
        where = f"WHERE {' AND '.join(clauses)}" if clauses else ""
        with self._connect() as conn:
            row = conn.execute(
                f"SELECT COUNT(*) AS total FROM app_user {where}", params
            ).fetchone()
        return int(row["total"]) if row else 0

    def update_user(self, user_id: str, **fields: Any) -> Optional[User]:
        unknown = set(fields) - set(_USER_COLUMNS)
        if unknown:
            raise ValueError(f"unsupported user fields: {sorted(unknown)}")
        if not fields:
            return self.get_user(user_id)
        if "email" in fields:
            fields["email"] = fields["email"].strip().lower()
        assignments = []
        params: list[Any] = []
        for column, value in fields.items():
            assignments.append(f"{column} = %s")
            params.append(json.dumps(value or {}) if column in _JSON_COLUMNS else value)
        params.append(user_id)
        try:
            with self._connect() as conn:
                row = conn.execute(
                    f"UPDATE app_user SET {', '.join(assignments)}, updated_at = now() "
                    "WHERE id = %s RETURNING *",
                    params,
                ).fetchone()
        except errors.UniqueViolation:
            raise DuplicateEmail()
        return self._row_to_user(row) if row else None

    def delete_user(self, user_id: str) -> bool:
        with self._connect() as conn:
            row = conn.execute(
                "DELETE FROM app_user WHERE id = %s RETURNING id", (user_id,)
            ).fetchone()
        return row is not None

    def save_password(
        self, user_id: str, password_hash: str, password_algo: str
    ) -> None:
        try:
            with self._connect() as conn:
                conn.execute(
                    """
                    INSERT INTO user_auth_credential (user_id, password_hash, password_algo, last_updated_at)
                    VALUES (%s, %s, %s, now())
                    ON CONFLICT (user_id) DO UPDATE
                    SET password_hash = EXCLUDED.password_hash,
                        password_algo = EXCLUDED.password_algo,
                        last_updated_at = now()
                    """,
                    (user_id, password_hash, password_algo),
                )
                conn.execute(
                    "UPDATE app_user SET updated_at = now() WHERE id = %s", (user_id,)
                )
        except errors.ForeignKeyViolation:
            raise MissingUser(user_id)

    def get_password_record(self, user_id: str) -> Optional[tuple[str, str]]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT password_hash, password_algo FROM user_auth_credential WHERE user_id = %s",
                (user_id,),
            ).fetchone()
        if not row:
            return None
        return str(row["password_hash"]), str(row["password_algo"])

    # -- token ledger --------------------------------------------------------

    def create_token(self, record: TokenRecord) -> TokenRecord:
        try:
            with self._connect() as conn:
                conn.execute(
                    """
                    INSERT INTO auth_token (id, user_id, access_token, refresh_token, expires_at, is_revoked, created_at, updated_at)
                    VALUES (%s, %s, %s, %s, %s, %s, %s, %s)
                    """,
                    (
                        record.id,
                        record.user_id,
                        record.access_token,
                        record.refresh_token,
                        record.expires_at,
                        record.is_revoked,
                        record.created_at,
                        record.updated_at,
                    ),
                )
        except errors.ForeignKeyViolation:
            raise MissingUser(record.user_id)
        return record

    def get_token_by_access(self, access_token: str) -> Optional[TokenRecord]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM auth_token WHERE access_token = %s", (access_token,)
            ).fetchone()
        return self._row_to_token(row) if row else None

    def get_token_by_refresh(self, refresh_token: str) -> Optional[TokenRecord]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM auth_token WHERE refresh_token = %s", (refresh_token,)
            ).fetchone()
        return self._row_to_token(row) if row else None

    def rotate_token(
        self, old_refresh_token: str, access_token: str, refresh_token: str
    ) -> Optional[TokenRecord]:
        """Swap the token pair only if the old refresh token is still live."""
        with self._connect() as conn:
            row = conn.execute(
                """
                UPDATE auth_token
                SET access_token = %s, refresh_token = %s, updated_at = now()
                WHERE refresh_token = %s AND is_revoked = FALSE
                RETURNING *
                """,
                (access_token, refresh_token, old_refresh_token),
            ).fetchone()
        return self._row_to_token(row) if row else None

    def revoke_token(self, refresh_token: str) -> bool:
        with self._connect() as conn:
            row = conn.execute(
                """
                UPDATE auth_token SET is_revoked = TRUE, updated_at = now()
                WHERE refresh_token = %s
                RETURNING id
                """,
                (refresh_token,),
            ).fetchone()
        return row is not None

    def revoke_user_tokens(self, user_id: str) -> int:
        with self._connect() as conn:
            rows = conn.execute(
                """
                UPDATE auth_token SET is_revoked = TRUE, updated_at = now()
                WHERE user_id = %s AND is_revoked = FALSE
                RETURNING id
                """,
                (user_id,),
            ).fetchall()
        return len(rows)

    def purge_expired_tokens(self, now: Optional[datetime] = None) -> int:
        with self._connect() as conn:
            rows = conn.execute(
                "DELETE FROM auth_token WHERE expires_at <= %s RETURNING id",
                (now or utcnow(),),
            ).fetchall()
        return len(rows)

    # -- OTP ledger ----------------------------------------------------------

    def replace_otp(self, record: OtpRecord) -> OtpRecord:
        """Delete every prior code for the email and store ``record``."""
        with self._connect() as conn:
            conn.execute("DELETE FROM otp_code WHERE email = %s", (record.email,))
            conn.execute(
                """
                INSERT INTO otp_code (id, email, otp, expires_at, attempts, max_attempts, is_used, created_at)
                VALUES (%s, %s, %s, %s, %s, %s, %s, %s)
                """,
                (
                    record.id,
                    record.email,
                    record.otp,
                    record.expires_at,
                    record.attempts,
                    record.max_attempts,
                    record.is_used,
                    record.created_at,
                ),
            )
        return record

    def get_otp(self, otp_id: str) -> Optional[OtpRecord]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM otp_code WHERE id = %s", (otp_id,)
            ).fetchone()
        return self._row_to_otp(row) if row else None

    def find_otp(self, email: str, code: str) -> Optional[OtpRecord]:
        with self._connect() as conn:
            row = conn.execute(
                """
                SELECT * FROM otp_code WHERE email = %s AND otp = %s
                ORDER BY created_at DESC LIMIT 1
                """,
                (email.strip().lower(), code),
            ).fetchone()
        return self._row_to_otp(row) if row else None

    def record_failed_otp_attempt(
        self, email: str, now: Optional[datetime] = None
    ) -> Optional[OtpRecord]:
        """Increment attempts on the newest unused, unexpired code for the email."""
        with self._connect() as conn:
            row = conn.execute(
                """
                UPDATE otp_code SET attempts = attempts + 1
                WHERE id = (
                    SELECT id FROM otp_code
                    WHERE email = %s AND is_used = FALSE AND expires_at > %s
                    ORDER BY created_at DESC LIMIT 1
                    FOR UPDATE
                )
                RETURNING *
                """,
                (email.strip().lower(), now or utcnow()),
            ).fetchone()
        return self._row_to_otp(row) if row else None

    def consume_otp(
        self, otp_id: str, now: Optional[datetime] = None
    ) -> Optional[OtpRecord]:
        """Atomically mark a usable code as used; None if it was not usable."""
        with self._connect() as conn:
            row = conn.execute(
                """
                UPDATE otp_code SET is_used = TRUE
                WHERE id = %s
                  AND is_used = FALSE
                  AND attempts < max_attempts
                  AND expires_at > %s
                RETURNING *
                """,
                (otp_id, now or utcnow()),
            ).fetchone()
        return self._row_to_otp(row) if row else None

    def list_otps(self, *, email: Optional[str] = None, limit: int = 50) -> List[OtpRecord]:
        with self._connect() as conn:
            if email:
                rows = conn.execute(
                    "SELECT * FROM otp_code WHERE email = %s ORDER BY created_at DESC LIMIT %s",
                    (email.strip().lower(), limit),
                ).fetchall()
            else:
                rows = conn.execute(
                    "SELECT * FROM otp_code ORDER BY created_at DESC LIMIT %s", (limit,)
                ).fetchall()
        return [self._row_to_otp(row) for row in rows]

    def purge_expired_otps(self, now: Optional[datetime] = None) -> int:
        with self._connect() as conn:
            rows = conn.execute(
                "DELETE FROM otp_code WHERE expires_at <= %s RETURNING id",
                (now or utcnow(),),
            ).fetchall()
        return len(rows)

    # -- enrollments ---------------------------------------------------------

    def create_enrollment(self, enrollment: Enrollment) -> Enrollment:
        progress = [
            {"lessonId": p.lesson_id, "watchedSec": p.watched_sec, "completed": p.completed}
            for p in enrollment.progress
        ]
        try:
            with self._connect() as conn:
                conn.execute(
                    """
                    INSERT INTO enrollment (id, user_id, course_id, status, progress, order_id, payment_id, purchased_at)
                    VALUES (%s, %s, %s, %s, %s, %s, %s, %s)
                    """,
                    (
                        enrollment.id,
                        enrollment.user_id,
                        enrollment.course_id,
                        enrollment.status,
                        json.dumps(progress),
                        enrollment.order_id,
                        enrollment.payment_id,
                        enrollment.purchased_at,
                    ),
                )
        except errors.UniqueViolation:
            raise DuplicateEnrollment(enrollment.course_id)
        except errors.ForeignKeyViolation:
            raise MissingUser(enrollment.user_id)
        return enrollment

    def list_enrollments(self, user_id: str) -> List[Enrollment]:
        with self._connect() as conn:
            rows = conn.execute(
                "SELECT * FROM enrollment WHERE user_id = %s ORDER BY purchased_at DESC",
                (user_id,),
            ).fetchall()
        return [self._row_to_enrollment(row) for row in rows]

    def close(self) -> None:
        self.pool.close()

    def ping(self) -> None:
        with self._connect() as conn:
            conn.execute("SELECT 1").fetchone()
