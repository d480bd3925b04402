from __future__ import annotations

import secrets
from datetime import datetime, timezone
from typing import List, Optional, Protocol

from learnhub.config import OtpPolicy
from learnhub.logging import get_logger, hash_email
from learnhub.service import messages
from learnhub.service.errors import (
    OtpAttemptsExceededError,
    OtpExpiredError,
    OtpNotFoundError,
    OtpUsedError,
)
from learnhub.storage.models import OtpRecord

logger = get_logger(__name__)


class OtpStore(Protocol):
    def replace_otp(self, record: OtpRecord) -> OtpRecord: ...

    def get_otp(self, otp_id: str) -> Optional[OtpRecord]: ...

    def find_otp(self, email: str, code: str) -> Optional[OtpRecord]: ...

    def record_failed_otp_attempt(
        self, email: str, now: Optional[datetime] = None
    ) -> Optional[OtpRecord]: ...

    def consume_otp(
        self, otp_id: str, now: Optional[datetime] = None
    ) -> Optional[OtpRecord]: ...

    def list_otps(self, *, email: Optional[str] = None, limit: int = 50) -> List[OtpRecord]: ...

    def purge_expired_otps(self, now: Optional[datetime] = None) -> int: ...


def mask(code: str) -> str:
    """Admin-facing form of a code: two leading characters then a fixed mask."""
    return (code or "")[:2] + "****"


class OtpLedger:
    """One-time codes keyed by email.

    Only one code per email is live at a time. Consumption is a single
    conditional update in the store, so a code can be spent at most once
    even under concurrent requests.
    """

    def __init__(self, store: OtpStore, policy: OtpPolicy) -> None:
        self.store = store
        self.policy = policy

    def _now(self) -> datetime:
        return datetime.now(timezone.utc)

    def _generate(self) -> str:
        return "".join(secrets.choice("0123456789") for _ in range(self.policy.length))

    def issue_for(self, email: str) -> str:
        """Replace any prior codes for ``email`` and return the new raw code."""
        record = OtpRecord.new(
            email,
            self._generate(),
            ttl_minutes=self.policy.ttl_minutes,
            max_attempts=self.policy.max_attempts,
        )
        self.store.replace_otp(record)
        logger.info("otp_issued", email_hash=hash_email(email), record_id=record.id)
        return record.otp

    def _raise_for(self, record: OtpRecord, now: datetime) -> None:
        if record.is_used:
            raise OtpUsedError(messages.OTP_USED)
        if record.is_expired(now):
            raise OtpExpiredError(messages.OTP_EXPIRED)
        if record.attempts >= record.max_attempts:
            raise OtpAttemptsExceededError(messages.MAX_ATTEMPTS_EXCEEDED)

    def verify(self, email: str, candidate: str) -> OtpRecord:
        """Check ``candidate`` against the live code for ``email`` without spending it.

        A wrong candidate still counts against the live code's attempt budget.

        Raises:
            OtpNotFoundError: no record matches the (email, code) pair.
            OtpUsedError: the code was already spent.
            OtpExpiredError: the code is past its expiry.
            OtpAttemptsExceededError: the attempt budget is exhausted.
        """
        normalized = email.strip().lower()
        now = self._now()
        record = self.store.find_otp(normalized, (candidate or "").strip())
        if record is None:
            if self.policy.count_failed_attempts:
                live = self.store.record_failed_otp_attempt(normalized, now)
                if live is not None and live.attempts >= live.max_attempts:
                    logger.warning(
                        "otp_attempts_exhausted", email_hash=hash_email(normalized)
                    )
                    raise OtpAttemptsExceededError(messages.MAX_ATTEMPTS_EXCEEDED)
            raise OtpNotFoundError(messages.INVALID_OTP)
        self._raise_for(record, now)
        return record

    def spend(self, record: OtpRecord) -> OtpRecord:
        """Atomically mark a verified record used; raises if someone else got there first."""
        now = self._now()
        consumed = self.store.consume_otp(record.id, now)
        if consumed is None:
            # Lost a race with another consumer or crossed a limit in between
            latest = self.store.get_otp(record.id)
            if latest is not None:
                self._raise_for(latest, now)
            raise OtpUsedError(messages.OTP_USED)
        logger.info("otp_consumed", email_hash=hash_email(record.email), record_id=record.id)
        return consumed

    def consume(self, email: str, candidate: str) -> OtpRecord:
        """Verify then spend the code for ``email``; raises as ``verify`` and ``spend`` do."""
        return self.spend(self.verify(email, candidate))

    def list_masked(self, *, email: Optional[str] = None, limit: int = 50) -> List[dict]:
        return [
            {
                "id": record.id,
                "email": record.email,
                "otpMasked": mask(record.otp),
                "expiresAt": record.expires_at.isoformat(),
                "attempts": record.attempts,
                "maxAttempts": record.max_attempts,
                "isUsed": record.is_used,
                "createdAt": record.created_at.isoformat(),
            }
            for record in self.store.list_otps(email=email, limit=limit)
        ]

    def purge_expired(self) -> int:
        return self.store.purge_expired_otps(self._now())
