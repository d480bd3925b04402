from __future__ import annotations

import base64
import hashlib
import hmac
import json
import time
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Optional, Protocol

from learnhub.config import TokenConfig
from learnhub.logging import get_logger
from learnhub.service import messages
from learnhub.service.errors import (
    TokenExpiredError,
    TokenInvalidError,
    TokenNotFoundError,
    TokenRevokedError,
    UserDeactivatedError,
    UserMissingError,
)
from learnhub.storage.models import TokenRecord, User

logger = get_logger(__name__)

ACCESS = "access"
REFRESH = "refresh"


class TokenStore(Protocol):
    def create_token(self, record: TokenRecord) -> TokenRecord: ...

    def get_token_by_access(self, access_token: str) -> Optional[TokenRecord]: ...

    def get_token_by_refresh(self, refresh_token: str) -> Optional[TokenRecord]: ...

    def rotate_token(
        self, old_refresh_token: str, access_token: str, refresh_token: str
    ) -> Optional[TokenRecord]: ...

    def revoke_token(self, refresh_token: str) -> bool: ...

    def revoke_user_tokens(self, user_id: str) -> int: ...

    def purge_expired_tokens(self, now: Optional[datetime] = None) -> int: ...

    def get_user(self, user_id: str) -> Optional[User]: ...


@dataclass
class TokenPair:
    access_token: str
    refresh_token: str

    def as_dict(self) -> dict[str, str]:
        return {"accessToken": self.access_token, "refreshToken": self.refresh_token}


@dataclass
class AccessContext:
    """Principal resolved from a validated access token."""

    user: User
    record: TokenRecord
    claims: dict[str, Any]

    @property
    def user_id(self) -> str:
        return self.user.id

    @property
    def role(self) -> str:
        return self.user.role


class TokenLedger:
    """Issues, rotates, revokes and validates persisted token pairs.

    A signature alone never authorizes a request: ``validate_access``
    also requires the ledger record to exist and be unrevoked, and the
    owning user to be active.
    """

    def __init__(self, store: TokenStore, config: TokenConfig) -> None:
        self.store = store
        self.config = config
        self._clock_skew_leeway = timedelta(seconds=config.clock_skew_seconds)

    def _now(self) -> datetime:
        return datetime.now(timezone.utc)

    # -- JWT helpers ---------------------------------------------------------

    def _secret_for(self, token_type: str) -> bytes:
        if token_type == REFRESH:
            return self.config.refresh_secret.encode()
        return self.config.access_secret.encode()

    @staticmethod
    def _encode_segment(data: bytes) -> str:
        return base64.urlsafe_b64encode(data).decode("utf-8").rstrip("=")

    @staticmethod
    def _decode_segment(segment: str) -> bytes:
        padding = "=" * ((4 - len(segment) % 4) % 4)
        return base64.urlsafe_b64decode(segment + padding)

    def _encode_jwt(self, payload: dict[str, Any], token_type: str) -> str:
        header = {"alg": "HS256", "typ": "JWT"}
        header_enc = self._encode_segment(
            json.dumps(header, separators=(",", ":")).encode()
        )
        payload_enc = self._encode_segment(
            json.dumps(payload, separators=(",", ":")).encode()
        )
        signing_input = f"{header_enc}.{payload_enc}"
        signature = hmac.new(
            self._secret_for(token_type), signing_input.encode(), hashlib.sha256
        ).digest()
        return f"{signing_input}.{self._encode_segment(signature)}"

    def _decode_jwt(self, token: str, token_type: str) -> dict[str, Any]:
        """Verify signature and claims, raising on any failure.

        Raises:
            TokenExpiredError: signature valid but ``exp`` is in the past.
            TokenInvalidError: malformed token, wrong key, alg, iss, aud or type.
        """
        invalid = TokenInvalidError(messages.TOKEN_REVOKED)
        try:
            header_b64, payload_b64, sig_b64 = token.split(".")
        except (ValueError, AttributeError):
            raise invalid

        # Only HS256 is accepted to rule out algorithm confusion
        try:
            header = json.loads(self._decode_segment(header_b64))
        except (ValueError, TypeError):
            logger.warning("jwt_header_decode_failed")
            raise invalid
        if not isinstance(header, dict) or header.get("alg") != "HS256":
            logger.warning("jwt_invalid_algorithm")
            raise invalid

        signing_input = f"{header_b64}.{payload_b64}"
        expected_sig = self._encode_segment(
            hmac.new(
                self._secret_for(token_type), signing_input.encode(), hashlib.sha256
            ).digest()
        )
        # Bytes comparison; compare_digest rejects non-ASCII str
        presented_sig = sig_b64.encode("utf-8", "surrogateescape")
        if not hmac.compare_digest(expected_sig.encode("ascii"), presented_sig):
            raise invalid
        try:
            payload = json.loads(self._decode_segment(payload_b64))
        except (ValueError, TypeError) as exc:
            logger.warning("jwt_payload_decode_failed", error=str(exc))
            raise invalid
        if not isinstance(payload, dict):
            raise invalid
        if payload.get("token_type") != token_type:
            raise invalid
        if payload.get("iss") != self.config.issuer:
            raise invalid
        aud = payload.get("aud")
        if isinstance(aud, list):
            valid_aud = self.config.audience in aud
        else:
            valid_aud = aud == self.config.audience
        if not valid_aud or not payload.get("sub"):
            raise invalid
        try:
            exp_ts = float(payload.get("exp"))
        except (TypeError, ValueError):
            raise invalid
        if exp_ts <= time.time() - self._clock_skew_leeway.total_seconds():
            raise TokenExpiredError(messages.TOKEN_EXPIRED)
        return payload

    def _mint_pair(self, user_id: str, role: str) -> TokenPair:
        now = self._now()
        base = {
            "iss": self.config.issuer,
            "aud": self.config.audience,
            "sub": user_id,
            "role": role,
            "iat": int(now.timestamp()),
        }
        access_payload = {
            **base,
            "token_type": ACCESS,
            "jti": str(uuid.uuid4()),
            "exp": int((now + timedelta(minutes=self.config.access_ttl_minutes)).timestamp()),
        }
        refresh_payload = {
            **base,
            "token_type": REFRESH,
            "jti": str(uuid.uuid4()),
            "exp": int((now + timedelta(days=self.config.refresh_ttl_days)).timestamp()),
        }
        return TokenPair(
            access_token=self._encode_jwt(access_payload, ACCESS),
            refresh_token=self._encode_jwt(refresh_payload, REFRESH),
        )

    # -- ledger operations ---------------------------------------------------

    def issue(self, user_id: str, role: str) -> TokenPair:
        pair = self._mint_pair(user_id, role)
        record = TokenRecord.new(
            user_id,
            pair.access_token,
            pair.refresh_token,
            ttl_days=self.config.record_ttl_days,
        )
        self.store.create_token(record)
        logger.info("tokens_issued", user_id=user_id, record_id=record.id)
        return pair

    def rotate(self, refresh_token: str) -> TokenPair:
        """Exchange a live refresh token for a new pair on the same record.

        The old refresh token is unusable afterwards. A concurrent second
        rotation with the same token loses the compare-and-swap in the
        store and fails as not found.
        """
        record = self.store.get_token_by_refresh(refresh_token)
        if not record or record.is_revoked:
            raise TokenNotFoundError(messages.TOKEN_NOT_FOUND)
        if record.expires_at <= self._now():
            raise TokenExpiredError(messages.TOKEN_EXPIRED)
        payload = self._decode_jwt(refresh_token, REFRESH)
        if payload.get("sub") != record.user_id:
            raise TokenInvalidError(messages.TOKEN_REVOKED)
        user = self.store.get_user(record.user_id)
        if not user:
            raise UserMissingError(messages.USER_MISSING)
        if not user.is_active:
            raise UserDeactivatedError(messages.USER_DEACTIVATED)
        # Role comes from the live record so admin role changes apply on refresh
        pair = self._mint_pair(user.id, user.role)
        rotated = self.store.rotate_token(
            refresh_token, pair.access_token, pair.refresh_token
        )
        if rotated is None:
            logger.warning("refresh_rotation_conflict", record_id=record.id)
            raise TokenNotFoundError(messages.TOKEN_NOT_FOUND)
        logger.info("tokens_rotated", user_id=record.user_id, record_id=record.id)
        return pair

    def revoke(self, refresh_token: Optional[str]) -> bool:
        """Mark the matching record revoked; unknown tokens are ignored."""
        if not refresh_token:
            return False
        revoked = self.store.revoke_token(refresh_token)
        if revoked:
            logger.info("tokens_revoked")
        return revoked

    def revoke_all(self, user_id: str) -> int:
        count = self.store.revoke_user_tokens(user_id)
        if count:
            logger.info("user_tokens_revoked", user_id=user_id, count=count)
        return count

    def validate_access(self, access_token: str) -> AccessContext:
        payload = self._decode_jwt(access_token, ACCESS)
        record = self.store.get_token_by_access(access_token)
        if (
            not record
            or record.is_revoked
            or record.user_id != payload.get("sub")
            or record.expires_at <= self._now()
        ):
            raise TokenRevokedError(messages.TOKEN_REVOKED)
        user = self.store.get_user(record.user_id)
        if not user:
            raise UserMissingError(messages.USER_MISSING)
        if not user.is_active:
            raise UserDeactivatedError(messages.USER_DEACTIVATED)
        return AccessContext(user=user, record=record, claims=payload)

    def purge_expired(self) -> int:
        return self.store.purge_expired_tokens(self._now())
