"""Tests for one-time code issue, consumption and attempt limits."""

import threading
from datetime import timedelta

import pytest

from learnhub.config import OtpPolicy
from learnhub.service import messages
from learnhub.service.errors import (
    OtpAttemptsExceededError,
    OtpExpiredError,
    OtpNotFoundError,
    OtpUsedError,
)
from learnhub.service.otp import OtpLedger, mask
from learnhub.storage.models import utcnow

EMAIL = "asha@example.com"


def _age_all(store, delta):
    with store._data_lock:
        for record in store.otps.values():
            record.expires_at = utcnow() - delta


class TestIssue:
    def test_code_shape(self, services):
        code = services.otps.issue_for(EMAIL)

        assert len(code) == 6
        assert code.isdigit()

    def test_custom_length(self, services):
        ledger = OtpLedger(services.store, OtpPolicy(length=8))

        assert len(ledger.issue_for(EMAIL)) == 8

    def test_reissue_replaces_prior_codes(self, services):
        first = services.otps.issue_for(EMAIL)
        second = services.otps.issue_for("Asha@Example.com")

        records = services.store.list_otps(email=EMAIL)
        assert len(records) == 1
        assert records[0].otp == second
        if first != second:
            with pytest.raises(OtpNotFoundError):
                services.otps.consume(EMAIL, first)

    def test_record_defaults(self, services):
        services.otps.issue_for(EMAIL)

        record = services.store.list_otps(email=EMAIL)[0]
        assert record.attempts == 0
        assert record.max_attempts == 5
        assert record.is_used is False
        remaining = record.expires_at - utcnow()
        assert timedelta(minutes=9) < remaining <= timedelta(minutes=10)


class TestConsume:
    def test_consume_once(self, services):
        code = services.otps.issue_for(EMAIL)

        record = services.otps.consume(EMAIL, code)

        assert record.is_used is True
        with pytest.raises(OtpUsedError) as exc:
            services.otps.consume(EMAIL, code)
        assert exc.value.message == messages.OTP_USED

    def test_verify_does_not_spend(self, services):
        code = services.otps.issue_for(EMAIL)

        verified = services.otps.verify(EMAIL, code)

        assert verified.is_used is False
        assert services.store.get_otp(verified.id).is_used is False
        assert services.otps.spend(verified).is_used is True

    def test_spend_after_concurrent_spend(self, services):
        code = services.otps.issue_for(EMAIL)
        verified = services.otps.verify(EMAIL, code)
        services.otps.consume(EMAIL, code)

        with pytest.raises(OtpUsedError):
            services.otps.spend(verified)

    def test_email_is_normalized(self, services):
        code = services.otps.issue_for(EMAIL)

        assert services.otps.consume("  ASHA@example.com ", code).email == EMAIL

    def test_wrong_code(self, services):
        services.otps.issue_for(EMAIL)

        with pytest.raises(OtpNotFoundError) as exc:
            services.otps.consume(EMAIL, "abcdef")
        assert exc.value.message == messages.INVALID_OTP

    def test_no_code_for_email(self, services):
        with pytest.raises(OtpNotFoundError):
            services.otps.consume("ghost@example.com", "123456")

    def test_expired(self, services):
        code = services.otps.issue_for(EMAIL)
        _age_all(services.store, timedelta(seconds=1))

        with pytest.raises(OtpExpiredError) as exc:
            services.otps.consume(EMAIL, code)
        assert exc.value.message == messages.OTP_EXPIRED

    def test_wrong_codes_exhaust_budget(self, services):
        code = services.otps.issue_for(EMAIL)

        for _ in range(4):
            with pytest.raises(OtpNotFoundError):
                services.otps.consume(EMAIL, "wrong!")
        with pytest.raises(OtpAttemptsExceededError) as exc:
            services.otps.consume(EMAIL, "wrong!")
        assert exc.value.status_code == 429
        assert exc.value.message == messages.MAX_ATTEMPTS_EXCEEDED

        # The correct code is dead too once the budget is spent
        with pytest.raises(OtpAttemptsExceededError):
            services.otps.consume(EMAIL, code)

    def test_wrong_codes_not_counted_when_disabled(self, services):
        ledger = OtpLedger(services.store, OtpPolicy(count_failed_attempts=False))
        code = ledger.issue_for(EMAIL)

        for _ in range(10):
            with pytest.raises(OtpNotFoundError):
                ledger.consume(EMAIL, "wrong!")

        assert ledger.consume(EMAIL, code).attempts == 0

    def test_concurrent_consume_has_one_winner(self, services):
        code = services.otps.issue_for(EMAIL)
        winners, losers = [], []
        barrier = threading.Barrier(10)

        def worker():
            barrier.wait()
            try:
                winners.append(services.otps.consume(EMAIL, code))
            except OtpUsedError as exc:
                losers.append(exc)

        threads = [threading.Thread(target=worker) for _ in range(10)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert len(winners) == 1
        assert len(losers) == 9


class TestAdminView:
    def test_mask(self):
        assert mask("123456") == "12****"
        assert mask("") == "****"

    def test_list_masked_hides_codes(self, services):
        code = services.otps.issue_for(EMAIL)
        services.otps.issue_for("ravi@example.com")

        listed = services.otps.list_masked()
        assert {item["email"] for item in listed} == {EMAIL, "ravi@example.com"}
        mine = services.otps.list_masked(email=EMAIL)
        assert len(mine) == 1
        assert mine[0]["otpMasked"] == code[:2] + "****"
        assert "otp" not in mine[0]

    def test_purge_expired(self, services):
        services.otps.issue_for(EMAIL)
        _age_all(services.store, timedelta(minutes=1))
        services.otps.issue_for("ravi@example.com")

        assert services.otps.purge_expired() == 1
        assert services.store.list_otps(email=EMAIL) == []
