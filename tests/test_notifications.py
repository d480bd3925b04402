"""Tests for background notification delivery with retry and dead-lettering."""

import asyncio
import json

from learnhub.config import RetryPolicy, SmtpConfig
from learnhub.logging import hash_email
from learnhub.service.email import EmailService
from learnhub.service.notifications import NotificationDispatcher
from learnhub.storage.models import User


def _instructor():
    return User.new_instructor(first_name="Ravi", last_name="Kumar", email="ravi@example.com")


class TestRetryPolicy:
    def test_exponential_delays_are_capped(self):
        policy = RetryPolicy(max_attempts=6, base_delay=0.5, max_delay=3.0)

        assert [policy.delay_for(n) for n in range(1, 6)] == [0.5, 1.0, 2.0, 3.0, 3.0]


class TestDispatcher:
    async def test_successful_delivery(self, services):
        task = services.notifications.otp("asha@example.com", "123456")

        assert await task is True
        assert services.notifier.of_kind("otp") == [
            {"to_email": "asha@example.com", "code": "123456"}
        ]
        assert services.sleeps == []

    async def test_retry_then_succeed(self, services):
        services.notifier.failures_remaining = 1

        delivered = await services.notifications.welcome(_instructor())

        assert delivered is True
        assert len(services.notifier.of_kind("welcome")) == 2
        assert services.sleeps == [0.5]
        assert services.notifications.dead_letters == []

    async def test_exceptions_are_retried(self, services):
        services.notifier.failures_remaining = 2
        services.notifier.raise_on_failure = True

        delivered = await services.notifications.welcome(_instructor())

        assert delivered is True
        assert services.sleeps == [0.5, 1.0]

    async def test_exhausted_retries_dead_letter(self, services, tmp_path):
        services.notifier.failures_remaining = 10
        services.notifier.raise_on_failure = True

        delivered = await services.notifications.instructor_password(_instructor(), "Temp!Pass123")

        assert delivered is False
        assert len(services.notifier.of_kind("instructor_password")) == 3
        letters = services.notifications.dead_letters
        assert len(letters) == 1
        assert letters[0].kind == "instructor_password"
        assert letters[0].attempts == 3
        assert letters[0].recipient_hash == hash_email("ravi@example.com")
        assert "ConnectionError" in letters[0].error

        persisted = (tmp_path / "dead_letter.jsonl").read_text().splitlines()
        assert len(persisted) == 1
        entry = json.loads(persisted[0])
        assert entry["kind"] == "instructor_password"
        assert "Temp!Pass123" not in persisted[0]
        assert "ravi@example.com" not in persisted[0]

    async def test_dispatch_does_not_block_caller(self, services):
        gate = asyncio.Event()

        async def slow_send():
            await gate.wait()
            return True

        services.notifications.dispatch("custom", "asha@example.com", slow_send)

        assert services.notifications.pending == 1
        gate.set()
        await services.notifications.drain()
        assert services.notifications.pending == 0

    async def test_drain_timeout_cancels_stragglers(self, services):
        async def never():
            await asyncio.Event().wait()
            return True

        task = services.notifications.dispatch("custom", "asha@example.com", never)

        await services.notifications.drain(timeout=0.05)
        await asyncio.gather(task, return_exceptions=True)

        assert task.cancelled()

    async def test_drain_without_tasks(self, services):
        await services.notifications.drain(timeout=0.01)


class TestEmailService:
    def _service(self, *, dev_mode):
        config = SmtpConfig(
            host=None,
            port=587,
            user=None,
            password=None,
            use_tls=True,
            from_address=None,
            from_name="LearnHub LMS",
            dev_mode=dev_mode,
        )
        return EmailService(config)

    async def test_dev_mode_logs_instead_of_sending(self):
        service = self._service(dev_mode=True)

        assert service.is_configured is False
        assert await service.send_otp("asha@example.com", "123456") is True

    async def test_unconfigured_production_reports_failure(self):
        service = self._service(dev_mode=False)

        assert await service.send_welcome("asha@example.com", "Asha") is False

    async def test_failed_email_feeds_dead_letter(self, tmp_path):
        dispatcher = NotificationDispatcher(
            self._service(dev_mode=False),
            RetryPolicy(max_attempts=2, base_delay=0.0),
            dead_letter_path=tmp_path / "dl.jsonl",
        )

        assert await dispatcher.otp("asha@example.com", "654321") is False
        assert dispatcher.dead_letters[0].error == "notifier reported failure"
        assert "654321" not in (tmp_path / "dl.jsonl").read_text()

    def test_redact_email(self):
        service = self._service(dev_mode=True)

        assert service._redact_email("asha@example.com") == "as***@example.com"
        assert service._redact_email("not-an-email") == "redacted"
