from __future__ import annotations

import asyncio
import json
import threading
from collections import deque
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Awaitable, Callable, Deque, List, Optional, Protocol, Set

from learnhub.config import RetryPolicy
from learnhub.logging import get_logger, hash_email
from learnhub.storage.models import User

logger = get_logger(__name__)

WELCOME = "welcome"
INSTRUCTOR_PASSWORD = "instructor_password"
OTP = "otp"


class Notifier(Protocol):
    async def send_welcome(self, to_email: str, first_name: str) -> bool: ...

    async def send_instructor_password(
        self, to_email: str, first_name: str, temporary_password: str
    ) -> bool: ...

    async def send_otp(self, to_email: str, code: str) -> bool: ...


@dataclass
class DeadLetter:
    """A notification that exhausted its retries.

    Only a hash of the recipient is kept; message contents (codes and
    temporary passwords) are never recorded.
    """

    kind: str
    recipient_hash: str
    attempts: int
    error: str
    failed_at: str = field(
        default_factory=lambda: datetime.now(timezone.utc).isoformat()
    )


class NotificationDispatcher:
    """Runs notifier calls as background tasks with bounded retry.

    ``welcome``, ``instructor_password`` and ``otp`` return immediately;
    delivery happens on the running event loop. Each attempt that raises
    or returns False is retried after an exponentially growing delay up
    to ``policy.max_attempts``. The final failure goes to the dead-letter
    log and is never propagated to the request that triggered it.
    """

    def __init__(
        self,
        notifier: Notifier,
        policy: RetryPolicy,
        *,
        dead_letter_path: Optional[Path] = None,
        max_dead_letters: int = 1000,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self.notifier = notifier
        self.policy = policy
        self.dead_letter_path = dead_letter_path
        self._dead_letters: Deque[DeadLetter] = deque(maxlen=max_dead_letters)
        self._dead_letter_lock = threading.Lock()
        self._tasks: Set[asyncio.Task] = set()
        self._sleep = sleep

    @property
    def dead_letters(self) -> List[DeadLetter]:
        with self._dead_letter_lock:
            return list(self._dead_letters)

    @property
    def pending(self) -> int:
        return sum(1 for task in self._tasks if not task.done())

    def welcome(self, user: User) -> asyncio.Task:
        return self.dispatch(
            WELCOME,
            user.email,
            lambda: self.notifier.send_welcome(user.email, user.first_name),
        )

    def instructor_password(self, user: User, temporary_password: str) -> asyncio.Task:
        return self.dispatch(
            INSTRUCTOR_PASSWORD,
            user.email,
            lambda: self.notifier.send_instructor_password(
                user.email, user.first_name, temporary_password
            ),
        )

    def otp(self, email: str, code: str) -> asyncio.Task:
        return self.dispatch(OTP, email, lambda: self.notifier.send_otp(email, code))

    def dispatch(
        self, kind: str, recipient: str, send: Callable[[], Awaitable[bool]]
    ) -> asyncio.Task:
        """Schedule ``send`` on the running loop and return its task."""
        task = asyncio.get_running_loop().create_task(
            self._deliver(kind, recipient, send)
        )
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    async def _deliver(
        self, kind: str, recipient: str, send: Callable[[], Awaitable[bool]]
    ) -> bool:
        recipient_hash = hash_email(recipient)
        last_error = "notifier reported failure"
        for attempt in range(1, self.policy.max_attempts + 1):
            try:
                if await send():
                    logger.info(
                        "notification_delivered",
                        kind=kind,
                        email_hash=recipient_hash,
                        attempt=attempt,
                    )
                    return True
                last_error = "notifier reported failure"
            except asyncio.CancelledError:
                raise
            except Exception as exc:
                last_error = f"{type(exc).__name__}: {exc}"
            if attempt < self.policy.max_attempts:
                delay = self.policy.delay_for(attempt)
                logger.warning(
                    "notification_retry",
                    kind=kind,
                    email_hash=recipient_hash,
                    attempt=attempt,
                    delay_seconds=delay,
                )
                await self._sleep(delay)

        self._record_dead_letter(
            DeadLetter(
                kind=kind,
                recipient_hash=recipient_hash,
                attempts=self.policy.max_attempts,
                error=last_error,
            )
        )
        return False

    def _record_dead_letter(self, letter: DeadLetter) -> None:
        with self._dead_letter_lock:
            self._dead_letters.append(letter)
        logger.error(
            "notification_dead_letter",
            kind=letter.kind,
            email_hash=letter.recipient_hash,
            attempts=letter.attempts,
            error=letter.error,
        )
        if not self.dead_letter_path:
            return
        try:
            self.dead_letter_path.parent.mkdir(parents=True, exist_ok=True)
            with self.dead_letter_path.open("a", encoding="utf-8") as fh:
                fh.write(json.dumps(asdict(letter)) + "\n")
        except OSError as exc:
            logger.error("dead_letter_persist_failed", error=str(exc))

    async def drain(self, timeout: Optional[float] = None) -> None:
        """Wait for in-flight deliveries, cancelling any still running at ``timeout``."""
        tasks = [task for task in self._tasks if not task.done()]
        if not tasks:
            return
        _done, still_running = await asyncio.wait(tasks, timeout=timeout)
        for task in still_running:
            task.cancel()
        if still_running:
            logger.warning("notifications_abandoned", count=len(still_running))
