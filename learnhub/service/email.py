from __future__ import annotations

import asyncio
import smtplib
import ssl
from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText
from typing import Optional

from learnhub.config import SmtpConfig
from learnhub.logging import get_logger

logger = get_logger(__name__)

_STYLE = """
        body { font-family: -apple-system, BlinkMacSystemFont, 'Segoe UI', Roboto, sans-serif; line-height: 1.6; color: #1f2933; }
        .container { max-width: 600px; margin: 0 auto; padding: 40px 20px; }
        .code { display: inline-block; background: #f0f4f8; padding: 12px 24px; border-radius: 8px; font-size: 24px; font-weight: 700; letter-spacing: 4px; }
        .footer { margin-top: 40px; font-size: 12px; color: #5b6470; }
"""


def _html(title: str, body: str, brand: str) -> str:
    return f"""
<!DOCTYPE html>
<html>
<head>
    <meta charset="utf-8">
    <style>{_STYLE}</style>
</head>
<body>
    <div class="container">
        <h1>{title}</h1>
        {body}
        <div class="footer">
            <p>{brand}</p>
        </div>
    </div>
</body>
</html>
"""


class EmailService:
    """SMTP sender for the three transactional LMS emails.

    Supports:
    - SMTP with STARTTLS or implicit SSL
    - Welcome, instructor credentials and login OTP emails
    - Logging instead of sending when SMTP is not configured (dev mode)

    The public ``send_*`` coroutines run the blocking SMTP exchange in a
    worker thread and return False on delivery failure so the caller's
    retry policy can decide what to do.
    """

    def __init__(self, config: SmtpConfig, *, otp_ttl_minutes: int = 10) -> None:
        self.config = config
        self.from_email = config.from_address or config.user
        self.from_name = config.from_name
        self.otp_ttl_minutes = otp_ttl_minutes

    @property
    def is_configured(self) -> bool:
        """Check if email sending is properly configured."""
        return bool(self.config.host and self.from_email)

    def _redact_email(self, email: str) -> str:
        """Redact an email address for logging to avoid PII leakage."""
        if "@" not in email:
            return "redacted"
        local, domain = email.split("@", 1)
        return f"{local[:2]}***@{domain}"

    def _send_email(
        self,
        to_email: str,
        subject: str,
        html_body: str,
        text_body: Optional[str] = None,
    ) -> bool:
        """Send an email via SMTP.

        Returns True if sent successfully, False otherwise.
        """
        if not self.is_configured:
            if not self.config.dev_mode:
                logger.error("email_not_configured", recipient=self._redact_email(to_email))
                return False
            # Body is withheld: it carries codes and temporary passwords
            logger.info(
                "email_dev_mode",
                recipient=self._redact_email(to_email),
                subject=subject,
            )
            return True

        try:
            msg = MIMEMultipart("alternative")
            msg["Subject"] = subject
            msg["From"] = f"{self.from_name} <{self.from_email}>"
            msg["To"] = to_email

            if text_body:
                msg.attach(MIMEText(text_body, "plain"))
            msg.attach(MIMEText(html_body, "html"))

            context = ssl.create_default_context()

            logger.debug(
                "email_connecting",
                host=self.config.host,
                port=self.config.port,
                use_tls=self.config.use_tls,
                recipient=self._redact_email(to_email),
            )

            if self.config.use_tls:
                with smtplib.SMTP(self.config.host, self.config.port, timeout=30) as server:
                    server.starttls(context=context)
                    if self.config.user and self.config.password:
                        server.login(self.config.user, self.config.password)
                    server.sendmail(self.from_email, to_email, msg.as_string())
            else:
                with smtplib.SMTP_SSL(
                    self.config.host, self.config.port, context=context, timeout=30
                ) as server:
                    if self.config.user and self.config.password:
                        server.login(self.config.user, self.config.password)
                    server.sendmail(self.from_email, to_email, msg.as_string())

            logger.info("email_sent", recipient=self._redact_email(to_email), subject=subject)
            return True

        except smtplib.SMTPAuthenticationError as e:
            logger.error(
                "email_auth_failed",
                recipient=self._redact_email(to_email),
                host=self.config.host,
                error_code=getattr(e, "smtp_code", None),
            )
            return False
        except smtplib.SMTPRecipientsRefused as e:
            logger.error(
                "email_recipient_refused",
                recipient=self._redact_email(to_email),
                error=str(e),
            )
            return False
        except smtplib.SMTPException as e:
            logger.error(
                "email_smtp_error",
                recipient=self._redact_email(to_email),
                host=self.config.host,
                error_type=type(e).__name__,
                error=str(e),
            )
            return False
        except (ssl.SSLError, OSError) as e:
            # Covers connection refusals and socket timeouts
            logger.error(
                "email_transport_error",
                recipient=self._redact_email(to_email),
                host=self.config.host,
                port=self.config.port,
                error_type=type(e).__name__,
                error=str(e),
            )
            return False

    async def _send(self, to_email: str, subject: str, html_body: str, text_body: str) -> bool:
        return await asyncio.to_thread(
            self._send_email, to_email, subject, html_body, text_body
        )

    async def send_welcome(self, to_email: str, first_name: str) -> bool:
        subject = f"Welcome to {self.from_name}"
        html_body = _html(
            f"Welcome, {first_name}!",
            "<p>Your student account has been created. You can now sign in and start learning.</p>",
            self.from_name,
        )
        text_body = (
            f"Welcome, {first_name}!\n\n"
            "Your student account has been created. You can now sign in and start learning.\n\n"
            f"---\n{self.from_name}\n"
        )
        return await self._send(to_email, subject, html_body, text_body)

    async def send_instructor_password(
        self, to_email: str, first_name: str, temporary_password: str
    ) -> bool:
        subject = f"Your {self.from_name} Account has been Created"
        html_body = _html(
            f"Hello {first_name},",
            f"""<p>An administrator created an instructor account for you.</p>
        <p>Email: {to_email}</p>
        <p>Temporary password:</p>
        <p class="code">{temporary_password}</p>
        <p>You will be asked to choose a new password the first time you sign in.</p>""",
            self.from_name,
        )
        text_body = (
            f"Hello {first_name},\n\n"
            "An administrator created an instructor account for you.\n\n"
            f"Email: {to_email}\nTemporary password: {temporary_password}\n\n"
            "You will be asked to choose a new password the first time you sign in.\n\n"
            f"---\n{self.from_name}\n"
        )
        return await self._send(to_email, subject, html_body, text_body)

    async def send_otp(self, to_email: str, code: str) -> bool:
        subject = f"Your {self.from_name} Login OTP"
        html_body = _html(
            "Your one-time password",
            f"""<p>Use the code below to sign in and reset your password:</p>
        <p class="code">{code}</p>
        <p>This code is valid for {self.otp_ttl_minutes} minutes.</p>
        <p>If you didn't request this, you can safely ignore this email.</p>""",
            self.from_name,
        )
        text_body = (
            f"Your one-time password: {code}\n\n"
            f"This code is valid for {self.otp_ttl_minutes} minutes.\n\n"
            "If you didn't request this, you can safely ignore this email.\n\n"
            f"---\n{self.from_name}\n"
        )
        return await self._send(to_email, subject, html_body, text_body)
