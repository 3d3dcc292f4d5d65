from __future__ import annotations

import asyncio
import smtplib
import ssl
from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText
from typing import Any, Callable, Optional

from notekeep.logging import get_logger

logger = get_logger(__name__)

_CODE_TEMPLATES = {
    "login": (
        "Your {app} login code",
        "Use this code to finish signing in",
    ),
    "enable_2fa": (
        "Confirm 2FA activation",
        "Use this code to turn on two-factor authentication",
    ),
    "disable_2fa": (
        "Confirm 2FA deactivation",
        "Use this code to turn off two-factor authentication",
    ),
}


class EmailService:
    """Transactional email over SMTP.

    Every send reports a boolean instead of raising; callers treat delivery
    as best effort. Without SMTP configuration messages are logged instead
    of sent (dev mode).
    """

    def __init__(
        self,
        *,
        smtp_host: Optional[str] = None,
        smtp_port: int = 587,
        smtp_user: Optional[str] = None,
        smtp_password: Optional[str] = None,
        smtp_use_tls: bool = True,
        from_email: Optional[str] = None,
        from_name: str = "Notekeep",
        base_url: Optional[str] = None,
        timeout: float = 15.0,
    ) -> None:
        self.smtp_host = smtp_host
        self.smtp_port = smtp_port
        self.smtp_user = smtp_user
        self.smtp_password = smtp_password
        self.smtp_use_tls = smtp_use_tls
        self.from_email = from_email or smtp_user
        self.from_name = from_name
        self.base_url = base_url or "http://localhost:8000"
        self.timeout = timeout

    @property
    def is_configured(self) -> bool:
        return bool(self.smtp_host and self.from_email)

    @staticmethod
    def _redact_address(address: str) -> str:
        if "@" not in address:
            return "redacted"
        local, domain = address.split("@", 1)
        return f"{local[:2]}***@{domain}"

    def _send_email(
        self,
        to_email: str,
        subject: str,
        html_body: str,
        text_body: Optional[str] = None,
    ) -> bool:
        recipient = self._redact_address(to_email)
        if not self.is_configured:
            logger.info(
                "email_dev_mode",
                to=recipient,
                subject=subject,
                body_preview=text_body[:200] if text_body else html_body[:200],
            )
            return True

        msg = MIMEMultipart("alternative")
        msg["Subject"] = subject
        msg["From"] = f"{self.from_name} <{self.from_email}>"
        msg["To"] = to_email
        if text_body:
            msg.attach(MIMEText(text_body, "plain"))
        msg.attach(MIMEText(html_body, "html"))
        context = ssl.create_default_context()

        try:
            if self.smtp_use_tls:
                with smtplib.SMTP(self.smtp_host, self.smtp_port, timeout=self.timeout) as server:
                    server.starttls(context=context)
                    if self.smtp_user and self.smtp_password:
                        server.login(self.smtp_user, self.smtp_password)
                    server.sendmail(self.from_email, to_email, msg.as_string())
            else:
                with smtplib.SMTP_SSL(
                    self.smtp_host, self.smtp_port, context=context, timeout=self.timeout
                ) as server:
                    if self.smtp_user and self.smtp_password:
                        server.login(self.smtp_user, self.smtp_password)
                    server.sendmail(self.from_email, to_email, msg.as_string())
        except smtplib.SMTPAuthenticationError as exc:
            logger.error(
                "email_auth_failed",
                to=recipient,
                host=self.smtp_host,
                smtp_code=getattr(exc, "smtp_code", None),
            )
            return False
        except smtplib.SMTPRecipientsRefused as exc:
            logger.error("email_recipient_refused", to=recipient, error=str(exc))
            return False
        except smtplib.SMTPException as exc:
            logger.error(
                "email_smtp_error",
                to=recipient,
                host=self.smtp_host,
                error_type=type(exc).__name__,
                error=str(exc),
            )
            return False
        except ssl.SSLError as exc:
            logger.error("email_ssl_error", to=recipient, host=self.smtp_host, error=str(exc))
            return False
        except OSError as exc:
            # connection refused, DNS failure, socket timeout
            logger.error(
                "email_connect_failed",
                to=recipient,
                host=self.smtp_host,
                port=self.smtp_port,
                error=str(exc),
            )
            return False

        logger.info("email_sent", to=recipient, subject=subject)
        return True

    def send_one_time_code(
        self, to_email: str, username: str, code: str, purpose: str, *, ttl_minutes: int = 10
    ) -> bool:
        """Send a second-factor code; the wording depends on ``purpose``."""
        subject_tpl, lead = _CODE_TEMPLATES.get(purpose, _CODE_TEMPLATES["login"])
        subject = subject_tpl.format(app=self.from_name)

        html_body = f"""
<!DOCTYPE html>
<html>
<head><meta charset="utf-8"></head>
<body style="font-family: -apple-system, BlinkMacSystemFont, 'Segoe UI', Roboto, sans-serif; color: #1f2933;">
    <p>Hi {username},</p>
    <p>{lead}:</p>
    <p style="font-size: 28px; font-weight: bold; letter-spacing: 6px;">{code}</p>
    <p>The code expires in {ttl_minutes} minutes. If you did not request it, you can ignore this email.</p>
    <p style="color: #6b7280; font-size: 12px;">{self.from_name} &middot; {self.base_url}</p>
</body>
</html>
"""
        text_body = (
            f"Hi {username},\n\n"
            f"{lead}: {code}\n\n"
            f"The code expires in {ttl_minutes} minutes. "
            "If you did not request it, you can ignore this email.\n"
        )
        return self._send_email(to_email, subject, html_body, text_body)

    def _send_link(
        self,
        to_email: str,
        username: str,
        subject: str,
        lead: str,
        link: str,
        expires_in: str,
    ) -> bool:
        html_body = f"""
<!DOCTYPE html>
<html>
<head><meta charset="utf-8"></head>
<body style="font-family: -apple-system, BlinkMacSystemFont, 'Segoe UI', Roboto, sans-serif; color: #1f2933;">
    <p>Hi {username},</p>
    <p>{lead}:</p>
    <p><a href="{link}">{link}</a></p>
    <p>The link expires in {expires_in}. If you did not request it, you can ignore this email.</p>
    <p style="color: #6b7280; font-size: 12px;">{self.from_name} &middot; {self.base_url}</p>
</body>
</html>
"""
        text_body = (
            f"Hi {username},\n\n"
            f"{lead}:\n{link}\n\n"
            f"The link expires in {expires_in}. "
            "If you did not request it, you can ignore this email.\n"
        )
        return self._send_email(to_email, subject, html_body, text_body)

    def send_email_verification(
        self, to_email: str, username: str, token: str, *, ttl_hours: int = 24
    ) -> bool:
        link = f"{self.base_url.rstrip('/')}/verify-email?token={token}"
        return self._send_link(
            to_email,
            username,
            f"Verify your {self.from_name} email address",
            "Confirm this address by opening the link below",
            link,
            f"{ttl_hours} hours",
        )

    def send_password_reset(
        self, to_email: str, username: str, token: str, *, ttl_minutes: int = 30
    ) -> bool:
        link = f"{self.base_url.rstrip('/')}/reset-password?token={token}"
        return self._send_link(
            to_email,
            username,
            f"Reset your {self.from_name} password",
            "Choose a new password by opening the link below",
            link,
            f"{ttl_minutes} minutes",
        )


async def send_bounded(send: Callable[..., bool], *args: Any, timeout: float, **kwargs: Any) -> bool:
    """Run a blocking ``EmailService`` send in a worker thread.

    Returns False when the send fails, raises, or outlives ``timeout``; the
    caller's stored state stays valid either way.
    """
    operation = getattr(send, "__name__", "send")
    try:
        return bool(
            await asyncio.wait_for(asyncio.to_thread(send, *args, **kwargs), timeout)
        )
    except asyncio.TimeoutError:
        logger.error("email_dispatch_timeout", operation=operation, timeout=timeout)
        return False
    except Exception as exc:
        logger.error("email_dispatch_failed", operation=operation, error=str(exc))
        return False
