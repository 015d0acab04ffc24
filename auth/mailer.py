"""
auth/mailer.py -- Outbound mail adapters and the account email templates.

Mail is fire-and-forget. send() hands the message off and returns; a
delivery failure is logged and never reaches the flow that triggered it.
AccountService additionally wraps every send() in try/except so a broken
adapter cannot fail a signup or a reset request.

Adapters:
  LogMailer   -- writes the message to the log. Used when SMTP_HOST is empty
                 (local development) and as the base for test doubles.
  SmtpMailer  -- smtplib over STARTTLS (SMTP_USE_TLS=true) or implicit TLS.
                 Delivery runs on a small thread pool so a slow relay never
                 holds a request handler.

Recipient addresses are redacted in log lines (ad***@example.com).

Layer rule: no imports from api/.
"""

from __future__ import annotations

import logging
import smtplib
import ssl
from concurrent.futures import ThreadPoolExecutor
from email.message import EmailMessage

from core.config import Settings

logger = logging.getLogger("keyhold.mail")


def redact_email(email: str) -> str:
    if "@" not in email:
        return "redacted"
    local, domain = email.split("@", 1)
    return f"{local[:2]}***@{domain}"


# ---------------------------------------------------------------------------
# Adapters
# ---------------------------------------------------------------------------


class Mailer:
    """Interface: send(to, subject, body). Must not block on delivery."""

    def send(self, to: str, subject: str, body: str) -> None:
        raise NotImplementedError

    def close(self) -> None:
        pass


class LogMailer(Mailer):
    def send(self, to: str, subject: str, body: str) -> None:
        logger.info("Mail (not sent, no SMTP configured) to=%s subject=%r\n%s", redact_email(to), subject, body)


class SmtpMailer(Mailer):
    def __init__(
        self,
        host: str,
        port: int = 587,
        user: str = "",
        password: str = "",
        use_tls: bool = True,
        from_address: str = "no-reply@localhost",
        max_workers: int = 2,
    ) -> None:
        self.host = host
        self.port = port
        self.user = user
        self.password = password
        self.use_tls = use_tls
        self.from_address = from_address
        self._pool = ThreadPoolExecutor(max_workers=max_workers, thread_name_prefix="keyhold-mail")

    def send(self, to: str, subject: str, body: str) -> None:
        msg = EmailMessage()
        msg["Subject"] = subject
        msg["From"] = self.from_address
        msg["To"] = to
        msg.set_content(body)
        self._pool.submit(self._deliver, msg)

    def close(self) -> None:
        self._pool.shutdown(wait=True)

    def _deliver(self, msg: EmailMessage) -> None:
        to = redact_email(str(msg["To"]))
        context = ssl.create_default_context()
        try:
            if self.use_tls:
                with smtplib.SMTP(self.host, self.port, timeout=30) as server:
                    server.starttls(context=context)
                    self._login(server)
                    server.send_message(msg)
            else:
                with smtplib.SMTP_SSL(self.host, self.port, context=context, timeout=30) as server:
                    self._login(server)
                    server.send_message(msg)
        except smtplib.SMTPAuthenticationError:
            logger.error("SMTP authentication failed for %s@%s (to=%s)", self.user, self.host, to)
            return
        except (smtplib.SMTPException, ssl.SSLError, OSError):
            logger.exception("Mail delivery to %s via %s:%d failed", to, self.host, self.port)
            return
        logger.info("Mail sent to=%s subject=%r", to, msg["Subject"])

    def _login(self, server: smtplib.SMTP) -> None:
        if self.user and self.password:
            server.login(self.user, self.password)


def build_mailer(settings: Settings) -> Mailer:
    """SmtpMailer when SMTP_HOST is set, LogMailer otherwise."""
    if not settings.smtp_host:
        logger.warning("SMTP_HOST not set -- outbound mail will be logged, not delivered")
        return LogMailer()
    return SmtpMailer(
        host=settings.smtp_host,
        port=settings.smtp_port,
        user=settings.smtp_user,
        password=settings.smtp_password,
        use_tls=settings.smtp_use_tls,
        from_address=settings.mail_from,
    )


# ---------------------------------------------------------------------------
# Templates
# ---------------------------------------------------------------------------


def verify_email_message(base_url: str, token_id: str) -> tuple[str, str]:
    link = f"{base_url.rstrip('/')}/verify-email?token={token_id}"
    return (
        "Verify your email address",
        f"Please confirm this email address by opening the link below:\n\n{link}\n\n"
        "If you did not create an account, you can ignore this message.\n",
    )


def password_reset_message(base_url: str, token_id: str) -> tuple[str, str]:
    link = f"{base_url.rstrip('/')}/reset-password?token={token_id}"
    return (
        "Reset your password",
        f"Someone asked to reset the password for this account. To choose a new one, open:\n\n{link}\n\n"
        "The link expires shortly. If this was not you, no action is needed.\n",
    )


def login_link_message(base_url: str, token_id: str) -> tuple[str, str]:
    link = f"{base_url.rstrip('/')}/login-token?token={token_id}"
    return (
        "Your sign-in link",
        f"Open the link below to sign in. It works once and expires shortly.\n\n{link}\n",
    )
