from __future__ import annotations

import asyncio
import html
import smtplib
import ssl
from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText
from typing import Callable, Optional, Set

from streamline.logging import get_logger

logger = get_logger(__name__)

_STYLE = """
        body { font-family: -apple-system, BlinkMacSystemFont, 'Segoe UI', Roboto, sans-serif; line-height: 1.6; color: #1f2933; }
        .container { max-width: 600px; margin: 0 auto; padding: 40px 20px; }
        .button { display: inline-block; background: #4f46e5; color: white; padding: 12px 24px; border-radius: 8px; text-decoration: none; font-weight: 600; }
        .footer { margin-top: 40px; font-size: 12px; color: #5b6470; }
"""


def _html_page(title: str, paragraphs: list[str], link_label: str, url: str, brand: str) -> str:
    body = "\n".join(f"        <p>{p}</p>" for p in paragraphs)
    return f"""
<!DOCTYPE html>
<html>
<head>
    <meta charset="utf-8">
    <style>{_STYLE}    </style>
</head>
<body>
    <div class="container">
        <h1>{title}</h1>
{body}
        <p style="margin: 30px 0;">
            <a href="{url}" class="button">{link_label}</a>
        </p>
        <div class="footer">
            <p>{brand}</p>
            <p>If the button doesn't work, copy and paste this URL: {url}</p>
        </div>
    </div>
</body>
</html>
"""


class EmailService:
    """Transactional email for invitations and password resets.

    Falls back to a redacted log line when SMTP is not configured. Sending
    is fire-and-forget from request handlers: ``dispatch`` runs the blocking
    SMTP exchange in a worker thread and only logs failures.
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
        from_name: str = "Streamline Studio",
        base_url: Optional[str] = None,
    ) -> None:
        self.smtp_host = smtp_host
        self.smtp_port = smtp_port
        self.smtp_user = smtp_user
        self.smtp_password = smtp_password
        self.smtp_use_tls = smtp_use_tls
        self.from_email = from_email or smtp_user
        self.from_name = from_name
        self.base_url = (base_url or "http://localhost:3000").rstrip("/")
        self._pending: Set[asyncio.Task] = set()

    @property
    def is_configured(self) -> bool:
        return bool(self.smtp_host and self.from_email)

    def _redact_email(self, email: str) -> str:
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
        """Send one message via SMTP. Returns False on failure instead of raising."""
        if not self.is_configured:
            # Links carry secrets, so the body itself is never logged
            logger.info("email_dev_mode", recipient=self._redact_email(to_email), subject=subject)
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
            if self.smtp_use_tls:
                with smtplib.SMTP(self.smtp_host, self.smtp_port, timeout=30) as server:
                    server.starttls(context=context)
                    if self.smtp_user and self.smtp_password:
                        server.login(self.smtp_user, self.smtp_password)
                    server.sendmail(self.from_email, to_email, msg.as_string())
            else:
                with smtplib.SMTP_SSL(
                    self.smtp_host, self.smtp_port, context=context, timeout=30
                ) as server:
                    if self.smtp_user and self.smtp_password:
                        server.login(self.smtp_user, self.smtp_password)
                    server.sendmail(self.from_email, to_email, msg.as_string())

            logger.info("email_sent", recipient=self._redact_email(to_email), subject=subject)
            return True

        except smtplib.SMTPAuthenticationError as e:
            logger.error(
                "email_auth_failed",
                recipient=self._redact_email(to_email),
                host=self.smtp_host,
                error_code=getattr(e, "smtp_code", None),
            )
            return False
        except smtplib.SMTPRecipientsRefused:
            logger.error("email_recipient_refused", recipient=self._redact_email(to_email))
            return False
        except smtplib.SMTPException as e:
            logger.error(
                "email_smtp_error",
                recipient=self._redact_email(to_email),
                host=self.smtp_host,
                error_type=type(e).__name__,
                error=str(e),
            )
            return False
        except (ssl.SSLError, TimeoutError, OSError) as e:
            logger.error(
                "email_transport_error",
                recipient=self._redact_email(to_email),
                host=self.smtp_host,
                port=self.smtp_port,
                error_type=type(e).__name__,
            )
            return False

    def send_password_reset(self, to_email: str, token: str, *, ttl_minutes: int) -> bool:
        reset_url = f"{self.base_url}/reset-password?token={token}"
        subject = f"Reset your {self.from_name} password"
        paragraphs = [
            "We received a request to reset your password. Click the button below to choose a new password:",
        ]
        html_body = _html_page(
            "Reset your password",
            paragraphs
            + [
                f"This link will expire in {ttl_minutes} minutes.",
                "If you didn't request this, you can safely ignore this email.",
            ],
            "Reset Password",
            reset_url,
            html.escape(self.from_name),
        )
        text_body = f"""{subject}

We received a request to reset your password. Visit the link below to choose a new password:

{reset_url}

This link will expire in {ttl_minutes} minutes.

If you didn't request this, you can safely ignore this email.

---
{self.from_name}
"""
        return self._send_email(to_email, subject, html_body, text_body)

    def send_invitation(
        self,
        to_email: str,
        token: str,
        *,
        teamspace_name: str,
        role: str,
        inviter_name: Optional[str] = None,
        ttl_hours: int = 24,
    ) -> bool:
        invite_url = f"{self.base_url}/invite/{token}"
        inviter = inviter_name or "A teammate"
        subject = f"You've been invited to join {teamspace_name} on {self.from_name}"
        html_body = _html_page(
            "You're invited",
            [
                f"{html.escape(inviter)} invited you to join <strong>{html.escape(teamspace_name)}</strong> "
                f"as {html.escape(role)}.",
                f"This invitation will expire in {ttl_hours} hours.",
            ],
            "Accept Invitation",
            invite_url,
            html.escape(self.from_name),
        )
        text_body = f"""{subject}

{inviter} invited you to join {teamspace_name} as {role}.

{invite_url}

This invitation will expire in {ttl_hours} hours.

---
{self.from_name}
"""
        return self._send_email(to_email, subject, html_body, text_body)

    def dispatch(self, send: Callable[..., bool], *args, **kwargs) -> Optional[asyncio.Task]:
        """Run ``send`` in a worker thread without awaiting it.

        Outside an event loop the send happens inline.
        """
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            if not send(*args, **kwargs):
                logger.warning("email_not_delivered", kind=getattr(send, "__name__", "email"))
            return None

        async def _run() -> None:
            try:
                ok = await asyncio.to_thread(send, *args, **kwargs)
            except Exception as exc:
                logger.error("email_dispatch_failed", error_type=type(exc).__name__, error=str(exc))
                return
            if not ok:
                logger.warning("email_not_delivered", kind=getattr(send, "__name__", "email"))

        task = loop.create_task(_run())
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)
        return task

    async def drain(self) -> None:
        """Wait for in-flight sends; used on shutdown and in tests."""
        if self._pending:
            await asyncio.gather(*list(self._pending), return_exceptions=True)
