from __future__ import annotations

import asyncio
import html
import smtplib
import ssl
from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText
from typing import Optional, Sequence

from gatehouse.logging import get_logger

logger = get_logger(__name__)

_HTML_TEMPLATE = """<!DOCTYPE html>
<html>
<head>
    <meta charset="utf-8">
    <style>
        body {{ font-family: -apple-system, BlinkMacSystemFont, 'Segoe UI', Roboto, sans-serif; line-height: 1.6; color: #1f2933; }}
        .container {{ max-width: 600px; margin: 0 auto; padding: 40px 20px; }}
        .button {{ display: inline-block; background: #2f5d8a; color: white; padding: 12px 24px; border-radius: 8px; text-decoration: none; font-weight: 600; }}
        .footer {{ margin-top: 40px; font-size: 12px; color: #5b6470; }}
    </style>
</head>
<body>
    <div class="container">
        <h1>{title}</h1>
        {paragraphs}
        {action}
        <div class="footer">
            <p>{app_name}</p>
            {fallback}
        </div>
    </div>
</body>
</html>
"""


class EmailService:
    """SMTP transport for account and security emails.

    When SMTP is not configured the message is logged instead of sent, which
    keeps local development and the test suite free of a mail server.
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
        from_name: str = "Gatehouse",
        base_url: Optional[str] = None,
    ) -> None:
        self.smtp_host = smtp_host
        self.smtp_port = smtp_port
        self.smtp_user = smtp_user
        self.smtp_password = smtp_password
        self.smtp_use_tls = smtp_use_tls
        self.from_email = from_email or smtp_user
        self.from_name = from_name
        self.base_url = (base_url or "http://localhost:8000").rstrip("/")

    @property
    def is_configured(self) -> bool:
        return bool(self.smtp_host and self.from_email)

    @staticmethod
    def _redact_email(email: str) -> str:
        if "@" not in email:
            return "redacted"
        local, domain = email.split("@", 1)
        return f"{local[:2]}***@{domain}"

    def send_email(
        self,
        to: str,
        subject: str,
        html_body: str,
        text_body: Optional[str] = None,
    ) -> bool:
        """Deliver one message; False (already logged) on any transport failure."""
        if not self.is_configured:
            logger.info(
                "email_dev_mode",
                recipient=self._redact_email(to),
                subject=subject,
                body_preview=(text_body or html_body)[:200],
            )
            return True

        msg = MIMEMultipart("alternative")
        msg["Subject"] = subject
        msg["From"] = f"{self.from_name} <{self.from_email}>"
        msg["To"] = to
        if text_body:
            msg.attach(MIMEText(text_body, "plain"))
        msg.attach(MIMEText(html_body, "html"))

        context = ssl.create_default_context()
        try:
            if self.smtp_use_tls:
                with smtplib.SMTP(self.smtp_host, self.smtp_port, timeout=30) as server:
                    server.starttls(context=context)
                    if self.smtp_user and self.smtp_password:
                        server.login(self.smtp_user, self.smtp_password)
                    server.sendmail(self.from_email, to, msg.as_string())
            else:
                with smtplib.SMTP_SSL(
                    self.smtp_host, self.smtp_port, context=context, timeout=30
                ) as server:
                    if self.smtp_user and self.smtp_password:
                        server.login(self.smtp_user, self.smtp_password)
                    server.sendmail(self.from_email, to, msg.as_string())
        except smtplib.SMTPAuthenticationError as e:
            logger.error("email_auth_failed", host=self.smtp_host, error=str(e))
            return False
        except smtplib.SMTPRecipientsRefused:
            logger.error("email_recipient_refused", recipient=self._redact_email(to))
            return False
        except (smtplib.SMTPException, ssl.SSLError, OSError) as e:
            logger.error(
                "email_send_failed",
                recipient=self._redact_email(to),
                host=self.smtp_host,
                error_type=type(e).__name__,
                error=str(e),
            )
            return False

        logger.info("email_sent", recipient=self._redact_email(to), subject=subject)
        return True

    def _render(
        self,
        title: str,
        paragraphs: Sequence[str],
        *,
        action_url: Optional[str] = None,
        action_label: Optional[str] = None,
    ) -> tuple[str, str]:
        body = "\n        ".join(f"<p>{html.escape(p)}</p>" for p in paragraphs)
        action = fallback = ""
        if action_url:
            safe_url = html.escape(action_url, quote=True)
            action = (
                f'<p style="margin: 30px 0;"><a href="{safe_url}" class="button">'
                f"{html.escape(action_label or title)}</a></p>"
            )
            fallback = f"<p>If the button doesn't work, copy and paste this URL: {safe_url}</p>"
        html_body = _HTML_TEMPLATE.format(
            title=html.escape(title),
            paragraphs=body,
            action=action,
            app_name=html.escape(self.from_name),
            fallback=fallback,
        )
        text_parts = [title, "", *paragraphs]
        if action_url:
            text_parts += ["", action_url]
        text_parts += ["", "---", self.from_name]
        return html_body, "\n".join(text_parts)

    def send_password_reset(self, to_email: str, token: str, *, expires_minutes: int) -> bool:
        reset_url = f"{self.base_url}/reset-password?token={token}"
        html_body, text_body = self._render(
            "Reset your password",
            [
                "We received a request to reset your password. Use the link below to choose a new one.",
                f"This link will expire in {expires_minutes} minutes.",
                "If you didn't request this, you can safely ignore this email.",
            ],
            action_url=reset_url,
            action_label="Reset Password",
        )
        return self.send_email(to_email, f"Reset your {self.from_name} password", html_body, text_body)

    def send_email_verification(self, to_email: str, token: str, *, expires_hours: int) -> bool:
        verify_url = f"{self.base_url}/verify-email?token={token}"
        html_body, text_body = self._render(
            "Verify your email",
            [
                "Please confirm your email address using the link below.",
                f"This link will expire in {expires_hours} hours.",
            ],
            action_url=verify_url,
            action_label="Verify Email",
        )
        return self.send_email(to_email, f"Verify your {self.from_name} email", html_body, text_body)

    def send_password_changed(self, to_email: str) -> bool:
        html_body, text_body = self._render(
            "Your password was changed",
            [
                "The password on your account was just changed and other sessions were signed out.",
                "If you didn't make this change, reset your password immediately and contact an administrator.",
            ],
        )
        return self.send_email(to_email, "Your password was changed", html_body, text_body)

    def send_two_factor_changed(self, to_email: str, *, enabled: bool) -> bool:
        state = "enabled" if enabled else "disabled"
        paragraphs = [f"Two-factor authentication has been {state} on your account."]
        if enabled:
            paragraphs.append("You will now need a code from your authenticator app when signing in.")
        paragraphs.append("If you didn't make this change, contact an administrator immediately.")
        html_body, text_body = self._render(f"Two-factor authentication {state}", paragraphs)
        return self.send_email(to_email, f"Two-factor authentication {state}", html_body, text_body)


async def send_notification_safely(send, *args, **kwargs) -> bool:
    """Run a notification helper off the event loop.

    SMTP is blocking, so the helper runs in a worker thread. A failure is
    logged and never reaches the caller.
    """
    name = getattr(send, "__name__", "email")
    try:
        delivered = await asyncio.to_thread(send, *args, **kwargs)
    except Exception as exc:
        logger.error("notification_failed", notification=name, error_type=type(exc).__name__)
        return False
    if not delivered:
        logger.warning("notification_not_delivered", notification=name)
    return bool(delivered)
