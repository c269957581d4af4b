from __future__ import annotations

import html
import smtplib
import ssl
from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText
from email.utils import formataddr
from typing import Optional

from personachat.config import Settings
from personachat.logging import get_logger, redact_email

logger = get_logger(__name__)

_STYLE = (
    "body{margin:0;background:#f6f5fb;font-family:system-ui,sans-serif;color:#24212f}"
    ".wrap{max-width:560px;margin:0 auto;padding:32px 24px;background:#fff}"
    ".cta{display:inline-block;padding:12px 22px;border-radius:6px;background:#6d4aff;"
    "color:#fff;text-decoration:none;font-weight:600}"
    ".fine{margin-top:32px;font-size:12px;color:#6b6780}"
)


def _display_name(name: Optional[str]) -> str:
    return (name or "").strip() or "User"


class EmailService:
    """Transactional mail for account flows.

    Sends over SMTP (STARTTLS or implicit TLS). When no SMTP host is
    configured the message is logged instead, which is the dev-mode path.
    Send methods return a bool and never raise; a failed delivery must not
    fail the request that issued the token.
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
        from_name: str = "PersonaChat",
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

    @classmethod
    def from_settings(cls, settings: Settings) -> "EmailService":
        return cls(
            smtp_host=settings.smtp_host,
            smtp_port=settings.smtp_port,
            smtp_user=settings.smtp_user,
            smtp_password=settings.smtp_password,
            smtp_use_tls=settings.smtp_use_tls,
            from_email=settings.email_from_address,
            from_name=settings.email_from_name,
            base_url=settings.app_base_url,
        )

    @property
    def is_configured(self) -> bool:
        return bool(self.smtp_host and self.from_email)

    def _open_connection(self) -> smtplib.SMTP:
        """Connected, authenticated SMTP session (STARTTLS or implicit TLS)."""
        context = ssl.create_default_context()
        if self.smtp_use_tls:
            server = smtplib.SMTP(self.smtp_host, self.smtp_port, timeout=30)
            server.starttls(context=context)
        else:
            server = smtplib.SMTP_SSL(self.smtp_host, self.smtp_port, context=context, timeout=30)
        try:
            if self.smtp_user and self.smtp_password:
                server.login(self.smtp_user, self.smtp_password)
        except smtplib.SMTPException:
            server.close()
            raise
        return server

    def _send_email(
        self,
        to_email: str,
        subject: str,
        html_body: str,
        text_body: str,
    ) -> bool:
        if not self.is_configured:
            # Dev mode: links are visible in the log instead of an inbox
            logger.info(
                "email_dev_mode",
                to=redact_email(to_email),
                subject=subject,
                body=text_body,
            )
            return True

        message = MIMEMultipart("alternative")
        message["Subject"] = subject
        message["From"] = formataddr((self.from_name, self.from_email))
        message["To"] = to_email
        message.attach(MIMEText(text_body, "plain"))
        message.attach(MIMEText(html_body, "html"))

        failure: Optional[str] = None
        try:
            with self._open_connection() as server:
                server.sendmail(self.from_email, [to_email], message.as_string())
        except smtplib.SMTPAuthenticationError as exc:
            failure = f"smtp auth rejected ({exc.smtp_code})"
        except smtplib.SMTPRecipientsRefused:
            failure = "recipient refused"
        except smtplib.SMTPException as exc:
            failure = f"{type(exc).__name__}: {exc}"
        except (ssl.SSLError, OSError) as exc:
            failure = f"cannot reach {self.smtp_host}:{self.smtp_port} ({type(exc).__name__})"

        if failure is not None:
            logger.error(
                "email_send_failed", to=redact_email(to_email), subject=subject, reason=failure
            )
            return False
        logger.info("email_sent", to=redact_email(to_email), subject=subject)
        return True

    def _render(
        self,
        heading: str,
        paragraphs: list[str],
        *,
        action_label: Optional[str] = None,
        action_url: Optional[str] = None,
    ) -> tuple[str, str]:
        html_parts = [f"<p>{html.escape(p)}</p>" for p in paragraphs]
        text_parts = list(paragraphs)
        if action_url:
            safe_url = html.escape(action_url, quote=True)
            html_parts.insert(
                1,
                f'<p style="margin: 30px 0;"><a href="{safe_url}" class="cta">'
                f"{html.escape(action_label or action_url)}</a></p>",
            )
            text_parts.insert(1, action_url)
            footer = (
                f"<p>If the button doesn't work, copy and paste this URL: {safe_url}</p>"
            )
        else:
            footer = ""
        html_body = f"""<!DOCTYPE html>
<html>
<head>
    <meta charset="utf-8">
    <style>{_STYLE}</style>
</head>
<body>
    <div class="wrap">
        <h1>{html.escape(heading)}</h1>
        {"".join(html_parts)}
        <div class="fine">
            <p>{html.escape(self.from_name)}</p>
            {footer}
        </div>
    </div>
</body>
</html>
"""
        text_body = "\n\n".join([heading, *text_parts, f"---\n{self.from_name}"]) + "\n"
        return html_body, text_body

    def send_welcome(self, to_email: str, name: str, token: str) -> bool:
        verify_url = f"{self.base_url}/verify-email?token={token}"
        html_body, text_body = self._render(
            f"Welcome, {_display_name(name)}!",
            [
                "Thanks for signing up. Please verify your email address to finish setting up your account.",
                "This link will expire in 7 days.",
            ],
            action_label="Verify Email Address",
            action_url=verify_url,
        )
        return self._send_email(
            to_email, f"Welcome to {self.from_name}! Please verify your email", html_body, text_body
        )

    def send_email_verification(self, to_email: str, name: str, token: str) -> bool:
        verify_url = f"{self.base_url}/verify-email?token={token}"
        html_body, text_body = self._render(
            "Verify your email",
            [
                f"Hi {_display_name(name)}, please confirm this is your email address.",
                "This link will expire in 7 days.",
            ],
            action_label="Verify Email",
            action_url=verify_url,
        )
        return self._send_email(
            to_email, f"Verify your email address - {self.from_name}", html_body, text_body
        )

    def send_password_reset(self, to_email: str, name: str, token: str) -> bool:
        reset_url = f"{self.base_url}/reset-password?token={token}"
        html_body, text_body = self._render(
            "Reset your password",
            [
                f"Hi {_display_name(name)}, we received a request to reset your password.",
                "This link will expire in 24 hours. If you didn't request this, you can safely ignore this email.",
            ],
            action_label="Reset Password",
            action_url=reset_url,
        )
        return self._send_email(
            to_email, f"Reset your {self.from_name} password", html_body, text_body
        )

    def send_password_changed(self, to_email: str, name: str) -> bool:
        html_body, text_body = self._render(
            "Your password was changed",
            [
                f"Hi {_display_name(name)}, the password for your account was just changed.",
                "If you didn't make this change, reset your password immediately.",
            ],
        )
        return self._send_email(to_email, "Your password was changed", html_body, text_body)
