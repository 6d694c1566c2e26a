from __future__ import annotations

import html
import smtplib
import ssl
from dataclasses import dataclass
from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText
from typing import Optional

from reliefgate.logging import get_logger

logger = get_logger(__name__)

_HTML_LAYOUT = """
<!DOCTYPE html>
<html>
<head>
    <meta charset="utf-8">
    <style>
        body {{ font-family: -apple-system, BlinkMacSystemFont, 'Segoe UI', Roboto, sans-serif; line-height: 1.6; color: #1f2933; }}
        .container {{ max-width: 600px; margin: 0 auto; padding: 40px 20px; }}
        .footer {{ margin-top: 40px; font-size: 12px; color: #5b6470; }}
    </style>
</head>
<body>
    <div class="container">
        {paragraphs}
        <div class="footer">
            <p>{sender}</p>
        </div>
    </div>
</body>
</html>
"""

_PURPOSE_SUBJECTS = {
    "login": "Your sign-in verification code",
    "email_login": "Your sign-in verification code",
    "setup": "Confirm two-factor authentication",
    "disable": "Confirm disabling two-factor authentication",
    "backup_generate": "Confirm new backup codes",
}


@dataclass(frozen=True)
class EmailContent:
    subject: str
    body: str


def otp_code_email(code: str, purpose: str, expiry_minutes: int) -> EmailContent:
    subject = _PURPOSE_SUBJECTS.get(purpose, "Your verification code")
    body = (
        f"Your verification code is: {code}\n\n"
        f"The code expires in {expiry_minutes} minutes and can be used once.\n\n"
        "If you did not request this code, you can ignore this email and "
        "consider changing your password."
    )
    return EmailContent(subject, body)


def password_reset_email(reset_url: str, ttl_minutes: int) -> EmailContent:
    body = (
        "We received a request to reset your password. Visit the link below "
        "to choose a new password:\n\n"
        f"{reset_url}\n\n"
        f"This link will expire in {ttl_minutes} minutes.\n\n"
        "If you didn't request this, you can safely ignore this email."
    )
    return EmailContent("Reset your password", body)


def provider_notice_email(provider: str) -> EmailContent:
    body = (
        "We received a request to reset the password for your account.\n\n"
        f"Your account signs in with {provider.title()}, so it has no password "
        f"to reset. Please continue to sign in with {provider.title()}.\n\n"
        "If you didn't request this, you can safely ignore this email."
    )
    return EmailContent("Password reset request", body)


def two_factor_enabled_email() -> EmailContent:
    body = (
        "Two-factor authentication has been enabled on your account.\n\n"
        "You will now receive a verification code by email when signing in. "
        "Keep your backup codes somewhere safe.\n\n"
        "If you didn't make this change, please contact support immediately."
    )
    return EmailContent("Two-factor authentication enabled", body)


def two_factor_disabled_email() -> EmailContent:
    body = (
        "Two-factor authentication has been disabled on your account and all "
        "other sessions were signed out.\n\n"
        "If you didn't make this change, please reset your password and "
        "contact support immediately."
    )
    return EmailContent("Two-factor authentication disabled", body)


class EmailService:
    """SMTP delivery for transactional emails.

    Falls back to logging the message when no SMTP host is configured, which
    is how development and test deployments run.
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
        from_name: str = "ReliefGate",
    ) -> None:
        self.smtp_host = smtp_host
        self.smtp_port = smtp_port
        self.smtp_user = smtp_user
        self.smtp_password = smtp_password
        self.smtp_use_tls = smtp_use_tls
        self.from_email = from_email or smtp_user
        self.from_name = from_name

    @property
    def is_configured(self) -> bool:
        """Check if email sending is properly configured."""
        return bool(self.smtp_host and self.from_email)

    def _redact_email(self, email: str) -> str:
        """Redact an email address for logging to avoid PII leakage."""
        if "@" not in email:
            return "redacted"
        local, domain = email.split("@", 1)
        return f"{local[:2]}***@{domain}"

    def _render_html(self, subject: str, text_body: str) -> str:
        paragraphs = [f"<h1>{html.escape(subject)}</h1>"]
        for block in text_body.split("\n\n"):
            paragraphs.append(f"<p>{html.escape(block).replace(chr(10), '<br>')}</p>")
        return _HTML_LAYOUT.format(
            paragraphs="\n        ".join(paragraphs), sender=html.escape(self.from_name)
        )

    def send(
        self, to_address: str, subject: str, body: str, html_body: Optional[str] = None
    ) -> bool:
        """Deliver a plain-text message, rendering an HTML alternative."""
        return self._send_email(
            to_address, subject, html_body or self._render_html(subject, body), body
        )

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
            logger.info(
                "email_dev_mode",
                to=self._redact_email(to_email),
                subject=subject,
                body_preview=text_body[:200] if text_body else html_body[:200],
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
                host=self.smtp_host,
                port=self.smtp_port,
                use_tls=self.smtp_use_tls,
                to=self._redact_email(to_email),
            )

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

            logger.info("email_sent", to=self._redact_email(to_email), subject=subject)
            return True

        except smtplib.SMTPAuthenticationError as e:
            logger.error(
                "email_auth_failed",
                to=self._redact_email(to_email),
                host=self.smtp_host,
                error=str(e),
                smtp_code=getattr(e, "smtp_code", None),
            )
            return False
        except smtplib.SMTPRecipientsRefused as e:
            logger.error(
                "email_recipient_refused",
                to=self._redact_email(to_email),
                error=str(e),
            )
            return False
        except smtplib.SMTPException as e:
            logger.error(
                "email_smtp_error",
                to=self._redact_email(to_email),
                host=self.smtp_host,
                error_type=type(e).__name__,
                error=str(e),
            )
            return False
        except (ssl.SSLError, OSError) as e:
            logger.error(
                "email_transport_error",
                to=self._redact_email(to_email),
                host=self.smtp_host,
                port=self.smtp_port,
                error_type=type(e).__name__,
                error=str(e),
            )
            return False


__all__ = [
    "EmailService",
    "EmailContent",
    "otp_code_email",
    "password_reset_email",
    "provider_notice_email",
    "two_factor_enabled_email",
    "two_factor_disabled_email",
]
