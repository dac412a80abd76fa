from __future__ import annotations

import smtplib
import ssl
from dataclasses import dataclass
from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText
from html import escape
from typing import Optional

from studiogate.logging import get_logger, mask_email

logger = get_logger(__name__)


@dataclass(frozen=True)
class EmailResult:
    success: bool
    error: Optional[str] = None


class EmailService:
    """Transactional email over SMTP.

    When no SMTP host is configured and ``dev_mode`` is on, only the
    recipient and subject are logged and the send is reported as successful.
    With ``dev_mode`` off an unconfigured service fails every send.
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
        from_name: str = "Studio",
        dev_mode: bool = True,
    ) -> None:
        self.smtp_host = smtp_host
        self.smtp_port = smtp_port
        self.smtp_user = smtp_user
        self.smtp_password = smtp_password
        self.smtp_use_tls = smtp_use_tls
        self.from_email = from_email or smtp_user
        self.from_name = from_name
        self.dev_mode = dev_mode

    @property
    def is_configured(self) -> bool:
        return bool(self.smtp_host and self.from_email)

    def send(
        self,
        to_email: str,
        subject: str,
        html_body: str,
        text_body: Optional[str] = None,
    ) -> EmailResult:
        """Send one message; never raises."""
        if not self.is_configured:
            if not self.dev_mode:
                logger.error("email_not_configured", to=mask_email(to_email), subject=subject)
                return EmailResult(success=False, error="email not configured")
            # Bodies carry access codes and never reach the log
            logger.info("email_dev_mode", to=mask_email(to_email), subject=subject)
            return EmailResult(success=True)

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

            logger.info("email_sent", to=mask_email(to_email), subject=subject)
            return EmailResult(success=True)

        except smtplib.SMTPAuthenticationError as e:
            logger.error(
                "email_auth_failed",
                to=mask_email(to_email),
                host=self.smtp_host,
                error_code=getattr(e, "smtp_code", None),
            )
            return EmailResult(success=False, error="smtp authentication failed")
        except smtplib.SMTPRecipientsRefused as e:
            logger.error(
                "email_recipient_refused",
                to=mask_email(to_email),
                error=str(e),
            )
            return EmailResult(success=False, error="recipient refused")
        except smtplib.SMTPException as e:
            logger.error(
                "email_smtp_error",
                to=mask_email(to_email),
                host=self.smtp_host,
                error_type=type(e).__name__,
                error=str(e),
            )
            return EmailResult(success=False, error=type(e).__name__)
        except (ssl.SSLError, OSError) as e:
            logger.error(
                "email_connect_failed",
                to=mask_email(to_email),
                host=self.smtp_host,
                port=self.smtp_port,
                error_type=type(e).__name__,
                error=str(e),
            )
            return EmailResult(success=False, error="smtp connection failed")

    def send_access_code(
        self,
        to_email: str,
        code: str,
        *,
        expiry_minutes: int,
        remaining_attempts: int,
        attempt_limit: int,
    ) -> EmailResult:
        """Send a one-time access code."""
        subject = "Your Access Code"
        safe_code = escape(code)

        html_body = f"""
<!DOCTYPE html>
<html>
<head>
    <meta charset="utf-8">
    <style>
        body {{ font-family: -apple-system, BlinkMacSystemFont, 'Segoe UI', Roboto, sans-serif; line-height: 1.6; color: #1f2933; }}
        .container {{ max-width: 600px; margin: 0 auto; padding: 40px 20px; }}
        .code {{ font-size: 32px; letter-spacing: 8px; font-weight: 700; background: #f3f4f6; padding: 16px 24px; border-radius: 8px; display: inline-block; }}
        .footer {{ margin-top: 40px; font-size: 12px; color: #5b6470; }}
    </style>
</head>
<body>
    <div class="container">
        <h1>Your access code</h1>
        <p>Use this code to sign in to the studio dashboard:</p>
        <p class="code">{safe_code}</p>
        <p>This code expires in {expiry_minutes} minutes.</p>
        <p>Remaining attempts: {remaining_attempts}/{attempt_limit}</p>
        <div class="footer">
            <p>If you didn't request this code, you can safely ignore this email.</p>
            <p>{escape(self.from_name)}</p>
        </div>
    </div>
</body>
</html>
"""

        text_body = f"""Your access code: {code}

This code expires in {expiry_minutes} minutes.
Remaining attempts: {remaining_attempts}/{attempt_limit}

If you didn't request this code, you can safely ignore this email.

---
{self.from_name}
"""

        return self.send(to_email, subject, html_body, text_body)
