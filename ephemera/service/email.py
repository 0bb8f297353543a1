from __future__ import annotations

import smtplib
import ssl
from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText
from typing import Optional

from ephemera.logging import get_logger

logger = get_logger(__name__)

_STYLE = """
        body { font-family: -apple-system, BlinkMacSystemFont, 'Segoe UI', Roboto, sans-serif; line-height: 1.6; color: #1f2933; }
        .container { max-width: 560px; margin: 0 auto; padding: 40px 20px; }
        .code { font-size: 28px; letter-spacing: 6px; font-weight: 700; }
        .button { display: inline-block; background: #5b4bdb; color: white; padding: 12px 24px; border-radius: 8px; text-decoration: none; font-weight: 600; }
        .footer { margin-top: 40px; font-size: 12px; color: #5b6470; }
"""


class EmailService:
    """Transactional mail for account verification and password resets.

    When no SMTP host is configured the message is logged instead of sent,
    which is what local development and the test suite rely on.
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
        from_name: str = "Ephemera",
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
        text_body: str,
    ) -> bool:
        """Send one message; returns False instead of raising on SMTP failures."""
        recipient = self._redact_email(to_email)
        if not self.is_configured:
            logger.info(
                "email_dev_mode",
                recipient=recipient,
                subject=subject,
                body_preview=text_body[:200],
            )
            return True

        msg = MIMEMultipart("alternative")
        msg["Subject"] = subject
        msg["From"] = f"{self.from_name} <{self.from_email}>"
        msg["To"] = to_email
        msg.attach(MIMEText(text_body, "plain"))
        msg.attach(MIMEText(html_body, "html"))

        context = ssl.create_default_context()
        try:
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
        except smtplib.SMTPAuthenticationError as e:
            logger.error(
                "email_auth_failed",
                recipient=recipient,
                host=self.smtp_host,
                smtp_code=getattr(e, "smtp_code", None),
            )
            return False
        except smtplib.SMTPRecipientsRefused as e:
            logger.error("email_recipient_refused", recipient=recipient, error=str(e))
            return False
        except smtplib.SMTPException as e:
            logger.error(
                "email_smtp_error",
                recipient=recipient,
                host=self.smtp_host,
                error_type=type(e).__name__,
                error=str(e),
            )
            return False
        except (ssl.SSLError, OSError) as e:
            logger.error(
                "email_connect_failed",
                recipient=recipient,
                host=self.smtp_host,
                port=self.smtp_port,
                error_type=type(e).__name__,
                error=str(e),
            )
            return False

        logger.info("email_sent", recipient=recipient, subject=subject)
        return True

    def send_verification_code(self, to_email: str, code: str, ttl_minutes: int) -> bool:
        """Mail the six digit code that confirms the address."""
        subject = "Your Ephemera verification code"
        html_body = f"""
<!DOCTYPE html>
<html>
<head>
    <meta charset="utf-8">
    <style>{_STYLE}</style>
</head>
<body>
    <div class="container">
        <h1>Confirm your email</h1>
        <p>Enter this code in the app to finish setting up your account:</p>
        <p class="code">{code}</p>
        <p>The code expires in {ttl_minutes} minutes.</p>
        <div class="footer"><p>Ephemera</p></div>
    </div>
</body>
</html>
"""
        text_body = f"""Confirm your email

Enter this code in the app to finish setting up your account:

    {code}

The code expires in {ttl_minutes} minutes.

---
Ephemera
"""
        return self._send_email(to_email, subject, html_body, text_body)

    def reset_link(self, token: str) -> str:
        return f"{self.base_url}/auth/reset-password/{token}"

    def send_password_reset(self, to_email: str, token: str, ttl_minutes: int) -> bool:
        reset_url = self.reset_link(token)
        subject = "Reset your Ephemera password"
        html_body = f"""
<!DOCTYPE html>
<html>
<head>
    <meta charset="utf-8">
    <style>{_STYLE}</style>
</head>
<body>
    <div class="container">
        <h1>Reset your password</h1>
        <p>Someone asked to reset the password on your account. If it was you, choose a new one here:</p>
        <p style="margin: 30px 0;"><a href="{reset_url}" class="button">Choose a new password</a></p>
        <p>The link expires in {ttl_minutes} minutes. Resetting signs you out on every device.</p>
        <div class="footer">
            <p>Ephemera</p>
            <p>If the button doesn't work, copy and paste this URL: {reset_url}</p>
        </div>
    </div>
</body>
</html>
"""
        text_body = f"""Reset your Ephemera password

Someone asked to reset the password on your account. If it was you, choose a new one here:

{reset_url}

The link expires in {ttl_minutes} minutes. Resetting signs you out on every device.

---
Ephemera
"""
        return self._send_email(to_email, subject, html_body, text_body)
