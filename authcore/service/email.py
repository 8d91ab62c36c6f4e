from __future__ import annotations

import smtplib
import ssl
from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText
from typing import Optional

from authcore.logging import get_logger

logger = get_logger(__name__)

_HTML_TEMPLATE = """
<!DOCTYPE html>
<html>
<head>
    <meta charset="utf-8">
    <style>
        body {{ font-family: -apple-system, BlinkMacSystemFont, 'Segoe UI', Roboto, sans-serif; line-height: 1.6; color: #1f2933; }}
        .container {{ max-width: 600px; margin: 0 auto; padding: 40px 20px; }}
        .code {{ font-size: 32px; letter-spacing: 8px; font-weight: 700; margin: 30px 0; }}
        .footer {{ margin-top: 40px; font-size: 12px; color: #5b6470; }}
    </style>
</head>
<body>
    <div class="container">
        <h1>{heading}</h1>
        <p>{intro}</p>
        <p class="code">{code}</p>
        <p>This code expires in {lifetime}.</p>
        <p>If you didn't request this, you can safely ignore this email.</p>
        <div class="footer"><p>{brand}</p></div>
    </div>
</body>
</html>
"""

_TEXT_TEMPLATE = """{heading}

{intro}

    {code}

This code expires in {lifetime}.

If you didn't request this, you can safely ignore this email.

---
{brand}
"""


def _describe_lifetime(seconds: int) -> str:
    if seconds % 60 == 0:
        minutes = seconds // 60
        return f"{minutes} minute" + ("" if minutes == 1 else "s")
    return f"{seconds} seconds"


class EmailService:
    """Transactional mail for one-time verification codes.

    Falls back to logging when SMTP is not configured (dev mode). Sending is
    blocking; callers on the event loop run it in a worker thread.
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
        from_name: str = "AuthCore",
        timeout_seconds: float = 30.0,
        signup_ttl_seconds: int = 300,
        reset_ttl_seconds: int = 120,
    ) -> None:
        self.smtp_host = smtp_host
        self.smtp_port = smtp_port
        self.smtp_user = smtp_user
        self.smtp_password = smtp_password
        self.smtp_use_tls = smtp_use_tls
        self.from_email = from_email or smtp_user
        self.from_name = from_name
        self.timeout_seconds = timeout_seconds
        self.signup_ttl_seconds = signup_ttl_seconds
        self.reset_ttl_seconds = reset_ttl_seconds

    @property
    def is_configured(self) -> bool:
        return bool(self.smtp_host and self.from_email)

    def _redact_email(self, email: str) -> str:
        """Redact an email address for logging to avoid PII leakage."""
        if "@" not in email:
            return "redacted"
        local, domain = email.split("@", 1)
        return f"{local[:2]}***@{domain}"

    def _deliver(self, msg: MIMEMultipart, to_email: str) -> None:
        context = ssl.create_default_context()
        if self.smtp_use_tls:
            server = smtplib.SMTP(
                self.smtp_host, self.smtp_port, timeout=self.timeout_seconds
            )
        else:
            server = smtplib.SMTP_SSL(
                self.smtp_host,
                self.smtp_port,
                context=context,
                timeout=self.timeout_seconds,
            )
        with server:
            if self.smtp_use_tls:
                server.starttls(context=context)
            if self.smtp_user and self.smtp_password:
                server.login(self.smtp_user, self.smtp_password)
            server.sendmail(self.from_email, to_email, msg.as_string())

    def _send_email(
        self,
        to_email: str,
        subject: str,
        html_body: str,
        text_body: str,
    ) -> bool:
        """Send an email via SMTP. Returns True if sent successfully."""
        redacted = self._redact_email(to_email)
        if not self.is_configured:
            # Subject only: the body holds the code
            logger.info("email_dev_mode", to=redacted, subject=subject)
            return True

        msg = MIMEMultipart("alternative")
        msg["Subject"] = subject
        msg["From"] = f"{self.from_name} <{self.from_email}>"
        msg["To"] = to_email
        msg.attach(MIMEText(text_body, "plain"))
        msg.attach(MIMEText(html_body, "html"))

        logger.debug(
            "email_connecting",
            host=self.smtp_host,
            port=self.smtp_port,
            use_tls=self.smtp_use_tls,
            to=redacted,
        )
        try:
            self._deliver(msg, to_email)
        except smtplib.SMTPAuthenticationError as e:
            logger.error(
                "email_auth_failed",
                to=redacted,
                host=self.smtp_host,
                error=str(e),
                error_code=getattr(e, "smtp_code", None),
            )
            return False
        except smtplib.SMTPRecipientsRefused as e:
            logger.error("email_recipient_refused", to=redacted, error=str(e))
            return False
        except smtplib.SMTPException as e:
            logger.error(
                "email_smtp_error",
                to=redacted,
                host=self.smtp_host,
                error_type=type(e).__name__,
                error=str(e),
            )
            return False
        except ssl.SSLError as e:
            logger.error(
                "email_ssl_error",
                to=redacted,
                host=self.smtp_host,
                port=self.smtp_port,
                error=str(e),
            )
            return False
        except (TimeoutError, OSError) as e:
            logger.error(
                "email_transport_failed",
                to=redacted,
                host=self.smtp_host,
                port=self.smtp_port,
                error_type=type(e).__name__,
                error=str(e),
            )
            return False

        logger.info("email_sent", to=redacted, subject=subject)
        return True

    def _send_code(
        self, to_email: str, *, subject: str, heading: str, intro: str, code: str, ttl: int
    ) -> bool:
        fields = {
            "heading": heading,
            "intro": intro,
            "code": code,
            "lifetime": _describe_lifetime(ttl),
            "brand": self.from_name,
        }
        return self._send_email(
            to_email,
            subject,
            _HTML_TEMPLATE.format(**fields),
            _TEXT_TEMPLATE.format(**fields),
        )

    def send_signup_otp(self, to_email: str, code: str) -> bool:
        """Send the code that confirms a new account's email address."""
        return self._send_code(
            to_email,
            subject=f"Your {self.from_name} verification code",
            heading="Confirm your email",
            intro="Use this code to finish creating your account:",
            code=code,
            ttl=self.signup_ttl_seconds,
        )

    def send_reset_otp(self, to_email: str, code: str) -> bool:
        """Send the code that authorizes a password reset."""
        return self._send_code(
            to_email,
            subject=f"Reset your {self.from_name} password",
            heading="Reset your password",
            intro="Use this code to choose a new password:",
            code=code,
            ttl=self.reset_ttl_seconds,
        )
