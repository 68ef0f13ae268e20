from __future__ import annotations

import html
import smtplib
import ssl
from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText
from typing import Any, Dict, Mapping, Optional, Tuple

from harmonia.config import Settings
from harmonia.logging import get_logger, mask_email

logger = get_logger(__name__)

_LAYOUT = """<!DOCTYPE html>
<html>
<head>
    <meta charset="utf-8">
    <style>
        body {{ font-family: -apple-system, BlinkMacSystemFont, 'Segoe UI', Roboto, sans-serif; line-height: 1.6; color: #1f2933; }}
        .container {{ max-width: 600px; margin: 0 auto; padding: 40px 20px; }}
        .code {{ font-size: 28px; letter-spacing: 6px; font-weight: 700; }}
        .footer {{ margin-top: 40px; font-size: 12px; color: #5b6470; }}
    </style>
</head>
<body>
    <div class="container">
{body}
        <div class="footer"><p>{app_name}</p></div>
    </div>
</body>
</html>
"""

# name -> (html body fragment, text body); both formatted with the send context
TEMPLATES: Dict[str, Tuple[str, str]] = {
    "register": (
        """        <h1>Activate your account</h1>
        <p>Hi {name}, use the code below to verify your email address:</p>
        <p class="code">{code}</p>
        <p>The code expires in {expires_minutes} minutes.</p>""",
        """Activate your account

Hi {name}, use the code below to verify your email address:

    {code}

The code expires in {expires_minutes} minutes.
""",
    ),
    "password_changed": (
        """        <h1>Your password was changed</h1>
        <p>Hi {name}, the password of your account was just changed.</p>
        <p>If you didn't make this change, please contact support immediately.</p>""",
        """Your password was changed

Hi {name}, the password of your account was just changed.

If you didn't make this change, please contact support immediately.
""",
    ),
}


class _SafeContext(dict):
    def __missing__(self, key: str) -> str:
        return ""


class EmailService:
    """Transactional mail over SMTP with named templates.

    Falls back to logging the rendered mail when SMTP is not configured.
    ``send`` never raises; delivery failures are logged and reported as
    ``False``.
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
        from_name: str = "Harmonia",
        timeout: float = 30.0,
    ) -> None:
        self.smtp_host = smtp_host
        self.smtp_port = smtp_port
        self.smtp_user = smtp_user
        self.smtp_password = smtp_password
        self.smtp_use_tls = smtp_use_tls
        self.from_email = from_email or smtp_user
        self.from_name = from_name
        self.timeout = timeout

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
        )

    @property
    def is_configured(self) -> bool:
        return bool(self.smtp_host and self.from_email)

    def render(self, template: str, context: Mapping[str, Any]) -> Tuple[str, str]:
        """Return ``(html, text)`` for a named template; unknown names raise ``KeyError``."""
        html_fragment, text_body = TEMPLATES[template]
        raw = _SafeContext({k: str(v) for k, v in context.items()})
        escaped = _SafeContext({k: html.escape(v) for k, v in raw.items()})
        body = html_fragment.format_map(escaped)
        return (
            _LAYOUT.format(body=body, app_name=html.escape(self.from_name)),
            text_body.format_map(raw) + f"\n---\n{self.from_name}\n",
        )

    def send(self, to: str, subject: str, template: str, context: Mapping[str, Any]) -> bool:
        try:
            html_body, text_body = self.render(template, context)
        except KeyError:
            logger.error("email_unknown_template", template=template)
            return False
        return self._send_email(to, subject, html_body, text_body)

    def _send_email(self, to_email: str, subject: str, html_body: str, text_body: str) -> bool:
        if not self.is_configured:
            # Dev mode: log the email instead of sending
            logger.info(
                "email_dev_mode",
                to=mask_email(to_email),
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

        try:
            context = ssl.create_default_context()
            if self.smtp_use_tls:
                with smtplib.SMTP(self.smtp_host, self.smtp_port, timeout=self.timeout) as server:
                    server.starttls(context=context)
                    self._login(server)
                    server.sendmail(self.from_email, to_email, msg.as_string())
            else:
                with smtplib.SMTP_SSL(
                    self.smtp_host, self.smtp_port, context=context, timeout=self.timeout
                ) as server:
                    self._login(server)
                    server.sendmail(self.from_email, to_email, msg.as_string())
        except smtplib.SMTPAuthenticationError as e:
            logger.error("email_auth_failed", host=self.smtp_host, smtp_code=e.smtp_code, error=str(e))
            return False
        except smtplib.SMTPRecipientsRefused as e:
            logger.error("email_recipient_refused", to=mask_email(to_email), error=str(e))
            return False
        except smtplib.SMTPException as e:
            logger.error(
                "email_smtp_error",
                to=mask_email(to_email),
                host=self.smtp_host,
                error_type=type(e).__name__,
                error=str(e),
            )
            return False
        except (ssl.SSLError, OSError) as e:
            logger.error(
                "email_connect_failed",
                host=self.smtp_host,
                port=self.smtp_port,
                error_type=type(e).__name__,
                error=str(e),
            )
            return False

        logger.info("email_sent", to=mask_email(to_email), subject=subject)
        return True

    def _login(self, server: smtplib.SMTP) -> None:
        if self.smtp_user and self.smtp_password:
            server.login(self.smtp_user, self.smtp_password)
