import smtplib
from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText
from email.utils import make_msgid
from html import escape
from typing import Any, Callable, Optional, Tuple

from config import SmtpSettings
from errors import DispatchError
from log_utils import setup_logger
from market_models import parse_number
from quota import QuotaCounters

__all__ = ["EMAIL_QUOTA_KEY", "EmailSender", "render_alert_email"]

logger = setup_logger(__name__)

EMAIL_QUOTA_KEY = "email"


def _format_currency(value: Any) -> str:
    number = parse_number(value)
    if number is None:
        return "N/A"
    if abs(number) >= 1:
        return f"${number:,.2f}"
    formatted = f"{number:,.8f}".rstrip("0")
    return f"${formatted}" if not formatted.endswith(".") else f"${formatted}00"


def _format_confidence(value: Any) -> str:
    number = parse_number(value)
    if number is None:
        return "N/A"
    return f"{number * 100:.1f}%"


def _format_text(value: Any) -> str:
    text = str(value if value is not None else "").strip()
    if not text:
        return "N/A"
    return escape(text).replace("\n", "<br>")


def render_alert_email(
    *,
    asset_id: str,
    name: Optional[str],
    action: str,
    confidence: float,
    price: Any,
    reason: str,
) -> Tuple[str, str]:
    """Return ``(subject, html_body)`` for a signal alert."""

    ticker = asset_id.upper()
    subject = f"Signal Alert — {action} {ticker}"
    body = f"""
    <html>
      <body style="font-family: 'Segoe UI', Arial, sans-serif; background:#0e1116; padding:24px; color:#f8fafc;">
        <div style="max-width:640px;margin:0 auto;">
          <h1 style="color:#00ff88;margin-bottom:16px;">{escape(subject)}</h1>
          <p style="margin-bottom:12px;">Asset: <strong>{_format_text(name or asset_id)} ({escape(ticker)})</strong></p>
          <p style="margin-bottom:12px;">Market Price: <strong>{_format_currency(price)}</strong></p>
          <p style="margin-bottom:12px;">Confidence: <strong>{_format_confidence(confidence)}</strong></p>
          <p style="margin-bottom:12px;">Reason:</p>
          <blockquote style="border-left:4px solid #00ff88;padding-left:12px;color:#e2e8f0;">{_format_text(reason)}</blockquote>
        </div>
      </body>
    </html>
    """
    return subject, body


class EmailSender:
    """SMTP delivery guarded by the daily email quota."""

    def __init__(
        self,
        settings: SmtpSettings,
        *,
        quota: Optional[QuotaCounters] = None,
        smtp_factory: Callable[..., smtplib.SMTP] = smtplib.SMTP,
    ) -> None:
        self.settings = settings
        self.quota = quota
        self._smtp_factory = smtp_factory

    def send(self, to: str, subject: str, html_body: str) -> str:
        """Send one HTML email and return its Message-ID.

        Raises ``DispatchError`` for a missing recipient, missing credentials
        or an SMTP failure; ``DailyLimitExceededError`` when the daily cap is
        reached, before any connection is opened.
        """

        if not to:
            raise DispatchError(None, "Recipient email missing")
        if not self.settings.address or not self.settings.password:
            raise DispatchError(to, "SMTP credentials missing")
        if self.quota is not None:
            self.quota.touch(EMAIL_QUOTA_KEY)

        msg = MIMEMultipart()
        msg["From"] = self.settings.address
        msg["To"] = to
        msg["Subject"] = subject
        delivery_id = make_msgid()
        msg["Message-ID"] = delivery_id
        msg.attach(MIMEText(html_body, "html"))

        logger.info("[Mail] Sending alert to %s", to)
        try:
            server = self._smtp_factory(self.settings.server, self.settings.port, timeout=30)
            try:
                server.starttls()
                server.login(self.settings.address, self.settings.password)
                server.send_message(msg)
            finally:
                server.quit()
        except (smtplib.SMTPException, OSError) as exc:
            logger.error("Alert email to %s failed: %s", to, exc)
            raise DispatchError(to, f"Alert email dispatch failed: {exc}") from exc

        logger.info("Alert email dispatched to %s (%s)", to, delivery_id)
        return delivery_id
