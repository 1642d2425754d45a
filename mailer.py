"""Transactional email via SMTP.

Credentials come from settings (SMTP_HOST, SMTP_PORT, EMAIL_USER,
EMAIL_PASSWORD). The password is never logged.
"""
import html
import logging
import smtplib
from datetime import datetime
from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText
from typing import Iterable, Optional

from config import settings

logger = logging.getLogger(__name__)

_FOOTER = (
    '<hr style="margin-top: 30px;">'
    '<p style="font-size: 12px; color: #888;">This is an automated message, please do not reply.</p>'
)


def is_configured() -> bool:
    return bool(settings.smtp_host and settings.email_user)


def send_email(to: str, subject: str, html_body: str) -> bool:
    """Send one HTML email. Returns False instead of raising on failure."""
    if not is_configured():
        logger.warning("Email not configured (missing SMTP_HOST/EMAIL_USER); dropping '%s' to %s", subject, to)
        return False

    msg = MIMEMultipart("alternative")
    msg["Subject"] = subject
    msg["From"] = settings.email_user
    msg["To"] = to
    msg.attach(MIMEText(html_body, "html"))

    try:
        with smtplib.SMTP(settings.smtp_host, settings.smtp_port, timeout=15) as server:
            server.starttls()
            if settings.email_password:
                server.login(settings.email_user, settings.email_password)
            server.sendmail(settings.email_user, [to], msg.as_string())
    except (smtplib.SMTPException, OSError) as e:
        logger.error("Email send to %s failed: %s", to, e)
        return False
    logger.info("Email '%s' sent to %s", subject, to)
    return True


def _link(url: str) -> str:
    url = html.escape(url, quote=True)
    return f'<a href="{url}">{url}</a>'


def verification_email(link: str) -> str:
    return f"<p>Click the link to verify your account:</p>{_link(link)}"


def reset_email(link: str) -> str:
    return f"<p>Click the link to reset your password:</p>{_link(link)}"


def _titles(game_titles: Iterable[str]) -> str:
    return html.escape(", ".join(t for t in game_titles if t) or "N/A")


def _when(date: datetime) -> str:
    return date.strftime("%d/%m/%Y %H:%M")


def order_success_email(username: str, order_id: str, total: float, date: datetime,
                        orders_url: str, game_titles: Iterable[str]) -> str:
    return f"""
  <div style="font-family: Arial, sans-serif; color: #333; padding: 20px;">
    <h2 style="color: #28a745;">Order completed successfully!</h2>
    <p>Hi <strong>{html.escape(username)}</strong>,</p>
    <p>Thanks for your purchase! Your order has been recorded.</p>
    <h3 style="color: #007bff;">Order details</h3>
    <ul>
      <li><strong>Games:</strong> {_titles(game_titles)}</li>
      <li><strong>Order ID:</strong> {html.escape(order_id)}</li>
      <li><strong>Total:</strong> &euro; {total:.2f}</li>
      <li><strong>Date:</strong> {_when(date)}</li>
    </ul>
    <p>You can review your orders <a href="{html.escape(orders_url, quote=True)}" target="_blank">here</a>.</p>
    {_FOOTER}
  </div>
"""


def order_failure_email(username: str, order_id: Optional[str], date: datetime,
                        game_titles: Iterable[str]) -> str:
    order_id = html.escape(order_id or "N/A")
    return f"""
  <div style="font-family: Arial, sans-serif; color: #333; padding: 20px;">
    <h2 style="color: #dc3545;">Payment failed - order not completed</h2>
    <p>Hi <strong>{html.escape(username)}</strong>,</p>
    <p>Your order <strong>{order_id}</strong> could not be completed.</p>
    <h3 style="color: #007bff;">Order details</h3>
    <ul>
      <li><strong>Games:</strong> {_titles(game_titles)}</li>
      <li><strong>Order ID:</strong> {order_id}</li>
      <li><strong>Attempted:</strong> {_when(date)}</li>
    </ul>
    <p>Please try again with a valid payment method.</p>
    {_FOOTER}
  </div>
"""
