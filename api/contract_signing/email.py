import os
import logging
import smtplib
from email.message import EmailMessage
from email.utils import formataddr
from html import escape

logger = logging.getLogger(__name__)

SMTP_HOST = os.getenv("EMAIL_HOST", "smtp.gmail.com")
SMTP_PORT = int(os.getenv("EMAIL_PORT", "587"))
SMTP_USER = os.getenv("EMAIL_USER")
SMTP_PASSWORD = os.getenv("EMAIL_PASSWORD")
DEFAULT_SENDER = os.getenv("EMAIL_SENDER", SMTP_USER or "noreply@example.com")
DEFAULT_SENDER_NAME = os.getenv("EMAIL_SENDER_NAME", "Contract Signing")

def smtp_configured() -> bool:
    return bool(SMTP_USER and SMTP_PASSWORD)

def send_email(
    to: str,
    subject: str,
    body: str,
    html_body: str | None = None,
    sender_name: str | None = None,
):
    display_name = (sender_name or DEFAULT_SENDER_NAME).strip()
    from_value = formataddr((display_name, DEFAULT_SENDER)) if display_name else DEFAULT_SENDER
    if smtp_configured():
        msg = EmailMessage()
        msg["From"] = from_value
        msg["To"] = to
        msg["Subject"] = subject
        msg.set_content(body or "")
        if html_body:
            msg.add_alternative(html_body, subtype="html")
        with smtplib.SMTP(SMTP_HOST, SMTP_PORT) as smtp:
            smtp.starttls()
            smtp.login(SMTP_USER, SMTP_PASSWORD)
            smtp.send_message(msg)
    else:
        logger.info("EMAIL (stub) from=%s to=%s subject=%s\n%s", from_value, to, subject, body)

def send_otp_email(to: str, code: str, ttl_minutes: int = 10) -> bool:
    subject = "Your signing code"
    text_body = f"""Your one-time code for signing the document is: {code}

It expires in {ttl_minutes} minutes. If you did not request it, ignore this email.
"""
    html_body = f"""
<html>
  <body style="font-family: -apple-system, BlinkMacSystemFont, 'Segoe UI', sans-serif; background: #f5f6f8; padding: 24px;">
    <div style="max-width: 520px; margin: 0 auto; background: #ffffff; border-radius: 12px; padding: 24px;">
      <h2 style="margin-top: 0; font-size: 20px; color: #0f172a;">Your signing code</h2>
      <p style="font-size: 14px; color: #1e293b;">Your one-time code for signing the document is:</p>
      <p style="font-size: 28px; letter-spacing: 6px; font-weight: 600; color: #0f172a;">{escape(code)}</p>
      <p style="font-size: 12px; color: #64748b;">It expires in {ttl_minutes} minutes.</p>
    </div>
  </body>
</html>
"""
    try:
        send_email(to, subject, text_body, html_body=html_body)
    except (smtplib.SMTPException, OSError) as exc:
        logger.error("Sending OTP email to %s failed: %s", to, exc)
        return False
    return True
