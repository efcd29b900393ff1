"""Minimal SMTP sender for one-time password emails.

Settings come from the environment:
  SMTP_ENABLED, SMTP_HOST, SMTP_PORT, SMTP_USERNAME, SMTP_PASSWORD,
  SMTP_STARTTLS (STARTTLS, usually port 587), SMTP_SSL (implicit TLS, port 465),
  SMTP_FROM.

If SMTP is not configured nothing is sent and the code is never written to
the logs.
"""

import logging
import os
import smtplib
from email.message import EmailMessage

from config import env_flag

logger = logging.getLogger(__name__)


def send_email(*, to_email: str, subject: str, body_text: str) -> tuple[bool, str]:
    """Send a plaintext email.

    Returns (ok, info). If SMTP isn't configured, returns (False, "not_configured").
    """
    if not to_email:
        return False, "missing_to"

    enabled = env_flag("SMTP_ENABLED")
    host = os.getenv("SMTP_HOST")
    port = int(os.getenv("SMTP_PORT") or 587)
    username = os.getenv("SMTP_USERNAME")
    password = os.getenv("SMTP_PASSWORD")
    starttls = env_flag("SMTP_STARTTLS", default=True)
    use_ssl = env_flag("SMTP_SSL")
    if port == 465 and not starttls:
        use_ssl = True
    from_email = os.getenv("SMTP_FROM") or "Connectly <no-reply@localhost>"

    if not enabled or not host or not username or not password:
        logger.error("SMTP not configured/enabled; cannot send email (to=%s subject=%s)", to_email, subject)
        return False, "not_configured"

    msg = EmailMessage()
    msg["From"] = from_email
    msg["To"] = to_email
    msg["Subject"] = subject
    msg.set_content(body_text)

    try:
        smtp_cls = smtplib.SMTP_SSL if use_ssl else smtplib.SMTP
        with smtp_cls(host, port, timeout=15) as smtp:
            smtp.ehlo()
            if starttls and not use_ssl:
                smtp.starttls()
                smtp.ehlo()
            smtp.login(username, password)
            smtp.send_message(msg)
        return True, "sent"
    except (smtplib.SMTPException, OSError) as e:
        # body_text carries the code
        logger.warning("SMTP send failed (%s:%s) to=%s subject=%s: %s", host, port, to_email, subject, e)
        return False, f"smtp_error:{type(e).__name__}"
