import logging
import smtplib
import ssl
from email.message import EmailMessage
from typing import Optional

from codeduel.core.config import settings

logger = logging.getLogger("codeduel")


def send_email(to_email: str, subject: str, html: str, text: Optional[str] = None) -> bool:
    """Send one message over SMTP with STARTTLS. Returns False when SMTP is not configured."""
    host = settings.SMTP_HOST
    port = int(settings.SMTP_PORT)
    user = settings.SMTP_USER
    password = settings.SMTP_PASS
    sender = settings.EMAIL_FROM or user or "noreply@codeduel.com"

    if not (host and user and password):
        logger.warning("email.skipped: SMTP not configured; would send %r to %s", subject, to_email)
        return False

    msg = EmailMessage()
    msg["From"] = sender
    msg["To"] = to_email
    msg["Subject"] = subject
    if html:
        msg.set_content(text or "Open in an HTML-capable client.")
        msg.add_alternative(html, subtype="html")
    else:
        msg.set_content(text or "")

    context = ssl.create_default_context()
    with smtplib.SMTP(host, port, timeout=30) as s:
        s.starttls(context=context)
        s.login(user, password)
        s.send_message(msg)

    logger.info("email.sent", extra={"event_type": "email.sent"})
    return True
