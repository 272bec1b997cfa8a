import logging
import smtplib
from email.message import EmailMessage

from . import config

logger = logging.getLogger("omw.mail")


def send_email(to: str, subject: str, body: str) -> bool:
    """
    Send a plain-text email over SMTP (STARTTLS when a user is configured).

    Without SMTP_HOST the message is only logged, which is what dev and test
    environments rely on. Delivery failures are logged and reported as False;
    callers treat mail as best effort.
    """
    if not config.SMTP_HOST:
        logger.info("mail disabled, would send %r to %s", subject, to)
        return False
    msg = EmailMessage()
    msg["From"] = config.EMAIL_FROM
    msg["To"] = to
    msg["Subject"] = subject
    msg.set_content(body)
    try:
        with smtplib.SMTP(config.SMTP_HOST, config.SMTP_PORT, timeout=10) as server:
            if config.SMTP_USER:
                server.starttls()
                server.login(config.SMTP_USER, config.SMTP_PASSWORD)
            server.send_message(msg)
    except (smtplib.SMTPException, OSError):
        logger.exception("failed to send %r to %s", subject, to)
        return False
    return True


def send_verification_email(to: str, name: str, token: str) -> bool:
    link = f"{config.FRONTEND_URL}/verify-email?token={token}"
    body = (
        f"Hi {name},\n\n"
        "Please confirm your email address to activate your OMW account:\n"
        f"{link}\n\n"
        "The link is valid for 24 hours."
    )
    return send_email(to, "Verify your email", body)


def send_password_reset_email(to: str, name: str, token: str) -> bool:
    link = f"{config.FRONTEND_URL}/reset-password?token={token}"
    body = (
        f"Hi {name},\n\n"
        "We received a request to reset your password. Use this link within one hour:\n"
        f"{link}\n\n"
        "If you did not ask for this you can ignore this email."
    )
    return send_email(to, "Reset your password", body)
