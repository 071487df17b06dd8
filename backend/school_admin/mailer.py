import logging
import smtplib
from email.mime.text import MIMEText
from urllib.parse import urlencode

from .config import settings

logger = logging.getLogger(__name__)


class MailDispatchError(Exception):
    pass


def verification_link(email: str, token: str) -> str:
    query = urlencode({"email": email, "token": token})
    return f"{settings.verification_link_base.rstrip('/')}/auth/verify?{query}"


def send_verification_email(*, recipient_email: str, token: str) -> bool:
    """Send the sign-up confirmation link.

    Returns False when the message was only logged because SMTP is not
    configured and the console fallback is enabled.
    """
    link = verification_link(recipient_email, token)
    if not settings.smtp_username or not settings.smtp_password:
        if settings.allow_console_mail_fallback:
            logger.warning(f"SMTP not configured, verification link for {recipient_email}: {link}")
            return False
        raise MailDispatchError("SMTP credentials are missing")

    body = (
        "Confirm your school dashboard account by opening the link below:\n\n"
        f"{link}\n\n"
        f"The link expires in {settings.verification_exp_hours} hours."
    )
    msg = MIMEText(body)
    msg["Subject"] = "Confirm your account"
    msg["From"] = settings.smtp_username
    msg["To"] = recipient_email

    try:
        with smtplib.SMTP(settings.smtp_host, settings.smtp_port, timeout=15) as server:
            server.starttls()
            server.login(settings.smtp_username, settings.smtp_password.replace(" ", ""))
            server.sendmail(settings.smtp_username, [recipient_email], msg.as_string())
    except (smtplib.SMTPException, OSError) as exc:
        raise MailDispatchError(f"Failed to send verification email: {exc}") from exc
    return True
