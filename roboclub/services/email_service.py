"""
Email delivery over SMTP
"""
import smtplib
import logging
from dataclasses import dataclass
from typing import Optional
from email.mime.text import MIMEText
from email.mime.multipart import MIMEMultipart

from jinja2 import Environment, BaseLoader

from roboclub.config import get_settings
from roboclub.models.otp_code import OtpPurpose


settings = get_settings()
logger = logging.getLogger(__name__)

_jinja = Environment(loader=BaseLoader(), autoescape=True)


@dataclass
class DispatchResult:
    """Outcome of handing a code to the notification channel"""
    success: bool
    error: Optional[str] = None


def send_email(to_email: str, subject: str, html_content: str, text_content: Optional[str] = None) -> DispatchResult:
    """
    Send one email (blocking, run it off the event loop)
    """
    if not settings.smtp_user or not settings.smtp_password:
        logger.warning("Email service not configured, skipping send")
        return DispatchResult(success=False, error="email service not configured")

    try:
        msg = MIMEMultipart('alternative')
        msg['Subject'] = subject
        msg['From'] = f"{settings.email_from_name} <{settings.smtp_user}>"
        msg['To'] = to_email

        if settings.email_reply_to:
            msg['Reply-To'] = settings.email_reply_to

        if text_content:
            msg.attach(MIMEText(text_content, 'plain', 'utf-8'))
        msg.attach(MIMEText(html_content, 'html', 'utf-8'))

        smtp_host = settings.smtp_host
        smtp_port = settings.smtp_port

        if smtp_port == 465:
            server = smtplib.SMTP_SSL(smtp_host, smtp_port, timeout=20)
        else:
            server = smtplib.SMTP(smtp_host, smtp_port, timeout=20)
            server.ehlo()
            server.starttls()
            server.ehlo()

        with server:
            server.login(settings.smtp_user, settings.smtp_password)
            server.sendmail(settings.smtp_user, [to_email], msg.as_string())

        logger.info("Email sent successfully to %s", sanitize_log_input(to_email))
        return DispatchResult(success=True)
    except (smtplib.SMTPException, OSError) as e:
        # exception text can echo SMTP credentials
        logger.error("Failed to send email to %s: %s", sanitize_log_input(to_email), type(e).__name__)
        return DispatchResult(success=False, error=type(e).__name__)


def sanitize_log_input(email: str) -> str:
    """Strip control characters from an address before logging it"""
    if not email:
        return "(empty)"
    return ''.join(char for char in email if char.isprintable())[:100]


# ============================================================================
# Templates
# ============================================================================

_LAYOUT = """
<table width="100%" cellpadding="0" cellspacing="0" role="presentation" style="background-color: #0f172a; padding: 20px;">
    <tr>
        <td align="center">
            <table width="500" cellpadding="0" cellspacing="0" role="presentation" style="background-color: #ffffff; border-radius: 16px;">
                <tr>
                    <td style="padding: 32px 24px; font-family: 'Helvetica Neue', Helvetica, Arial, sans-serif; color: #1f2937;">
                        <h1 style="margin: 0 0 12px; font-size: 22px; color: #2563eb;">{{ title }}</h1>
                        <p style="margin: 0 0 16px; font-size: 15px;">Hi {{ name or "there" }},</p>
                        <p style="margin: 0 0 16px; font-size: 14px; color: #4b5563;">{{ intro }}</p>
                        <p style="margin: 24px 0; padding: 20px; text-align: center; font-family: 'Courier New', monospace; font-size: 32px; letter-spacing: 8px; font-weight: 700; background-color: #eff6ff; border: 2px dashed #2563eb; border-radius: 12px;">{{ code }}</p>
                        <p style="margin: 0 0 16px; font-size: 14px;">This code will expire in <strong>{{ expire_minutes }} minutes</strong>.</p>
                        <p style="margin: 0; font-size: 13px; color: #6b7280;">{{ footer }}</p>
                    </td>
                </tr>
            </table>
        </td>
    </tr>
</table>
"""

_PURPOSE_COPY = {
    OtpPurpose.REGISTRATION: {
        "subject": "Welcome to GROBOTS - verify your email",
        "title": "Welcome to GROBOTS!",
        "intro": "Use the verification code below to finish creating your GROBOTS account.",
        "footer": "If you didn't request this code, you can ignore this email.",
    },
    OtpPurpose.LOGIN: {
        "subject": "GROBOTS login verification",
        "title": "GROBOTS login verification",
        "intro": "Someone is trying to sign in to your GROBOTS account.",
        "footer": "If this wasn't you, change your password and contact the club team.",
    },
    OtpPurpose.PASSWORD_RESET: {
        "subject": "GROBOTS password reset",
        "title": "Password reset request",
        "intro": "Enter this code on the password reset page, then choose a new password.",
        "footer": "If you didn't request a reset, you can ignore this email.",
    },
}


def render_otp_email(code: str, purpose: OtpPurpose, name: str = "") -> tuple[str, str, str]:
    """Subject, HTML body and plain-text body for a code email"""
    copy = _PURPOSE_COPY.get(OtpPurpose(purpose), _PURPOSE_COPY[OtpPurpose.REGISTRATION])
    html = _jinja.from_string(_LAYOUT).render(
        code=code,
        name=name,
        expire_minutes=settings.otp_expire_minutes,
        **{k: v for k, v in copy.items() if k != "subject"},
    )
    text = (
        f"Your GROBOTS verification code is {code}. "
        f"It expires in {settings.otp_expire_minutes} minutes."
    )
    return copy["subject"], html, text


def send_otp_email(to_email: str, code: str, purpose: OtpPurpose, name: str = "") -> DispatchResult:
    """Notification channel used by the OTP issuer"""
    subject, html, text = render_otp_email(code, purpose, name)
    return send_email(to_email, subject, html, text)
