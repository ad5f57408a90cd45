from datetime import datetime
from html import escape
from typing import Optional, Tuple

from email.utils import formataddr

from core.config import EmailSettings
from utils.email import OutgoingEmail


def render_otp_email(otp: str, user_name: Optional[str], expiry_minutes: int, app_name: str) -> Tuple[str, str, str]:
    """Return (subject, html, text) for the password reset code email."""
    greeting_name = user_name or "there"
    subject = f"Password Reset Code - {app_name}"
    text = (
        f"Hi {greeting_name},\n\n"
        f"We received a request to reset your {app_name} password.\n\n"
        f"Your password reset code is: {otp}\n\n"
        f"This code expires in {expiry_minutes} minutes. "
        f"Do not share it with anyone.\n\n"
        f"If you did not request a password reset, you can safely ignore this email. "
        f"Your password will not change.\n\n"
        f"- {app_name} Team"
    )
    year = datetime.utcnow().year
    html = f"""
    <div style='font-family: "Segoe UI", Arial, sans-serif; background: #f8fafc; padding: 40px 20px;'>
      <div style='max-width: 520px; margin: 0 auto; background: #ffffff; border: 2px solid #e2e8f0; border-radius: 24px; overflow: hidden;'>
        <div style='height: 5px; background: linear-gradient(90deg, #10b981 0%, #3b82f6 100%);'></div>
        <div style='padding: 32px;'>
          <h2 style='margin: 0 0 8px 0; color: #1e293b;'>Reset your password</h2>
          <p style='color: #475569; line-height: 1.5;'>Hi {escape(greeting_name)},</p>
          <p style='color: #475569; line-height: 1.5;'>Use the code below to reset your {escape(app_name)} password. It expires in <strong>{expiry_minutes} minutes</strong>.</p>
          <div style='margin: 24px 0; padding: 20px; text-align: center; background: #f0fdf4; border: 2px solid rgba(16, 185, 129, 0.2); border-radius: 16px;'>
            <span style='font-size: 32px; font-weight: 700; letter-spacing: 8px; color: #0f172a;'>{escape(otp)}</span>
          </div>
          <p style='color: #64748b; font-size: 13px; line-height: 1.5;'>Never share this code. If you did not request a password reset, you can safely ignore this email.</p>
        </div>
      </div>
      <p style='text-align: center; color: #94a3b8; font-size: 12px;'>&copy; {year} {escape(app_name)}</p>
    </div>
    """
    return subject, html, text


def build_otp_email(
    to_email: str,
    otp: str,
    user_name: Optional[str],
    expiry_minutes: int,
    email_settings: Optional[EmailSettings] = None,
) -> OutgoingEmail:
    email_settings = email_settings or EmailSettings()
    app_name = email_settings.SMTP_FROM_NAME or "ECOTEC System"
    subject, html, text = render_otp_email(otp, user_name, expiry_minutes, app_name)
    return OutgoingEmail(
        sender=formataddr((app_name, email_settings.from_address)),
        to=to_email,
        subject=subject,
        html=html,
        text=text,
    )
