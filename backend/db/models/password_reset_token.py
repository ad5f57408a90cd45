from sqlalchemy import Column, Integer, String, Boolean, DateTime, Index
from sqlalchemy.sql import func
from db.session import Base


class PasswordResetToken(Base):
    """One password reset attempt.

    ``code`` holds the 6-digit OTP while ``phase`` is ``otp`` and is overwritten
    with the opaque reset token when the OTP is verified (``phase`` becomes
    ``reset_token``). The row keeps its identity across both phases.
    """
    __tablename__ = "password_reset_tokens"

    id = Column(Integer, primary_key=True, autoincrement=True)
    email = Column(String(255), index=True, nullable=False)
    code = Column(String(128), nullable=False)
    phase = Column(String(16), nullable=False, default="otp")
    expires_at = Column(DateTime, nullable=False)
    used = Column(Boolean, nullable=False, default=False)
    attempts = Column(Integer, nullable=False, default=0)
    created_at = Column(DateTime, nullable=False, server_default=func.now())

    __table_args__ = (
        Index("ix_password_reset_email_created", "email", "created_at"),
        Index("ix_password_reset_email_used_expires", "email", "used", "expires_at"),
    )
