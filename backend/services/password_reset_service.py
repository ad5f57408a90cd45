"""
Password recovery with one-time passcodes.

The flow has three steps, each one request:

1. ``request_reset``  issues a 6-digit OTP and emails it (cooldown applies).
2. ``verify_otp``     checks the OTP; on success the same record is turned
                      into a short-lived reset token.
3. ``reset_password`` consumes the reset token and changes the password.

Record state is derived from ``used``, ``attempts``, ``phase`` and
``expires_at``; see ``ResetRecord.state``.
"""
import asyncio
import logging
import math
import secrets
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, Optional

from pydantic import EmailStr, TypeAdapter
from pydantic import ValidationError as PydanticValidationError

from core.config import Settings, settings as default_settings
from core.exceptions import (
    DeliveryError,
    InvalidCodeError,
    InvalidOrExpiredError,
    NotFoundError,
    RateLimitedError,
    StoreError,
    ValidationError,
    WeakPasswordError,
)
from core.security import PasswordPolicy, get_password_hash
from db.password_reset_store import PasswordResetStore, ResetPhase, ResetRecord
from utils.email import EmailDeliveryEngine
from utils.email_templates import build_otp_email
from utils.timing import timeit, utc_now

logger = logging.getLogger(__name__)

GENERIC_RESET_MESSAGE = "If an account with this email exists, you will receive a password reset code."


_email_adapter = TypeAdapter(EmailStr)


def normalize_email(email: Any) -> str:
    """Lower-case and trim; raises ValidationError when missing or malformed."""
    if not isinstance(email, str) or not email.strip():
        raise ValidationError("Email is required")
    email = email.strip()
    try:
        _email_adapter.validate_python(email)
    except PydanticValidationError:
        raise ValidationError("Please provide a valid email") from None
    return email.lower()


def normalize_otp(otp: Any, length: int = 6) -> str:
    code = str(otp).strip()
    if len(code) != length or not (code.isascii() and code.isdigit()):
        raise ValidationError(f"OTP must be {length} digits")
    return code


def generate_otp(length: int = 6) -> str:
    low = 10 ** (length - 1)
    return str(low + secrets.randbelow(9 * low))


def generate_reset_token(num_bytes: int = 32) -> str:
    return secrets.token_hex(num_bytes)


class PasswordResetService:

    def __init__(
        self,
        store: PasswordResetStore,
        email_engine: EmailDeliveryEngine,
        config: Optional[Settings] = None,
        policy: Optional[PasswordPolicy] = None,
        clock: Callable[[], datetime] = utc_now,
    ):
        self.store = store
        self.email_engine = email_engine
        self.config = config or default_settings
        self.policy = policy or PasswordPolicy.from_settings(self.config)
        self.clock = clock

    @property
    def otp_ttl(self) -> timedelta:
        return timedelta(minutes=self.config.OTP_EXPIRY_MINUTES)

    @property
    def reset_token_ttl(self) -> timedelta:
        return timedelta(minutes=self.config.RESET_TOKEN_EXPIRY_MINUTES)

    def _generic_response(self) -> Dict[str, Any]:
        # Same body whether or not the account exists
        return {
            "success": True,
            "message": GENERIC_RESET_MESSAGE,
            "data": {"expiresIn": int(self.otp_ttl.total_seconds())},
        }

    @timeit("request_password_reset")
    async def request_reset(self, email: Any) -> Dict[str, Any]:
        email = normalize_email(email)

        user = await self.store.get_user(email)
        if not user or not user.is_active:
            logger.info("Password reset requested for unknown or inactive account")
            return self._generic_response()

        now = self.clock()
        cooldown = self.config.OTP_COOLDOWN_SECONDS
        recent = await self.store.find_latest_since(email, now - timedelta(seconds=cooldown))
        if recent:
            elapsed = (now - recent.created_at).total_seconds()
            wait_seconds = max(1, min(cooldown, math.ceil(cooldown - elapsed)))
            raise RateLimitedError(
                f"Please wait {wait_seconds} seconds before requesting a new code",
                retry_after=wait_seconds,
            )

        invalidated = await self.store.invalidate_unused(email)
        if invalidated:
            logger.info(f"Invalidated {invalidated} earlier reset record(s) for {email}")

        otp = generate_otp(self.config.OTP_LENGTH)
        record = await self.store.create(email, otp, now + self.otp_ttl, now)
        logger.info(f"Issued password reset OTP record {record.id} for {email}")

        message = build_otp_email(email, otp, user.name, self.config.OTP_EXPIRY_MINUTES)
        try:
            result = await self.email_engine.send(message)
            logger.info(f"Password reset OTP email sent to {email} via {result.provider}")
        except DeliveryError as exc:
            if self.config.is_production:
                logger.error(f"Failed to send password reset email to {email}: {exc.message}")
                raise DeliveryError("Failed to send reset email. Please try again later.") from exc
            logger.warning(f"Password reset email not delivered ({exc.message}); using log fallback")

        if not self.config.is_production:
            logger.info(f"[DEV MODE] Password reset OTP for {email}: {otp}")

        return self._generic_response()

    async def resend_otp(self, email: Any) -> Dict[str, Any]:
        """Issue a fresh OTP; identical rules to ``request_reset``."""
        return await self.request_reset(email)

    async def _burned_recently(self, email: str, now: datetime) -> bool:
        latest = await self.store.find_latest_since(email, now - self.otp_ttl)
        return bool(
            latest
            and latest.used
            and latest.phase == ResetPhase.OTP
            and latest.attempts >= self.config.OTP_MAX_ATTEMPTS
            and latest.expires_at >= now
        )

    async def _burn(self, record: ResetRecord) -> None:
        await self.store.mark_used(record)
        logger.warning(f"Reset record {record.id} for {record.email} burned after too many attempts")

    @timeit("verify_otp")
    async def verify_otp(self, email: Any, otp: Any) -> Dict[str, Any]:
        if email is None or otp is None or not str(otp).strip():
            raise ValidationError("Email and OTP are required")
        email = normalize_email(email)
        code = normalize_otp(otp, self.config.OTP_LENGTH)
        max_attempts = self.config.OTP_MAX_ATTEMPTS
        now = self.clock()

        record = await self.store.find_latest_active(email, now, ResetPhase.OTP)
        if not record:
            if await self._burned_recently(email, now):
                raise RateLimitedError("Too many failed attempts. Please request a new code.")
            raise InvalidOrExpiredError("Invalid or expired OTP. Please request a new code.")

        if record.attempts >= max_attempts:
            await self._burn(record)
            raise RateLimitedError("Too many failed attempts. Please request a new code.")

        if not secrets.compare_digest(record.code.encode("utf-8"), code.encode("utf-8")):
            attempts = await self.store.increment_attempts(record)
            if attempts >= max_attempts:
                await self._burn(record)
                raise RateLimitedError("Too many failed attempts. Please request a new code.")
            raise InvalidCodeError(max_attempts - attempts)

        token = generate_reset_token(self.config.RESET_TOKEN_BYTES)
        await self.store.promote_to_reset_token(record, token, now + self.reset_token_ttl)
        logger.info(f"OTP verified for {email}; reset token issued on record {record.id}")

        return {
            "success": True,
            "message": "OTP verified successfully",
            "data": {
                "resetToken": token,
                "expiresIn": int(self.reset_token_ttl.total_seconds()),
            },
        }

    @timeit("reset_password")
    async def reset_password(self, email: Any, reset_token: Any, new_password: Any) -> Dict[str, Any]:
        if email is None or not reset_token or not new_password:
            raise ValidationError("Email, reset token, and new password are required")
        if not isinstance(reset_token, str) or not isinstance(new_password, str):
            raise ValidationError("Reset token and new password must be strings")
        email = normalize_email(email)

        errors = self.policy.validate(new_password)
        if errors:
            raise WeakPasswordError(errors)

        record = await self.store.find_active_by_code(email, reset_token.strip(), self.clock(), ResetPhase.RESET_TOKEN)
        if not record:
            raise InvalidOrExpiredError("Invalid or expired reset token. Please restart the process.")

        user = await self.store.get_user(email)
        if not user:
            raise NotFoundError("User not found")

        password_hash = await asyncio.to_thread(get_password_hash, new_password)
        await self.store.complete_reset(user, record, password_hash)
        logger.info(f"Password reset completed for {email} (record {record.id})")

        try:
            deleted = await self.store.delete_stale(email, self.clock())
            logger.debug(f"Removed {deleted} stale reset record(s) for {email}")
        except StoreError as exc:
            logger.warning(f"Reset record cleanup failed for {email}: {exc.message}")

        return {
            "success": True,
            "message": "Password reset successfully. You can now log in with your new password.",
        }
