"""
Service-level tests for the OTP password recovery flow, run against the SQL
store on a throwaway SQLite database.
"""
from datetime import timedelta
from unittest.mock import AsyncMock, patch

import pytest
from sqlalchemy import delete, select

from core.config import Settings
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
from core.security import PasswordPolicy, verify_password
from db.models.password_reset_token import PasswordResetToken
from db.models.user import User
from db.password_reset_store import ResetPhase, ResetRecord, ResetState
from services.password_reset_service import (
    GENERIC_RESET_MESSAGE,
    PasswordResetService,
    generate_otp,
    generate_reset_token,
    normalize_email,
    normalize_otp,
)

NEW_PASSWORD = "Valid123"


async def _records(db_session, email):
    result = await db_session.execute(
        select(PasswordResetToken)
        .where(PasswordResetToken.email == email)
        .order_by(PasswordResetToken.id)
        .execution_options(populate_existing=True)
    )
    return result.scalars().all()


def _wrong_code(otp: str) -> str:
    return "000000" if otp != "000000" else "111111"


@pytest.mark.unit
class TestHelpers:

    def test_normalize_email(self):
        assert normalize_email("User@Example.com ") == "user@example.com"
        assert normalize_email("  ADMIN@shop.io\t") == "admin@shop.io"

    @pytest.mark.parametrize("value", [None, "", "   ", 42])
    def test_normalize_email_rejects_missing(self, value):
        with pytest.raises(ValidationError):
            normalize_email(value)

    @pytest.mark.parametrize("value", ["foo", "foo@", "@example.com", "a b@example.com"])
    def test_normalize_email_rejects_malformed(self, value):
        with pytest.raises(ValidationError) as exc_info:
            normalize_email(value)
        assert exc_info.value.message == "Please provide a valid email"

    def test_normalize_otp(self):
        assert normalize_otp(" 123456 ") == "123456"
        assert normalize_otp(654321) == "654321"

    @pytest.mark.parametrize("value", ["abc", "12345", "1234567", "12 456", "12345a"])
    def test_normalize_otp_rejects_malformed(self, value):
        with pytest.raises(ValidationError) as exc_info:
            normalize_otp(value)
        assert exc_info.value.message == "OTP must be 6 digits"

    def test_generate_otp_is_six_digits(self):
        for _ in range(200):
            otp = generate_otp(6)
            assert len(otp) == 6
            assert otp.isdigit()
            assert 100000 <= int(otp) <= 999999

    def test_generate_reset_token_has_256_bits(self):
        token = generate_reset_token(32)
        assert len(token) == 64
        int(token, 16)
        assert token != generate_reset_token(32)


@pytest.mark.unit
class TestPasswordPolicy:

    def test_short_password_fails_length(self):
        errors = PasswordPolicy().validate("short1")
        assert "Password must be at least 8 characters" in errors

    def test_lowercase_only_fails_uppercase(self):
        assert PasswordPolicy().validate("alllowercase1") == [
            "Password must contain at least one uppercase letter"
        ]

    def test_missing_digit_fails_number(self):
        assert PasswordPolicy().validate("NoDigitsHere") == [
            "Password must contain at least one number"
        ]

    def test_valid_password_passes(self):
        assert PasswordPolicy().validate("Valid123") == []

    def test_special_char_rule_is_optional(self):
        policy = PasswordPolicy(require_special_char=True)
        assert policy.validate("Valid123") == ["Password must contain at least one special character"]
        assert policy.validate("Valid123!") == []

    def test_reports_every_violation(self):
        errors = PasswordPolicy().validate("abc")
        assert len(errors) == 3

    def test_service_policy_follows_its_config(self):
        config = Settings(PASSWORD_MIN_LENGTH=12, PASSWORD_REQUIRE_SPECIAL_CHAR=True)
        service = PasswordResetService(store=None, email_engine=None, config=config)

        assert service.policy.min_length == 12
        assert service.policy.validate("Valid123") == [
            "Password must be at least 12 characters",
            "Password must contain at least one special character",
        ]


@pytest.mark.service
@pytest.mark.database
class TestRequestReset:

    @pytest.mark.asyncio
    async def test_unknown_email_returns_generic_success_without_record(self, service, db_session, email_engine):
        result = await service.request_reset("nobody@example.com")

        assert result["success"] is True
        assert result["message"] == GENERIC_RESET_MESSAGE
        assert await _records(db_session, "nobody@example.com") == []
        assert email_engine.sent == []

    @pytest.mark.asyncio
    async def test_inactive_user_is_treated_as_unknown(self, service, user_factory, db_session, email_engine):
        user = await user_factory(is_active=False)

        result = await service.request_reset(user.email)

        assert result["message"] == GENERIC_RESET_MESSAGE
        assert await _records(db_session, user.email) == []
        assert email_engine.sent == []

    @pytest.mark.asyncio
    async def test_known_and_unknown_responses_are_identical(self, service, user_factory):
        user = await user_factory()
        known = await service.request_reset(user.email)
        unknown = await service.request_reset("ghost@example.com")
        assert known == unknown

    @pytest.mark.asyncio
    async def test_issues_otp_and_sends_email(self, service, user_factory, db_session, email_engine, clock):
        user = await user_factory(name="Ama Mensah")

        result = await service.request_reset(user.email)

        assert result["data"] == {"expiresIn": 600}
        records = await _records(db_session, user.email)
        assert len(records) == 1
        record = records[0]
        assert record.phase == ResetPhase.OTP.value
        assert record.used is False
        assert record.attempts == 0
        assert record.expires_at == clock.now + timedelta(minutes=10)
        assert record.created_at == clock.now

        assert len(email_engine.sent) == 1
        message = email_engine.sent[0]
        assert message.to == user.email
        assert email_engine.last_otp == record.code
        assert "Ama Mensah" in message.html

    @pytest.mark.asyncio
    async def test_email_is_normalized(self, service, user_factory, db_session):
        await user_factory(email="user@example.com")

        await service.request_reset("User@Example.com ")

        assert len(await _records(db_session, "user@example.com")) == 1

    @pytest.mark.asyncio
    async def test_missing_email_is_rejected(self, service):
        with pytest.raises(ValidationError):
            await service.request_reset("   ")

    @pytest.mark.asyncio
    async def test_malformed_email_is_rejected(self, service, db_session, email_engine):
        with pytest.raises(ValidationError):
            await service.request_reset("foo")
        assert await _records(db_session, "foo") == []
        assert email_engine.sent == []

    @pytest.mark.asyncio
    async def test_cooldown_blocks_second_request(self, service, user_factory, clock):
        user = await user_factory()
        await service.request_reset(user.email)

        clock.advance(seconds=20)
        with pytest.raises(RateLimitedError) as exc_info:
            await service.request_reset(user.email)

        assert exc_info.value.retry_after == 40
        assert 0 < exc_info.value.retry_after <= 60
        assert exc_info.value.status_code == 429

    @pytest.mark.asyncio
    async def test_cooldown_expires(self, service, user_factory, db_session, clock):
        user = await user_factory()
        await service.request_reset(user.email)

        clock.advance(seconds=61)
        await service.request_reset(user.email)

        records = await _records(db_session, user.email)
        assert len(records) == 2
        assert records[0].used is True
        assert records[1].used is False

    @pytest.mark.asyncio
    async def test_resend_follows_same_rules(self, service, user_factory, db_session, email_engine, clock):
        user = await user_factory()
        await service.request_reset(user.email)
        first_otp = email_engine.last_otp

        with pytest.raises(RateLimitedError):
            await service.resend_otp(user.email)

        clock.advance(minutes=2)
        await service.resend_otp(user.email)
        assert len(email_engine.sent) == 2

        first, second = await _records(db_session, user.email)
        assert first.code == first_otp
        assert first.used is True
        assert second.code == email_engine.last_otp
        assert second.used is False

    @pytest.mark.asyncio
    async def test_delivery_failure_is_swallowed_outside_production(self, store, failing_email_engine, user_factory, db_session, clock):
        user = await user_factory()
        service = PasswordResetService(store, failing_email_engine, clock=clock)

        result = await service.request_reset(user.email)

        assert result["success"] is True
        assert len(await _records(db_session, user.email)) == 1

    @pytest.mark.asyncio
    async def test_delivery_failure_raises_in_production(self, store, failing_email_engine, user_factory, clock):
        user = await user_factory()
        config = Settings(ENVIRONMENT="production")
        service = PasswordResetService(store, failing_email_engine, config=config, clock=clock)

        with pytest.raises(DeliveryError) as exc_info:
            await service.request_reset(user.email)
        assert exc_info.value.status_code == 502


@pytest.mark.service
@pytest.mark.database
class TestVerifyOtp:

    @pytest.mark.asyncio
    async def test_correct_code_issues_reset_token(self, service, user_factory, db_session, email_engine, clock):
        user = await user_factory()
        await service.request_reset(user.email)

        result = await service.verify_otp(user.email, email_engine.last_otp)

        assert result["message"] == "OTP verified successfully"
        token = result["data"]["resetToken"]
        assert len(token) == 64
        assert result["data"]["expiresIn"] == 900

        records = await _records(db_session, user.email)
        assert len(records) == 1
        assert records[0].code == token
        assert records[0].phase == ResetPhase.RESET_TOKEN.value

    @pytest.mark.asyncio
    async def test_wrong_code_reports_remaining_attempts(self, service, user_factory, email_engine):
        user = await user_factory()
        await service.request_reset(user.email)

        with pytest.raises(InvalidCodeError) as exc_info:
            await service.verify_otp(user.email, _wrong_code(email_engine.last_otp))

        assert exc_info.value.remaining_attempts == 4
        assert exc_info.value.message == "Invalid OTP. 4 attempts remaining."
        assert exc_info.value.extra() == {"remainingAttempts": 4}

    @pytest.mark.asyncio
    async def test_fifth_wrong_code_burns_record(self, service, user_factory, db_session, email_engine, clock):
        user = await user_factory()
        await service.request_reset(user.email)
        otp = email_engine.last_otp
        wrong = _wrong_code(otp)

        for remaining in (4, 3, 2, 1):
            with pytest.raises(InvalidCodeError) as exc_info:
                await service.verify_otp(user.email, wrong)
            assert exc_info.value.remaining_attempts == remaining

        with pytest.raises(RateLimitedError):
            await service.verify_otp(user.email, wrong)

        record = (await _records(db_session, user.email))[0]
        assert record.used is True
        assert record.attempts == 5

        # burned for good, the right code included
        with pytest.raises(RateLimitedError):
            await service.verify_otp(user.email, otp)
        with pytest.raises(RateLimitedError):
            await service.verify_otp(user.email, wrong)

        # once the burned code would have expired it looks like any other dead record
        clock.advance(minutes=11)
        with pytest.raises(InvalidOrExpiredError):
            await service.verify_otp(user.email, otp)

    @pytest.mark.asyncio
    async def test_expired_otp_is_treated_as_missing(self, service, user_factory, email_engine, clock):
        user = await user_factory()
        await service.request_reset(user.email)
        otp = email_engine.last_otp

        clock.advance(minutes=10, seconds=1)
        with pytest.raises(InvalidOrExpiredError):
            await service.verify_otp(user.email, otp)

    @pytest.mark.asyncio
    async def test_otp_valid_right_up_to_expiry(self, service, user_factory, email_engine, clock):
        user = await user_factory()
        await service.request_reset(user.email)

        clock.advance(minutes=10)
        result = await service.verify_otp(user.email, email_engine.last_otp)
        assert result["success"] is True

    @pytest.mark.asyncio
    @pytest.mark.parametrize("otp", ["abc", "1234567", "12345"])
    async def test_malformed_otp_does_not_spend_an_attempt(self, service, user_factory, db_session, otp):
        user = await user_factory()
        await service.request_reset(user.email)

        with pytest.raises(ValidationError):
            await service.verify_otp(user.email, otp)

        record = (await _records(db_session, user.email))[0]
        assert record.attempts == 0

    @pytest.mark.asyncio
    async def test_no_record_for_email(self, service):
        with pytest.raises(InvalidOrExpiredError):
            await service.verify_otp("nobody@example.com", "123456")

    @pytest.mark.asyncio
    async def test_otp_cannot_be_verified_twice(self, service, user_factory, email_engine):
        user = await user_factory()
        await service.request_reset(user.email)
        otp = email_engine.last_otp

        await service.verify_otp(user.email, otp)
        with pytest.raises(InvalidOrExpiredError):
            await service.verify_otp(user.email, otp)

    @pytest.mark.asyncio
    async def test_email_is_normalized(self, service, user_factory, email_engine):
        await user_factory(email="user@example.com")
        await service.request_reset("user@example.com")

        result = await service.verify_otp(" USER@example.COM", email_engine.last_otp)
        assert result["success"] is True

    @pytest.mark.asyncio
    @pytest.mark.parametrize("email,otp", [(None, "123456"), ("a@b.co", None), ("a@b.co", "  ")])
    async def test_missing_inputs(self, service, email, otp):
        with pytest.raises(ValidationError):
            await service.verify_otp(email, otp)


@pytest.mark.service
@pytest.mark.database
class TestResetPassword:

    async def _reset_token(self, service, email_engine, email):
        await service.request_reset(email)
        result = await service.verify_otp(email, email_engine.last_otp)
        return result["data"]["resetToken"]

    @pytest.mark.asyncio
    async def test_round_trip_succeeds_exactly_once(self, service, user_factory, db_session, email_engine):
        user = await user_factory()
        token = await self._reset_token(service, email_engine, user.email)

        result = await service.reset_password(user.email, token, NEW_PASSWORD)
        assert result["success"] is True

        stored = (
            await db_session.execute(
                select(User).where(User.id == user.id).execution_options(populate_existing=True)
            )
        ).scalars().one()
        assert verify_password(NEW_PASSWORD, stored.hashed_password)

        with pytest.raises(InvalidOrExpiredError):
            await service.reset_password(user.email, token, "Another123")

    @pytest.mark.asyncio
    async def test_consumed_records_are_cleaned_up(self, service, user_factory, db_session, email_engine):
        user = await user_factory()
        token = await self._reset_token(service, email_engine, user.email)

        await service.reset_password(user.email, token, NEW_PASSWORD)

        assert await _records(db_session, user.email) == []

    @pytest.mark.asyncio
    async def test_cleanup_failure_does_not_fail_the_reset(self, service, store, user_factory, db_session, email_engine):
        user = await user_factory()
        token = await self._reset_token(service, email_engine, user.email)

        with patch.object(store, "delete_stale", AsyncMock(side_effect=StoreError("database is locked"))):
            result = await service.reset_password(user.email, token, NEW_PASSWORD)

        assert result["success"] is True
        stored = (
            await db_session.execute(
                select(User).where(User.id == user.id).execution_options(populate_existing=True)
            )
        ).scalars().one()
        assert verify_password(NEW_PASSWORD, stored.hashed_password)

    @pytest.mark.asyncio
    async def test_weak_password_lists_every_rule(self, service, user_factory, email_engine):
        user = await user_factory()
        token = await self._reset_token(service, email_engine, user.email)

        with pytest.raises(WeakPasswordError) as exc_info:
            await service.reset_password(user.email, token, "short")

        assert "Password must be at least 8 characters" in exc_info.value.errors
        assert "Password must contain at least one uppercase letter" in exc_info.value.errors
        assert "Password must contain at least one number" in exc_info.value.errors

        # the token survives a policy rejection
        result = await service.reset_password(user.email, token, NEW_PASSWORD)
        assert result["success"] is True

    @pytest.mark.asyncio
    async def test_expired_token_is_treated_as_missing(self, service, user_factory, email_engine, clock):
        user = await user_factory()
        token = await self._reset_token(service, email_engine, user.email)

        clock.advance(minutes=15, seconds=1)
        with pytest.raises(InvalidOrExpiredError):
            await service.reset_password(user.email, token, NEW_PASSWORD)

    @pytest.mark.asyncio
    async def test_otp_is_not_a_reset_token(self, service, user_factory, email_engine):
        user = await user_factory()
        await service.request_reset(user.email)

        with pytest.raises(InvalidOrExpiredError):
            await service.reset_password(user.email, email_engine.last_otp, NEW_PASSWORD)

    @pytest.mark.asyncio
    async def test_token_is_bound_to_email(self, service, user_factory, email_engine):
        owner = await user_factory()
        other = await user_factory()
        token = await self._reset_token(service, email_engine, owner.email)

        with pytest.raises(InvalidOrExpiredError):
            await service.reset_password(other.email, token, NEW_PASSWORD)

    @pytest.mark.asyncio
    async def test_user_deleted_after_verification(self, service, user_factory, db_session, email_engine):
        user = await user_factory()
        token = await self._reset_token(service, email_engine, user.email)
        await db_session.execute(delete(User).where(User.id == user.id))
        await db_session.commit()

        with pytest.raises(NotFoundError):
            await service.reset_password(user.email, token, NEW_PASSWORD)

    @pytest.mark.asyncio
    async def test_email_is_normalized(self, service, user_factory, email_engine):
        await user_factory(email="user@example.com")
        token = await self._reset_token(service, email_engine, "User@Example.com ")

        result = await service.reset_password("  user@EXAMPLE.com", token, NEW_PASSWORD)
        assert result["success"] is True

    @pytest.mark.asyncio
    async def test_missing_inputs(self, service):
        with pytest.raises(ValidationError):
            await service.reset_password("a@b.co", "", NEW_PASSWORD)
        with pytest.raises(ValidationError):
            await service.reset_password("a@b.co", "token", None)


@pytest.mark.database
class TestDerivedState:

    def test_burned_otp(self, clock):
        record = ResetRecord(
            id=1, email="a@b.co", code="123456", phase=ResetPhase.OTP,
            expires_at=clock.now + timedelta(minutes=10), used=True, attempts=5, created_at=clock.now,
        )
        assert record.state(clock.now) == ResetState.BURNED
        assert not record.is_active(clock.now)

    @pytest.mark.asyncio
    async def test_lifecycle_states(self, store, user_factory, clock):
        user = await user_factory()
        now = clock.now
        record = await store.create(user.email, "123456", now.replace(minute=10), now)
        assert record.state(now) == ResetState.OTP_ISSUED
        assert record.state(now.replace(minute=11)) == ResetState.EXPIRED

        await store.promote_to_reset_token(record, "ab" * 32, now.replace(minute=15))
        assert record.state(now) == ResetState.RESET_TOKEN_ISSUED

        await store.mark_used(record)
        assert record.state(now) == ResetState.CONSUMED
