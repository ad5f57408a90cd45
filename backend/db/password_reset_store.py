"""
Persistence for password reset records.

``PasswordResetStore`` is the contract the reset flow depends on. Two
implementations follow the backend's dual storage setup: SQL through an async
SQLAlchemy session and MongoDB through motor. All datetimes are naive UTC.
Driver errors never escape a store; they are re-raised as ``StoreError``.
"""
import enum
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Optional

from pymongo import ReturnDocument
from pymongo.errors import PyMongoError
from sqlalchemy import select, update, delete, or_
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from core.exceptions import InvalidOrExpiredError, StoreError
from db.models.password_reset_token import PasswordResetToken
from db.models.user import User as UserModel
from utils.db import safe_commit

logger = logging.getLogger(__name__)


class ResetPhase(str, enum.Enum):
    OTP = "otp"
    RESET_TOKEN = "reset_token"


class ResetState(str, enum.Enum):
    OTP_ISSUED = "otp_issued"
    RESET_TOKEN_ISSUED = "reset_token_issued"
    CONSUMED = "consumed"
    BURNED = "burned"
    EXPIRED = "expired"


@dataclass
class ResetRecord:
    id: Any
    email: str
    code: str
    phase: ResetPhase
    expires_at: datetime
    used: bool
    attempts: int
    created_at: datetime

    def state(self, now: datetime) -> ResetState:
        """Derive the lifecycle state; nothing about it is stored."""
        if self.used:
            if self.phase == ResetPhase.RESET_TOKEN:
                return ResetState.CONSUMED
            return ResetState.BURNED
        if self.expires_at < now:
            return ResetState.EXPIRED
        if self.phase == ResetPhase.RESET_TOKEN:
            return ResetState.RESET_TOKEN_ISSUED
        return ResetState.OTP_ISSUED

    def is_active(self, now: datetime) -> bool:
        return not self.used and self.expires_at >= now


@dataclass
class ResetUser:
    id: Any
    email: str
    name: Optional[str]
    is_active: bool


class PasswordResetStore(ABC):

    @abstractmethod
    async def get_user(self, email: str) -> Optional[ResetUser]:
        ...

    @abstractmethod
    async def find_latest_since(self, email: str, since: datetime) -> Optional[ResetRecord]:
        """Most recent record of any state created at or after ``since``."""

    @abstractmethod
    async def invalidate_unused(self, email: str) -> int:
        """Mark every not-yet-used record of the email as used."""

    @abstractmethod
    async def create(self, email: str, code: str, expires_at: datetime, now: datetime) -> ResetRecord:
        ...

    @abstractmethod
    async def find_latest_active(self, email: str, now: datetime, phase: ResetPhase) -> Optional[ResetRecord]:
        ...

    @abstractmethod
    async def find_active_by_code(self, email: str, code: str, now: datetime, phase: ResetPhase) -> Optional[ResetRecord]:
        ...

    @abstractmethod
    async def increment_attempts(self, record: ResetRecord) -> int:
        """Atomically add one failed attempt; returns the new count."""

    @abstractmethod
    async def mark_used(self, record: ResetRecord) -> None:
        ...

    @abstractmethod
    async def promote_to_reset_token(self, record: ResetRecord, token: str, expires_at: datetime) -> ResetRecord:
        ...

    @abstractmethod
    async def complete_reset(self, user: ResetUser, record: ResetRecord, password_hash: str) -> None:
        """Replace the password hash and consume the record as one atomic unit.

        Raises ``InvalidOrExpiredError`` when the record was already consumed.
        """

    @abstractmethod
    async def delete_stale(self, email: str, now: datetime) -> int:
        """Delete every used or expired record of the email."""


def _record_from_row(row: PasswordResetToken) -> ResetRecord:
    return ResetRecord(
        id=row.id,
        email=row.email,
        code=row.code,
        phase=ResetPhase(row.phase),
        expires_at=row.expires_at,
        used=bool(row.used),
        attempts=int(row.attempts or 0),
        created_at=row.created_at,
    )


class SqlPasswordResetStore(PasswordResetStore):
    """Store backed by the request's AsyncSession. Every mutation commits."""

    def __init__(self, db: AsyncSession):
        self.db = db

    async def _first(self, stmt) -> Optional[PasswordResetToken]:
        try:
            result = await self.db.execute(stmt.execution_options(populate_existing=True))
        except SQLAlchemyError as e:
            raise StoreError("Failed to read password reset records") from e
        return result.scalars().first()

    async def get_user(self, email: str) -> Optional[ResetUser]:
        try:
            result = await self.db.execute(select(UserModel).where(UserModel.email == email))
        except SQLAlchemyError as e:
            raise StoreError("Failed to look up user") from e
        user = result.scalars().first()
        if not user:
            return None
        return ResetUser(id=user.id, email=user.email, name=user.name, is_active=bool(user.is_active))

    async def find_latest_since(self, email: str, since: datetime) -> Optional[ResetRecord]:
        row = await self._first(
            select(PasswordResetToken)
            .where(PasswordResetToken.email == email, PasswordResetToken.created_at >= since)
            .order_by(PasswordResetToken.created_at.desc(), PasswordResetToken.id.desc())
            .limit(1)
        )
        return _record_from_row(row) if row else None

    async def invalidate_unused(self, email: str) -> int:
        try:
            result = await self.db.execute(
                update(PasswordResetToken)
                .where(PasswordResetToken.email == email, PasswordResetToken.used.is_(False))
                .values(used=True)
            )
        except SQLAlchemyError as e:
            await self.db.rollback()
            raise StoreError("Failed to invalidate password reset records") from e
        await safe_commit(self.db, "Failed to invalidate password reset records")
        return result.rowcount or 0

    async def create(self, email: str, code: str, expires_at: datetime, now: datetime) -> ResetRecord:
        row = PasswordResetToken(
            email=email,
            code=code,
            phase=ResetPhase.OTP.value,
            expires_at=expires_at,
            used=False,
            attempts=0,
            created_at=now,
        )
        self.db.add(row)
        await safe_commit(self.db, "Failed to create password reset record")
        return _record_from_row(row)

    async def find_latest_active(self, email: str, now: datetime, phase: ResetPhase) -> Optional[ResetRecord]:
        row = await self._first(
            select(PasswordResetToken)
            .where(
                PasswordResetToken.email == email,
                PasswordResetToken.phase == phase.value,
                PasswordResetToken.used.is_(False),
                PasswordResetToken.expires_at >= now,
            )
            .order_by(PasswordResetToken.created_at.desc(), PasswordResetToken.id.desc())
            .limit(1)
        )
        return _record_from_row(row) if row else None

    async def find_active_by_code(self, email: str, code: str, now: datetime, phase: ResetPhase) -> Optional[ResetRecord]:
        row = await self._first(
            select(PasswordResetToken)
            .where(
                PasswordResetToken.email == email,
                PasswordResetToken.code == code,
                PasswordResetToken.phase == phase.value,
                PasswordResetToken.used.is_(False),
                PasswordResetToken.expires_at >= now,
            )
            .limit(1)
        )
        return _record_from_row(row) if row else None

    async def _update(self, record: ResetRecord, error_message: str, **values) -> None:
        try:
            await self.db.execute(
                update(PasswordResetToken)
                .where(PasswordResetToken.id == record.id)
                .values(**values)
            )
        except SQLAlchemyError as e:
            await self.db.rollback()
            raise StoreError(error_message) from e
        await safe_commit(self.db, error_message)

    async def increment_attempts(self, record: ResetRecord) -> int:
        await self._update(
            record,
            "Failed to record verification attempt",
            attempts=PasswordResetToken.attempts + 1,
        )
        row = await self._first(select(PasswordResetToken).where(PasswordResetToken.id == record.id))
        record.attempts = int(row.attempts) if row else record.attempts + 1
        return record.attempts

    async def mark_used(self, record: ResetRecord) -> None:
        await self._update(record, "Failed to invalidate password reset record", used=True)
        record.used = True

    async def promote_to_reset_token(self, record: ResetRecord, token: str, expires_at: datetime) -> ResetRecord:
        await self._update(
            record,
            "Failed to issue reset token",
            code=token,
            phase=ResetPhase.RESET_TOKEN.value,
            expires_at=expires_at,
        )
        record.code = token
        record.phase = ResetPhase.RESET_TOKEN
        record.expires_at = expires_at
        return record

    async def complete_reset(self, user: ResetUser, record: ResetRecord, password_hash: str) -> None:
        # Both statements share one transaction; a failure rolls back both.
        # Only an unused record can be claimed; a rowcount of 0 means another reset got there first.
        try:
            claimed = await self.db.execute(
                update(PasswordResetToken)
                .where(PasswordResetToken.id == record.id, PasswordResetToken.used.is_(False))
                .values(used=True)
            )
            if claimed.rowcount != 1:
                await self.db.rollback()
                raise InvalidOrExpiredError("Invalid or expired reset token. Please restart the process.")
            await self.db.execute(
                update(UserModel).where(UserModel.id == user.id).values(hashed_password=password_hash)
            )
        except SQLAlchemyError as e:
            await self.db.rollback()
            raise StoreError("Failed to reset password") from e
        await safe_commit(self.db, "Failed to reset password")
        record.used = True

    async def delete_stale(self, email: str, now: datetime) -> int:
        try:
            result = await self.db.execute(
                delete(PasswordResetToken).where(
                    PasswordResetToken.email == email,
                    or_(PasswordResetToken.used.is_(True), PasswordResetToken.expires_at < now),
                )
            )
        except SQLAlchemyError as e:
            await self.db.rollback()
            raise StoreError("Failed to clean up password reset records") from e
        await safe_commit(self.db, "Failed to clean up password reset records")
        return result.rowcount or 0


def _record_from_doc(doc: dict) -> ResetRecord:
    return ResetRecord(
        id=doc["_id"],
        email=doc["email"],
        code=doc["code"],
        phase=ResetPhase(doc.get("phase", ResetPhase.OTP.value)),
        expires_at=doc["expires_at"],
        used=bool(doc.get("used", False)),
        attempts=int(doc.get("attempts", 0)),
        created_at=doc["created_at"],
    )


class MongoPasswordResetStore(PasswordResetStore):
    """Store backed by motor. ``complete_reset`` needs a replica set for transactions."""

    def __init__(self, db, client=None):
        self.db = db
        self.client = client
        self.tokens = db.password_reset_tokens
        self.users = db.users

    async def _latest(self, query: dict) -> Optional[ResetRecord]:
        try:
            docs = await self.tokens.find(query).sort([("created_at", -1), ("_id", -1)]).limit(1).to_list(length=1)
        except PyMongoError as e:
            raise StoreError("Failed to read password reset records") from e
        return _record_from_doc(docs[0]) if docs else None

    async def get_user(self, email: str) -> Optional[ResetUser]:
        try:
            doc = await self.users.find_one({"email": email})
        except PyMongoError as e:
            raise StoreError("Failed to look up user") from e
        if not doc:
            return None
        return ResetUser(
            id=doc["_id"],
            email=doc["email"],
            name=doc.get("name"),
            is_active=bool(doc.get("is_active", True)),
        )

    async def find_latest_since(self, email: str, since: datetime) -> Optional[ResetRecord]:
        return await self._latest({"email": email, "created_at": {"$gte": since}})

    async def invalidate_unused(self, email: str) -> int:
        try:
            result = await self.tokens.update_many({"email": email, "used": False}, {"$set": {"used": True}})
        except PyMongoError as e:
            raise StoreError("Failed to invalidate password reset records") from e
        return result.modified_count

    async def create(self, email: str, code: str, expires_at: datetime, now: datetime) -> ResetRecord:
        doc = {
            "email": email,
            "code": code,
            "phase": ResetPhase.OTP.value,
            "expires_at": expires_at,
            "used": False,
            "attempts": 0,
            "created_at": now,
        }
        try:
            result = await self.tokens.insert_one(doc)
        except PyMongoError as e:
            raise StoreError("Failed to create password reset record") from e
        doc["_id"] = result.inserted_id
        return _record_from_doc(doc)

    async def find_latest_active(self, email: str, now: datetime, phase: ResetPhase) -> Optional[ResetRecord]:
        return await self._latest({
            "email": email,
            "phase": phase.value,
            "used": False,
            "expires_at": {"$gte": now},
        })

    async def find_active_by_code(self, email: str, code: str, now: datetime, phase: ResetPhase) -> Optional[ResetRecord]:
        try:
            doc = await self.tokens.find_one({
                "email": email,
                "code": code,
                "phase": phase.value,
                "used": False,
                "expires_at": {"$gte": now},
            })
        except PyMongoError as e:
            raise StoreError("Failed to read password reset records") from e
        return _record_from_doc(doc) if doc else None

    async def _update(self, record: ResetRecord, update_doc: dict, error_message: str) -> Optional[dict]:
        try:
            return await self.tokens.find_one_and_update(
                {"_id": record.id}, update_doc, return_document=ReturnDocument.AFTER
            )
        except PyMongoError as e:
            raise StoreError(error_message) from e

    async def increment_attempts(self, record: ResetRecord) -> int:
        doc = await self._update(record, {"$inc": {"attempts": 1}}, "Failed to record verification attempt")
        record.attempts = int(doc["attempts"]) if doc else record.attempts + 1
        return record.attempts

    async def mark_used(self, record: ResetRecord) -> None:
        await self._update(record, {"$set": {"used": True}}, "Failed to invalidate password reset record")
        record.used = True

    async def promote_to_reset_token(self, record: ResetRecord, token: str, expires_at: datetime) -> ResetRecord:
        await self._update(
            record,
            {"$set": {"code": token, "phase": ResetPhase.RESET_TOKEN.value, "expires_at": expires_at}},
            "Failed to issue reset token",
        )
        record.code = token
        record.phase = ResetPhase.RESET_TOKEN
        record.expires_at = expires_at
        return record

    async def complete_reset(self, user: ResetUser, record: ResetRecord, password_hash: str) -> None:
        if self.client is None:
            raise StoreError("Mongo client is required for atomic password reset")
        try:
            async with await self.client.start_session() as session:
                async with session.start_transaction():
                    claimed = await self.tokens.update_one(
                        {"_id": record.id, "used": False}, {"$set": {"used": True}}, session=session
                    )
                    if claimed.modified_count != 1:
                        raise InvalidOrExpiredError("Invalid or expired reset token. Please restart the process.")
                    await self.users.update_one(
                        {"_id": user.id}, {"$set": {"hashed_password": password_hash}}, session=session
                    )
        except PyMongoError as e:
            raise StoreError("Failed to reset password") from e
        record.used = True

    async def delete_stale(self, email: str, now: datetime) -> int:
        try:
            result = await self.tokens.delete_many({
                "email": email,
                "$or": [{"used": True}, {"expires_at": {"$lt": now}}],
            })
        except PyMongoError as e:
            raise StoreError("Failed to clean up password reset records") from e
        return result.deleted_count
