"""
Pytest configuration and fixtures for the backend tests.
"""
import os
import tempfile
from datetime import datetime, timedelta
from typing import AsyncGenerator, List

_TEST_DIR = tempfile.mkdtemp(prefix="ecotec-tests-")

# Settings are read at import time; configure the environment first
os.environ["ENVIRONMENT"] = "test"
os.environ["USE_MONGO"] = "false"
os.environ["DATABASE_URL"] = f"sqlite+aiosqlite:///{os.path.join(_TEST_DIR, 'test.db')}"
os.environ["LOG_DIR"] = os.path.join(_TEST_DIR, "logs")
os.environ["LOG_LEVEL"] = "WARNING"
os.environ["BCRYPT_ROUNDS"] = "4"
os.environ["RESEND_API_KEY"] = ""
os.environ["SMTP_USER"] = ""
os.environ["SMTP_PASS"] = ""

import pytest
from faker import Faker
from httpx import ASGITransport, AsyncClient
from sqlalchemy.ext.asyncio import AsyncSession

from main import app
from api.dependencies import get_email_engine
from core.exceptions import DeliveryError
from core.rate_limit import limiter
from core.security import get_password_hash
from db.base import initialize_database
from db.models.user import User
from db.password_reset_store import SqlPasswordResetStore
from db.session import Base, SessionLocal, engine, get_db_session
from services.password_reset_service import PasswordResetService
from utils.email import DeliveryResult, OutgoingEmail

# Initialize Faker for test data generation
fake = Faker()

DEFAULT_PASSWORD = "OldPass123"


class FakeEmailEngine:
    """Records outgoing mail instead of delivering it."""

    def __init__(self, fail: bool = False):
        self.fail = fail
        self.sent: List[OutgoingEmail] = []

    async def send(self, message: OutgoingEmail) -> DeliveryResult:
        if self.fail:
            raise DeliveryError("All email providers failed")
        self.sent.append(message)
        return DeliveryResult(provider="fake", message_id=f"<{len(self.sent)}@test>")

    @property
    def last_otp(self) -> str:
        # text part carries "Your password reset code is: 123456"
        for line in self.sent[-1].text.splitlines():
            if "reset code is:" in line:
                return line.rsplit(":", 1)[1].strip()
        raise AssertionError("no OTP in last email")


class FrozenClock:
    def __init__(self, start: datetime = datetime(2024, 5, 1, 12, 0, 0)):
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> None:
        self.now = self.now + timedelta(**kwargs)


@pytest.fixture
async def db_session() -> AsyncGenerator[AsyncSession, None]:
    """Fresh tables per test on the application's own engine."""
    await initialize_database()
    async with SessionLocal() as session:
        yield session
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)
    await engine.dispose()


@pytest.fixture
def store(db_session: AsyncSession) -> SqlPasswordResetStore:
    return SqlPasswordResetStore(db_session)


@pytest.fixture
def user_factory(db_session: AsyncSession):
    async def _create(email: str = None, name: str = None, is_active: bool = True,
                      password: str = DEFAULT_PASSWORD) -> User:
        user = User(
            email=(email or fake.unique.email()).lower(),
            name=name or fake.name(),
            hashed_password=get_password_hash(password),
            is_active=is_active,
        )
        db_session.add(user)
        await db_session.commit()
        return user

    return _create


@pytest.fixture
def email_engine() -> FakeEmailEngine:
    return FakeEmailEngine()


@pytest.fixture
def failing_email_engine() -> FakeEmailEngine:
    return FakeEmailEngine(fail=True)


@pytest.fixture
def clock() -> FrozenClock:
    return FrozenClock()


@pytest.fixture
def service(store, email_engine, clock) -> PasswordResetService:
    return PasswordResetService(store, email_engine, clock=clock)


@pytest.fixture
async def async_client(db_session: AsyncSession, email_engine: FakeEmailEngine) -> AsyncGenerator[AsyncClient, None]:
    """Async client against the ASGI app with the test session and fake mailer."""
    async def override_get_db():
        yield db_session

    app.dependency_overrides[get_db_session] = override_get_db
    app.dependency_overrides[get_email_engine] = lambda: email_engine
    # fresh per-IP counters for every test
    limiter.reset()

    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as ac:
        yield ac

    app.dependency_overrides.clear()
