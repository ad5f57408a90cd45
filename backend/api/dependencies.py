from fastapi import Depends, Request
from sqlalchemy.ext.asyncio import AsyncSession

from core.config import settings
from db.mongodb import get_mongo_client, get_mongo_db
from db.password_reset_store import MongoPasswordResetStore, PasswordResetStore, SqlPasswordResetStore
from db.session import get_db_session
from services.password_reset_service import PasswordResetService
from utils.email import EmailDeliveryEngine


def get_email_engine(request: Request) -> EmailDeliveryEngine:
    """Application-wide engine; it owns the shared SMTP connection factory."""
    engine = getattr(request.app.state, "email_engine", None)
    if engine is None:
        engine = EmailDeliveryEngine()
        request.app.state.email_engine = engine
    return engine


async def get_password_reset_store(db: AsyncSession = Depends(get_db_session)) -> PasswordResetStore:
    if settings.USE_MONGO:
        mongo = get_mongo_db()
        if mongo is None:
            raise RuntimeError("USE_MONGO=true but MongoDB is not available")
        return MongoPasswordResetStore(mongo, get_mongo_client())
    return SqlPasswordResetStore(db)


def get_password_reset_service(
    store: PasswordResetStore = Depends(get_password_reset_store),
    email_engine: EmailDeliveryEngine = Depends(get_email_engine),
) -> PasswordResetService:
    return PasswordResetService(store, email_engine)
