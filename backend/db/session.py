import logging

from sqlalchemy import event, text
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.orm import declarative_base

from core.config import settings

Base = declarative_base()
logger = logging.getLogger("ecotec.db")

_ASYNC_DRIVERS = {
    "mysql+pymysql://": "mysql+aiomysql://",
    "mysql://": "mysql+aiomysql://",
    "sqlite://": "sqlite+aiosqlite://",
}


def to_async_database_url(url: str) -> str:
    """Point sync driver URLs at their async counterparts (aiomysql, aiosqlite)."""
    for prefix, async_prefix in _ASYNC_DRIVERS.items():
        if url and url.startswith(prefix):
            return async_prefix + url[len(prefix):]
    return url


def create_engine_from_settings(url: str) -> AsyncEngine:
    kwargs = {"future": True, "echo": False}
    # SQLite has no server-side pool to size
    if not url.startswith("sqlite"):
        kwargs.update(
            pool_pre_ping=settings.DB_PRE_PING,
            pool_recycle=settings.DB_POOL_RECYCLE,
            pool_size=settings.DB_POOL_SIZE,
            max_overflow=settings.DB_MAX_OVERFLOW,
            pool_timeout=settings.DB_POOL_TIMEOUT,
        )
    sql_engine = create_async_engine(url, **kwargs)

    @event.listens_for(sql_engine.sync_engine, "connect")
    def _on_connect(dbapi_connection, connection_record):
        logger.debug("DB connect: id=%s", id(connection_record))

    @event.listens_for(sql_engine.sync_engine, "close")
    def _on_close(dbapi_connection, connection_record):
        logger.debug("DB close: id=%s", id(connection_record))

    return sql_engine


ASYNC_DATABASE_URL = to_async_database_url(settings.DATABASE_URL)

if not settings.USE_MONGO:
    engine = create_engine_from_settings(ASYNC_DATABASE_URL)
    SessionLocal = async_sessionmaker(bind=engine, class_=AsyncSession, expire_on_commit=False)
else:
    # Mongo mode: password reset records and users live in MongoDB
    engine = None  # type: ignore
    SessionLocal = None  # type: ignore


async def get_db_session():
    if settings.USE_MONGO:
        yield None
        return
    async with SessionLocal() as db:
        try:
            yield db
        except Exception:
            await db.rollback()
            raise


async def ping_database() -> bool:
    """Round-trip ``SELECT 1`` on a fresh session."""
    try:
        async with SessionLocal() as db:
            await db.execute(text("SELECT 1"))
    except (SQLAlchemyError, OSError) as e:
        logger.warning(f"SQL ping failed: {e}")
        return False
    return True
