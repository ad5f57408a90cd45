import asyncio

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.middleware.gzip import GZipMiddleware
from sqlalchemy.exc import SQLAlchemyError
from pymongo.errors import PyMongoError
from slowapi.errors import RateLimitExceeded

from api.v1 import auth
from core.config import EmailSettings, settings
from core.exceptions import AppError, RateLimitedError
from core.rate_limit import limiter
from db.base import initialize_database
from db.mongodb import close_mongo_client, get_mongo_db, init_mongo_indexes
from db.session import engine, ping_database
from utils.email import EmailDeliveryEngine, TRANSPORT_HTTP, email_configured, select_transport
from schemas.password_reset_schema import HealthResponse
from utils.logging_config import configure_logging, RequestContextMiddleware
from utils.responses import error_envelope, no_store_json

# Configure logging with date-based files and TTL retention
logger = configure_logging("ecotec")

app = FastAPI(
    title=settings.APP_NAME,
    version=settings.VERSION,
    debug=settings.DEBUG
)

# Per-IP limits on the recovery routes look the limiter up here
app.state.limiter = limiter


@app.exception_handler(AppError)
async def app_error_handler(request: Request, exc: AppError):
    headers = {}
    if isinstance(exc, RateLimitedError) and exc.retry_after:
        headers["Retry-After"] = str(exc.retry_after)
    if exc.status_code >= 500:
        logger.error(f"{request.method} {request.url.path} failed: {exc.message}")
    else:
        logger.info(f"{request.method} {request.url.path} rejected ({exc.status_code}): {exc.message}")
    return no_store_json(error_envelope(exc.message, exc.extra()), status_code=exc.status_code, headers=headers)


@app.exception_handler(RateLimitExceeded)
async def rate_limit_exceeded_handler(request: Request, exc: RateLimitExceeded):
    logger.warning(f"Rate limit exceeded on {request.url.path}: {exc.detail}")
    return await app_error_handler(request, RateLimitedError(exc.detail, retry_after=exc.limit.limit.get_expiry()))


# Global exception handler to ensure 500s for unexpected errors
@app.exception_handler(Exception)
async def unhandled_exception_handler(request: Request, exc: Exception):
    logger.exception(f"Unhandled error at {request.url.path}: {exc}")
    return no_store_json(error_envelope("Internal server error"), status_code=500)


# Add GZip compression for larger JSON payloads
app.add_middleware(GZipMiddleware, minimum_size=500)

# Request id and route on every log line
app.add_middleware(RequestContextMiddleware)

# CORS middleware
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.ALLOWED_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(auth.router, prefix=f"{settings.API_V1_STR}/auth", tags=["Authentication"])


@app.on_event("startup")
async def startup():
    """Initialize databases as configured and create the shared email engine"""
    try:
        if not settings.USE_MONGO:
            await initialize_database()
            logger.info("SQL database initialized")
        else:
            await init_mongo_indexes()
            logger.info("Mongo indexes ensured")
    except (SQLAlchemyError, PyMongoError, OSError) as e:
        logger.warning(f"Database init skipped or failed: {e}")

    app.state.email_engine = EmailDeliveryEngine()
    email_settings = EmailSettings()
    if not email_configured(email_settings):
        logger.warning("No email provider configured; reset codes will only be logged outside production")
    else:
        logger.info(f"Email transport: {select_transport(email_settings)}")
    logger.info("Application startup complete")


@app.on_event("shutdown")
async def shutdown():
    """Application shutdown"""
    email_engine = getattr(app.state, "email_engine", None)
    if email_engine is not None:
        await asyncio.to_thread(email_engine.connection_factory.invalidate)
    if settings.USE_MONGO:
        close_mongo_client()
    elif engine is not None:
        await engine.dispose()
        logger.info("Disposed SQL engine")
    logger.info("Application shutdown complete")


@app.get("/")
async def root():
    return {"message": settings.APP_NAME, "version": settings.VERSION}


async def _email_status() -> str:
    email_settings = EmailSettings()
    if not email_configured(email_settings):
        return "not_configured"
    if select_transport(email_settings) == TRANSPORT_HTTP:
        return "http"
    email_engine = getattr(app.state, "email_engine", None) or EmailDeliveryEngine()
    return "smtp_ok" if await email_engine.verify_connection() else "smtp_unavailable"


@app.get("/health", response_model=HealthResponse)
async def health_check():
    # Actively check DB connectivity according to config
    status = "healthy"
    if settings.USE_MONGO:
        try:
            db = get_mongo_db()
            if db is None:
                raise PyMongoError("MongoDB client not initialized")
            await db.command({"ping": 1})
            db_status = "mongo_connected"
        except PyMongoError as e:
            logger.warning(f"Health Mongo check failed: {e}")
            db_status = "mongo_unavailable"
            status = "degraded"
    elif await ping_database():
        db_status = "sql_connected"
    else:
        db_status = "sql_unavailable"
        status = "degraded"
    return {"status": status, "database": db_status, "email": await _email_status()}
