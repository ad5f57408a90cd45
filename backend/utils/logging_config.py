import logging
import logging.handlers
import contextvars
import uuid
from pathlib import Path
from typing import Dict, List, Optional

from core.config import settings
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request

LOG_FORMAT = "%(levelname)s - %(asctime)s - %(request_id)s - %(api)s - %(message)s"
DATE_FORMAT = "%Y-%m-%d %H:%M:%S"

request_id_var = contextvars.ContextVar("request_id", default="-")
api_var = contextvars.ContextVar("api", default="-")


def map_log_level(level_name: Optional[str]) -> int:
    level = logging.getLevelName((level_name or "INFO").upper())
    return level if isinstance(level, int) else logging.INFO


class ContextFilter(logging.Filter):
    """Stamps records with the current request id and route."""

    def filter(self, record: logging.LogRecord) -> bool:
        record.request_id = request_id_var.get()
        record.api = api_var.get()
        return True


def _daily_file(log_dir: Path, filename: str, level: int, ttl_days: int) -> logging.Handler:
    handler = logging.handlers.TimedRotatingFileHandler(
        filename=str(log_dir / filename),
        when="midnight",
        backupCount=max(ttl_days, 0),
        encoding="utf-8",
        utc=True,
    )
    handler.suffix = "%Y-%m-%d"
    handler.setLevel(level)
    return handler


def _build_handlers(log_dir: Path, level: int, ttl_days: int) -> Dict[str, logging.Handler]:
    handlers = {
        "app": _daily_file(log_dir, "app.log", level, ttl_days),
        "access": _daily_file(log_dir, "access.log", level, ttl_days),
        "error": _daily_file(log_dir, "error.log", logging.WARNING, ttl_days),
        "console": logging.StreamHandler(),
    }
    handlers["console"].setLevel(level)
    formatter = logging.Formatter(fmt=LOG_FORMAT, datefmt=DATE_FORMAT)
    for handler in handlers.values():
        handler.setFormatter(formatter)
        handler.addFilter(ContextFilter())
    return handlers


def _attach(logger_name: Optional[str], handlers: List[logging.Handler], level: int, propagate: bool) -> logging.Logger:
    target = logging.getLogger(logger_name)
    for handler in list(target.handlers):
        target.removeHandler(handler)
    for handler in handlers:
        target.addHandler(handler)
    target.setLevel(level)
    target.propagate = propagate
    return target


def configure_logging(app_logger_name: Optional[str] = None) -> logging.Logger:
    """Configure logging with daily rotation and TTL-based retention.

    - ``app.log`` and the console get everything at LOG_LEVEL, ``error.log``
      WARNING and above, ``access.log`` the Uvicorn access lines
    - Files rotate at midnight UTC; the last LOG_TTL_DAYS are kept
    - Module loggers (``services.*``, ``utils.email`` ...) reach the files
      through the root logger
    """
    log_dir = Path(settings.LOG_DIR)
    log_dir.mkdir(parents=True, exist_ok=True)

    level = map_log_level(settings.LOG_LEVEL)
    handlers = _build_handlers(log_dir, level, int(settings.LOG_TTL_DAYS))
    main_handlers = [handlers["app"], handlers["error"], handlers["console"]]

    _attach(None, main_handlers, level, propagate=True)
    for name in ("uvicorn", "uvicorn.error", "fastapi"):
        _attach(name, main_handlers, level, propagate=False)
    _attach("uvicorn.access", [handlers["access"], handlers["console"]], level, propagate=False)

    return _attach(app_logger_name or "ecotec", main_handlers, level, propagate=False)


class RequestContextMiddleware(BaseHTTPMiddleware):
    """Tags every log line of a request with its id and route; echoes X-Request-ID."""

    async def dispatch(self, request: Request, call_next):
        request_id = request.headers.get("x-request-id") or uuid.uuid4().hex[:12]
        context_token_request = request_id_var.set(request_id)
        context_token_api = api_var.set(f"{request.method} {request.url.path}")
        try:
            response = await call_next(request)
            response.headers["X-Request-ID"] = request_id
            return response
        finally:
            request_id_var.reset(context_token_request)
            api_var.reset(context_token_api)
