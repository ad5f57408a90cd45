"""
Per-IP rate limiting for the password recovery routes.

Request, verify and resend draw on one shared ``auth`` budget; reset-password
has its own, larger one. Limits and storage come from settings; the default
``memory://`` storage is per process.
"""
from slowapi import Limiter
from slowapi.util import get_remote_address

from core.config import settings

AUTH_LIMIT_MESSAGE = "Too many authentication attempts. Please try again after 15 minutes."
SENSITIVE_LIMIT_MESSAGE = "Too many sensitive operations. Please wait before trying again."

limiter = Limiter(
    key_func=get_remote_address,
    storage_uri=settings.RATE_LIMIT_STORAGE_URI,
    enabled=settings.RATE_LIMIT_ENABLED,
)

auth_limit = limiter.shared_limit(settings.AUTH_RATE_LIMIT, scope="auth", error_message=AUTH_LIMIT_MESSAGE)
sensitive_limit = limiter.limit(settings.SENSITIVE_RATE_LIMIT, error_message=SENSITIVE_LIMIT_MESSAGE)
