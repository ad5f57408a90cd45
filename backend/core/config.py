from pydantic_settings import BaseSettings
from typing import List, Optional

class Settings(BaseSettings):
    # App settings
    APP_NAME: str = "ECOTEC Shop Management API"
    VERSION: str = "1.0.0"
    DEBUG: bool = False
    # "production" makes OTP delivery failures fatal and stops echoing codes to the log
    ENVIRONMENT: str = "development"

    # Database settings
    DATABASE_URL: str = "sqlite+aiosqlite:///./ecotec.db"
    DB_POOL_SIZE: int = 10
    DB_MAX_OVERFLOW: int = 20
    DB_POOL_RECYCLE: int = 300
    DB_POOL_TIMEOUT: int = 10
    DB_PRE_PING: bool = True

    # MongoDB (optional)
    USE_MONGO: bool = False
    MONGO_URI: Optional[str] = None
    MONGO_DB: str = "ecotec"

    # CORS settings
    ALLOWED_ORIGINS: List[str] = [
        "http://localhost:5173",
        "http://localhost:3000",
    ]

    # API settings
    API_V1_STR: str = "/api/v1"
    LOG_LEVEL: str = "INFO"
    LOG_DIR: str = "logs"
    LOG_TTL_DAYS: int = 7

    # Per-IP throttling of the password recovery routes (slowapi)
    RATE_LIMIT_ENABLED: bool = True
    RATE_LIMIT_STORAGE_URI: str = "memory://"
    AUTH_RATE_LIMIT: str = "10/15minutes"
    SENSITIVE_RATE_LIMIT: str = "20/15minutes"

    # Password reset flow
    OTP_LENGTH: int = 6
    OTP_EXPIRY_MINUTES: int = 10
    OTP_COOLDOWN_SECONDS: int = 60
    OTP_MAX_ATTEMPTS: int = 5
    RESET_TOKEN_EXPIRY_MINUTES: int = 15
    RESET_TOKEN_BYTES: int = 32

    # Password policy
    PASSWORD_MIN_LENGTH: int = 8
    PASSWORD_MAX_LENGTH: int = 128
    PASSWORD_REQUIRE_UPPERCASE: bool = True
    PASSWORD_REQUIRE_LOWERCASE: bool = True
    PASSWORD_REQUIRE_NUMBER: bool = True
    PASSWORD_REQUIRE_SPECIAL_CHAR: bool = False
    BCRYPT_ROUNDS: int = 12

    class Config:
        env_file = ".env"
        case_sensitive = True
        extra = "ignore"

    @property
    def is_production(self) -> bool:
        return (self.ENVIRONMENT or "").strip().lower() == "production"


class EmailSettings(BaseSettings):
    """Email provider configuration.

    Instantiated on every send so that provider keys added to (or removed
    from) the environment are picked up without a restart.
    """
    # HTTP provider (Resend-compatible REST API)
    RESEND_API_KEY: Optional[str] = None
    RESEND_FROM_EMAIL: Optional[str] = None
    RESEND_API_URL: str = "https://api.resend.com/emails"
    RESEND_SANDBOX_FROM: str = "onboarding@resend.dev"

    # SMTP provider
    SMTP_HOST: str = "smtp.gmail.com"
    SMTP_PORT: int = 587
    SMTP_SECURE: bool = False
    # STARTTLS upgrade on non-SSL ports, when the server offers it
    SMTP_USE_TLS: bool = True
    SMTP_USER: Optional[str] = None
    SMTP_PASS: Optional[str] = None
    SMTP_FROM_NAME: str = "ECOTEC System"
    SMTP_FROM_EMAIL: Optional[str] = None
    SMTP_CONNECT_TIMEOUT: int = 60
    SMTP_SEND_TIMEOUT: int = 45
    SMTP_VERIFY_TIMEOUT: int = 10
    SMTP_MAX_ATTEMPTS: int = 3
    SMTP_RETRY_DELAY_SECONDS: float = 2.0

    class Config:
        env_file = ".env"
        case_sensitive = True
        extra = "ignore"

    @property
    def from_address(self) -> str:
        return self.SMTP_FROM_EMAIL or self.SMTP_USER or "no-reply@example.com"


# Create settings instance
settings = Settings()

if settings.USE_MONGO and not settings.MONGO_URI:
    raise ValueError("MONGO_URI environment variable is required when USE_MONGO=true")
