import re
from dataclasses import dataclass
from typing import List, Optional

from passlib.context import CryptContext

from core.config import Settings, settings
import logging

logger = logging.getLogger(__name__)

# Password hashing
pwd_context = CryptContext(
    schemes=["bcrypt"],
    deprecated="auto",
    bcrypt__rounds=settings.BCRYPT_ROUNDS,
)

SPECIAL_CHARS_RE = re.compile(r"[!@#$%^&*(),.?\":{}|<>]")


def verify_password(plain_password: str, hashed_password: str) -> bool:
    """Verify a password against its hash"""
    return pwd_context.verify(plain_password, hashed_password)


def get_password_hash(password: str) -> str:
    """Generate password hash"""
    return pwd_context.hash(password)


@dataclass(frozen=True)
class PasswordPolicy:
    min_length: int = 8
    max_length: int = 128
    require_uppercase: bool = True
    require_lowercase: bool = True
    require_number: bool = True
    require_special_char: bool = False

    @classmethod
    def from_settings(cls, config: Optional[Settings] = None) -> "PasswordPolicy":
        config = config or settings
        return cls(
            min_length=config.PASSWORD_MIN_LENGTH,
            max_length=config.PASSWORD_MAX_LENGTH,
            require_uppercase=config.PASSWORD_REQUIRE_UPPERCASE,
            require_lowercase=config.PASSWORD_REQUIRE_LOWERCASE,
            require_number=config.PASSWORD_REQUIRE_NUMBER,
            require_special_char=config.PASSWORD_REQUIRE_SPECIAL_CHAR,
        )

    def validate(self, password: str) -> List[str]:
        """Return every rule the password violates (empty list when valid)."""
        errors: List[str] = []
        if len(password) < self.min_length:
            errors.append(f"Password must be at least {self.min_length} characters")
        if len(password) > self.max_length:
            errors.append(f"Password must not exceed {self.max_length} characters")
        if self.require_uppercase and not re.search(r"[A-Z]", password):
            errors.append("Password must contain at least one uppercase letter")
        if self.require_lowercase and not re.search(r"[a-z]", password):
            errors.append("Password must contain at least one lowercase letter")
        if self.require_number and not re.search(r"\d", password):
            errors.append("Password must contain at least one number")
        if self.require_special_char and not SPECIAL_CHARS_RE.search(password):
            errors.append("Password must contain at least one special character")
        return errors
