"""
Application error taxonomy.

Every error carries a preset status code and a human-readable message so the
exception handler in ``main.py`` can render the ``{success: false, message}``
envelope without the raising code knowing anything about HTTP.
"""
from typing import Any, Dict, List, Optional


class AppError(Exception):
    status_code: int = 500

    def __init__(self, message: str, status_code: Optional[int] = None) -> None:
        super().__init__(message)
        self.message = message
        if status_code is not None:
            self.status_code = status_code

    def extra(self) -> Dict[str, Any]:
        """Additional fields merged into the error envelope."""
        return {}


class ValidationError(AppError):
    status_code = 400


class RateLimitedError(AppError):
    """Cooldown not elapsed or verification attempts exhausted."""

    status_code = 429

    def __init__(self, message: str, retry_after: Optional[int] = None) -> None:
        super().__init__(message)
        self.retry_after = retry_after

    def extra(self) -> Dict[str, Any]:
        if self.retry_after is None:
            return {}
        return {"retryAfter": self.retry_after}


class InvalidOrExpiredError(AppError):
    status_code = 400


class InvalidCodeError(AppError):
    status_code = 400

    def __init__(self, remaining_attempts: int) -> None:
        plural = "" if remaining_attempts == 1 else "s"
        super().__init__(f"Invalid OTP. {remaining_attempts} attempt{plural} remaining.")
        self.remaining_attempts = remaining_attempts

    def extra(self) -> Dict[str, Any]:
        return {"remainingAttempts": self.remaining_attempts}


class WeakPasswordError(AppError):
    status_code = 400

    def __init__(self, errors: List[str]) -> None:
        super().__init__(". ".join(errors))
        self.errors = list(errors)

    def extra(self) -> Dict[str, Any]:
        return {"errors": self.errors}


class NotFoundError(AppError):
    status_code = 404


class DeliveryError(AppError):
    """No email provider could deliver the message."""

    status_code = 502


class StoreError(AppError):
    """Wraps driver errors raised by the password reset store."""

    status_code = 500
