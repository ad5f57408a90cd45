from pydantic import BaseModel
from typing import List, Optional


class ResetRequestData(BaseModel):
    expiresIn: int

class ResetRequestResponse(BaseModel):
    success: bool
    message: str
    data: ResetRequestData

class VerifyOtpData(BaseModel):
    resetToken: str
    expiresIn: int

class VerifyOtpResponse(BaseModel):
    success: bool
    message: str
    data: VerifyOtpData

class ResetPasswordResponse(BaseModel):
    success: bool
    message: str

class ErrorResponse(BaseModel):
    success: bool = False
    message: str
    retryAfter: Optional[int] = None
    remainingAttempts: Optional[int] = None
    errors: Optional[List[str]] = None

class HealthResponse(BaseModel):
    status: str
    database: str
    email: str
