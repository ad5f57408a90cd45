from typing import Optional

from fastapi import APIRouter, Body, Depends, Request

from api.dependencies import get_password_reset_service
from core.rate_limit import auth_limit, sensitive_limit
from schemas.password_reset_schema import (
    ErrorResponse,
    ResetPasswordResponse,
    ResetRequestResponse,
    VerifyOtpResponse,
)
from services.password_reset_service import PasswordResetService
from utils.responses import no_store_json

router = APIRouter()

ERRORS = {code: {"model": ErrorResponse} for code in (400, 404, 429, 500, 502)}


def _field(payload: Optional[dict], key: str):
    if not isinstance(payload, dict):
        return None
    return payload.get(key)


@router.post("/request-password-reset", response_model=ResetRequestResponse, responses=ERRORS)
@router.post("/forgot-password", response_model=ResetRequestResponse, responses=ERRORS)
@auth_limit
async def request_password_reset(
    request: Request,
    payload: Optional[dict] = Body(default=None),
    service: PasswordResetService = Depends(get_password_reset_service),
):
    return no_store_json(await service.request_reset(_field(payload, "email")))


@router.post("/resend-otp", response_model=ResetRequestResponse, responses=ERRORS)
@auth_limit
async def resend_otp(
    request: Request,
    payload: Optional[dict] = Body(default=None),
    service: PasswordResetService = Depends(get_password_reset_service),
):
    return no_store_json(await service.resend_otp(_field(payload, "email")))


@router.post("/verify-otp", response_model=VerifyOtpResponse, responses=ERRORS)
@auth_limit
async def verify_otp(
    request: Request,
    payload: Optional[dict] = Body(default=None),
    service: PasswordResetService = Depends(get_password_reset_service),
):
    return no_store_json(await service.verify_otp(_field(payload, "email"), _field(payload, "otp")))


@router.post("/reset-password", response_model=ResetPasswordResponse, responses=ERRORS)
@sensitive_limit
async def reset_password(
    request: Request,
    payload: Optional[dict] = Body(default=None),
    service: PasswordResetService = Depends(get_password_reset_service),
):
    # newPassword is the documented key; new_password kept for older clients
    new_password = _field(payload, "newPassword")
    if new_password is None:
        new_password = _field(payload, "new_password")
    return no_store_json(
        await service.reset_password(_field(payload, "email"), _field(payload, "resetToken"), new_password)
    )
