"""
Login and password reset endpoints
"""

from fastapi import APIRouter, Depends

from .auth import CryptoNestSystem, get_system, get_current_identity
from .schemas import ForgotPasswordRequest, ResetPasswordRequest, account_response
from ..accounts import AccountRole
from ..identity import Identity


router = APIRouter()


@router.post("/login")
async def login(
    identity: Identity = Depends(get_current_identity),
    system: CryptoNestSystem = Depends(get_system)
):
    """Exchange a verified identity for the caller's account, opening it on first login"""
    account = await system.ledger.ensure_account(
        identity.subject_id,
        email=identity.email,
        display_name=identity.display_name,
        role=AccountRole.ADMIN if identity.is_admin else AccountRole.USER
    )
    return {"account": account_response(account), "is_admin": identity.is_admin}


@router.post("/forgot-password", status_code=202)
async def forgot_password(
    request: ForgotPasswordRequest,
    system: CryptoNestSystem = Depends(get_system)
):
    """Send a reset token if the email belongs to an account"""
    await system.password_reset.request_reset(request.email)
    return {"message": "If the address is registered, a reset link has been sent"}


@router.post("/reset-password")
async def reset_password(
    request: ResetPasswordRequest,
    system: CryptoNestSystem = Depends(get_system)
):
    """Complete a password reset with a previously issued token"""
    await system.password_reset.complete_reset(request.token, request.new_password)
    return {"message": "Password has been reset"}
