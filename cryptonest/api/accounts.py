"""
Account endpoints
"""

from fastapi import APIRouter, Depends

from .auth import CryptoNestSystem, get_current_account, get_system
from .schemas import UpdateProfileRequest, account_response
from ..accounts import Account


router = APIRouter()


@router.get("/me")
async def get_my_account(account: Account = Depends(get_current_account)):
    """Balance and cumulative totals of the caller"""
    return account_response(account)


@router.put("/me")
async def update_my_profile(
    request: UpdateProfileRequest,
    account: Account = Depends(get_current_account),
    system: CryptoNestSystem = Depends(get_system)
):
    """Change display name or email; balances and role are not editable here"""
    updated = await system.ledger.update_profile(
        account.user_id,
        email=request.email,
        display_name=request.display_name
    )
    return account_response(updated)
