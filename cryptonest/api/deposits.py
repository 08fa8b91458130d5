"""
Deposit endpoints
"""

from fastapi import APIRouter, Depends, status

from .auth import CryptoNestSystem, get_system, get_current_account
from .schemas import AmountRequest, deposit_response
from ..accounts import Account
from ..currency import parse_amount


router = APIRouter()


@router.post("", status_code=status.HTTP_201_CREATED)
async def create_deposit(
    request: AmountRequest,
    account: Account = Depends(get_current_account),
    system: CryptoNestSystem = Depends(get_system)
):
    """Request a deposit; the balance changes only once an admin approves it"""
    amount = parse_amount(request.amount, account.currency)
    deposit = await system.deposit_manager.create_deposit(account.user_id, amount)
    return deposit_response(deposit)


@router.get("")
async def list_deposits(
    account: Account = Depends(get_current_account),
    system: CryptoNestSystem = Depends(get_system)
):
    deposits = await system.deposit_manager.list_for_user(account.user_id)
    return {"deposits": [deposit_response(deposit) for deposit in deposits]}
