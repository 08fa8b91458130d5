"""
Withdrawal endpoints
"""

from fastapi import APIRouter, Depends, status

from .auth import CryptoNestSystem, get_system, get_current_account
from .schemas import AmountRequest, account_response, transaction_response
from ..accounts import Account
from ..currency import parse_amount


router = APIRouter()


@router.post("", status_code=status.HTTP_201_CREATED)
async def withdraw(
    request: AmountRequest,
    account: Account = Depends(get_current_account),
    system: CryptoNestSystem = Depends(get_system)
):
    """Pay funds out of the caller's balance"""
    amount = parse_amount(request.amount, account.currency)
    transaction = await system.ledger.withdraw(account.user_id, amount)
    updated = await system.ledger.require_account(account.user_id)
    return {
        "transaction": transaction_response(transaction),
        "account": account_response(updated)
    }
