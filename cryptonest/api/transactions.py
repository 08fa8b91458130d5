"""
Transaction history endpoints
"""

from typing import Optional
from fastapi import APIRouter, Depends, Query

from .auth import CryptoNestSystem, get_system, get_current_account
from .schemas import transaction_response
from ..accounts import Account
from ..exceptions import ValidationError
from ..transactions import TransactionType


router = APIRouter()


@router.get("")
async def list_transactions(
    transaction_type: Optional[str] = Query(None, alias="type"),
    limit: int = Query(20, ge=1, le=100),
    offset: int = Query(0, ge=0),
    account: Account = Depends(get_current_account),
    system: CryptoNestSystem = Depends(get_system)
):
    """Caller's transactions, newest first"""
    filter_type = None
    if transaction_type:
        try:
            filter_type = TransactionType(transaction_type)
        except ValueError:
            raise ValidationError(f"Unknown transaction type: {transaction_type}")

    log = system.transaction_log
    transactions = await log.list_for_user(account.user_id, filter_type, limit=limit, offset=offset)
    total = await log.count_for_user(account.user_id, filter_type)

    return {
        "transactions": [transaction_response(t) for t in transactions],
        "total": total,
        "limit": limit,
        "offset": offset
    }
