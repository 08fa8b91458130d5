"""
Investment endpoints
"""

from typing import Optional
from fastapi import APIRouter, Depends, Query, status

from .auth import CryptoNestSystem, get_system, get_current_account
from .schemas import CreateInvestmentRequest, investment_response
from ..accounts import Account
from ..currency import parse_amount
from ..exceptions import NotFoundError, ValidationError
from ..investments import InvestmentStatus


router = APIRouter()


@router.post("", status_code=status.HTTP_201_CREATED)
async def create_investment(
    request: CreateInvestmentRequest,
    account: Account = Depends(get_current_account),
    system: CryptoNestSystem = Depends(get_system)
):
    """Commit principal from the balance to a plan, pending admin approval"""
    amount = parse_amount(request.amount, account.currency)
    investment = await system.investment_manager.create_investment(
        account.user_id, request.plan, amount
    )
    return investment_response(investment)


@router.get("")
async def list_investments(
    status_filter: Optional[str] = Query(None, alias="status"),
    account: Account = Depends(get_current_account),
    system: CryptoNestSystem = Depends(get_system)
):
    investment_status = None
    if status_filter:
        try:
            investment_status = InvestmentStatus(status_filter)
        except ValueError:
            raise ValidationError(f"Unknown investment status: {status_filter}")

    investments = await system.investment_manager.list_for_user(account.user_id, investment_status)
    return {"investments": [investment_response(investment) for investment in investments]}


@router.get("/{investment_id}")
async def get_investment(
    investment_id: str,
    account: Account = Depends(get_current_account),
    system: CryptoNestSystem = Depends(get_system)
):
    investment = await system.investment_manager.get(investment_id)
    # Other users' records are reported as missing
    if investment is None or investment.user_id != account.user_id:
        raise NotFoundError(f"Investment {investment_id} not found")
    return investment_response(investment)
