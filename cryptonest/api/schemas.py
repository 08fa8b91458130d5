"""
Pydantic schemas for API requests and responses
"""

from typing import Optional
from pydantic import BaseModel, Field

from ..currency import Money, Currency, parse_amount
from ..accounts import Account
from ..plans import Plan
from ..deposits import Deposit
from ..investments import Investment
from ..transactions import Transaction


class MoneyModel(BaseModel):
    amount: str = Field(..., description="Decimal amount as string")
    currency: str = Field(..., description="Currency code (USD, EUR, etc.)")

    def to_money(self) -> Money:
        return parse_amount(self.amount, Currency.from_code(self.currency))

    @classmethod
    def from_money(cls, money: Money) -> 'MoneyModel':
        return cls(amount=str(money.amount), currency=money.currency.code)


# Auth schemas
class ForgotPasswordRequest(BaseModel):
    email: str


class ResetPasswordRequest(BaseModel):
    token: str
    new_password: str


class UpdateProfileRequest(BaseModel):
    """Editable profile fields; anything else in the body is ignored"""
    display_name: Optional[str] = Field(None, description="Name shown in the dashboard")
    email: Optional[str] = Field(None, description="Contact address used for password resets")


# Ledger schemas
class AmountRequest(BaseModel):
    amount: str = Field(..., description="Decimal amount as string, in the platform currency")


class CreateInvestmentRequest(BaseModel):
    plan: str = Field(..., description="Plan key (basic, gold, platinum)")
    amount: str = Field(..., description="Principal as a decimal string")


# Admin schemas
class UpdatePlanRequest(BaseModel):
    name: Optional[str] = None
    min_amount: Optional[str] = None
    max_amount: Optional[str] = None
    interest_rate: Optional[str] = Field(None, description="Total percentage over the term")
    duration_days: Optional[int] = None
    description: Optional[str] = None
    is_active: Optional[bool] = None


# Response serializers
def _timestamp(value):
    return value.isoformat() if value else None


def plan_response(plan: Plan) -> dict:
    return {
        "key": plan.key,
        "name": plan.name,
        "min_amount": MoneyModel.from_money(plan.min_amount).model_dump(),
        "max_amount": MoneyModel.from_money(plan.max_amount).model_dump(),
        "interest_rate": str(plan.interest_rate),
        "duration_days": plan.duration_days,
        "description": plan.description,
        "is_active": plan.is_active,
    }


def account_response(account: Account) -> dict:
    return {
        "user_id": account.user_id,
        "email": account.email,
        "display_name": account.display_name,
        "role": account.role.value,
        "balance": MoneyModel.from_money(account.balance).model_dump(),
        "total_invested": MoneyModel.from_money(account.total_invested).model_dump(),
        "total_interest": MoneyModel.from_money(account.total_interest).model_dump(),
        "created_at": _timestamp(account.created_at),
        "last_login_at": _timestamp(account.last_login_at),
    }


def deposit_response(deposit: Deposit) -> dict:
    return {
        "id": deposit.id,
        "user_id": deposit.user_id,
        "amount": MoneyModel.from_money(deposit.amount).model_dump(),
        "status": deposit.status.value,
        "created_at": _timestamp(deposit.created_at),
        "resolved_at": _timestamp(deposit.resolved_at),
    }


def investment_response(investment: Investment) -> dict:
    return {
        "id": investment.id,
        "user_id": investment.user_id,
        "plan": investment.plan_key,
        "principal": MoneyModel.from_money(investment.principal).model_dump(),
        "status": investment.status.value,
        "start_date": _timestamp(investment.start_date),
        "interest_paid": MoneyModel.from_money(investment.interest_paid).model_dump(),
        "accrued_days": investment.accrued_days,
        "last_accrued_at": _timestamp(investment.last_accrued_at),
        "ended_at": _timestamp(investment.ended_at),
        "end_reason": investment.end_reason.value if investment.end_reason else None,
        "created_at": _timestamp(investment.created_at),
    }


def transaction_response(transaction: Transaction) -> dict:
    return {
        "id": transaction.id,
        "type": transaction.transaction_type.value,
        "amount": MoneyModel.from_money(transaction.amount).model_dump(),
        "detail": transaction.detail,
        "investment_id": transaction.investment_id,
        "reference": transaction.reference,
        "created_at": _timestamp(transaction.created_at),
    }
