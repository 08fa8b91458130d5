"""
Builders shared by the test modules
"""

from datetime import datetime, timezone
from decimal import Decimal

from cryptonest.config import CryptoNestConfig
from cryptonest.currency import Money, Currency
from cryptonest.transactions import TransactionType


START = datetime(2026, 1, 1, 9, 30, tzinfo=timezone.utc)


def usd(amount) -> Money:
    return Money(Decimal(str(amount)), Currency.USD)


def make_config(**overrides) -> CryptoNestConfig:
    settings = {"storage_type": "memory", "accrual_enabled": False, "jwt_secret": "test-secret"}
    settings.update(overrides)
    return CryptoNestConfig(**settings)


async def fund(system, user_id: str, amount) -> None:
    """Open an account (if needed) and post an approved deposit to it"""
    if await system.ledger.get_account(user_id) is None:
        await system.ledger.open_account(user_id, email=f"{user_id}@example.com")
    await system.ledger.post_entry(user_id, TransactionType.DEPOSIT, usd(amount), "Test funding")


async def active_investment(system, user_id: str, plan_key: str, amount, start=START):
    """Fund the user, create an investment and approve it at start"""
    await fund(system, user_id, amount)
    investment = await system.investment_manager.create_investment(user_id, plan_key, usd(amount))
    return await system.investment_manager.approve_investment(investment.id, now=start)
