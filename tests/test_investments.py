"""
Test suite for the investment lifecycle

Tests band validation, principal debit on creation, approval and
rejection with refund.
"""

import pytest

from cryptonest.investments import InvestmentStatus
from cryptonest.transactions import TransactionType
from cryptonest.exceptions import (
    ConflictError, InsufficientFunds, NotFoundError, ValidationError
)

from helpers import START, fund, usd


pytest_plugins = ('pytest_asyncio',)


class TestCreateInvestment:

    @pytest.mark.asyncio
    async def test_create_debits_principal(self, system):
        await fund(system, "u1", "3000")

        investment = await system.investment_manager.create_investment("u1", "gold", usd("2000"))

        assert investment.status == InvestmentStatus.PENDING
        assert investment.start_date is None
        assert investment.interest_paid == usd("0")

        account = await system.ledger.get_account("u1")
        assert account.balance == usd("1000")
        assert account.total_invested == usd("2000")

        buys = await system.transaction_log.list_for_user("u1", TransactionType.BUY)
        assert len(buys) == 1
        assert buys[0].investment_id == investment.id

    @pytest.mark.asyncio
    @pytest.mark.parametrize("plan_key,amount", [
        ("basic", "99.99"),
        ("basic", "1000.01"),
        ("gold", "1000"),
        ("platinum", "10000.01"),
    ])
    async def test_outside_band_leaves_balance(self, system, plan_key, amount):
        await fund(system, "u1", "20000")

        with pytest.raises(ValidationError):
            await system.investment_manager.create_investment("u1", plan_key, usd(amount))

        account = await system.ledger.get_account("u1")
        assert account.balance == usd("20000")
        assert account.total_invested == usd("0")

    @pytest.mark.asyncio
    async def test_band_bounds_inclusive(self, system):
        await fund(system, "u1", "20000")

        await system.investment_manager.create_investment("u1", "basic", usd("100"))
        await system.investment_manager.create_investment("u1", "platinum", usd("10000"))

        assert (await system.ledger.get_account("u1")).balance == usd("9900")

    @pytest.mark.asyncio
    async def test_unknown_plan(self, system):
        await fund(system, "u1", "1000")
        with pytest.raises(NotFoundError):
            await system.investment_manager.create_investment("u1", "diamond", usd("500"))

    @pytest.mark.asyncio
    async def test_inactive_plan(self, system):
        await fund(system, "u1", "1000")
        await system.plan_catalog.deactivate_plan("basic")

        with pytest.raises(ValidationError):
            await system.investment_manager.create_investment("u1", "basic", usd("500"))

    @pytest.mark.asyncio
    async def test_insufficient_funds(self, system):
        await fund(system, "u1", "500")

        with pytest.raises(InsufficientFunds):
            await system.investment_manager.create_investment("u1", "basic", usd("600"))

        assert await system.investment_manager.list_for_user("u1") == []
        assert (await system.ledger.get_account("u1")).balance == usd("500")

    @pytest.mark.asyncio
    async def test_unsaved_record_refunds_principal(self, system, monkeypatch):
        await fund(system, "u1", "1000")
        original = system.storage.compare_and_save

        async def failing_for_investments(table, record_id, data, expected_version):
            if table == "investments":
                raise RuntimeError("store unavailable")
            return await original(table, record_id, data, expected_version)

        monkeypatch.setattr(system.storage, "compare_and_save", failing_for_investments)

        with pytest.raises(RuntimeError):
            await system.investment_manager.create_investment("u1", "basic", usd("400"))

        account = await system.ledger.get_account("u1")
        assert account.balance == usd("1000")
        assert account.total_invested == usd("0")
        assert await system.transaction_log.count_for_user("u1", TransactionType.SELL) == 1


class TestResolveInvestment:

    @pytest.mark.asyncio
    async def test_approve_starts_term(self, system):
        await fund(system, "u1", "2000")
        investment = await system.investment_manager.create_investment("u1", "gold", usd("2000"))

        active = await system.investment_manager.approve_investment(investment.id, now=START)

        assert active.status == InvestmentStatus.ACTIVE
        assert active.start_date == START
        plan = await system.plan_catalog.require("gold")
        assert (active.end_date(plan) - START).days == 20

        with pytest.raises(ConflictError):
            await system.investment_manager.approve_investment(investment.id)
        with pytest.raises(ConflictError):
            await system.investment_manager.reject_investment(investment.id)

    @pytest.mark.asyncio
    async def test_reject_refunds_principal(self, system):
        await fund(system, "u1", "1500")
        investment = await system.investment_manager.create_investment("u1", "gold", usd("1500"))

        cancelled = await system.investment_manager.reject_investment(investment.id, actor="admin-1")

        assert cancelled.status == InvestmentStatus.CANCELLED
        assert cancelled.is_terminal
        account = await system.ledger.get_account("u1")
        assert account.balance == usd("1500")
        assert account.total_invested == usd("0")

        sells = await system.transaction_log.list_for_user("u1", TransactionType.SELL)
        assert len(sells) == 1
        assert sells[0].amount == usd("1500")

    @pytest.mark.asyncio
    async def test_failed_refund_returns_to_pending(self, system, monkeypatch):
        await fund(system, "u1", "500")
        investment = await system.investment_manager.create_investment("u1", "basic", usd("500"))

        async def broken_post_entry(*args, **kwargs):
            raise RuntimeError("ledger unavailable")

        monkeypatch.setattr(system.ledger, "post_entry", broken_post_entry)
        with pytest.raises(RuntimeError):
            await system.investment_manager.reject_investment(investment.id)
        monkeypatch.undo()

        restored = await system.investment_manager.get(investment.id)
        assert restored.status == InvestmentStatus.PENDING
        assert (await system.ledger.get_account("u1")).balance == usd("0")

        await system.investment_manager.reject_investment(investment.id)
        assert (await system.ledger.get_account("u1")).balance == usd("500")

    @pytest.mark.asyncio
    async def test_listing(self, system):
        await fund(system, "u1", "5000")
        first = await system.investment_manager.create_investment("u1", "basic", usd("500"))
        second = await system.investment_manager.create_investment("u1", "gold", usd("2000"))
        await system.investment_manager.approve_investment(second.id, now=START)

        mine = await system.investment_manager.list_for_user("u1")
        assert [i.id for i in mine] == [second.id, first.id]

        active = await system.investment_manager.list_for_user("u1", InvestmentStatus.ACTIVE)
        assert [i.id for i in active] == [second.id]

        pending = await system.investment_manager.list_pending()
        assert [i.id for i in pending] == [first.id]

    @pytest.mark.asyncio
    async def test_unknown_investment(self, system):
        with pytest.raises(NotFoundError):
            await system.investment_manager.approve_investment("missing")
