"""
Test suite for the account ledger

Tests credit/debit rules, paired entry posting with compensation,
per-account serialization and reconciliation against the transaction log.
"""

import pytest
import asyncio

from cryptonest.accounts import AccountRole
from cryptonest.audit import AuditEventType
from cryptonest.transactions import TransactionType
from cryptonest.exceptions import (
    ConflictError, InsufficientFunds, InvalidAmount, NotFoundError, ValidationError
)

from helpers import fund, usd


pytest_plugins = ('pytest_asyncio',)


class TestAccountOpening:

    @pytest.mark.asyncio
    async def test_open_account(self, system):
        account = await system.ledger.open_account("u1", email="u1@example.com", display_name="Ada")

        assert account.user_id == "u1"
        assert account.balance == usd("0")
        assert account.total_invested == usd("0")
        assert account.total_interest == usd("0")
        assert account.role == AccountRole.USER

        loaded = await system.ledger.get_account("u1")
        assert loaded.email == "u1@example.com"
        assert loaded.version == 1

    @pytest.mark.asyncio
    async def test_open_twice_conflicts(self, system):
        await system.ledger.open_account("u1")
        with pytest.raises(ConflictError):
            await system.ledger.open_account("u1")

    @pytest.mark.asyncio
    async def test_ensure_account_opens_then_refreshes(self, system):
        first = await system.ledger.ensure_account("u1", email="old@example.com")
        second = await system.ledger.ensure_account("u1", email="new@example.com",
                                                    role=AccountRole.ADMIN)

        assert first.email == "old@example.com"
        assert second.email == "new@example.com"
        assert second.role == AccountRole.ADMIN
        assert second.balance == usd("0")

    @pytest.mark.asyncio
    async def test_find_by_email(self, system):
        await system.ledger.open_account("u1", email="u1@example.com")

        assert (await system.ledger.find_by_email("u1@example.com")).user_id == "u1"
        assert await system.ledger.find_by_email("nobody@example.com") is None

    @pytest.mark.asyncio
    async def test_missing_account(self, system):
        assert await system.ledger.get_account("ghost") is None
        with pytest.raises(NotFoundError):
            await system.ledger.credit("ghost", usd("10"))


class TestProfileUpdate:

    @pytest.mark.asyncio
    async def test_updates_name_and_email_only(self, system):
        await fund(system, "u1", "750")

        account = await system.ledger.update_profile(
            "u1", email="ada@example.com", display_name="  Ada Lovelace "
        )

        assert account.display_name == "Ada Lovelace"
        assert account.email == "ada@example.com"
        assert account.balance == usd("750")
        assert account.role == AccountRole.USER
        assert (await system.ledger.find_by_email("ada@example.com")).user_id == "u1"

        events = await system.audit_trail.get_events_by_type(AuditEventType.PROFILE_UPDATED)
        assert events[-1].metadata == {"fields": ["display_name", "email"]}

    @pytest.mark.asyncio
    @pytest.mark.parametrize("changes", [
        {},
        {"display_name": "   "},
        {"display_name": "x" * 101},
        {"email": "not-an-email"},
    ])
    async def test_invalid_changes(self, system, changes):
        await system.ledger.open_account("u1", email="u1@example.com", display_name="Ada")

        with pytest.raises(ValidationError):
            await system.ledger.update_profile("u1", **changes)

        account = await system.ledger.get_account("u1")
        assert account.display_name == "Ada"
        assert account.version == 1

    @pytest.mark.asyncio
    async def test_email_taken_by_another_account(self, system):
        await system.ledger.open_account("u1", email="u1@example.com")
        await system.ledger.open_account("u2", email="u2@example.com")

        with pytest.raises(ConflictError):
            await system.ledger.update_profile("u2", email="u1@example.com")

        # Re-saving one's own address is fine
        account = await system.ledger.update_profile("u1", email="u1@example.com")
        assert account.version == 2

    @pytest.mark.asyncio
    async def test_missing_account(self, system):
        with pytest.raises(NotFoundError):
            await system.ledger.update_profile("ghost", display_name="Nobody")


class TestCreditDebit:

    @pytest.mark.asyncio
    async def test_credit_and_debit(self, system):
        await system.ledger.open_account("u1")

        account = await system.ledger.credit("u1", usd("100"))
        assert account.balance == usd("100")

        account = await system.ledger.debit("u1", usd("40.50"))
        assert account.balance == usd("59.50")
        assert account.version == 3

    @pytest.mark.asyncio
    @pytest.mark.parametrize("amount", ["0", "-5"])
    async def test_credit_requires_positive_amount(self, system, amount):
        await system.ledger.open_account("u1")
        with pytest.raises(InvalidAmount):
            await system.ledger.credit("u1", usd(amount))

    @pytest.mark.asyncio
    async def test_debit_never_goes_negative(self, system):
        await system.ledger.open_account("u1")
        await system.ledger.credit("u1", usd("100"))

        with pytest.raises(InsufficientFunds):
            await system.ledger.debit("u1", usd("100.01"))

        assert (await system.ledger.get_account("u1")).balance == usd("100")

    @pytest.mark.asyncio
    async def test_concurrent_credits_all_apply(self, system):
        await system.ledger.open_account("u1")

        await asyncio.gather(*[system.ledger.credit("u1", usd("10")) for _ in range(20)])

        account = await system.ledger.get_account("u1")
        assert account.balance == usd("200")
        assert account.version == 21

    @pytest.mark.asyncio
    async def test_conflict_after_exhausted_retries(self, system, monkeypatch):
        await system.ledger.open_account("u1")
        original = system.storage.compare_and_save

        async def always_stale(table, record_id, data, expected_version):
            if table == "accounts":
                return False
            return await original(table, record_id, data, expected_version)

        monkeypatch.setattr(system.storage, "compare_and_save", always_stale)

        with pytest.raises(ConflictError):
            await system.ledger.credit("u1", usd("10"))


class TestPostEntry:
    """Balance effect and log entry applied together"""

    @pytest.mark.asyncio
    async def test_effects_per_transaction_type(self, system):
        await system.ledger.open_account("u1")
        ledger = system.ledger

        await ledger.post_entry("u1", TransactionType.DEPOSIT, usd("1000"), "deposit")
        await ledger.post_entry("u1", TransactionType.BUY, usd("600"), "buy")
        await ledger.post_entry("u1", TransactionType.INTEREST, usd("45"), "interest")
        await ledger.post_entry("u1", TransactionType.SELL, usd("100"), "sell")
        await ledger.post_entry("u1", TransactionType.WITHDRAWAL, usd("200"), "withdrawal")
        await ledger.post_entry("u1", TransactionType.SECURITY, usd("0"), "password reset")

        account = await ledger.get_account("u1")
        assert account.balance == usd("345")
        assert account.total_invested == usd("500")
        assert account.total_interest == usd("45")

        assert await system.transaction_log.count_for_user("u1") == 6

    @pytest.mark.asyncio
    async def test_security_entry_must_be_zero(self, system):
        await system.ledger.open_account("u1")
        with pytest.raises(ValidationError):
            await system.ledger.post_entry("u1", TransactionType.SECURITY, usd("1"), "nope")

    @pytest.mark.asyncio
    async def test_failed_debit_writes_no_transaction(self, system):
        await fund(system, "u1", "50")

        with pytest.raises(InsufficientFunds):
            await system.ledger.post_entry("u1", TransactionType.WITHDRAWAL, usd("80"), "too much")

        assert await system.transaction_log.count_for_user("u1", TransactionType.WITHDRAWAL) == 0
        assert (await system.ledger.get_account("u1")).balance == usd("50")

    @pytest.mark.asyncio
    async def test_failed_append_is_compensated(self, system, monkeypatch):
        await fund(system, "u1", "100")

        async def broken_append(*args, **kwargs):
            raise RuntimeError("log unavailable")

        monkeypatch.setattr(system.transaction_log, "append", broken_append)

        with pytest.raises(RuntimeError):
            await system.ledger.post_entry("u1", TransactionType.BUY, usd("60"), "buy")

        account = await system.ledger.get_account("u1")
        assert account.balance == usd("100")
        assert account.total_invested == usd("0")

    @pytest.mark.asyncio
    async def test_withdraw(self, system):
        await fund(system, "u1", "300")

        transaction = await system.ledger.withdraw("u1", usd("120"))
        assert transaction.transaction_type == TransactionType.WITHDRAWAL
        assert (await system.ledger.get_account("u1")).balance == usd("180")

        with pytest.raises(InsufficientFunds):
            await system.ledger.withdraw("u1", usd("181"))


class TestReconcile:
    """Cached account fields versus the transaction log"""

    @pytest.mark.asyncio
    async def test_consistent_account_matches(self, system):
        await fund(system, "u1", "1000")
        await system.ledger.post_entry("u1", TransactionType.BUY, usd("400"), "buy")
        await system.ledger.post_entry("u1", TransactionType.INTEREST, usd("12.34"), "interest")

        report = await system.ledger.reconcile("u1")
        assert report.matches
        assert report.differences == []
        assert report.transaction_count == 3
        assert report.computed["balance"] == usd("612.34")

    @pytest.mark.asyncio
    async def test_drift_is_reported_and_repaired(self, system):
        await fund(system, "u1", "1000")

        # Out-of-band credit with no log entry
        await system.ledger.credit("u1", usd("50"))

        report = await system.ledger.reconcile("u1")
        assert not report.matches
        assert report.differences == ["balance"]
        assert report.cached["balance"] == usd("1050")
        assert report.computed["balance"] == usd("1000")
        assert not report.repaired

        mismatches = await system.audit_trail.get_events_by_type(AuditEventType.RECONCILIATION_MISMATCH)
        assert len(mismatches) == 1

        repaired = await system.ledger.reconcile("u1", repair=True)
        assert repaired.repaired
        assert (await system.ledger.get_account("u1")).balance == usd("1000")
        assert (await system.ledger.reconcile("u1")).matches
