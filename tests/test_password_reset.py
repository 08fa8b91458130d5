"""
Test suite for password reset tokens and flows
"""

import pytest
import pytest_asyncio
from datetime import timedelta

from cryptonest.async_storage import AsyncInMemoryStorage
from cryptonest.audit import AuditEventType
from cryptonest.password_reset import PasswordResetStore, hash_token
from cryptonest.transactions import TransactionType
from cryptonest.exceptions import ConfigurationError, ValidationError

from helpers import START, usd


pytest_plugins = ('pytest_asyncio',)


def record_updates(updated):
    """Password updater that records what it was asked to store"""
    async def update_password(user_id, password):
        updated.append((user_id, password))
    return update_password


class TestPasswordResetStore:

    @pytest_asyncio.fixture
    async def store(self):
        return PasswordResetStore(AsyncInMemoryStorage(), ttl_minutes=15)

    @pytest.mark.asyncio
    async def test_token_is_single_use(self, store):
        token = await store.issue("u1", now=START)

        assert await store.consume(token, now=START + timedelta(minutes=5)) == "u1"
        with pytest.raises(ValidationError):
            await store.consume(token, now=START + timedelta(minutes=6))

    @pytest.mark.asyncio
    async def test_only_digest_is_stored(self, store):
        token = await store.issue("u1", now=START)

        assert await store.storage.load(store.table_name, token) is None
        record = await store.storage.load(store.table_name, hash_token(token))
        assert record["user_id"] == "u1"

    @pytest.mark.asyncio
    async def test_expired_token(self, store):
        token = await store.issue("u1", now=START)

        with pytest.raises(ValidationError):
            await store.consume(token, now=START + timedelta(minutes=15))

    @pytest.mark.asyncio
    async def test_unknown_token(self, store):
        with pytest.raises(ValidationError):
            await store.consume("not-a-token")

    @pytest.mark.asyncio
    async def test_release_makes_token_usable_again(self, store):
        token = await store.issue("u1", now=START)
        await store.consume(token, now=START)

        await store.release(token)

        assert await store.consume(token, now=START + timedelta(minutes=1)) == "u1"

    @pytest.mark.asyncio
    async def test_purge_expired(self, store):
        used = await store.issue("u1", now=START)
        await store.consume(used, now=START)
        await store.issue("u2", now=START)
        fresh = await store.issue("u3", now=START + timedelta(minutes=10))

        removed = await store.purge_expired(now=START + timedelta(minutes=20))

        assert removed == 2
        assert await store.consume(fresh, now=START + timedelta(minutes=20)) == "u3"


class TestPasswordResetService:

    @pytest.mark.asyncio
    async def test_reset_flow(self, system):
        delivered = []
        updated = []

        async def deliver(account, token):
            delivered.append((account.user_id, token))

        async def update_password(user_id, password):
            updated.append((user_id, password))

        system.password_reset.deliver = deliver
        system.password_reset.update_password = update_password
        await system.ledger.open_account("u1", email="u1@example.com")

        await system.password_reset.request_reset("u1@example.com")
        assert len(delivered) == 1
        user_id, token = delivered[0]
        assert user_id == "u1"

        assert await system.password_reset.complete_reset(token, "correct horse") == "u1"
        assert updated == [("u1", "correct horse")]

        security = await system.transaction_log.list_for_user("u1", TransactionType.SECURITY)
        assert len(security) == 1
        assert security[0].amount == usd("0")
        assert (await system.ledger.get_account("u1")).balance == usd("0")

        completed = await system.audit_trail.get_events_by_type(AuditEventType.PASSWORD_RESET_COMPLETED)
        assert completed[0].entity_id == "u1"

        with pytest.raises(ValidationError):
            await system.password_reset.complete_reset(token, "another password")

    @pytest.mark.asyncio
    async def test_unknown_email_is_silent(self, system):
        delivered = []

        async def deliver(account, token):
            delivered.append(token)

        system.password_reset.deliver = deliver
        await system.password_reset.request_reset("nobody@example.com")

        assert delivered == []

    @pytest.mark.asyncio
    async def test_short_password_keeps_token(self, system):
        system.password_reset.update_password = record_updates([])
        await system.ledger.open_account("u1", email="u1@example.com")
        token = await system.reset_store.issue("u1")

        with pytest.raises(ValidationError):
            await system.password_reset.complete_reset(token, "short")

        assert await system.password_reset.complete_reset(token, "long enough") == "u1"

    @pytest.mark.asyncio
    async def test_without_credential_store(self, system):
        await system.ledger.open_account("u1", email="u1@example.com")
        token = await system.reset_store.issue("u1")

        with pytest.raises(ConfigurationError):
            await system.password_reset.complete_reset(token, "long enough")

        assert await system.transaction_log.count_for_user("u1", TransactionType.SECURITY) == 0
        assert await system.reset_store.consume(token) == "u1"

    @pytest.mark.asyncio
    async def test_failed_update_releases_token(self, system):
        await system.ledger.open_account("u1", email="u1@example.com")
        token = await system.reset_store.issue("u1")

        async def unavailable(user_id, password):
            raise RuntimeError("credential store down")

        system.password_reset.update_password = unavailable
        with pytest.raises(RuntimeError):
            await system.password_reset.complete_reset(token, "long enough")
        assert await system.transaction_log.count_for_user("u1", TransactionType.SECURITY) == 0

        updated = []
        system.password_reset.update_password = record_updates(updated)
        assert await system.password_reset.complete_reset(token, "long enough") == "u1"
        assert updated == [("u1", "long enough")]
        assert await system.transaction_log.count_for_user("u1", TransactionType.SECURITY) == 1
