"""
Tests for Async Storage Interface

Tests the async storage implementations, the configuration-driven factory
and the translation of connectivity failures into TransientInfraError.
"""

import pytest
import pytest_asyncio
import asyncio

from cryptonest.async_storage import (
    AsyncInMemoryStorage,
    AsyncPostgreSQLStorage,
    AsyncSQLiteStorage,
    create_async_storage
)
from cryptonest.exceptions import TransientInfraError

from helpers import make_config


pytest_plugins = ('pytest_asyncio',)


class TestAsyncInMemoryStorage:
    """Test AsyncInMemoryStorage functionality"""

    @pytest_asyncio.fixture
    async def storage(self):
        """Create async in-memory storage instance"""
        return AsyncInMemoryStorage()

    @pytest.mark.asyncio
    async def test_basic_crud_operations(self, storage):
        """Test basic CRUD operations"""
        table = "test_table"
        record_id = "test_record"
        data = {
            "id": record_id,
            "name": "Test Record",
            "amount": "123.45",
            "created_at": "2024-01-01T00:00:00Z"
        }

        await storage.save(table, record_id, data)
        assert await storage.load(table, record_id) == data
        assert await storage.exists(table, record_id) is True
        assert await storage.count(table) == 1
        assert await storage.load_all(table) == [data]

        assert await storage.delete(table, record_id) is True
        assert await storage.load(table, record_id) is None
        assert await storage.exists(table, record_id) is False

    @pytest.mark.asyncio
    async def test_find(self, storage):
        await storage.save("investments", "I1", {"id": "I1", "status": "active"})
        await storage.save("investments", "I2", {"id": "I2", "status": "pending"})

        rows = await storage.find("investments", {"status": "active"})
        assert [row["id"] for row in rows] == ["I1"]

    @pytest.mark.asyncio
    async def test_compare_and_save(self, storage):
        assert await storage.compare_and_save("t", "r", {"id": "r", "version": 1}, None)
        assert not await storage.compare_and_save("t", "r", {"id": "r", "version": 1}, None)
        assert await storage.compare_and_save("t", "r", {"id": "r", "version": 2}, 1)
        assert not await storage.compare_and_save("t", "r", {"id": "r", "version": 3}, 1)

    @pytest.mark.asyncio
    async def test_racing_writers_only_one_wins(self, storage):
        await storage.compare_and_save("t", "r", {"id": "r", "version": 1}, None)

        results = await asyncio.gather(*[
            storage.compare_and_save("t", "r", {"id": "r", "version": 2, "writer": n}, 1)
            for n in range(5)
        ])

        assert results.count(True) == 1
        assert (await storage.load("t", "r"))["version"] == 2

    @pytest.mark.asyncio
    async def test_clear_table(self, storage):
        await storage.save("t", "a", {"id": "a"})
        await storage.clear_table("t")
        assert await storage.count("t") == 0


class TestAsyncSQLiteStorage:

    @pytest.mark.asyncio
    async def test_persists_across_instances(self, tmp_path):
        path = str(tmp_path / "cryptonest.db")
        storage = AsyncSQLiteStorage(path)
        await storage.compare_and_save("accounts", "u1", {"id": "u1", "version": 1}, None)
        await storage.close()

        reopened = AsyncSQLiteStorage(path)
        assert await reopened.load("accounts", "u1") == {"id": "u1", "version": 1}
        await reopened.close()


class TestAsyncPostgreSQLStorage:

    @pytest.mark.asyncio
    async def test_uninitialized_pool_is_transient_error(self):
        storage = AsyncPostgreSQLStorage("postgresql://localhost/none")

        with pytest.raises(TransientInfraError):
            await storage.load("accounts", "u1")

    @pytest.mark.asyncio
    async def test_close_without_pool(self):
        storage = AsyncPostgreSQLStorage("postgresql://localhost/none")
        await storage.close()
        assert storage.pool is None


class TestCreateAsyncStorage:
    """Factory selection by configuration"""

    def test_memory(self):
        assert isinstance(create_async_storage(make_config(storage_type="memory")), AsyncInMemoryStorage)

    def test_sqlite(self, tmp_path):
        config = make_config(storage_type="sqlite", sqlite_path=str(tmp_path / "x.db"))
        assert isinstance(create_async_storage(config), AsyncSQLiteStorage)

    def test_postgresql(self):
        config = make_config(storage_type="postgresql", database_url="postgresql://u:p@localhost/db")
        storage = create_async_storage(config)
        assert isinstance(storage, AsyncPostgreSQLStorage)
        assert storage.connection_string == "postgresql://u:p@localhost/db"

    def test_postgresql_requires_url(self):
        with pytest.raises(ValueError, match="DATABASE_URL"):
            create_async_storage(make_config(storage_type="postgresql", database_url=""))

    def test_unknown_type(self):
        with pytest.raises(ValueError, match="Unknown storage type"):
            create_async_storage(make_config(storage_type="mongodb"))
