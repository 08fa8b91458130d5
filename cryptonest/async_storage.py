"""
Async Storage Backend Module

The document-store contract every service in CryptoNest is written against.
The in-memory and SQLite backends run their sync counterparts on worker
threads; AsyncPostgreSQLStorage keeps every collection in one JSONB
documents table behind an asyncpg pool. Driver connectivity errors surface
as TransientInfraError so callers can tell "retry later" from a bug.
"""

from abc import ABC, abstractmethod
from typing import Dict, List, Optional, Any
import asyncio
import json
import sqlite3

import asyncpg

from .exceptions import TransientInfraError
from .storage import StorageInterface, InMemoryStorage, SQLiteStorage
from .config import CryptoNestConfig, get_config


class AsyncStorageInterface(ABC):
    """Async twin of StorageInterface; see storage.py for the semantics"""

    @abstractmethod
    async def save(self, collection: str, doc_id: str, document: Dict[str, Any]) -> None:
        pass

    @abstractmethod
    async def compare_and_save(self, collection: str, doc_id: str, document: Dict[str, Any],
                               expected_version: Optional[int]) -> bool:
        """Write only if the stored version matches (None = insert if absent)"""
        pass

    @abstractmethod
    async def load(self, collection: str, doc_id: str) -> Optional[Dict[str, Any]]:
        pass

    @abstractmethod
    async def load_all(self, collection: str) -> List[Dict[str, Any]]:
        pass

    @abstractmethod
    async def delete(self, collection: str, doc_id: str) -> bool:
        pass

    @abstractmethod
    async def exists(self, collection: str, doc_id: str) -> bool:
        pass

    @abstractmethod
    async def find(self, collection: str, filters: Dict[str, Any]) -> List[Dict[str, Any]]:
        pass

    @abstractmethod
    async def count(self, collection: str) -> int:
        pass

    @abstractmethod
    async def clear_table(self, collection: str) -> None:
        pass

    async def initialize(self) -> None:
        """Open connections; no-op for local backends"""
        pass

    async def close(self) -> None:
        pass


class _ThreadedStorage(AsyncStorageInterface):
    """Runs a sync StorageInterface on worker threads, one call at a time"""

    transient_errors: tuple = ()

    def __init__(self, sync_storage: StorageInterface):
        self._sync_storage = sync_storage
        self._lock = asyncio.Lock()

    async def _call(self, name: str, *args):
        method = getattr(self._sync_storage, name)
        async with self._lock:
            try:
                return await asyncio.to_thread(method, *args)
            except self.transient_errors as e:
                raise TransientInfraError(f"Storage unavailable: {e}")

    async def save(self, collection, doc_id, document):
        await self._call('save', collection, doc_id, document)

    async def compare_and_save(self, collection, doc_id, document, expected_version):
        return await self._call('compare_and_save', collection, doc_id, document, expected_version)

    async def load(self, collection, doc_id):
        return await self._call('load', collection, doc_id)

    async def load_all(self, collection):
        return await self._call('load_all', collection)

    async def delete(self, collection, doc_id):
        return await self._call('delete', collection, doc_id)

    async def exists(self, collection, doc_id):
        return await self._call('exists', collection, doc_id)

    async def find(self, collection, filters):
        return await self._call('find', collection, filters)

    async def count(self, collection):
        return await self._call('count', collection)

    async def clear_table(self, collection):
        await self._call('clear_table', collection)

    async def close(self) -> None:
        await self._call('close')


class AsyncInMemoryStorage(_ThreadedStorage):
    """Async wrapper around InMemoryStorage for tests and local runs"""

    def __init__(self):
        super().__init__(InMemoryStorage())


class AsyncSQLiteStorage(_ThreadedStorage):
    """Async wrapper around SQLiteStorage for single-node persistence"""

    transient_errors = (sqlite3.OperationalError,)

    def __init__(self, db_path: str):
        super().__init__(SQLiteStorage(db_path))


class AsyncPostgreSQLStorage(AsyncStorageInterface):
    """
    Shared PostgreSQL store on an asyncpg pool.

    Same layout as SQLiteStorage: one row per (collection, id), the version
    in its own column for compare_and_save, the body in JSONB.
    """

    SCHEMA = (
        '''
        CREATE TABLE IF NOT EXISTS documents (
            seq BIGSERIAL,
            collection TEXT NOT NULL,
            id TEXT NOT NULL,
            version BIGINT,
            data JSONB NOT NULL,
            updated_at TIMESTAMP WITH TIME ZONE DEFAULT NOW(),
            PRIMARY KEY (collection, id)
        )
        ''',
        'CREATE INDEX IF NOT EXISTS idx_documents_data ON documents USING gin(data)',
    )

    transient_errors = (
        OSError,
        asyncpg.exceptions.PostgresConnectionError,
        asyncpg.exceptions.InterfaceError,
        asyncpg.exceptions.CannotConnectNowError,
    )

    def __init__(self, connection_string: str, pool_size: int = 10, command_timeout: int = 60):
        self.connection_string = connection_string
        self.pool_size = pool_size
        self.command_timeout = command_timeout
        self.pool = None

    async def initialize(self) -> None:
        """Create the connection pool and the documents table; call on app startup"""
        try:
            self.pool = await asyncpg.create_pool(
                self.connection_string,
                min_size=2,
                max_size=self.pool_size,
                command_timeout=self.command_timeout
            )
        except self.transient_errors as e:
            raise TransientInfraError(f"Cannot connect to PostgreSQL: {e}")
        for statement in self.SCHEMA:
            await self._run('execute', statement)

    async def close(self) -> None:
        if self.pool:
            await self.pool.close()
            self.pool = None

    async def _run(self, method: str, query: str, *args):
        if self.pool is None:
            raise TransientInfraError("PostgreSQL pool is not initialized")
        try:
            async with self.pool.acquire() as conn:
                return await getattr(conn, method)(query, *args)
        except self.transient_errors as e:
            raise TransientInfraError(f"PostgreSQL unavailable: {e}")

    @staticmethod
    def _document(row) -> Dict[str, Any]:
        # asyncpg hands JSONB back as text unless a codec is registered
        data = row['data']
        return json.loads(data) if isinstance(data, str) else data

    async def save(self, collection, doc_id, document):
        await self._run('execute', '''
            INSERT INTO documents (collection, id, version, data) VALUES ($1, $2, $3, $4)
            ON CONFLICT (collection, id)
            DO UPDATE SET version = EXCLUDED.version, data = EXCLUDED.data, updated_at = NOW()
        ''', collection, doc_id, document.get('version'), json.dumps(document, default=str))

    async def compare_and_save(self, collection, doc_id, document, expected_version):
        body = json.dumps(document, default=str)
        if expected_version is None:
            status = await self._run('execute', '''
                INSERT INTO documents (collection, id, version, data) VALUES ($1, $2, $3, $4)
                ON CONFLICT (collection, id) DO NOTHING
            ''', collection, doc_id, document.get('version'), body)
            return status == 'INSERT 0 1'

        status = await self._run('execute', '''
            UPDATE documents SET version = $3, data = $4, updated_at = NOW()
            WHERE collection = $1 AND id = $2 AND version = $5
        ''', collection, doc_id, document.get('version'), body, expected_version)
        return status == 'UPDATE 1'

    async def load(self, collection, doc_id):
        row = await self._run(
            'fetchrow', 'SELECT data FROM documents WHERE collection = $1 AND id = $2',
            collection, doc_id
        )
        return self._document(row) if row else None

    async def load_all(self, collection):
        return await self.find(collection, {})

    async def delete(self, collection, doc_id):
        status = await self._run(
            'execute', 'DELETE FROM documents WHERE collection = $1 AND id = $2', collection, doc_id
        )
        return status != 'DELETE 0'

    async def exists(self, collection, doc_id):
        row = await self._run(
            'fetchrow', 'SELECT 1 FROM documents WHERE collection = $1 AND id = $2',
            collection, doc_id
        )
        return row is not None

    async def find(self, collection, filters):
        # JSONB containment matches strings, numbers, booleans and null by JSON value
        rows = await self._run(
            'fetch',
            'SELECT data FROM documents WHERE collection = $1 AND data @> $2::jsonb ORDER BY seq',
            collection, json.dumps(filters, default=str)
        )
        return [self._document(row) for row in rows]

    async def count(self, collection):
        return await self._run(
            'fetchval', 'SELECT COUNT(*) FROM documents WHERE collection = $1', collection
        )

    async def clear_table(self, collection):
        await self._run('execute', 'DELETE FROM documents WHERE collection = $1', collection)


def create_async_storage(config: Optional[CryptoNestConfig] = None) -> AsyncStorageInterface:
    """Build the backend named by config.storage_type"""
    config = config or get_config()
    storage_type = config.storage_type.lower()

    if storage_type == 'memory':
        return AsyncInMemoryStorage()
    if storage_type == 'sqlite':
        return AsyncSQLiteStorage(config.sqlite_path)
    if storage_type == 'postgresql':
        if not config.database_url:
            raise ValueError("CRYPTONEST_DATABASE_URL is required for PostgreSQL storage")
        return AsyncPostgreSQLStorage(
            config.database_url,
            pool_size=config.database_pool_size,
            command_timeout=config.database_command_timeout
        )

    raise ValueError(f"Unknown storage type: {config.storage_type}")
