"""
Document Store Module

Synchronous document-store contract and its two local backends. A document
is a JSON object keyed by id inside a named collection. Collections are
created on first use.

Documents that take part in optimistic concurrency carry an integer
"version" field; compare_and_save writes only when the stored version still
matches, which is the only cross-writer guarantee the ledger relies on.
"""

from abc import ABC, abstractmethod
from typing import Dict, List, Optional, Any, Union
from decimal import Decimal
from datetime import datetime
import sqlite3
import json
import threading
from dataclasses import dataclass, asdict
from pathlib import Path


@dataclass
class StorageRecord:
    """Base class for all stored records"""
    id: str
    created_at: datetime
    updated_at: datetime

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for storage"""
        result = asdict(self)
        result['created_at'] = self.created_at.isoformat()
        result['updated_at'] = self.updated_at.isoformat()
        for key, value in result.items():
            if isinstance(value, Decimal):
                result[key] = str(value)
        return result


class StorageInterface(ABC):
    """Abstract interface for document-store backends"""

    @abstractmethod
    def save(self, collection: str, doc_id: str, document: Dict[str, Any]) -> None:
        """Insert or overwrite a document"""
        pass

    @abstractmethod
    def compare_and_save(self, collection: str, doc_id: str, document: Dict[str, Any],
                         expected_version: Optional[int]) -> bool:
        """
        Write only if the stored document's version equals expected_version.

        expected_version=None means insert only if absent. Returns False
        when another writer got there first.
        """
        pass

    @abstractmethod
    def load(self, collection: str, doc_id: str) -> Optional[Dict[str, Any]]:
        pass

    @abstractmethod
    def load_all(self, collection: str) -> List[Dict[str, Any]]:
        """Every document in the collection, in insertion order"""
        pass

    @abstractmethod
    def delete(self, collection: str, doc_id: str) -> bool:
        pass

    @abstractmethod
    def exists(self, collection: str, doc_id: str) -> bool:
        pass

    @abstractmethod
    def find(self, collection: str, filters: Dict[str, Any]) -> List[Dict[str, Any]]:
        """Documents whose top-level fields equal every filter value, in insertion order"""
        pass

    @abstractmethod
    def count(self, collection: str) -> int:
        pass

    @abstractmethod
    def clear_table(self, collection: str) -> None:
        """Remove every document from a collection"""
        pass

    @abstractmethod
    def close(self) -> None:
        pass


def _copy(document: Dict[str, Any]) -> Dict[str, Any]:
    """Detached JSON-normalized copy; datetimes and Decimals become strings"""
    return json.loads(json.dumps(document, default=str))


def _matches(document: Dict[str, Any], filters: Dict[str, Any]) -> bool:
    return all(name in document and document[name] == value for name, value in filters.items())


class InMemoryStorage(StorageInterface):
    """Process-local document store for tests and single-process runs"""

    def __init__(self):
        self._collections: Dict[str, Dict[str, Dict[str, Any]]] = {}
        self._lock = threading.RLock()

    def _collection(self, name: str) -> Dict[str, Dict[str, Any]]:
        return self._collections.setdefault(name, {})

    def save(self, collection: str, doc_id: str, document: Dict[str, Any]) -> None:
        with self._lock:
            self._collection(collection)[doc_id] = _copy(document)

    def compare_and_save(self, collection: str, doc_id: str, document: Dict[str, Any],
                         expected_version: Optional[int]) -> bool:
        with self._lock:
            documents = self._collection(collection)
            current = documents.get(doc_id)
            if expected_version is None:
                if current is not None:
                    return False
            elif current is None or current.get('version') != expected_version:
                return False
            documents[doc_id] = _copy(document)
            return True

    def load(self, collection: str, doc_id: str) -> Optional[Dict[str, Any]]:
        with self._lock:
            document = self._collection(collection).get(doc_id)
            return _copy(document) if document is not None else None

    def load_all(self, collection: str) -> List[Dict[str, Any]]:
        with self._lock:
            return [_copy(document) for document in self._collection(collection).values()]

    def delete(self, collection: str, doc_id: str) -> bool:
        with self._lock:
            return self._collection(collection).pop(doc_id, None) is not None

    def exists(self, collection: str, doc_id: str) -> bool:
        with self._lock:
            return doc_id in self._collection(collection)

    def find(self, collection: str, filters: Dict[str, Any]) -> List[Dict[str, Any]]:
        with self._lock:
            return [
                _copy(document)
                for document in self._collection(collection).values()
                if _matches(document, filters)
            ]

    def count(self, collection: str) -> int:
        with self._lock:
            return len(self._collection(collection))

    def clear_table(self, collection: str) -> None:
        with self._lock:
            self._collections[collection] = {}

    def close(self) -> None:
        pass


class SQLiteStorage(StorageInterface):
    """
    Single-file document store.

    All collections share one documents table keyed by (collection, id).
    The version lives in its own column so compare_and_save is a single
    conditional statement, and filters are evaluated in SQL with
    json_extract.
    """

    SCHEMA = """
        CREATE TABLE IF NOT EXISTS documents (
            seq INTEGER PRIMARY KEY AUTOINCREMENT,
            collection TEXT NOT NULL,
            id TEXT NOT NULL,
            version INTEGER,
            data TEXT NOT NULL,
            UNIQUE (collection, id)
        )
    """

    def __init__(self, db_path: Union[str, Path] = ":memory:"):
        self.db_path = str(db_path)
        self._connection = sqlite3.connect(self.db_path, check_same_thread=False)
        self._connection.row_factory = sqlite3.Row
        self._lock = threading.RLock()

        with self._lock:
            if self.db_path != ":memory:":
                self._connection.execute("PRAGMA journal_mode = WAL")
                self._connection.execute("PRAGMA synchronous = NORMAL")
            self._connection.execute(self.SCHEMA)
            self._connection.commit()

    def _write(self, sql: str, params: tuple) -> int:
        with self._lock:
            cursor = self._connection.execute(sql, params)
            self._connection.commit()
            return cursor.rowcount

    def _read(self, sql: str, params: tuple) -> List[sqlite3.Row]:
        with self._lock:
            return self._connection.execute(sql, params).fetchall()

    def save(self, collection: str, doc_id: str, document: Dict[str, Any]) -> None:
        self._write("""
            INSERT INTO documents (collection, id, version, data) VALUES (?, ?, ?, ?)
            ON CONFLICT (collection, id) DO UPDATE
            SET version = excluded.version, data = excluded.data
        """, (collection, doc_id, document.get('version'), json.dumps(document, default=str)))

    def compare_and_save(self, collection: str, doc_id: str, document: Dict[str, Any],
                         expected_version: Optional[int]) -> bool:
        data = json.dumps(document, default=str)
        if expected_version is None:
            changed = self._write("""
                INSERT OR IGNORE INTO documents (collection, id, version, data)
                VALUES (?, ?, ?, ?)
            """, (collection, doc_id, document.get('version'), data))
        else:
            changed = self._write("""
                UPDATE documents SET version = ?, data = ?
                WHERE collection = ? AND id = ? AND version = ?
            """, (document.get('version'), data, collection, doc_id, expected_version))
        return changed == 1

    def load(self, collection: str, doc_id: str) -> Optional[Dict[str, Any]]:
        rows = self._read(
            "SELECT data FROM documents WHERE collection = ? AND id = ?", (collection, doc_id)
        )
        return json.loads(rows[0]['data']) if rows else None

    def load_all(self, collection: str) -> List[Dict[str, Any]]:
        return self.find(collection, {})

    def delete(self, collection: str, doc_id: str) -> bool:
        return self._write(
            "DELETE FROM documents WHERE collection = ? AND id = ?", (collection, doc_id)
        ) > 0

    def exists(self, collection: str, doc_id: str) -> bool:
        return bool(self._read(
            "SELECT 1 FROM documents WHERE collection = ? AND id = ? LIMIT 1", (collection, doc_id)
        ))

    def find(self, collection: str, filters: Dict[str, Any]) -> List[Dict[str, Any]]:
        clauses = ["collection = ?"]
        params: List[Any] = [collection]
        for name, value in filters.items():
            # json_extract yields 1/0 for JSON booleans, which compare equal to True/False
            clauses.append("json_type(data, ?) IS NOT NULL AND json_extract(data, ?) IS ?")
            params.extend([f"$.{name}", f"$.{name}", value])

        rows = self._read(
            f"SELECT data FROM documents WHERE {' AND '.join(clauses)} ORDER BY seq", tuple(params)
        )
        return [json.loads(row['data']) for row in rows]

    def count(self, collection: str) -> int:
        rows = self._read("SELECT COUNT(*) AS n FROM documents WHERE collection = ?", (collection,))
        return rows[0]['n']

    def clear_table(self, collection: str) -> None:
        self._write("DELETE FROM documents WHERE collection = ?", (collection,))

    def close(self) -> None:
        with self._lock:
            if self._connection:
                self._connection.close()
                self._connection = None
