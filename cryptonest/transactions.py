"""
Transaction Log Module

Append-only history of ledger-affecting events. Every change to an account's
balance, invested total or interest total is paired with exactly one entry
here; the entries are never updated or deleted.
"""

from datetime import datetime, timezone
from dataclasses import dataclass
from decimal import Decimal
from typing import Dict, List, Optional
from enum import Enum
import uuid

from .currency import Money, Currency
from .storage import StorageRecord
from .async_storage import AsyncStorageInterface
from .exceptions import ValidationError


class TransactionType(Enum):
    """Types of ledger events"""
    DEPOSIT = "deposit"          # Approved deposit credited
    WITHDRAWAL = "withdrawal"    # Funds paid out
    INTEREST = "interest"        # Daily or final plan interest
    BUY = "buy"                  # Principal committed to an investment
    SELL = "sell"                # Principal returned (rejected investment refund)
    SECURITY = "security"        # Security event, carries no amount


@dataclass
class Transaction(StorageRecord):
    """Immutable ledger event"""
    user_id: str
    transaction_type: TransactionType
    amount: Money
    detail: str
    investment_id: Optional[str] = None
    reference: Optional[str] = None


class TransactionLog:
    """
    Appends and queries ledger events
    """

    def __init__(self, storage: AsyncStorageInterface):
        self.storage = storage
        self.transactions_table = "transactions"

    async def append(
        self,
        user_id: str,
        transaction_type: TransactionType,
        amount: Money,
        detail: str,
        investment_id: Optional[str] = None,
        reference: Optional[str] = None
    ) -> Transaction:
        """Append a new event to the log"""
        if amount.is_negative():
            raise ValidationError("Transaction amounts are recorded unsigned")

        now = datetime.now(timezone.utc)
        transaction = Transaction(
            id=str(uuid.uuid4()),
            created_at=now,
            updated_at=now,
            user_id=user_id,
            transaction_type=transaction_type,
            amount=amount,
            detail=detail,
            investment_id=investment_id,
            reference=reference
        )

        # Insert-only: an id collision must never overwrite history
        inserted = await self.storage.compare_and_save(
            self.transactions_table, transaction.id,
            self._transaction_to_dict(transaction), None
        )
        if not inserted:
            raise ValidationError(f"Transaction {transaction.id} already exists")

        return transaction

    async def get(self, transaction_id: str) -> Optional[Transaction]:
        data = await self.storage.load(self.transactions_table, transaction_id)
        if data:
            return self._transaction_from_dict(data)
        return None

    async def list_for_user(
        self,
        user_id: str,
        transaction_type: Optional[TransactionType] = None,
        limit: int = 20,
        offset: int = 0
    ) -> List[Transaction]:
        """Newest-first page of a user's transactions"""
        transactions = await self.list_all_for_user(user_id, transaction_type)
        transactions.reverse()
        return transactions[offset:offset + limit]

    async def count_for_user(self, user_id: str,
                             transaction_type: Optional[TransactionType] = None) -> int:
        return len(await self.list_all_for_user(user_id, transaction_type))

    async def list_all_for_user(
        self,
        user_id: str,
        transaction_type: Optional[TransactionType] = None
    ) -> List[Transaction]:
        """All of a user's transactions, oldest first"""
        filters = {"user_id": user_id}
        if transaction_type:
            filters["transaction_type"] = transaction_type.value

        rows = await self.storage.find(self.transactions_table, filters)
        transactions = [self._transaction_from_dict(row) for row in rows]
        transactions.sort(key=lambda t: t.created_at)
        return transactions

    def _transaction_to_dict(self, transaction: Transaction) -> Dict:
        result = transaction.to_dict()
        result['transaction_type'] = transaction.transaction_type.value
        result['amount'] = str(transaction.amount.amount)
        result['currency'] = transaction.amount.currency.code
        return result

    def _transaction_from_dict(self, data: Dict) -> Transaction:
        return Transaction(
            id=data['id'],
            created_at=datetime.fromisoformat(data['created_at']),
            updated_at=datetime.fromisoformat(data['updated_at']),
            user_id=data['user_id'],
            transaction_type=TransactionType(data['transaction_type']),
            amount=Money(Decimal(data['amount']), Currency[data['currency']]),
            detail=data['detail'],
            investment_id=data.get('investment_id'),
            reference=data.get('reference')
        )
