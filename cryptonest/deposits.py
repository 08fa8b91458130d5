"""
Deposit Module

User deposit requests awaiting admin resolution. A pending deposit has no
ledger effect: approval posts the deposit entry, rejection only closes the
request. Each request resolves exactly once.
"""

from datetime import datetime, timezone
from dataclasses import dataclass, replace
from decimal import Decimal
from typing import Dict, List, Optional
from enum import Enum
import uuid

from .currency import Money, Currency
from .storage import StorageRecord
from .async_storage import AsyncStorageInterface
from .audit import AuditTrail, AuditEventType
from .accounts import AccountLedger
from .transactions import TransactionType
from .exceptions import ConflictError, InvalidAmount, NotFoundError, ValidationError
from .logging_config import get_logger, log_action


logger = get_logger("cryptonest.deposits")


class DepositStatus(Enum):
    """Deposit request states"""
    PENDING = "pending"
    APPROVED = "approved"
    REJECTED = "rejected"


@dataclass
class Deposit(StorageRecord):
    user_id: str
    amount: Money
    status: DepositStatus = DepositStatus.PENDING
    resolved_at: Optional[datetime] = None
    resolved_by: Optional[str] = None
    version: int = 1

    @property
    def is_pending(self) -> bool:
        return self.status == DepositStatus.PENDING


class DepositManager:
    """
    Creates deposit requests and applies admin decisions
    """

    def __init__(
        self,
        storage: AsyncStorageInterface,
        ledger: AccountLedger,
        audit_trail: AuditTrail,
        min_amount: Money,
        max_amount: Optional[Money] = None
    ):
        self.storage = storage
        self.ledger = ledger
        self.audit_trail = audit_trail
        self.min_amount = min_amount
        self.max_amount = max_amount
        self.table_name = "deposits"

    async def create_deposit(self, user_id: str, amount: Money) -> Deposit:
        """Record a pending deposit; the balance is untouched until approval"""
        if amount.currency != self.min_amount.currency:
            raise InvalidAmount(f"Deposits are accepted in {self.min_amount.currency.code} only")
        if not amount.is_positive():
            raise InvalidAmount(f"Deposit amount must be greater than zero, got {amount.to_string()}")
        if amount < self.min_amount:
            raise ValidationError(
                f"Minimum deposit is {self.min_amount.to_string()}",
                details={"min_amount": str(self.min_amount.amount)}
            )
        if self.max_amount is not None and amount > self.max_amount:
            raise ValidationError(
                f"Maximum deposit is {self.max_amount.to_string()}",
                details={"max_amount": str(self.max_amount.amount)}
            )

        await self.ledger.require_account(user_id)

        now = datetime.now(timezone.utc)
        deposit = Deposit(
            id=str(uuid.uuid4()),
            created_at=now,
            updated_at=now,
            user_id=user_id,
            amount=amount
        )
        await self.storage.compare_and_save(
            self.table_name, deposit.id, self._deposit_to_dict(deposit), None
        )

        await self.audit_trail.log_event(
            event_type=AuditEventType.DEPOSIT_REQUESTED,
            entity_type="deposit",
            entity_id=deposit.id,
            metadata={"amount": str(amount.amount), "currency": amount.currency.code},
            user_id=user_id
        )
        log_action(logger, "info", f"Deposit of {amount.to_string()} requested",
                   user_id=user_id, action="create_deposit", resource=deposit.id)

        return deposit

    async def approve_deposit(self, deposit_id: str, actor: Optional[str] = None) -> Deposit:
        """
        Resolve a pending deposit as approved and credit the account.

        The status change is claimed first; if the ledger entry then fails the
        deposit goes back to pending so it can be approved again.
        """
        deposit = await self.require(deposit_id)
        approved = await self._resolve(deposit, DepositStatus.APPROVED, actor)

        try:
            await self.ledger.post_entry(
                user_id=deposit.user_id,
                transaction_type=TransactionType.DEPOSIT,
                amount=deposit.amount,
                detail=f"Deposit of {deposit.amount.to_string()} approved",
                reference=deposit.id
            )
        except Exception:
            logger.error(
                "Deposit credit failed, returning deposit to pending",
                extra={'user_id': deposit.user_id, 'action': 'approve_deposit', 'resource': deposit.id}
            )
            await self._save(replace(approved, status=DepositStatus.PENDING, resolved_at=None,
                                     resolved_by=None, version=approved.version + 1),
                             approved.version)
            raise

        await self.audit_trail.log_event(
            event_type=AuditEventType.DEPOSIT_APPROVED,
            entity_type="deposit",
            entity_id=deposit.id,
            metadata={"amount": str(deposit.amount.amount), "owner": deposit.user_id},
            user_id=actor
        )
        log_action(logger, "info", f"Deposit of {deposit.amount.to_string()} approved",
                   user_id=deposit.user_id, action="approve_deposit", resource=deposit.id)

        return approved

    async def reject_deposit(self, deposit_id: str, actor: Optional[str] = None) -> Deposit:
        """Resolve a pending deposit as rejected. Nothing was credited, so nothing is reversed."""
        deposit = await self.require(deposit_id)
        rejected = await self._resolve(deposit, DepositStatus.REJECTED, actor)

        await self.audit_trail.log_event(
            event_type=AuditEventType.DEPOSIT_REJECTED,
            entity_type="deposit",
            entity_id=deposit.id,
            metadata={"amount": str(deposit.amount.amount), "owner": deposit.user_id},
            user_id=actor
        )
        log_action(logger, "info", "Deposit rejected",
                   user_id=deposit.user_id, action="reject_deposit", resource=deposit.id)

        return rejected

    async def get(self, deposit_id: str) -> Optional[Deposit]:
        data = await self.storage.load(self.table_name, deposit_id)
        if data:
            return self._deposit_from_dict(data)
        return None

    async def require(self, deposit_id: str) -> Deposit:
        deposit = await self.get(deposit_id)
        if deposit is None:
            raise NotFoundError(f"Deposit {deposit_id} not found")
        return deposit

    async def list_for_user(self, user_id: str) -> List[Deposit]:
        """A user's deposits, newest first"""
        rows = await self.storage.find(self.table_name, {"user_id": user_id})
        deposits = [self._deposit_from_dict(row) for row in rows]
        deposits.sort(key=lambda d: d.created_at, reverse=True)
        return deposits

    async def list_pending(self) -> List[Deposit]:
        """Deposits awaiting a decision, oldest first"""
        rows = await self.storage.find(self.table_name, {"status": DepositStatus.PENDING.value})
        deposits = [self._deposit_from_dict(row) for row in rows]
        deposits.sort(key=lambda d: d.created_at)
        return deposits

    async def _resolve(self, deposit: Deposit, status: DepositStatus, actor: Optional[str]) -> Deposit:
        if not deposit.is_pending:
            raise ConflictError(
                f"Deposit {deposit.id} is already {deposit.status.value}",
                details={"status": deposit.status.value}
            )

        now = datetime.now(timezone.utc)
        resolved = replace(
            deposit,
            status=status,
            resolved_at=now,
            resolved_by=actor,
            updated_at=now,
            version=deposit.version + 1
        )
        if not await self._save(resolved, deposit.version):
            raise ConflictError(f"Deposit {deposit.id} was resolved concurrently")
        return resolved

    async def _save(self, deposit: Deposit, expected_version: int) -> bool:
        return await self.storage.compare_and_save(
            self.table_name, deposit.id, self._deposit_to_dict(deposit), expected_version
        )

    def _deposit_to_dict(self, deposit: Deposit) -> Dict:
        result = deposit.to_dict()
        result['amount'] = str(deposit.amount.amount)
        result['currency'] = deposit.amount.currency.code
        result['status'] = deposit.status.value
        result['resolved_at'] = deposit.resolved_at.isoformat() if deposit.resolved_at else None
        return result

    def _deposit_from_dict(self, data: Dict) -> Deposit:
        resolved_at = data.get('resolved_at')
        return Deposit(
            id=data['id'],
            created_at=datetime.fromisoformat(data['created_at']),
            updated_at=datetime.fromisoformat(data['updated_at']),
            user_id=data['user_id'],
            amount=Money(Decimal(data['amount']), Currency[data['currency']]),
            status=DepositStatus(data['status']),
            resolved_at=datetime.fromisoformat(resolved_at) if resolved_at else None,
            resolved_by=data.get('resolved_by'),
            version=data['version']
        )
