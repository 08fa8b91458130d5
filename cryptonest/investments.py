"""
Investment Lifecycle Module

One record per user commitment to a plan:

    pending -> active -> ended
    pending -> cancelled

ended and cancelled are terminal. Principal is taken from the balance when
the record is created (a buy entry) and only returned if the request is
rejected (a sell entry). Interest is paid by the accrual job while active.
"""

from datetime import datetime, timezone, timedelta
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
from .plans import Plan, PlanCatalog
from .transactions import TransactionType
from .exceptions import ConflictError, NotFoundError, ValidationError
from .logging_config import get_logger, log_action


logger = get_logger("cryptonest.investments")


class InvestmentStatus(Enum):
    """Investment lifecycle states"""
    PENDING = "pending"        # Principal debited, awaiting approval
    ACTIVE = "active"          # Accruing interest
    ENDED = "ended"            # Matured or force-closed
    CANCELLED = "cancelled"    # Rejected before approval, principal refunded


TERMINAL_STATUSES = frozenset({InvestmentStatus.ENDED, InvestmentStatus.CANCELLED})


class EndReason(Enum):
    """Why an investment left the active state"""
    MATURED = "matured"
    MISSING_PLAN = "missing_plan"
    MISSING_START_DATE = "missing_start_date"


@dataclass
class Investment(StorageRecord):
    """
    A user's principal committed to a plan
    """
    user_id: str
    plan_key: str
    principal: Money
    status: InvestmentStatus = InvestmentStatus.PENDING
    start_date: Optional[datetime] = None
    interest_paid: Optional[Money] = None
    accrued_days: int = 0           # Whole term days already paid
    last_accrued_at: Optional[datetime] = None
    ended_at: Optional[datetime] = None
    end_reason: Optional[EndReason] = None
    version: int = 1

    def __post_init__(self):
        if self.interest_paid is None:
            self.interest_paid = Money.zero(self.principal.currency)

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    def end_date(self, plan: Plan) -> Optional[datetime]:
        if self.start_date is None:
            return None
        return self.start_date + timedelta(days=plan.duration_days)


class InvestmentManager:
    """
    Creates investment records and applies admin decisions
    """

    def __init__(
        self,
        storage: AsyncStorageInterface,
        ledger: AccountLedger,
        plan_catalog: PlanCatalog,
        audit_trail: AuditTrail
    ):
        self.storage = storage
        self.ledger = ledger
        self.plan_catalog = plan_catalog
        self.audit_trail = audit_trail
        self.table_name = "investments"

    async def create_investment(self, user_id: str, plan_key: str, amount: Money) -> Investment:
        """
        Validate against the plan band, debit the principal and record a
        pending investment.

        Validation happens before any ledger change, so a rejected request
        leaves the balance untouched.
        """
        plan = await self.plan_catalog.lookup(plan_key)
        if plan is None:
            raise NotFoundError(f"Plan {plan_key} not found")
        if not plan.is_active:
            raise ValidationError(f"{plan.name} is no longer offered")
        plan.check_amount(amount)

        await self.ledger.require_account(user_id)

        now = datetime.now(timezone.utc)
        investment = Investment(
            id=str(uuid.uuid4()),
            created_at=now,
            updated_at=now,
            user_id=user_id,
            plan_key=plan.key,
            principal=amount
        )

        await self.ledger.post_entry(
            user_id=user_id,
            transaction_type=TransactionType.BUY,
            amount=amount,
            detail=f"Investment in {plan.name}",
            investment_id=investment.id
        )

        try:
            if not await self._save(investment, None):
                raise ConflictError(f"Investment {investment.id} already exists")
        except Exception:
            logger.error(
                "Investment record not saved, refunding principal",
                extra={'user_id': user_id, 'action': 'create_investment', 'resource': investment.id}
            )
            await self.ledger.post_entry(
                user_id=user_id,
                transaction_type=TransactionType.SELL,
                amount=amount,
                detail=f"Refund of unrecorded {plan.name} investment",
                investment_id=investment.id
            )
            raise

        await self.audit_trail.log_event(
            event_type=AuditEventType.INVESTMENT_CREATED,
            entity_type="investment",
            entity_id=investment.id,
            metadata={"plan": plan.key, "principal": str(amount.amount)},
            user_id=user_id
        )
        log_action(logger, "info", f"Investment of {amount.to_string()} in {plan.name} created",
                   user_id=user_id, action="create_investment", resource=investment.id)

        return investment

    async def approve_investment(self, investment_id: str, now: Optional[datetime] = None,
                                 actor: Optional[str] = None) -> Investment:
        """pending -> active; the term starts now"""
        now = now or datetime.now(timezone.utc)
        investment = await self.require(investment_id)
        self._require_pending(investment)

        active = replace(
            investment,
            status=InvestmentStatus.ACTIVE,
            start_date=now,
            updated_at=now,
            version=investment.version + 1
        )
        if not await self._save(active, investment.version):
            raise ConflictError(f"Investment {investment_id} was resolved concurrently")

        await self.audit_trail.log_event(
            event_type=AuditEventType.INVESTMENT_APPROVED,
            entity_type="investment",
            entity_id=investment_id,
            metadata={"start_date": now, "owner": investment.user_id},
            user_id=actor
        )
        log_action(logger, "info", "Investment approved",
                   user_id=investment.user_id, action="approve_investment", resource=investment_id)

        return active

    async def reject_investment(self, investment_id: str, actor: Optional[str] = None) -> Investment:
        """pending -> cancelled with a full principal refund"""
        investment = await self.require(investment_id)
        self._require_pending(investment)

        now = datetime.now(timezone.utc)
        cancelled = replace(
            investment,
            status=InvestmentStatus.CANCELLED,
            ended_at=now,
            updated_at=now,
            version=investment.version + 1
        )
        if not await self._save(cancelled, investment.version):
            raise ConflictError(f"Investment {investment_id} was resolved concurrently")

        try:
            await self.ledger.post_entry(
                user_id=investment.user_id,
                transaction_type=TransactionType.SELL,
                amount=investment.principal,
                detail="Refund of rejected investment",
                investment_id=investment.id
            )
        except Exception:
            logger.error(
                "Refund failed, returning investment to pending",
                extra={'user_id': investment.user_id, 'action': 'reject_investment',
                       'resource': investment_id}
            )
            await self._save(
                replace(investment, version=cancelled.version + 1, updated_at=datetime.now(timezone.utc)),
                cancelled.version
            )
            raise

        await self.audit_trail.log_event(
            event_type=AuditEventType.INVESTMENT_REJECTED,
            entity_type="investment",
            entity_id=investment_id,
            metadata={"refund": str(investment.principal.amount), "owner": investment.user_id},
            user_id=actor
        )
        log_action(logger, "info", "Investment rejected and refunded",
                   user_id=investment.user_id, action="reject_investment", resource=investment_id)

        return cancelled

    async def get(self, investment_id: str) -> Optional[Investment]:
        data = await self.storage.load(self.table_name, investment_id)
        if data:
            return self._investment_from_dict(data)
        return None

    async def require(self, investment_id: str) -> Investment:
        investment = await self.get(investment_id)
        if investment is None:
            raise NotFoundError(f"Investment {investment_id} not found")
        return investment

    async def list_for_user(self, user_id: str,
                            status: Optional[InvestmentStatus] = None) -> List[Investment]:
        """A user's investments, newest first"""
        filters = {"user_id": user_id}
        if status:
            filters["status"] = status.value
        rows = await self.storage.find(self.table_name, filters)
        investments = [self._investment_from_dict(row) for row in rows]
        investments.sort(key=lambda i: i.created_at, reverse=True)
        return investments

    async def list_pending(self) -> List[Investment]:
        return await self.list_by_status(InvestmentStatus.PENDING)

    async def list_by_status(self, status: InvestmentStatus) -> List[Investment]:
        """All investments in a state, oldest first"""
        rows = await self.storage.find(self.table_name, {"status": status.value})
        investments = [self._investment_from_dict(row) for row in rows]
        investments.sort(key=lambda i: i.created_at)
        return investments

    async def transition(self, current: Investment, updated: Investment) -> Investment:
        """
        Store updated in place of current if nobody else changed it first.

        Raises ConflictError when current is stale.
        """
        updated = replace(updated, version=current.version + 1,
                          updated_at=datetime.now(timezone.utc))
        if not await self._save(updated, current.version):
            raise ConflictError(f"Investment {current.id} was modified concurrently")
        return updated

    def _require_pending(self, investment: Investment) -> None:
        if investment.status != InvestmentStatus.PENDING:
            raise ConflictError(
                f"Investment {investment.id} is already {investment.status.value}",
                details={"status": investment.status.value}
            )

    async def _save(self, investment: Investment, expected_version: Optional[int]) -> bool:
        return await self.storage.compare_and_save(
            self.table_name, investment.id, self._investment_to_dict(investment), expected_version
        )

    def _investment_to_dict(self, investment: Investment) -> Dict:
        result = investment.to_dict()
        result['principal'] = str(investment.principal.amount)
        result['currency'] = investment.principal.currency.code
        result['interest_paid'] = str(investment.interest_paid.amount)
        result['status'] = investment.status.value
        result['end_reason'] = investment.end_reason.value if investment.end_reason else None
        for name in ('start_date', 'last_accrued_at', 'ended_at'):
            value = getattr(investment, name)
            result[name] = value.isoformat() if value else None
        return result

    def _investment_from_dict(self, data: Dict) -> Investment:
        currency = Currency[data['currency']]

        def timestamp(name):
            value = data.get(name)
            return datetime.fromisoformat(value) if value else None

        return Investment(
            id=data['id'],
            created_at=datetime.fromisoformat(data['created_at']),
            updated_at=datetime.fromisoformat(data['updated_at']),
            user_id=data['user_id'],
            plan_key=data['plan_key'],
            principal=Money(Decimal(data['principal']), currency),
            status=InvestmentStatus(data['status']),
            start_date=timestamp('start_date'),
            interest_paid=Money(Decimal(data.get('interest_paid', '0')), currency),
            accrued_days=data.get('accrued_days', 0),
            last_accrued_at=timestamp('last_accrued_at'),
            ended_at=timestamp('ended_at'),
            end_reason=EndReason(data['end_reason']) if data.get('end_reason') else None,
            version=data['version']
        )
