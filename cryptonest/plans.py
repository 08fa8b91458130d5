"""
Plan Catalog Module

Fixed-rate, fixed-duration investment tiers. The catalog is seeded at
startup, read by investment creation (band validation) and by the accrual
job (interest computation), and changed only through the admin update path.
Plans are retired by deactivation, never deleted, so historical investments
keep resolving their plan.
"""

from decimal import Decimal, InvalidOperation
from datetime import datetime, timezone
from dataclasses import dataclass
from typing import Any, Dict, List, Optional
from enum import Enum

from .currency import Money, Currency, parse_amount
from .storage import StorageRecord
from .async_storage import AsyncStorageInterface
from .audit import AuditTrail, AuditEventType
from .exceptions import ConflictError, NotFoundError, ValidationError
from .logging_config import get_logger


logger = get_logger("cryptonest.plans")


class PlanTier(Enum):
    """Plan keys offered by the platform"""
    BASIC = "basic"
    GOLD = "gold"
    PLATINUM = "platinum"


DEFAULT_PLANS: List[Dict[str, Any]] = [
    {
        "key": PlanTier.BASIC.value,
        "name": "Basic Plan",
        "min_amount": "100",
        "max_amount": "1000",
        "interest_rate": "10",
        "duration_days": 15,
        "description": "Entry tier: 10% over 15 days",
    },
    {
        "key": PlanTier.GOLD.value,
        "name": "Gold Plan",
        "min_amount": "1001",
        "max_amount": "5000",
        "interest_rate": "15",
        "duration_days": 20,
        "description": "Mid tier: 15% over 20 days",
    },
    {
        "key": PlanTier.PLATINUM.value,
        "name": "Platinum Plan",
        "min_amount": "5001",
        "max_amount": "10000",
        "interest_rate": "20",
        "duration_days": 30,
        "description": "Top tier: 20% over 30 days",
    },
]

EDITABLE_FIELDS = (
    "name", "min_amount", "max_amount", "interest_rate",
    "duration_days", "description", "is_active",
)


@dataclass
class Plan(StorageRecord):
    """
    Investment tier keyed by its tier key.

    interest_rate is the total percentage paid once over duration_days, not
    an annual rate.
    """
    name: str
    min_amount: Money
    max_amount: Money
    interest_rate: Decimal
    duration_days: int
    description: str = ""
    is_active: bool = True
    version: int = 1

    def __post_init__(self):
        if not isinstance(self.duration_days, int) or isinstance(self.duration_days, bool) \
                or self.duration_days <= 0:
            raise ValidationError("Plan duration must be a positive number of days")

        if self.interest_rate < Decimal('0') or self.interest_rate > Decimal('100'):
            raise ValidationError("Plan interest rate must be between 0 and 100 percent")

        if self.min_amount.currency != self.max_amount.currency:
            raise ValidationError("Plan band bounds must share a currency")

        if self.min_amount.is_negative():
            raise ValidationError("Plan minimum amount cannot be negative")

        if self.min_amount > self.max_amount:
            raise ValidationError("Plan minimum amount exceeds maximum amount")

    @property
    def key(self) -> str:
        return self.id

    @property
    def currency(self) -> Currency:
        return self.min_amount.currency

    def check_amount(self, amount: Money) -> None:
        """Raise ValidationError unless amount lies inside [min_amount, max_amount]"""
        if amount.currency != self.currency:
            raise ValidationError(f"{self.name} accepts {self.currency.code} only")

        if amount < self.min_amount or amount > self.max_amount:
            raise ValidationError(
                f"Amount {amount.to_string()} is outside the {self.name} band "
                f"{self.min_amount.to_string()} - {self.max_amount.to_string()}",
                details={
                    "plan": self.key,
                    "min_amount": str(self.min_amount.amount),
                    "max_amount": str(self.max_amount.amount)
                }
            )

    def term_interest(self, principal: Money) -> Money:
        """Total interest owed over the full term"""
        return Money(principal.amount * self.interest_rate / Decimal('100'), principal.currency)

    def interest_through_day(self, principal: Money, days: int) -> Money:
        """
        Cumulative interest owed after the given number of whole term days.

        Rounded once on the cumulative figure, so summing the per-day
        differences never drifts from the term total.
        """
        days = max(0, min(days, self.duration_days))
        raw = principal.amount * self.interest_rate / Decimal('100') \
            * Decimal(days) / Decimal(self.duration_days)
        return Money(raw, principal.currency)


class PlanCatalog:
    """
    Manages plan definitions
    """

    def __init__(self, storage: AsyncStorageInterface, audit_trail: AuditTrail,
                 currency: Currency = Currency.USD):
        self.storage = storage
        self.audit_trail = audit_trail
        self.currency = currency
        self.table_name = "plans"

    async def seed_or_update(self, definitions: List[Dict[str, Any]]) -> List[Plan]:
        """
        Idempotent upsert by plan key.

        Returns the plans that were created or changed; re-running with the
        same definitions returns an empty list and writes nothing. An existing
        plan's is_active flag is kept unless the definition sets it.
        """
        changed = []
        for definition in definitions:
            definition = dict(definition)
            key = definition.pop("key")
            existing = await self.lookup(key)

            if existing is None:
                changed.append(await self._create(key, definition))
                continue

            changes = {
                name: value for name, value in self._coerce(definition).items()
                if getattr(existing, name) != value
            }
            if changes:
                changed.append(await self._update(existing, changes))

        if changed:
            logger.info(
                f"Plan catalog seeded, {len(changed)} plan(s) written",
                extra={'action': 'seed_plans'}
            )
        return changed

    async def lookup(self, key: str) -> Optional[Plan]:
        """Resolve a plan by key, including deactivated plans"""
        data = await self.storage.load(self.table_name, key)
        if data:
            return self._plan_from_dict(data)
        return None

    async def require(self, key: str) -> Plan:
        plan = await self.lookup(key)
        if plan is None:
            raise NotFoundError(f"Plan {key} not found")
        return plan

    async def list_plans(self, active_only: bool = True) -> List[Plan]:
        """List plans ordered by minimum amount"""
        if active_only:
            rows = await self.storage.find(self.table_name, {"is_active": True})
        else:
            rows = await self.storage.load_all(self.table_name)
        plans = [self._plan_from_dict(row) for row in rows]
        plans.sort(key=lambda p: p.min_amount.amount)
        return plans

    async def update_plan(self, key: str, **changes) -> Plan:
        """Admin edit; the result is re-validated before it is stored"""
        unknown = set(changes) - set(EDITABLE_FIELDS)
        if unknown:
            raise ValidationError(f"Unknown plan fields: {', '.join(sorted(unknown))}")

        plan = await self.require(key)
        return await self._update(plan, self._coerce(changes))

    async def deactivate_plan(self, key: str) -> Plan:
        """Retire a plan; existing investments still resolve it"""
        plan = await self.require(key)
        if not plan.is_active:
            return plan

        plan = await self._update(plan, {"is_active": False}, event_type=AuditEventType.PLAN_DEACTIVATED)
        logger.info(f"Plan {key} deactivated", extra={'action': 'deactivate_plan', 'resource': key})
        return plan

    async def _create(self, key: str, definition: Dict[str, Any]) -> Plan:
        try:
            PlanTier(key)
        except ValueError:
            raise ValidationError(
                f"Unknown plan key: {key}",
                details={"allowed": [tier.value for tier in PlanTier]}
            )

        now = datetime.now(timezone.utc)
        fields = self._coerce(definition)
        fields.setdefault("is_active", True)
        plan = Plan(id=key, created_at=now, updated_at=now, **fields)

        if not await self.storage.compare_and_save(self.table_name, key, self._plan_to_dict(plan), None):
            raise ConflictError(f"Plan {key} already exists")

        await self.audit_trail.log_event(
            event_type=AuditEventType.PLAN_CREATED,
            entity_type="plan",
            entity_id=key,
            metadata=self._plan_to_dict(plan)
        )
        return plan

    async def _update(self, plan: Plan, changes: Dict[str, Any],
                      event_type: AuditEventType = AuditEventType.PLAN_UPDATED) -> Plan:
        data = self._plan_to_dict(plan)
        data.update(self._serialize_fields(changes))
        data['version'] = plan.version + 1
        data['updated_at'] = datetime.now(timezone.utc).isoformat()

        # Round-trip through the dataclass so the edit is validated
        updated = self._plan_from_dict(data)

        saved = await self.storage.compare_and_save(
            self.table_name, plan.key, self._plan_to_dict(updated), plan.version
        )
        if not saved:
            raise ConflictError(f"Plan {plan.key} was modified concurrently")

        await self.audit_trail.log_event(
            event_type=event_type,
            entity_type="plan",
            entity_id=plan.key,
            metadata={
                "old_version": plan.version,
                "new_version": updated.version,
                "changes": self._serialize_fields(changes)
            }
        )
        return updated

    def _coerce(self, fields: Dict[str, Any]) -> Dict[str, Any]:
        """Convert raw definition values to the types Plan holds"""
        result = {}
        for name, value in fields.items():
            if name in ("min_amount", "max_amount"):
                result[name] = value if isinstance(value, Money) else parse_amount(value, self.currency)
            elif name == "interest_rate":
                try:
                    result[name] = Decimal(str(value))
                except InvalidOperation:
                    raise ValidationError(f"Invalid interest rate: {value}")
            elif name == "duration_days":
                try:
                    result[name] = int(value)
                except (TypeError, ValueError):
                    raise ValidationError(f"Invalid duration: {value}")
            elif name == "is_active":
                result[name] = bool(value)
            elif name in ("name", "description"):
                result[name] = str(value)
            else:
                raise ValidationError(f"Unknown plan field: {name}")
        return result

    @staticmethod
    def _serialize_fields(fields: Dict[str, Any]) -> Dict[str, Any]:
        result = {}
        for name, value in fields.items():
            if isinstance(value, Money):
                value = str(value.amount)
            elif isinstance(value, Decimal):
                value = str(value)
            result[name] = value
        return result

    def _plan_to_dict(self, plan: Plan) -> Dict:
        result = plan.to_dict()
        result['min_amount'] = str(plan.min_amount.amount)
        result['max_amount'] = str(plan.max_amount.amount)
        result['currency'] = plan.currency.code
        result['interest_rate'] = str(plan.interest_rate)
        return result

    def _plan_from_dict(self, data: Dict) -> Plan:
        currency = Currency[data.get('currency', self.currency.code)]
        return Plan(
            id=data['id'],
            created_at=datetime.fromisoformat(data['created_at']),
            updated_at=datetime.fromisoformat(data['updated_at']),
            name=data['name'],
            min_amount=Money(Decimal(data['min_amount']), currency),
            max_amount=Money(Decimal(data['max_amount']), currency),
            interest_rate=Decimal(data['interest_rate']),
            duration_days=data['duration_days'],
            description=data.get('description', ''),
            is_active=data.get('is_active', True),
            version=data.get('version', 1)
        )
