"""
Interest Accrual Module

The daily batch that pays plan interest on active investments and closes
them at maturity.

Each run pays every whole term day elapsed since the record was last paid,
so a run missed during downtime is caught up on the next one. Amounts are
derived from the cumulative target for the days covered, never from a fixed
per-day figure, so the interest paid over a record's life sums exactly to
principal x rate / 100. At maturity only the unpaid remainder is credited.

A record is claimed by a compare-and-save on its version before any money
moves; a second run racing on the same record loses the claim and pays
nothing. The whole run additionally holds a persisted run-lock.
"""

from datetime import datetime, timezone
from dataclasses import dataclass, field, replace
from decimal import Decimal
from typing import Any, Dict, Optional, Tuple
from enum import Enum
import uuid

from .currency import Money
from .audit import AuditTrail, AuditEventType
from .accounts import AccountLedger
from .plans import Plan, PlanCatalog
from .investments import EndReason, Investment, InvestmentManager, InvestmentStatus
from .transactions import TransactionType
from .locks import RunLock
from .exceptions import IntegrityError
from .logging_config import get_logger, log_action, run_context


logger = get_logger("cryptonest.accrual")

JOB_NAME = "interest_accrual"


class AccrualOutcome(Enum):
    """What a run did to one record"""
    CREDITED = "credited"    # Daily interest paid
    MATURED = "matured"      # Remainder paid, record ended
    CLOSED = "closed"        # Force-closed on an integrity problem
    SKIPPED = "skipped"      # Nothing due


@dataclass
class AccrualRunSummary:
    """Counts for one accrual run"""
    run_id: str
    as_of: datetime        # clock the run accrues against
    started_at: datetime   # wall clock
    finished_at: Optional[datetime] = None
    processed: int = 0
    credited: int = 0
    matured: int = 0
    closed: int = 0
    skipped: int = 0
    failed: int = 0
    total_credited: Decimal = field(default_factory=lambda: Decimal('0'))
    skipped_locked: bool = False

    def to_dict(self) -> Dict[str, Any]:
        return {
            "run_id": self.run_id,
            "as_of": self.as_of.isoformat(),
            "started_at": self.started_at.isoformat(),
            "finished_at": self.finished_at.isoformat() if self.finished_at else None,
            "processed": self.processed,
            "credited": self.credited,
            "matured": self.matured,
            "closed": self.closed,
            "skipped": self.skipped,
            "failed": self.failed,
            "total_credited": str(self.total_credited),
            "skipped_locked": self.skipped_locked,
        }


class AccrualJob:
    """
    Pays interest on active investments
    """

    def __init__(
        self,
        investment_manager: InvestmentManager,
        plan_catalog: PlanCatalog,
        ledger: AccountLedger,
        audit_trail: AuditTrail,
        run_lock: RunLock,
        lock_ttl_seconds: int = 3600
    ):
        self.investment_manager = investment_manager
        self.plan_catalog = plan_catalog
        self.ledger = ledger
        self.audit_trail = audit_trail
        self.run_lock = run_lock
        self.lock_ttl_seconds = lock_ttl_seconds

    async def run_accrual_cycle(self, now: Optional[datetime] = None) -> AccrualRunSummary:
        """
        Run one accrual pass over every active investment.

        Per-record failures are logged and counted and the pass continues.
        Failing to list the records aborts the run; the next tick starts over.
        """
        now = now or datetime.now(timezone.utc)
        summary = AccrualRunSummary(
            run_id=str(uuid.uuid4()), as_of=now, started_at=datetime.now(timezone.utc)
        )

        owner = await self.run_lock.acquire(JOB_NAME, self.lock_ttl_seconds, now=now)
        if owner is None:
            summary.skipped_locked = True
            logger.warning(
                "Accrual run skipped, another run holds the lock",
                extra={'action': 'accrual_run', 'resource': JOB_NAME}
            )
            return summary

        with run_context(summary.run_id):
            try:
                await self.audit_trail.log_event(
                    event_type=AuditEventType.ACCRUAL_RUN_STARTED,
                    entity_type="job",
                    entity_id=JOB_NAME,
                    metadata={"run_id": summary.run_id, "as_of": now}
                )

                investments = await self.investment_manager.list_by_status(InvestmentStatus.ACTIVE)

                for investment in investments:
                    summary.processed += 1
                    try:
                        outcome, amount = await self.accrue_investment(investment, now)
                    except Exception as e:
                        summary.failed += 1
                        await self._record_failure(summary, investment, e)
                        continue

                    if outcome == AccrualOutcome.CREDITED:
                        summary.credited += 1
                    elif outcome == AccrualOutcome.MATURED:
                        summary.matured += 1
                    elif outcome == AccrualOutcome.CLOSED:
                        summary.closed += 1
                    else:
                        summary.skipped += 1
                    summary.total_credited += amount.amount

                summary.finished_at = datetime.now(timezone.utc)
                await self.audit_trail.log_event(
                    event_type=AuditEventType.ACCRUAL_RUN_COMPLETED,
                    entity_type="job",
                    entity_id=JOB_NAME,
                    metadata=summary.to_dict()
                )
            finally:
                await self.run_lock.release(JOB_NAME, owner)

        log_action(logger, "info", "Accrual run completed",
                   action="accrual_run", resource=JOB_NAME, extra=summary.to_dict())
        return summary

    async def accrue_investment(self, investment: Investment,
                                now: datetime) -> Tuple[AccrualOutcome, Money]:
        """Process one active record; returns what happened and how much was credited"""
        zero = Money.zero(investment.principal.currency)

        try:
            plan = await self._resolve_plan(investment)
        except IntegrityError as e:
            await self._force_close(investment, e, now)
            return AccrualOutcome.CLOSED, zero

        if now >= investment.end_date(plan):
            return await self._mature(investment, plan, now)

        elapsed_days = max(0, (now - investment.start_date).days)
        due_days = min(elapsed_days, plan.duration_days) - investment.accrued_days
        if due_days <= 0:
            return AccrualOutcome.SKIPPED, zero

        accrued_days = investment.accrued_days + due_days
        target = plan.interest_through_day(investment.principal, accrued_days)
        amount = target - investment.interest_paid
        if not amount.is_positive():
            amount = zero

        claimed = await self.investment_manager.transition(investment, replace(
            investment,
            accrued_days=accrued_days,
            interest_paid=investment.interest_paid + amount,
            last_accrued_at=now
        ))

        if amount.is_zero():
            return AccrualOutcome.SKIPPED, zero

        await self._pay(claimed, investment, amount,
                        f"Daily interest from {plan.name} ({accrued_days}/{plan.duration_days} days)")

        await self.audit_trail.log_event(
            event_type=AuditEventType.INTEREST_ACCRUED,
            entity_type="investment",
            entity_id=investment.id,
            metadata={
                "amount": str(amount.amount),
                "days": due_days,
                "accrued_days": accrued_days,
                "interest_paid": str(claimed.interest_paid.amount)
            }
        )
        return AccrualOutcome.CREDITED, amount

    async def _mature(self, investment: Investment, plan: Plan,
                      now: datetime) -> Tuple[AccrualOutcome, Money]:
        remainder = plan.term_interest(investment.principal) - investment.interest_paid
        if remainder.is_negative():
            remainder = Money.zero(remainder.currency)

        claimed = await self.investment_manager.transition(investment, replace(
            investment,
            status=InvestmentStatus.ENDED,
            accrued_days=plan.duration_days,
            interest_paid=investment.interest_paid + remainder,
            last_accrued_at=now,
            ended_at=now,
            end_reason=EndReason.MATURED
        ))

        if remainder.is_positive():
            await self._pay(claimed, investment, remainder, f"Final interest from {plan.name}")

        await self.audit_trail.log_event(
            event_type=AuditEventType.INVESTMENT_MATURED,
            entity_type="investment",
            entity_id=investment.id,
            metadata={
                "final_amount": str(remainder.amount),
                "interest_paid": str(claimed.interest_paid.amount)
            }
        )
        log_action(logger, "info", f"Investment matured, final interest {remainder.to_string()}",
                   user_id=investment.user_id, action="investment_matured", resource=investment.id)

        return AccrualOutcome.MATURED, remainder

    async def _pay(self, claimed: Investment, previous: Investment, amount: Money, detail: str) -> None:
        """Credit interest for a claimed record, restoring the record if the credit fails"""
        try:
            await self.ledger.post_entry(
                user_id=claimed.user_id,
                transaction_type=TransactionType.INTEREST,
                amount=amount,
                detail=detail,
                investment_id=claimed.id
            )
        except Exception:
            logger.error(
                "Interest credit failed, restoring investment state",
                extra={'user_id': claimed.user_id, 'action': 'accrual_compensate',
                       'resource': claimed.id}
            )
            await self.investment_manager.transition(claimed, previous)
            raise

    async def _resolve_plan(self, investment: Investment) -> Plan:
        plan = await self.plan_catalog.lookup(investment.plan_key)
        if plan is None:
            raise IntegrityError(
                f"Active investment references missing plan {investment.plan_key}",
                details={"reason": EndReason.MISSING_PLAN.value}
            )
        if investment.start_date is None:
            raise IntegrityError(
                "Active investment has no start date",
                details={"reason": EndReason.MISSING_START_DATE.value}
            )
        return plan

    async def _force_close(self, investment: Investment, error: IntegrityError, now: datetime) -> None:
        reason = EndReason(error.details["reason"])
        await self.investment_manager.transition(investment, replace(
            investment,
            status=InvestmentStatus.ENDED,
            ended_at=now,
            end_reason=reason
        ))

        await self.audit_trail.log_event(
            event_type=AuditEventType.INVESTMENT_FORCE_CLOSED,
            entity_type="investment",
            entity_id=investment.id,
            metadata={"reason": reason.value, "message": error.message}
        )
        logger.error(
            f"Investment force-closed: {error.message}",
            extra={'user_id': investment.user_id, 'action': 'investment_force_closed',
                   'resource': investment.id}
        )

    async def _record_failure(self, summary: AccrualRunSummary, investment: Investment,
                              error: Exception) -> None:
        logger.error(
            f"Accrual failed for investment: {error}",
            exc_info=True,
            extra={'user_id': investment.user_id, 'action': 'accrual_record_failed',
                   'resource': investment.id}
        )
        try:
            await self.audit_trail.log_event(
                event_type=AuditEventType.ACCRUAL_RECORD_FAILED,
                entity_type="investment",
                entity_id=investment.id,
                metadata={"run_id": summary.run_id, "error": str(error),
                          "error_type": type(error).__name__}
            )
        except Exception:
            logger.exception(
                "Could not write audit event for failed accrual",
                extra={'action': 'accrual_record_failed', 'resource': investment.id}
            )
