"""
Admin endpoints (approvals, plan edits, accrual, maintenance)
"""

from datetime import datetime, timezone
from typing import Any, Dict, Optional
from fastapi import APIRouter, Depends, Query

from .auth import CryptoNestSystem, get_system, require_admin
from .schemas import (
    UpdatePlanRequest, deposit_response, investment_response, plan_response
)
from ..identity import Identity
from ..exceptions import ValidationError


router = APIRouter()


# Deposits
@router.get("/deposits/pending")
async def list_pending_deposits(
    admin: Identity = Depends(require_admin),
    system: CryptoNestSystem = Depends(get_system)
):
    deposits = await system.deposit_manager.list_pending()
    return {"deposits": [deposit_response(deposit) for deposit in deposits]}


@router.post("/deposits/{deposit_id}/approve")
async def approve_deposit(
    deposit_id: str,
    admin: Identity = Depends(require_admin),
    system: CryptoNestSystem = Depends(get_system)
):
    """Approve a pending deposit and credit the owner's balance"""
    deposit = await system.deposit_manager.approve_deposit(deposit_id, actor=admin.subject_id)
    return deposit_response(deposit)


@router.post("/deposits/{deposit_id}/reject")
async def reject_deposit(
    deposit_id: str,
    admin: Identity = Depends(require_admin),
    system: CryptoNestSystem = Depends(get_system)
):
    deposit = await system.deposit_manager.reject_deposit(deposit_id, actor=admin.subject_id)
    return deposit_response(deposit)


# Investments
@router.get("/investments/pending")
async def list_pending_investments(
    admin: Identity = Depends(require_admin),
    system: CryptoNestSystem = Depends(get_system)
):
    investments = await system.investment_manager.list_pending()
    return {"investments": [investment_response(investment) for investment in investments]}


@router.post("/investments/{investment_id}/approve")
async def approve_investment(
    investment_id: str,
    admin: Identity = Depends(require_admin),
    system: CryptoNestSystem = Depends(get_system)
):
    """Activate a pending investment; its term starts now"""
    investment = await system.investment_manager.approve_investment(
        investment_id, actor=admin.subject_id
    )
    return investment_response(investment)


@router.post("/investments/{investment_id}/reject")
async def reject_investment(
    investment_id: str,
    admin: Identity = Depends(require_admin),
    system: CryptoNestSystem = Depends(get_system)
):
    """Cancel a pending investment and refund the principal"""
    investment = await system.investment_manager.reject_investment(
        investment_id, actor=admin.subject_id
    )
    return investment_response(investment)


# Plans
@router.get("/plans")
async def list_all_plans(
    admin: Identity = Depends(require_admin),
    system: CryptoNestSystem = Depends(get_system)
):
    """All plans, including deactivated ones"""
    plans = await system.plan_catalog.list_plans(active_only=False)
    return {"plans": [plan_response(plan) for plan in plans]}


@router.put("/plans/{plan_key}")
async def update_plan(
    plan_key: str,
    request: UpdatePlanRequest,
    admin: Identity = Depends(require_admin),
    system: CryptoNestSystem = Depends(get_system)
):
    changes = request.model_dump(exclude_none=True)
    if not changes:
        raise ValidationError("No plan fields to update")
    plan = await system.plan_catalog.update_plan(plan_key, **changes)
    return plan_response(plan)


@router.post("/plans/{plan_key}/deactivate")
async def deactivate_plan(
    plan_key: str,
    admin: Identity = Depends(require_admin),
    system: CryptoNestSystem = Depends(get_system)
):
    plan = await system.plan_catalog.deactivate_plan(plan_key)
    return plan_response(plan)


# Maintenance
@router.post("/accrual/run")
async def run_accrual(
    as_of: Optional[datetime] = Query(None, description="Re-run as of an earlier UTC time instead of now"),
    admin: Identity = Depends(require_admin),
    system: CryptoNestSystem = Depends(get_system)
) -> Dict[str, Any]:
    """Trigger an accrual run outside the daily schedule"""
    if as_of is not None and as_of.tzinfo is None:
        raise ValidationError("as_of must include a UTC offset")
    if as_of is not None and as_of > datetime.now(timezone.utc):
        raise ValidationError("as_of cannot be in the future; interest is only paid for elapsed days")
    summary = await system.accrual_job.run_accrual_cycle(now=as_of)
    return summary.to_dict()


@router.get("/accounts/{user_id}/reconcile")
async def reconcile_account(
    user_id: str,
    repair: bool = Query(False),
    admin: Identity = Depends(require_admin),
    system: CryptoNestSystem = Depends(get_system)
) -> Dict[str, Any]:
    """Compare an account's cached totals with its transaction log"""
    report = await system.ledger.reconcile(user_id, repair=repair)
    return {
        "user_id": report.user_id,
        "matches": report.matches,
        "differences": report.differences,
        "repaired": report.repaired,
        "transaction_count": report.transaction_count,
        "cached": {name: str(value.amount) for name, value in report.cached.items()},
        "computed": {name: str(value.amount) for name, value in report.computed.items()},
    }


@router.get("/audit/verify")
async def verify_audit_trail(
    admin: Identity = Depends(require_admin),
    system: CryptoNestSystem = Depends(get_system)
) -> Dict[str, Any]:
    """Check the audit hash chain for tampering"""
    return await system.audit_trail.verify_integrity()
