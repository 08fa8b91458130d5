"""
Plan catalog endpoints
"""

from fastapi import APIRouter, Depends

from .auth import CryptoNestSystem, get_system
from .schemas import plan_response


router = APIRouter()


@router.get("")
async def list_plans(system: CryptoNestSystem = Depends(get_system)):
    """List plans currently offered"""
    plans = await system.plan_catalog.list_plans(active_only=True)
    return {"plans": [plan_response(plan) for plan in plans]}


@router.get("/{plan_key}")
async def get_plan(plan_key: str, system: CryptoNestSystem = Depends(get_system)):
    plan = await system.plan_catalog.require(plan_key)
    return plan_response(plan)
