"""
System container and authentication dependencies
"""

from typing import Optional

from fastapi import Depends, Request
from fastapi.security import HTTPBearer, HTTPAuthorizationCredentials

from ..async_storage import AsyncStorageInterface, create_async_storage
from ..audit import AuditTrail
from ..transactions import TransactionLog
from ..accounts import Account, AccountLedger, AccountRole
from ..plans import DEFAULT_PLANS, PlanCatalog
from ..deposits import DepositManager
from ..investments import InvestmentManager
from ..accrual import AccrualJob
from ..scheduler import AccrualScheduler
from ..locks import RunLock
from ..password_reset import (
    PasswordResetService, PasswordResetStore, PasswordUpdater, TokenDelivery
)
from ..identity import Identity, IdentityVerifier, JWTIdentityVerifier
from ..currency import Currency, parse_amount
from ..exceptions import AuthenticationError, PermissionDenied
from ..config import CryptoNestConfig, get_config


security = HTTPBearer(auto_error=False)


class CryptoNestSystem:
    """Bookkeeping backend with all components wired to one store"""

    def __init__(
        self,
        config: Optional[CryptoNestConfig] = None,
        storage: Optional[AsyncStorageInterface] = None,
        identity_verifier: Optional[IdentityVerifier] = None,
        deliver_reset_token: Optional[TokenDelivery] = None,
        update_password: Optional[PasswordUpdater] = None
    ):
        self.config = config or get_config()
        self.currency = Currency.from_code(self.config.currency)

        # Storage
        self.storage = storage or create_async_storage(self.config)

        # Core components
        self.audit_trail = AuditTrail(self.storage)
        self.transaction_log = TransactionLog(self.storage)
        self.ledger = AccountLedger(
            self.storage, self.transaction_log, self.audit_trail,
            currency=self.currency,
            retry_attempts=self.config.mutation_retry_attempts
        )
        self.plan_catalog = PlanCatalog(self.storage, self.audit_trail, currency=self.currency)
        self.deposit_manager = DepositManager(
            self.storage, self.ledger, self.audit_trail,
            min_amount=parse_amount(self.config.min_deposit_amount, self.currency),
            max_amount=parse_amount(self.config.max_deposit_amount, self.currency)
        )
        self.investment_manager = InvestmentManager(
            self.storage, self.ledger, self.plan_catalog, self.audit_trail
        )

        # Identity and password reset
        self.identity_verifier = identity_verifier or JWTIdentityVerifier.from_config(self.config)
        self.reset_store = PasswordResetStore(
            self.storage, ttl_minutes=self.config.password_reset_ttl_minutes
        )
        self.password_reset = PasswordResetService(
            self.reset_store, self.ledger, self.audit_trail,
            deliver=deliver_reset_token,
            update_password=update_password
        )

        # Accrual
        self.run_lock = RunLock(self.storage)
        self.accrual_job = AccrualJob(
            self.investment_manager, self.plan_catalog, self.ledger,
            self.audit_trail, self.run_lock,
            lock_ttl_seconds=self.config.accrual_lock_ttl_seconds
        )
        self.scheduler = AccrualScheduler(
            self.accrual_job,
            hour_utc=self.config.accrual_hour_utc,
            minute_utc=self.config.accrual_minute_utc,
            housekeeping=[self.reset_store.purge_expired]
        )

    async def startup(self) -> None:
        """Open storage, seed the plan catalog and start the daily accrual trigger"""
        await self.storage.initialize()
        await self.plan_catalog.seed_or_update(DEFAULT_PLANS)
        if self.config.accrual_enabled:
            self.scheduler.start()

    async def shutdown(self) -> None:
        await self.scheduler.stop()
        await self.storage.close()


def get_system(request: Request) -> CryptoNestSystem:
    return request.app.state.system


async def get_current_identity(
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(security),
    system: CryptoNestSystem = Depends(get_system)
) -> Identity:
    """Dependency that verifies the bearer token"""
    if not credentials:
        raise AuthenticationError("Not authenticated")
    return system.identity_verifier.verify(credentials.credentials)


async def get_current_account(
    identity: Identity = Depends(get_current_identity),
    system: CryptoNestSystem = Depends(get_system)
) -> Account:
    """Verified caller's account, opened on first sight"""
    account = await system.ledger.get_account(identity.subject_id)
    if account is not None:
        return account
    return await system.ledger.ensure_account(
        identity.subject_id,
        email=identity.email,
        display_name=identity.display_name,
        role=AccountRole.ADMIN if identity.is_admin else AccountRole.USER
    )


async def require_admin(identity: Identity = Depends(get_current_identity)) -> Identity:
    if not identity.is_admin:
        raise PermissionDenied("Admin role required")
    return identity
