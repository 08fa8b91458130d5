"""
Account Ledger Module

Per-user balance, cumulative invested amount and cumulative interest earned.
The three monetary fields are a cached projection of the transaction log:
post_entry applies a transaction type's effect and appends the matching log
entry as one unit, and reconcile recomputes the projection from the log.

Mutations on one account are serialized by an in-process lock per user and
an optimistic version check against the store, so concurrent writers in
other processes are detected and retried rather than overwritten.
"""

from datetime import datetime, timezone
from dataclasses import dataclass, field, replace
from decimal import Decimal
from typing import Callable, Dict, List, Optional, Tuple
from enum import Enum
import re

from .currency import Money, Currency
from .storage import StorageRecord
from .async_storage import AsyncStorageInterface
from .audit import AuditTrail, AuditEventType
from .transactions import TransactionLog, TransactionType, Transaction
from .locks import KeyedLocks
from .exceptions import (
    ConflictError, InsufficientFunds, InvalidAmount, NotFoundError, ValidationError
)
from .logging_config import get_logger, log_action


logger = get_logger("cryptonest.accounts")

MAX_DISPLAY_NAME_LENGTH = 100
EMAIL_PATTERN = re.compile(r"^[^@\s]+@[^@\s]+\.[^@\s]+$")


class AccountRole(Enum):
    """Platform roles"""
    USER = "user"
    ADMIN = "admin"


# (balance, total_invested, total_interest) sign per transaction type
ENTRY_EFFECTS: Dict[TransactionType, Tuple[int, int, int]] = {
    TransactionType.DEPOSIT: (1, 0, 0),
    TransactionType.WITHDRAWAL: (-1, 0, 0),
    TransactionType.INTEREST: (1, 0, 1),
    TransactionType.BUY: (-1, 1, 0),
    TransactionType.SELL: (1, -1, 0),
    TransactionType.SECURITY: (0, 0, 0),
}


@dataclass
class Account(StorageRecord):
    """
    User ledger keyed by the identity provider's subject id
    """
    currency: Currency
    balance: Money
    total_invested: Money
    total_interest: Money
    email: Optional[str] = None
    display_name: Optional[str] = None
    role: AccountRole = AccountRole.USER
    last_login_at: Optional[datetime] = None
    version: int = 1

    def __post_init__(self):
        currencies = {self.balance.currency, self.total_invested.currency,
                      self.total_interest.currency, self.currency}
        if len(currencies) > 1:
            raise ValueError("All account amounts must use the account currency")

        if self.balance.is_negative():
            raise ValueError("Account balance cannot be negative")

    @property
    def user_id(self) -> str:
        return self.id


@dataclass
class ReconciliationReport:
    """Cached account fields versus the totals recomputed from the log"""
    user_id: str
    matches: bool
    cached: Dict[str, Money]
    computed: Dict[str, Money]
    transaction_count: int
    repaired: bool = False
    differences: List[str] = field(default_factory=list)


class AccountLedger:
    """
    Owns account documents and every mutation of their monetary fields
    """

    def __init__(
        self,
        storage: AsyncStorageInterface,
        transaction_log: TransactionLog,
        audit_trail: AuditTrail,
        currency: Currency = Currency.USD,
        retry_attempts: int = 5
    ):
        self.storage = storage
        self.transaction_log = transaction_log
        self.audit_trail = audit_trail
        self.currency = currency
        self.retry_attempts = retry_attempts
        self.accounts_table = "accounts"
        self._locks = KeyedLocks()

    async def open_account(
        self,
        user_id: str,
        email: Optional[str] = None,
        display_name: Optional[str] = None,
        role: AccountRole = AccountRole.USER
    ) -> Account:
        """Create an empty account for a verified user"""
        now = datetime.now(timezone.utc)
        zero = Money.zero(self.currency)
        account = Account(
            id=user_id,
            created_at=now,
            updated_at=now,
            currency=self.currency,
            balance=zero,
            total_invested=zero,
            total_interest=zero,
            email=email,
            display_name=display_name,
            role=role,
            last_login_at=now
        )

        created = await self.storage.compare_and_save(
            self.accounts_table, user_id, self._account_to_dict(account), None
        )
        if not created:
            raise ConflictError(f"Account {user_id} already exists")

        await self.audit_trail.log_event(
            event_type=AuditEventType.ACCOUNT_OPENED,
            entity_type="account",
            entity_id=user_id,
            metadata={"email": email, "role": role.value},
            user_id=user_id
        )
        log_action(logger, "info", "Account opened", user_id=user_id, action="open_account")

        return account

    async def ensure_account(
        self,
        user_id: str,
        email: Optional[str] = None,
        display_name: Optional[str] = None,
        role: AccountRole = AccountRole.USER
    ) -> Account:
        """
        Return the user's account, opening it on first sight

        Profile fields and the login timestamp are refreshed from the
        identity provider on every call.
        """
        account = await self.get_account(user_id)
        if account is None:
            try:
                return await self.open_account(user_id, email, display_name, role)
            except ConflictError:
                pass  # Opened concurrently; fall through and refresh it

        def refresh(current: Account) -> Account:
            return replace(
                current,
                email=email or current.email,
                display_name=display_name or current.display_name,
                role=role,
                last_login_at=datetime.now(timezone.utc)
            )

        async with self._locks.hold(user_id):
            return await self._mutate(user_id, refresh)

    async def update_profile(
        self,
        user_id: str,
        email: Optional[str] = None,
        display_name: Optional[str] = None
    ) -> Account:
        """
        User-initiated profile edit.

        Only email and display name change; balance, totals and role are
        never taken from the caller.
        """
        changes = {}
        if display_name is not None:
            display_name = display_name.strip()
            if not display_name or len(display_name) > MAX_DISPLAY_NAME_LENGTH:
                raise ValidationError(
                    f"Display name must be 1 to {MAX_DISPLAY_NAME_LENGTH} characters"
                )
            changes['display_name'] = display_name
        if email is not None:
            email = email.strip()
            if not EMAIL_PATTERN.match(email):
                raise ValidationError(f"Invalid email address: {email}")
            owner = await self.find_by_email(email)
            if owner is not None and owner.user_id != user_id:
                raise ConflictError("Email address is already registered")
            changes['email'] = email
        if not changes:
            raise ValidationError("Nothing to update")

        async with self._locks.hold(user_id):
            account = await self._mutate(user_id, lambda current: replace(current, **changes))

        await self.audit_trail.log_event(
            event_type=AuditEventType.PROFILE_UPDATED,
            entity_type="account",
            entity_id=user_id,
            metadata={"fields": sorted(changes)},
            user_id=user_id
        )
        log_action(logger, "info", "Profile updated", user_id=user_id, action="update_profile")
        return account

    async def get_account(self, user_id: str) -> Optional[Account]:
        data = await self.storage.load(self.accounts_table, user_id)
        if data:
            return self._account_from_dict(data)
        return None

    async def require_account(self, user_id: str) -> Account:
        account = await self.get_account(user_id)
        if account is None:
            raise NotFoundError(f"Account {user_id} not found")
        return account

    async def list_accounts(self) -> List[Account]:
        rows = await self.storage.load_all(self.accounts_table)
        return [self._account_from_dict(row) for row in rows]

    async def credit(self, user_id: str, amount: Money) -> Account:
        """
        Increase balance by amount.

        Does not write a transaction; callers that need the audit entry use
        post_entry instead.
        """
        self._require_positive(amount)
        async with self._locks.hold(user_id):
            return await self._mutate(
                user_id, lambda a: self._apply(a, (1, 0, 0), amount)
            )

    async def debit(self, user_id: str, amount: Money) -> Account:
        """Decrease balance by amount, failing with InsufficientFunds rather than going negative"""
        self._require_positive(amount)
        async with self._locks.hold(user_id):
            return await self._mutate(
                user_id, lambda a: self._apply(a, (-1, 0, 0), amount)
            )

    async def post_entry(
        self,
        user_id: str,
        transaction_type: TransactionType,
        amount: Money,
        detail: str,
        investment_id: Optional[str] = None,
        reference: Optional[str] = None
    ) -> Transaction:
        """
        Apply a transaction type's effect to the account and append the
        matching log entry.

        If the append fails the account change is reversed before the error
        propagates, so the cached fields never drift from the log.
        """
        effects = ENTRY_EFFECTS[transaction_type]
        if transaction_type == TransactionType.SECURITY:
            if not amount.is_zero():
                raise ValidationError("Security events carry no amount")
        else:
            self._require_positive(amount)

        async with self._locks.hold(user_id):
            if transaction_type != TransactionType.SECURITY:
                await self._mutate(user_id, lambda a: self._apply(a, effects, amount))
            else:
                await self.require_account(user_id)

            try:
                return await self.transaction_log.append(
                    user_id=user_id,
                    transaction_type=transaction_type,
                    amount=amount,
                    detail=detail,
                    investment_id=investment_id,
                    reference=reference
                )
            except Exception:
                if transaction_type != TransactionType.SECURITY:
                    logger.error(
                        f"Transaction append failed, reversing {transaction_type.value} "
                        f"of {amount.to_string()}",
                        extra={'user_id': user_id, 'action': 'post_entry_compensate'}
                    )
                    await self._mutate(user_id, lambda a: self._apply(a, effects, -amount))
                raise

    async def withdraw(self, user_id: str, amount: Money, detail: Optional[str] = None) -> Transaction:
        """Pay funds out of the balance"""
        transaction = await self.post_entry(
            user_id=user_id,
            transaction_type=TransactionType.WITHDRAWAL,
            amount=amount,
            detail=detail or f"Withdrawal of {amount.to_string()}"
        )

        await self.audit_trail.log_event(
            event_type=AuditEventType.WITHDRAWAL_COMPLETED,
            entity_type="account",
            entity_id=user_id,
            metadata={"amount": str(amount.amount), "transaction_id": transaction.id},
            user_id=user_id
        )
        log_action(logger, "info", f"Withdrawal of {amount.to_string()} completed",
                   user_id=user_id, action="withdraw", resource=transaction.id)

        return transaction

    async def find_by_email(self, email: str) -> Optional[Account]:
        rows = await self.storage.find(self.accounts_table, {"email": email})
        if rows:
            return self._account_from_dict(rows[0])
        return None

    async def reconcile(self, user_id: str, repair: bool = False) -> ReconciliationReport:
        """Recompute balance and totals from the transaction log and compare"""
        async with self._locks.hold(user_id):
            account = await self.require_account(user_id)
            transactions = await self.transaction_log.list_all_for_user(user_id)

            zero = Money.zero(account.currency)
            computed = {"balance": zero, "total_invested": zero, "total_interest": zero}
            for transaction in transactions:
                balance_sign, invested_sign, interest_sign = ENTRY_EFFECTS[transaction.transaction_type]
                computed["balance"] += transaction.amount * Decimal(balance_sign)
                computed["total_invested"] += transaction.amount * Decimal(invested_sign)
                computed["total_interest"] += transaction.amount * Decimal(interest_sign)

            cached = {
                "balance": account.balance,
                "total_invested": account.total_invested,
                "total_interest": account.total_interest
            }
            differences = [name for name in cached if cached[name] != computed[name]]

            report = ReconciliationReport(
                user_id=user_id,
                matches=not differences,
                cached=cached,
                computed=computed,
                transaction_count=len(transactions),
                differences=differences
            )

            if differences:
                await self.audit_trail.log_event(
                    event_type=AuditEventType.RECONCILIATION_MISMATCH,
                    entity_type="account",
                    entity_id=user_id,
                    metadata={
                        name: {"cached": str(cached[name].amount), "computed": str(computed[name].amount)}
                        for name in differences
                    }
                )
                logger.warning(
                    f"Account projection mismatch on {', '.join(differences)}",
                    extra={'user_id': user_id, 'action': 'reconcile'}
                )

                if repair:
                    await self._mutate(user_id, lambda a: replace(
                        a,
                        balance=computed["balance"],
                        total_invested=computed["total_invested"],
                        total_interest=computed["total_interest"]
                    ))
                    report.repaired = True
                    await self.audit_trail.log_event(
                        event_type=AuditEventType.ACCOUNT_RECONCILED,
                        entity_type="account",
                        entity_id=user_id,
                        metadata={"fields": differences}
                    )

            return report

    async def _mutate(self, user_id: str, mutation: Callable[[Account], Account]) -> Account:
        """
        Read-modify-write with optimistic versioning. Caller holds the user's lock.
        """
        for attempt in range(1, self.retry_attempts + 1):
            account = await self.require_account(user_id)
            updated = mutation(account)
            updated = replace(
                updated,
                version=account.version + 1,
                updated_at=datetime.now(timezone.utc)
            )

            saved = await self.storage.compare_and_save(
                self.accounts_table, user_id, self._account_to_dict(updated), account.version
            )
            if saved:
                return updated

            logger.warning(
                f"Concurrent update on account, retry {attempt}/{self.retry_attempts}",
                extra={'user_id': user_id, 'action': 'account_version_conflict'}
            )

        raise ConflictError(f"Account {user_id} is being modified concurrently, try again")

    def _apply(self, account: Account, effects: Tuple[int, int, int], amount: Money) -> Account:
        balance_sign, invested_sign, interest_sign = effects
        balance = account.balance + amount * Decimal(balance_sign)
        total_invested = account.total_invested + amount * Decimal(invested_sign)
        total_interest = account.total_interest + amount * Decimal(interest_sign)

        if balance.is_negative():
            raise InsufficientFunds(
                f"Insufficient funds: balance {account.balance.to_string()}, "
                f"requested {amount.to_string()}",
                details={"balance": str(account.balance.amount), "requested": str(amount.amount)}
            )
        if total_invested.is_negative() or total_interest.is_negative():
            raise ValidationError("Cumulative totals cannot go negative")

        return replace(
            account,
            balance=balance,
            total_invested=total_invested,
            total_interest=total_interest
        )

    def _require_positive(self, amount: Money) -> None:
        if amount.currency != self.currency:
            raise InvalidAmount(f"Amount must be in {self.currency.code}")
        if not amount.is_positive():
            raise InvalidAmount(f"Amount must be greater than zero, got {amount.to_string()}")

    def _account_to_dict(self, account: Account) -> Dict:
        result = account.to_dict()
        result['currency'] = account.currency.code
        result['balance'] = str(account.balance.amount)
        result['total_invested'] = str(account.total_invested.amount)
        result['total_interest'] = str(account.total_interest.amount)
        result['role'] = account.role.value
        result['last_login_at'] = account.last_login_at.isoformat() if account.last_login_at else None
        return result

    def _account_from_dict(self, data: Dict) -> Account:
        currency = Currency[data['currency']]
        last_login_at = data.get('last_login_at')

        return Account(
            id=data['id'],
            created_at=datetime.fromisoformat(data['created_at']),
            updated_at=datetime.fromisoformat(data['updated_at']),
            currency=currency,
            balance=Money(Decimal(data['balance']), currency),
            total_invested=Money(Decimal(data['total_invested']), currency),
            total_interest=Money(Decimal(data['total_interest']), currency),
            email=data.get('email'),
            display_name=data.get('display_name'),
            role=AccountRole(data.get('role', 'user')),
            last_login_at=datetime.fromisoformat(last_login_at) if last_login_at else None,
            version=data['version']
        )
