"""
Password Reset Module

Single-use reset tokens kept in the document store with an explicit expiry,
so they survive restarts and work across instances. Only the SHA-256 digest
of a token is stored.

Delivering the token (email) and changing the credential itself belong to
external collaborators, passed in as callables.
"""

import hashlib
import secrets
from datetime import datetime, timezone, timedelta
from typing import Awaitable, Callable, Optional

from .currency import Money
from .async_storage import AsyncStorageInterface
from .audit import AuditTrail, AuditEventType
from .accounts import Account, AccountLedger
from .transactions import TransactionType
from .exceptions import ConfigurationError, ValidationError
from .logging_config import get_logger, log_action


logger = get_logger("cryptonest.password_reset")

MIN_PASSWORD_LENGTH = 8

TokenDelivery = Callable[[Account, str], Awaitable[None]]
PasswordUpdater = Callable[[str, str], Awaitable[None]]


def hash_token(token: str) -> str:
    return hashlib.sha256(token.encode('utf-8')).hexdigest()


class PasswordResetStore:
    """
    Persisted reset tokens with a TTL
    """

    def __init__(self, storage: AsyncStorageInterface, ttl_minutes: int = 15):
        self.storage = storage
        self.ttl = timedelta(minutes=ttl_minutes)
        self.table_name = "password_reset_tokens"

    async def issue(self, user_id: str, now: Optional[datetime] = None) -> str:
        """Create a token for user_id and return it; the caller delivers it"""
        now = now or datetime.now(timezone.utc)
        token = secrets.token_urlsafe(32)
        token_id = hash_token(token)

        record = {
            'id': token_id,
            'user_id': user_id,
            'created_at': now.isoformat(),
            'expires_at': (now + self.ttl).isoformat(),
            'used_at': None,
            'version': 1
        }
        if not await self.storage.compare_and_save(self.table_name, token_id, record, None):
            raise ValidationError("Could not issue reset token, try again")
        return token

    async def consume(self, token: str, now: Optional[datetime] = None) -> str:
        """Mark a token used and return its user id"""
        now = now or datetime.now(timezone.utc)
        token_id = hash_token(token)
        record = await self.storage.load(self.table_name, token_id)

        if record is None:
            raise ValidationError("Invalid or expired reset token")
        if record.get('used_at'):
            raise ValidationError("Reset token has already been used")
        if datetime.fromisoformat(record['expires_at']) <= now:
            raise ValidationError("Invalid or expired reset token")

        used = dict(record)
        used['used_at'] = now.isoformat()
        used['version'] = record['version'] + 1
        if not await self.storage.compare_and_save(self.table_name, token_id, used, record['version']):
            raise ValidationError("Reset token has already been used")

        return record['user_id']

    async def release(self, token: str) -> None:
        """Return a consumed token to the unused state after the reset it was for failed"""
        token_id = hash_token(token)
        record = await self.storage.load(self.table_name, token_id)
        if record is None or not record.get('used_at'):
            return

        unused = dict(record)
        unused['used_at'] = None
        unused['version'] = record['version'] + 1
        await self.storage.compare_and_save(self.table_name, token_id, unused, record['version'])

    async def purge_expired(self, now: Optional[datetime] = None) -> int:
        """Delete expired and used tokens; returns how many were removed"""
        now = now or datetime.now(timezone.utc)
        removed = 0
        for record in await self.storage.load_all(self.table_name):
            if record.get('used_at') or datetime.fromisoformat(record['expires_at']) <= now:
                if await self.storage.delete(self.table_name, record['id']):
                    removed += 1
        return removed


class PasswordResetService:
    """Forgot-password and reset-password flows"""

    def __init__(
        self,
        store: PasswordResetStore,
        ledger: AccountLedger,
        audit_trail: AuditTrail,
        deliver: Optional[TokenDelivery] = None,
        update_password: Optional[PasswordUpdater] = None
    ):
        self.store = store
        self.ledger = ledger
        self.audit_trail = audit_trail
        self.deliver = deliver
        self.update_password = update_password

    async def request_reset(self, email: str) -> None:
        """
        Issue and deliver a token when the email belongs to an account.

        Unknown addresses are not reported back to the caller.
        """
        account = await self.ledger.find_by_email(email)
        if account is None:
            logger.info("Password reset requested for unknown email",
                        extra={'action': 'password_reset_request'})
            return

        token = await self.store.issue(account.user_id)
        if self.deliver is not None:
            await self.deliver(account, token)
        else:
            logger.warning("No reset token delivery configured, token discarded",
                           extra={'user_id': account.user_id, 'action': 'password_reset_request'})

        await self.audit_trail.log_event(
            event_type=AuditEventType.PASSWORD_RESET_REQUESTED,
            entity_type="account",
            entity_id=account.user_id,
            user_id=account.user_id
        )

    async def complete_reset(self, token: str, new_password: str) -> str:
        """
        Consume the token, change the password and log a security event.

        The token is released again if the password change fails, so the
        user can retry with the same link.
        """
        if self.update_password is None:
            raise ConfigurationError("Password reset is not available: no credential store configured")
        if not new_password or len(new_password) < MIN_PASSWORD_LENGTH:
            raise ValidationError(f"Password must be at least {MIN_PASSWORD_LENGTH} characters")

        user_id = await self.store.consume(token)
        try:
            await self.update_password(user_id, new_password)
        except Exception:
            await self.store.release(token)
            logger.exception("Password update failed, reset token released",
                             extra={'user_id': user_id, 'action': 'password_reset'})
            raise

        await self.ledger.post_entry(
            user_id=user_id,
            transaction_type=TransactionType.SECURITY,
            amount=Money.zero(self.ledger.currency),
            detail="Password reset completed"
        )
        await self.audit_trail.log_event(
            event_type=AuditEventType.PASSWORD_RESET_COMPLETED,
            entity_type="account",
            entity_id=user_id,
            user_id=user_id
        )
        log_action(logger, "info", "Password reset completed",
                   user_id=user_id, action="password_reset")

        return user_id
