"""
Audit Trail Module

Append-only record of every state change that touches money or a record's
lifecycle: plan edits, deposits, investments, accrual runs and password
resets. Each event stores the SHA-256 of its predecessor, so removing or
editing a stored event breaks the chain and verify_integrity reports where.
"""

import asyncio
import hashlib
import json
from datetime import datetime, timezone
from dataclasses import dataclass
from typing import Dict, List, Optional, Any
from enum import Enum
from decimal import Decimal
import uuid

from .storage import StorageRecord
from .async_storage import AsyncStorageInterface


class AuditEventType(Enum):
    ACCOUNT_OPENED = "account_opened"
    PROFILE_UPDATED = "profile_updated"
    ACCOUNT_RECONCILED = "account_reconciled"
    RECONCILIATION_MISMATCH = "reconciliation_mismatch"

    DEPOSIT_REQUESTED = "deposit_requested"
    DEPOSIT_APPROVED = "deposit_approved"
    DEPOSIT_REJECTED = "deposit_rejected"
    WITHDRAWAL_COMPLETED = "withdrawal_completed"

    INVESTMENT_CREATED = "investment_created"
    INVESTMENT_APPROVED = "investment_approved"
    INVESTMENT_REJECTED = "investment_rejected"
    INVESTMENT_MATURED = "investment_matured"
    INVESTMENT_FORCE_CLOSED = "investment_force_closed"

    PLAN_CREATED = "plan_created"
    PLAN_UPDATED = "plan_updated"
    PLAN_DEACTIVATED = "plan_deactivated"

    INTEREST_ACCRUED = "interest_accrued"
    ACCRUAL_RUN_STARTED = "accrual_run_started"
    ACCRUAL_RUN_COMPLETED = "accrual_run_completed"
    ACCRUAL_RECORD_FAILED = "accrual_record_failed"

    PASSWORD_RESET_REQUESTED = "password_reset_requested"
    PASSWORD_RESET_COMPLETED = "password_reset_completed"


def _json_safe(value):
    """Metadata as it will read back from storage"""
    if isinstance(value, dict):
        return {k: _json_safe(v) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [_json_safe(v) for v in value]
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, datetime):
        return value.isoformat()
    if isinstance(value, Decimal):
        return str(value)
    return value


@dataclass
class AuditEvent(StorageRecord):
    event_type: AuditEventType
    entity_type: str  # plan, account, deposit, investment, job
    entity_id: str
    previous_hash: str
    current_hash: str
    metadata: Dict[str, Any]
    user_id: Optional[str] = None
    sequence: int = 0  # position in the chain, starting at 0

    def __post_init__(self):
        self.metadata = _json_safe(self.metadata or {})

    def calculate_hash(self) -> str:
        """SHA-256 over every field except current_hash and updated_at"""
        payload = json.dumps({
            'id': self.id,
            'sequence': self.sequence,
            'created_at': self.created_at.isoformat(),
            'event_type': self.event_type.value,
            'entity_type': self.entity_type,
            'entity_id': self.entity_id,
            'user_id': self.user_id,
            'previous_hash': self.previous_hash,
            'metadata': self.metadata,
        }, sort_keys=True, separators=(',', ':'))
        return hashlib.sha256(payload.encode('utf-8')).hexdigest()

    def verify_hash(self) -> bool:
        return self.current_hash == self.calculate_hash()

    def to_dict(self) -> Dict[str, Any]:
        result = super().to_dict()
        result['event_type'] = self.event_type.value
        return result

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'AuditEvent':
        fields = dict(data)
        fields['created_at'] = datetime.fromisoformat(fields['created_at'])
        fields['updated_at'] = datetime.fromisoformat(fields['updated_at'])
        fields['event_type'] = AuditEventType(fields['event_type'])
        return cls(**fields)


class AuditTrail:
    """
    Writer and verifier for the event chain.

    Appends are serialized by an in-process lock; the chain head is read
    back from storage on every append.
    """

    def __init__(self, storage: AsyncStorageInterface, table_name: str = "audit_events"):
        self.storage = storage
        self.table_name = table_name
        self._lock = asyncio.Lock()

    async def _load_events(self) -> List[AuditEvent]:
        rows = await self.storage.load_all(self.table_name)
        events = [AuditEvent.from_dict(row) for row in rows]
        events.sort(key=lambda event: event.sequence)
        return events

    async def _head(self) -> Optional[AuditEvent]:
        events = await self._load_events()
        return events[-1] if events else None

    async def log_event(
        self,
        event_type: AuditEventType,
        entity_type: str,
        entity_id: str,
        metadata: Optional[Dict[str, Any]] = None,
        user_id: Optional[str] = None
    ) -> AuditEvent:
        """
        Append an event after the current chain head.

        Args:
            event_type: What happened
            entity_type: Kind of record affected
            entity_id: Id of the record affected
            metadata: Event details; Decimals, datetimes and enums are stored as strings
            user_id: Person who initiated the change, if any

        Returns:
            The stored event
        """
        async with self._lock:
            head = await self._head()
            now = datetime.now(timezone.utc)
            event = AuditEvent(
                id=str(uuid.uuid4()),
                created_at=now,
                updated_at=now,
                event_type=event_type,
                entity_type=entity_type,
                entity_id=entity_id,
                previous_hash=head.current_hash if head else "",
                current_hash="",
                metadata=metadata,
                user_id=user_id,
                sequence=head.sequence + 1 if head else 0,
            )
            event.current_hash = event.calculate_hash()
            await self.storage.save(self.table_name, event.id, event.to_dict())
            return event

    async def get_events_for_entity(self, entity_type: str, entity_id: str) -> List[AuditEvent]:
        """History of one record, oldest first"""
        return [
            event for event in await self._load_events()
            if event.entity_type == entity_type and event.entity_id == entity_id
        ]

    async def get_events_by_type(self, event_type: AuditEventType) -> List[AuditEvent]:
        return [event for event in await self._load_events() if event.event_type == event_type]

    async def verify_integrity(self) -> Dict[str, Any]:
        """
        Walk the chain and report events whose own hash or link is wrong.

        Returns:
            valid, total_events, hash_errors and chain_breaks
        """
        events = await self._load_events()
        hash_errors = []
        chain_breaks = []

        expected_previous = ""
        for position, event in enumerate(events):
            actual = event.calculate_hash()
            if actual != event.current_hash:
                hash_errors.append({
                    'event_id': event.id,
                    'position': position,
                    'expected_hash': actual,
                    'actual_hash': event.current_hash
                })
            if event.previous_hash != expected_previous:
                chain_breaks.append({
                    'event_id': event.id,
                    'position': position,
                    'expected_previous_hash': expected_previous,
                    'actual_previous_hash': event.previous_hash
                })
            expected_previous = event.current_hash

        return {
            'valid': not hash_errors and not chain_breaks,
            'total_events': len(events),
            'hash_errors': hash_errors,
            'chain_breaks': chain_breaks,
        }
