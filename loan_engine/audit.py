"""
Audit Trail Module

Hash-chained immutable audit log with SHA-256 for tamper detection.
Every loan, payment, journal and account state change is logged here
together with the actor who caused it.
"""

import hashlib
import json
from datetime import datetime, timezone
from dataclasses import dataclass
from typing import Dict, List, Optional, Any
from enum import Enum
import uuid

from .storage import StorageInterface, StorageRecord, to_storage_value


CHAIN_HEAD_ID = "head"


class AuditEventType(Enum):
    """Types of audit events"""
    # Loan events
    LOAN_APPLIED = "loan_applied"
    LOAN_APPROVED = "loan_approved"
    LOAN_REJECTED = "loan_rejected"
    LOAN_DISBURSED = "loan_disbursed"
    LOAN_CLOSED = "loan_closed"
    LOAN_RESCHEDULED = "loan_rescheduled"
    LOAN_TOPPED_UP = "loan_topped_up"
    LOAN_WRITTEN_OFF = "loan_written_off"

    # Payment events
    PAYMENT_RECORDED = "payment_recorded"
    PAYMENT_APPROVED = "payment_approved"
    PAYMENT_REJECTED = "payment_rejected"
    PAYMENT_VOIDED = "payment_voided"

    # Ledger events
    JOURNAL_ENTRY_POSTED = "journal_entry_posted"

    # Chart of accounts events
    ACCOUNT_CREATED = "account_created"
    ACCOUNT_UPDATED = "account_updated"
    ACCOUNT_DELETED = "account_deleted"


@dataclass
class AuditEvent(StorageRecord):
    """
    Immutable audit event with hash chaining for tamper detection
    """
    event_type: AuditEventType
    entity_type: str  # loan, payment, journal_entry, account
    entity_id: str
    previous_hash: str
    current_hash: str
    metadata: Dict[str, Any]
    user_id: Optional[str] = None  # Actor who initiated the action
    tenant_id: Optional[str] = None

    def __post_init__(self):
        # Ensure metadata is JSON serializable
        if self.metadata:
            self.metadata = to_storage_value(dict(self.metadata))

    def calculate_hash(self) -> str:
        """
        Calculate SHA-256 hash of this event
        Hash includes all fields except current_hash to prevent circular reference
        """
        hash_data = {
            'id': self.id,
            'created_at': self.created_at.isoformat(),
            'event_type': self.event_type.value,
            'entity_type': self.entity_type,
            'entity_id': self.entity_id,
            'previous_hash': self.previous_hash,
            'user_id': self.user_id,
            'tenant_id': self.tenant_id,
            'metadata': self.metadata
        }

        # Create deterministic JSON string
        json_data = json.dumps(hash_data, sort_keys=True, separators=(',', ':'))
        return hashlib.sha256(json_data.encode('utf-8')).hexdigest()

    def verify_hash(self) -> bool:
        """Verify that the current hash is correct"""
        return self.current_hash == self.calculate_hash()

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'AuditEvent':
        """Create AuditEvent from dictionary with proper enum deserialization"""
        data = dict(data)
        if isinstance(data['event_type'], str):
            data['event_type'] = AuditEventType(data['event_type'])
        return super().from_dict(data)


class AuditTrail:
    """
    Hash-chained audit trail for tamper detection

    Events are written through the same storage as the business records, so an
    operation that rolls back leaves no audit entry behind.
    """

    def __init__(self, storage: StorageInterface, table_name: str = "audit_events",
                 enabled: bool = True, lock_timeout: Optional[float] = 5.0):
        self.storage = storage
        self.table_name = table_name
        self.chain_table = f"{table_name}_chain"
        self.enabled = enabled
        self.lock_timeout = lock_timeout
        if not self.storage.exists(self.chain_table, CHAIN_HEAD_ID):
            self._init_head()

    def _init_head(self) -> None:
        """Create the chain head from whatever events are already stored"""
        events = self.storage.load_all(self.table_name)
        events.sort(key=lambda x: x.get('sequence', 0))
        self.storage.save(self.chain_table, CHAIN_HEAD_ID, {
            'id': CHAIN_HEAD_ID,
            'last_hash': events[-1].get('current_hash', "") if events else "",
            'sequence': events[-1].get('sequence', len(events) - 1) + 1 if events else 0,
        })

    def log_event(
        self,
        event_type: AuditEventType,
        entity_type: str,
        entity_id: str,
        metadata: Optional[Dict[str, Any]] = None,
        user_id: Optional[str] = None,
        tenant_id: Optional[str] = None
    ) -> Optional[AuditEvent]:
        """
        Log an audit event with hash chaining

        Args:
            event_type: Type of audit event
            entity_type: Type of entity being audited
            entity_id: ID of the entity
            metadata: Additional event-specific data
            user_id: ID of the actor who initiated the action
            tenant_id: Tenant the entity belongs to

        Returns:
            Created AuditEvent, or None when audit logging is disabled

        Raises:
            LockTimeoutError: If another transaction holds the chain head past ``lock_timeout``
        """
        if not self.enabled:
            return None

        # The head lock is held until the caller's transaction ends, so
        # concurrent transactions append to the chain one after another
        with self.storage.atomic():
            self.storage.lock_record(self.chain_table, CHAIN_HEAD_ID, timeout=self.lock_timeout)
            head = self.storage.load(self.chain_table, CHAIN_HEAD_ID) or {'last_hash': "", 'sequence': 0}
            now = datetime.now(timezone.utc)

            event = AuditEvent(
                id=str(uuid.uuid4()),
                created_at=now,
                updated_at=now,
                event_type=event_type,
                entity_type=entity_type,
                entity_id=entity_id,
                previous_hash=head['last_hash'],
                current_hash="",  # Will be calculated below
                metadata=metadata or {},
                user_id=user_id,
                tenant_id=tenant_id
            )
            event.current_hash = event.calculate_hash()

            record = event.to_dict()
            record['sequence'] = head['sequence']
            self.storage.save(self.table_name, event.id, record)
            self.storage.save(self.chain_table, CHAIN_HEAD_ID, {
                'id': CHAIN_HEAD_ID,
                'last_hash': event.current_hash,
                'sequence': head['sequence'] + 1,
            })

            return event

    def _load_events(self, filters: Dict[str, Any]) -> List[AuditEvent]:
        events_data = self.storage.find(self.table_name, filters)
        events_data.sort(key=lambda x: x.get('sequence', 0))
        return [AuditEvent.from_dict({k: v for k, v in data.items() if k != 'sequence'})
                for data in events_data]

    def get_events_for_entity(
        self,
        entity_type: str,
        entity_id: str,
        limit: Optional[int] = None
    ) -> List[AuditEvent]:
        """
        Get all audit events for a specific entity, oldest first

        Args:
            entity_type: Type of entity
            entity_id: ID of entity
            limit: Maximum number of (most recent) events to return
        """
        events = self._load_events({'entity_type': entity_type, 'entity_id': entity_id})
        if limit:
            events = events[-limit:]
        return events

    def get_events_by_type(self, event_type: AuditEventType) -> List[AuditEvent]:
        """Get audit events of one type, oldest first"""
        return self._load_events({'event_type': event_type.value})

    def verify_integrity(self) -> Dict[str, Any]:
        """
        Verify the integrity of the entire audit chain

        Returns:
            Dictionary with integrity check results
        """
        result = {
            'valid': True,
            'total_events': 0,
            'hash_errors': [],
            'chain_breaks': []
        }

        events = self._load_events({})
        result['total_events'] = len(events)

        previous_hash = ""
        for i, event in enumerate(events):
            if not event.verify_hash():
                result['valid'] = False
                result['hash_errors'].append({
                    'event_id': event.id,
                    'position': i,
                    'expected_hash': event.calculate_hash(),
                    'actual_hash': event.current_hash
                })
            if event.previous_hash != previous_hash:
                result['valid'] = False
                result['chain_breaks'].append({
                    'event_id': event.id,
                    'position': i,
                    'expected_previous_hash': previous_hash,
                    'actual_previous_hash': event.previous_hash
                })
            previous_hash = event.current_hash

        return result
