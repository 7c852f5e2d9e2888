"""
Audit Trail Module

Hash-chained immutable audit log with SHA-256 for tamper detection.
Every template change and every instance transition is logged here, so
instances can be retained for audit without ever being deleted.
"""

import hashlib
import json
import threading
from datetime import datetime, timezone
from dataclasses import dataclass
from typing import Dict, List, Optional, Any
from enum import Enum
import uuid

from .storage import StorageInterface, StorageRecord


class AuditEventType(Enum):
    """Types of audit events"""
    # Template events
    TEMPLATE_CREATED = "template_created"
    TEMPLATE_UPDATED = "template_updated"
    TEMPLATE_STATUS_CHANGED = "template_status_changed"

    # Instance events
    INSTANCE_STARTED = "instance_started"
    STEP_APPROVED = "step_approved"
    STEP_PARTIALLY_APPROVED = "step_partially_approved"
    STEP_REJECTED = "step_rejected"
    STEP_DELEGATED = "step_delegated"
    STEP_SKIPPED = "step_skipped"
    INSTANCE_CANCELLED = "instance_cancelled"

    # SLA events
    SLA_OVERDUE = "sla_overdue"
    SLA_REMINDER = "sla_reminder"
    STEP_ESCALATED = "step_escalated"

    # Identity events
    PRINCIPAL_REGISTERED = "principal_registered"
    PRINCIPAL_UPDATED = "principal_updated"


def _json_safe(value):
    if isinstance(value, datetime):
        return value.isoformat()
    elif isinstance(value, Enum):
        return value.value
    elif isinstance(value, dict):
        return {k: _json_safe(v) for k, v in value.items()}
    elif isinstance(value, (list, tuple, set)):
        return [_json_safe(v) for v in value]
    return value


@dataclass
class AuditEvent(StorageRecord):
    """
    Immutable audit event with hash chaining for tamper detection
    """
    event_type: AuditEventType
    entity_type: str  # workflow_template, workflow_instance, principal
    entity_id: str
    previous_hash: str
    current_hash: str
    metadata: Dict[str, Any]
    user_id: Optional[str] = None

    def __post_init__(self):
        self.metadata = _json_safe(self.metadata or {})

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
            'metadata': self.metadata
        }

        json_data = json.dumps(hash_data, sort_keys=True, separators=(',', ':'))
        return hashlib.sha256(json_data.encode('utf-8')).hexdigest()

    def verify_hash(self) -> bool:
        """Verify that the current hash is correct"""
        return self.current_hash == self.calculate_hash()

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for storage with proper enum serialization"""
        result = super().to_dict()
        result['event_type'] = self.event_type.value
        return result

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'AuditEvent':
        """Create AuditEvent from dictionary with proper enum deserialization"""
        if isinstance(data['created_at'], str):
            data['created_at'] = datetime.fromisoformat(data['created_at'])
        if isinstance(data['updated_at'], str):
            data['updated_at'] = datetime.fromisoformat(data['updated_at'])
        if isinstance(data['event_type'], str):
            data['event_type'] = AuditEventType(data['event_type'])

        return cls(**data)


class AuditTrail:
    """
    Hash-chained audit trail for tamper detection
    """

    def __init__(self, storage: StorageInterface, table_name: str = "audit_events",
                 enabled: bool = True):
        self.storage = storage
        self.table_name = table_name
        self.enabled = enabled
        self._last_hash: Optional[str] = None
        self._sequence = 0
        self._lock = threading.Lock()
        self._load_last_hash()

    def _load_last_hash(self) -> None:
        """Load the hash and sequence of the most recent audit event"""
        events = self.storage.load_all(self.table_name)
        if events:
            latest = max(events, key=lambda x: x.get('sequence', 0))
            self._last_hash = latest.get('current_hash')
            self._sequence = latest.get('sequence', 0)

    def log_event(
        self,
        event_type: AuditEventType,
        entity_type: str,
        entity_id: str,
        metadata: Optional[Dict[str, Any]] = None,
        user_id: Optional[str] = None
    ) -> Optional[AuditEvent]:
        """
        Log an audit event with hash chaining

        Args:
            event_type: Type of audit event
            entity_type: Type of entity being audited
            entity_id: ID of the entity
            metadata: Additional event-specific data
            user_id: ID of the principal who initiated the action

        Returns:
            Created AuditEvent, or None when audit logging is disabled
        """
        if not self.enabled:
            return None

        with self._lock:
            now = datetime.now(timezone.utc)

            event = AuditEvent(
                id=str(uuid.uuid4()),
                created_at=now,
                updated_at=now,
                event_type=event_type,
                entity_type=entity_type,
                entity_id=entity_id,
                previous_hash=self._last_hash or "",
                current_hash="",
                user_id=user_id,
                metadata=metadata or {}
            )
            event.current_hash = event.calculate_hash()

            self._sequence += 1
            data = event.to_dict()
            data['sequence'] = self._sequence
            self.storage.save(self.table_name, event.id, data)

            self._last_hash = event.current_hash

            return event

    def _ordered_events(self) -> List[AuditEvent]:
        records = sorted(self.storage.load_all(self.table_name), key=lambda x: x.get('sequence', 0))
        events = []
        for data in records:
            data.pop('sequence', None)
            events.append(AuditEvent.from_dict(data))
        return events

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
        events = [
            e for e in self._ordered_events()
            if e.entity_type == entity_type and e.entity_id == entity_id
        ]
        if limit:
            events = events[-limit:]
        return events

    def get_events_by_type(self, event_type: AuditEventType) -> List[AuditEvent]:
        """Get audit events of one type, oldest first"""
        return [e for e in self._ordered_events() if e.event_type == event_type]

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

        events = self._ordered_events()
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

    def count_events(self) -> int:
        """Get total number of audit events"""
        return self.storage.count(self.table_name)
