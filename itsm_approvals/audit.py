"""
Audit Trail Module

Two append-only logs:

* InstanceAuditLog - the ordered per-instance trail shown with every
  approval (created, approved, rejected, cancelled, delegated, escalated).
* AuditTrail - the organisation-wide, SHA-256 hash-chained compliance log.
  Every instance entry is mirrored here, alongside identity and workflow
  administration events.
"""

import hashlib
import json
import threading
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional

from .storage import StorageInterface, StorageRecord


class AuditEventType(Enum):
    """Types of global audit events"""
    # Approval instance events
    APPROVAL_CREATED = "approval_created"
    APPROVAL_STEP_APPROVED = "approval_step_approved"
    APPROVAL_STEP_REJECTED = "approval_step_rejected"
    APPROVAL_CANCELLED = "approval_cancelled"
    APPROVAL_STEP_DELEGATED = "approval_step_delegated"
    APPROVAL_STEP_ESCALATED = "approval_step_escalated"

    # Workflow definition events
    WORKFLOW_CREATED = "workflow_created"
    WORKFLOW_UPDATED = "workflow_updated"

    # Identity events
    USER_CREATED = "user_created"
    USER_UPDATED = "user_updated"
    USER_DEACTIVATED = "user_deactivated"
    USER_LOCKED = "user_locked"
    USER_UNLOCKED = "user_unlocked"
    ROLE_CREATED = "role_created"
    ROLE_UPDATED = "role_updated"
    ROLE_DELETED = "role_deleted"
    ROLE_ASSIGNED = "role_assigned"
    ROLE_REMOVED = "role_removed"
    GROUP_CREATED = "group_created"
    GROUP_UPDATED = "group_updated"
    GROUP_MEMBERSHIP_CHANGED = "group_membership_changed"


class AuditAction(Enum):
    """Actions recorded on an instance's own trail"""
    CREATED = "created"
    APPROVED = "approved"
    REJECTED = "rejected"
    CANCELLED = "cancelled"
    DELEGATED = "delegated"
    ESCALATED = "escalated"


# Instance action -> global event type
ACTION_EVENT_TYPES = {
    AuditAction.CREATED: AuditEventType.APPROVAL_CREATED,
    AuditAction.APPROVED: AuditEventType.APPROVAL_STEP_APPROVED,
    AuditAction.REJECTED: AuditEventType.APPROVAL_STEP_REJECTED,
    AuditAction.CANCELLED: AuditEventType.APPROVAL_CANCELLED,
    AuditAction.DELEGATED: AuditEventType.APPROVAL_STEP_DELEGATED,
    AuditAction.ESCALATED: AuditEventType.APPROVAL_STEP_ESCALATED,
}


def _to_json_value(value):
    if isinstance(value, datetime):
        return value.isoformat()
    elif isinstance(value, Enum):
        return value.value
    elif isinstance(value, dict):
        return {k: _to_json_value(v) for k, v in value.items()}
    elif isinstance(value, (set, frozenset)):
        return sorted(_to_json_value(v) for v in value)
    elif isinstance(value, (list, tuple)):
        return [_to_json_value(v) for v in value]
    elif isinstance(value, (str, int, float, bool)) or value is None:
        return value
    return str(value)


@dataclass
class AuditEvent(StorageRecord):
    """
    Immutable audit event with hash chaining for tamper detection
    """
    event_type: AuditEventType
    entity_type: str  # workflow, approval_instance, user, role, group
    entity_id: str
    chain_index: int
    previous_hash: str
    current_hash: str
    metadata: Dict[str, Any]
    user_id: Optional[str] = None

    def __post_init__(self):
        self.metadata = {k: _to_json_value(v) for k, v in (self.metadata or {}).items()}

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
            'chain_index': self.chain_index,
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
        result = super().to_dict()
        result['event_type'] = self.event_type.value
        return result

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'AuditEvent':
        data = dict(data)
        data['created_at'] = datetime.fromisoformat(data['created_at'])
        data['updated_at'] = datetime.fromisoformat(data['updated_at'])
        data['event_type'] = AuditEventType(data['event_type'])
        return cls(**data)


class AuditTrail:
    """
    Hash-chained audit trail for tamper detection
    """

    def __init__(self, storage: StorageInterface, table_name: str = "audit_events"):
        self.storage = storage
        self.table_name = table_name
        self._lock = threading.Lock()

    def _chain_head(self) -> Optional[Dict[str, Any]]:
        events = self.storage.load_all(self.table_name)
        if not events:
            return None
        return max(events, key=lambda e: e.get('chain_index', 0))

    def log_event(
        self,
        event_type: AuditEventType,
        entity_type: str,
        entity_id: str,
        metadata: Optional[Dict[str, Any]] = None,
        user_id: Optional[str] = None
    ) -> AuditEvent:
        """
        Log an audit event with hash chaining

        Args:
            event_type: Type of audit event
            entity_type: Type of entity being audited
            entity_id: ID of the entity
            metadata: Additional event-specific data
            user_id: ID of user who initiated the action

        Returns:
            Created AuditEvent
        """
        with self._lock:
            head = self._chain_head()
            now = datetime.now(timezone.utc)

            event = AuditEvent(
                id=str(uuid.uuid4()),
                created_at=now,
                updated_at=now,
                event_type=event_type,
                entity_type=entity_type,
                entity_id=entity_id,
                chain_index=(head['chain_index'] + 1) if head else 1,
                previous_hash=head['current_hash'] if head else "",
                current_hash="",
                user_id=user_id,
                metadata=metadata or {}
            )
            event.current_hash = event.calculate_hash()

            self.storage.insert(self.table_name, event.id, event.to_dict())
            return event

    def _load_events(self) -> List[AuditEvent]:
        events = [AuditEvent.from_dict(data) for data in self.storage.load_all(self.table_name)]
        events.sort(key=lambda e: e.chain_index)
        return events

    def get_events_for_entity(self, entity_type: str, entity_id: str,
                              limit: Optional[int] = None) -> List[AuditEvent]:
        """Get all audit events for a specific entity, oldest first"""
        events = [
            AuditEvent.from_dict(data)
            for data in self.storage.find(self.table_name, {'entity_type': entity_type, 'entity_id': entity_id})
        ]
        events.sort(key=lambda e: e.chain_index)
        if limit:
            events = events[-limit:]
        return events

    def get_events_by_type(self, event_type: AuditEventType,
                           start_time: Optional[datetime] = None,
                           end_time: Optional[datetime] = None,
                           limit: Optional[int] = None) -> List[AuditEvent]:
        """Get audit events by type within an inclusive time range"""
        events = [e for e in self._load_events() if e.event_type == event_type]
        if start_time:
            events = [e for e in events if e.created_at >= start_time]
        if end_time:
            events = [e for e in events if e.created_at <= end_time]
        if limit:
            events = events[-limit:]
        return events

    def verify_integrity(self) -> Dict[str, Any]:
        """
        Recompute every hash and walk the chain links in chain_index order.

        ``hash_errors`` lists events whose stored hash no longer matches
        their content, ``chain_breaks`` lists events whose previous_hash does
        not point at their predecessor and ``missing_indexes`` lists holes in
        the chain_index sequence.
        """
        events = self._load_events()
        hash_errors, chain_breaks = [], []

        predecessor_hash = ""
        for event in events:
            recomputed = event.calculate_hash()
            if recomputed != event.current_hash:
                hash_errors.append({'event_id': event.id, 'chain_index': event.chain_index,
                                    'expected_hash': recomputed, 'actual_hash': event.current_hash})
            if event.previous_hash != predecessor_hash:
                chain_breaks.append({'event_id': event.id, 'chain_index': event.chain_index,
                                     'expected_previous_hash': predecessor_hash,
                                     'actual_previous_hash': event.previous_hash})
            predecessor_hash = event.current_hash

        present = {event.chain_index for event in events}
        missing = [i for i in range(1, max(present, default=0) + 1) if i not in present]

        return {
            'valid': not (hash_errors or chain_breaks or missing),
            'total_events': len(events),
            'hash_errors': hash_errors,
            'chain_breaks': chain_breaks,
            'missing_indexes': missing,
        }

    def count_events(self) -> int:
        return self.storage.count(self.table_name)


@dataclass
class AuditEntry:
    """One entry on an approval instance's trail"""
    id: str
    instance_id: str
    sequence: int
    timestamp: datetime
    actor_id: str
    actor_display_name: str
    action: AuditAction
    details: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return {
            'id': self.id,
            'instance_id': self.instance_id,
            'sequence': self.sequence,
            'timestamp': self.timestamp.isoformat(),
            'actor_id': self.actor_id,
            'actor_display_name': self.actor_display_name,
            'action': self.action.value,
            'details': _to_json_value(self.details),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'AuditEntry':
        return cls(
            id=data['id'],
            instance_id=data['instance_id'],
            sequence=data['sequence'],
            timestamp=datetime.fromisoformat(data['timestamp']),
            actor_id=data['actor_id'],
            actor_display_name=data['actor_display_name'],
            action=AuditAction(data['action']),
            details=data.get('details') or {},
        )


class InstanceAuditLog:
    """
    Append-only, strictly ordered per-instance audit trail.

    Each entry is its own row keyed by (instance_id, sequence) and written with
    an insert-if-absent, so concurrent writers can never overwrite one another
    and no entry is ever edited. Timestamps are clamped so they never run
    backwards relative to the previous entry.
    """

    TABLE = "approval_audit_entries"

    def __init__(self, storage: StorageInterface, audit_trail: Optional[AuditTrail] = None):
        self.storage = storage
        self.audit_trail = audit_trail

    @staticmethod
    def _entry_key(instance_id: str, sequence: int) -> str:
        return f"{instance_id}:{sequence:08d}"

    def entries_for(self, instance_id: str) -> List[AuditEntry]:
        entries = [AuditEntry.from_dict(d) for d in self.storage.find(self.TABLE, {'instance_id': instance_id})]
        entries.sort(key=lambda e: e.sequence)
        return entries

    def append(self, instance_id: str, actor_id: str, actor_display_name: str,
               action: AuditAction, details: Optional[Dict[str, Any]] = None) -> AuditEntry:
        """Append one entry and mirror it into the global trail"""
        while True:
            existing = self.entries_for(instance_id)
            last = existing[-1] if existing else None
            now = datetime.now(timezone.utc)
            if last and now < last.timestamp:
                now = last.timestamp

            sequence = last.sequence + 1 if last else 1
            entry = AuditEntry(
                id=self._entry_key(instance_id, sequence),
                instance_id=instance_id,
                sequence=sequence,
                timestamp=now,
                actor_id=actor_id,
                actor_display_name=actor_display_name,
                action=action,
                details=details or {},
            )
            if self.storage.insert(self.TABLE, entry.id, entry.to_dict()):
                break
            # Another writer took this sequence number; re-read and go again

        if self.audit_trail:
            self.audit_trail.log_event(
                ACTION_EVENT_TYPES[action],
                'approval_instance',
                instance_id,
                {'sequence': sequence, **entry.to_dict()['details']},
                actor_id
            )
        return entry
