"""
Workflow History Log

Append-only, hash-chained record of every state transition of a workflow
instance. Each entry stores the SHA-256 hash of the previous entry of the
same instance, so tampering with or dropping an entry is detectable.
There are no update or delete operations.
"""

import hashlib
import json
import uuid
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Dict, List, Optional, Any, Tuple

from .storage import StorageInterface, StorageRecord, encode_value, parse_datetime


class HistoryAction(Enum):
    """Action codes written to the history log"""
    WORKFLOW_STARTED = "WORKFLOW_STARTED"
    TASK_ASSIGNED = "TASK_ASSIGNED"
    TASK_COMPLETED = "TASK_COMPLETED"
    TASK_CANCELLED = "TASK_CANCELLED"
    TASK_OVERDUE = "TASK_OVERDUE"
    TASK_ESCALATED = "TASK_ESCALATED"
    STEP_APPROVED = "STEP_APPROVED"
    STEP_REJECTED = "STEP_REJECTED"
    STEP_ADVANCED = "STEP_ADVANCED"
    WORKFLOW_COMPLETED = "WORKFLOW_COMPLETED"
    WORKFLOW_CANCELLED = "WORKFLOW_CANCELLED"


@dataclass
class HistoryEntry(StorageRecord):
    """
    Immutable history entry with hash chaining for tamper detection
    """
    instance_id: str
    action: HistoryAction
    details: str
    action_date: datetime
    sequence: int  # Position within the instance's history, starting at 1
    previous_hash: str
    entry_hash: str
    performer: Optional[str] = None  # None for system-generated entries
    metadata: Dict[str, Any] = field(default_factory=dict)

    def calculate_hash(self) -> str:
        """
        Calculate SHA-256 hash of this entry
        Hash includes all fields except entry_hash to prevent circular reference
        """
        hash_data = {
            'id': self.id,
            'instance_id': self.instance_id,
            'action': self.action.value,
            'details': self.details,
            'action_date': encode_value(self.action_date),
            'sequence': self.sequence,
            'performer': self.performer,
            'previous_hash': self.previous_hash,
            'metadata': encode_value(self.metadata),
        }

        # Create deterministic JSON string
        json_data = json.dumps(hash_data, sort_keys=True, separators=(',', ':'))
        return hashlib.sha256(json_data.encode('utf-8')).hexdigest()

    def verify_hash(self) -> bool:
        """Verify that the stored hash is correct"""
        return self.entry_hash == self.calculate_hash()

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'HistoryEntry':
        data = dict(data)
        data.pop('version', None)  # storage write counter, not part of the entry
        for name in ('created_at', 'updated_at', 'action_date'):
            data[name] = parse_datetime(data[name])
        data['action'] = HistoryAction(data['action'])
        return cls(**data)


class HistoryLog:
    """
    Per-instance hash-chained history log
    """

    def __init__(self, storage: StorageInterface, table_name: str = "workflow_history"):
        self.storage = storage
        self.table_name = table_name
        # One row per instance: sequence and hash of its latest entry
        self.heads_table = f"{table_name}_heads"

    def _chain_head(self, instance_id: str) -> Tuple[int, str]:
        head = self.storage.load(self.heads_table, instance_id)
        if not head:
            return 0, ""
        return head["sequence"], head["entry_hash"]

    def record(
        self,
        instance_id: str,
        action: HistoryAction,
        details: str,
        performer: Optional[str],
        action_date: datetime,
        metadata: Optional[Dict[str, Any]] = None
    ) -> HistoryEntry:
        """
        Append an entry to an instance's history

        Args:
            instance_id: Instance the entry belongs to
            action: Action code
            details: Free-text description
            performer: Acting user, or None for system-generated entries
            action_date: When the transition happened
            metadata: Additional structured data (old/new assignee, etc.)

        Returns:
            Created HistoryEntry
        """
        # Callers write history inside storage.atomic(), which serializes
        # writers, so the chain head cannot move underneath us.
        sequence, previous_hash = self._chain_head(instance_id)

        entry = HistoryEntry(
            id=str(uuid.uuid4()),
            created_at=action_date,
            updated_at=action_date,
            instance_id=instance_id,
            action=action,
            details=details,
            action_date=action_date,
            sequence=sequence + 1,
            previous_hash=previous_hash,
            entry_hash="",  # Will be calculated below
            performer=performer,
            metadata=encode_value(metadata or {}),
        )
        entry.entry_hash = entry.calculate_hash()

        if self.storage.compare_and_save(self.table_name, entry.id, entry.to_dict(), None) is None:
            raise RuntimeError(f"History entry {entry.id} already exists")
        self.storage.save(self.heads_table, instance_id, {
            "id": instance_id,
            "sequence": entry.sequence,
            "entry_hash": entry.entry_hash,
            "created_at": encode_value(action_date),
            "updated_at": encode_value(action_date),
        })

        return entry

    def list_for_instance(self, instance_id: str) -> List[HistoryEntry]:
        """All entries of an instance in chronological order"""
        entries = [
            HistoryEntry.from_dict(data)
            for data in self.storage.find(self.table_name, {'instance_id': instance_id})
        ]
        entries.sort(key=lambda e: e.sequence)
        return entries

    def list_by_action(self, instance_id: str, action: HistoryAction) -> List[HistoryEntry]:
        return [e for e in self.list_for_instance(instance_id) if e.action == action]

    def count(self, instance_id: Optional[str] = None) -> int:
        """Count entries, optionally for one instance"""
        filters = {'instance_id': instance_id} if instance_id else None
        return self.storage.count(self.table_name, filters)

    def verify_integrity(self, instance_id: str) -> Dict[str, Any]:
        """
        Verify the hash chain of one instance's history

        Returns:
            Dictionary with integrity check results
        """
        result = {
            'valid': True,
            'total_entries': 0,
            'hash_errors': [],
            'chain_breaks': [],
        }

        entries = self.list_for_instance(instance_id)
        result['total_entries'] = len(entries)

        previous_hash = ""
        for position, entry in enumerate(entries):
            if not entry.verify_hash():
                result['valid'] = False
                result['hash_errors'].append({
                    'entry_id': entry.id,
                    'position': position,
                    'expected_hash': entry.calculate_hash(),
                    'actual_hash': entry.entry_hash,
                })
            if entry.previous_hash != previous_hash or entry.sequence != position + 1:
                result['valid'] = False
                result['chain_breaks'].append({
                    'entry_id': entry.id,
                    'position': position,
                    'expected_previous_hash': previous_hash,
                    'actual_previous_hash': entry.previous_hash,
                })
            previous_hash = entry.entry_hash

        return result
