"""
Server-side version guard for FarmSync.

Every write names the version it was based on. The guard rejects writes whose
base is older than the stored record with a structured conflict, and the
store stamps a strictly advancing ``updated_at`` on every accepted write.
"""

import logging
import uuid
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional, Tuple

from farmsync.client.conflict_resolution import (
    PROTECTED_FIELDS, create_conflict_error, has_conflict
)
from farmsync.shared.exceptions import RecordNotFoundError
from farmsync.shared.interfaces import IClock, SystemClock
from farmsync.shared.models import Timestamp, VersionedRecord, parse_timestamp


logger = logging.getLogger(__name__)

_MIN_STEP = timedelta(microseconds=1)


def ensure_no_conflict(current: VersionedRecord, expected_updated_at: Timestamp,
                       client_updates: Optional[Dict[str, Any]] = None) -> None:
    """
    Reject a write based on a stale version.

    The client snapshot in the conflict is the stored record with the
    client's updates applied and ``updated_at`` set to the expected version.

    Raises:
        ConflictError: If another write landed after ``expected_updated_at``
        ValidationError: If ``expected_updated_at`` is not a timestamp
    """
    expected = parse_timestamp(expected_updated_at, 'expected_updated_at')
    if not has_conflict(current.updated_at, expected):
        return

    fields = dict(current.fields)
    fields.update({k: v for k, v in (client_updates or {}).items() if k not in PROTECTED_FIELDS})
    client_version = VersionedRecord(id=current.id, updated_at=expected, fields=fields)

    logger.info(f"Rejected stale write to {current.id}")
    raise create_conflict_error(current, client_version)


class VersionedRecordStore:
    """In-memory records keyed by entity type and id."""

    def __init__(self, clock: Optional[IClock] = None):
        self._clock = clock or SystemClock()
        self._records: Dict[Tuple[str, str], VersionedRecord] = {}
        self._last_stamp: Optional[datetime] = None

    def __len__(self) -> int:
        return len(self._records)

    def _stamp(self) -> datetime:
        now = self._clock.now()
        if self._last_stamp is not None and now <= self._last_stamp:
            now = self._last_stamp + _MIN_STEP
        self._last_stamp = now
        return now

    def get(self, entity_type: str, record_id: str) -> VersionedRecord:
        record = self._records.get((entity_type, record_id))
        if record is None:
            raise RecordNotFoundError(entity_type, record_id)
        return record

    def list(self, entity_type: str) -> List[VersionedRecord]:
        return [r for (kind, _), r in self._records.items() if kind == entity_type]

    def create(self, entity_type: str, fields: Dict[str, Any]) -> VersionedRecord:
        record = VersionedRecord(
            id=str(uuid.uuid4()),
            updated_at=self._stamp(),
            fields={k: v for k, v in fields.items() if k not in PROTECTED_FIELDS}
        )
        self._records[(entity_type, record.id)] = record
        logger.debug(f"Created {entity_type} {record.id}")
        return record

    def update(self, entity_type: str, record_id: str, changes: Dict[str, Any],
               expected_updated_at: Timestamp) -> VersionedRecord:
        """
        Apply ``changes`` if the record has not moved past the client's base.

        Raises:
            RecordNotFoundError: Unknown record
            ConflictError: Stale base version
        """
        current = self.get(entity_type, record_id)
        ensure_no_conflict(current, expected_updated_at, changes)

        fields = dict(current.fields)
        fields.update({k: v for k, v in changes.items() if k not in PROTECTED_FIELDS})
        record = VersionedRecord(id=record_id, updated_at=self._stamp(), fields=fields)
        self._records[(entity_type, record_id)] = record
        return record

    def delete(self, entity_type: str, record_id: str,
               expected_updated_at: Optional[Timestamp] = None) -> VersionedRecord:
        """Remove a record and return its last stored version."""
        current = self.get(entity_type, record_id)
        if expected_updated_at is not None:
            ensure_no_conflict(current, expected_updated_at)
        del self._records[(entity_type, record_id)]
        return current
