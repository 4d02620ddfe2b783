"""
Client-side record cache.

Holds the last server-issued copy of each record plus the optimistic changes
of mutations that have not settled yet. Server copies are only ever replaced
with records the server returned, so ``updated_at`` is never invented
locally.
"""

import logging
from datetime import datetime
from typing import Any, Dict, List, Optional, Tuple

from farmsync.shared.models import MutationType, QueuedMutation, VersionedRecord


logger = logging.getLogger(__name__)

RecordKey = Tuple[str, str]


class _Overlay:
    __slots__ = ('key', 'mutation_type', 'changes')

    def __init__(self, key: RecordKey, mutation_type: MutationType, changes: Dict[str, Any]):
        self.key = key
        self.mutation_type = mutation_type
        self.changes = changes


class RecordCache:
    """Server copies keyed by ``(entity_type, id)`` with per-mutation overlays."""

    def __init__(self):
        self._records: Dict[RecordKey, VersionedRecord] = {}
        self._overlays: Dict[str, _Overlay] = {}

    def adopt(self, entity_type: str, record: VersionedRecord) -> None:
        """Store a record exactly as the server returned it."""
        self._records[(entity_type, record.id)] = record

    def get(self, entity_type: str, record_id: str) -> Optional[VersionedRecord]:
        return self._records.get((entity_type, record_id))

    def remove(self, entity_type: str, record_id: str) -> None:
        self._records.pop((entity_type, record_id), None)

    def base_version(self, entity_type: str, record_id: str) -> Optional[datetime]:
        record = self.get(entity_type, record_id)
        return record.updated_at if record else None

    def records_of_type(self, entity_type: str) -> List[VersionedRecord]:
        return [r for (kind, _), r in self._records.items() if kind == entity_type]

    def apply_optimistic(self, mutation: QueuedMutation) -> None:
        self._overlays[mutation.mutation_id] = _Overlay(
            key=(mutation.entity_type, mutation.entity_id),
            mutation_type=mutation.mutation_type,
            changes=dict(mutation.variables)
        )

    def discard_optimistic(self, mutation_id: str) -> None:
        """Roll back a mutation's local changes."""
        self._overlays.pop(mutation_id, None)

    def settle(self, mutation_id: str) -> None:
        self._overlays.pop(mutation_id, None)

    def has_local_changes(self, entity_type: str, record_id: str) -> bool:
        return any(o.key == (entity_type, record_id) for o in self._overlays.values())

    def view(self, entity_type: str, record_id: str) -> Optional[Dict[str, Any]]:
        """
        The record as the user should see it.

        Server fields with pending local changes layered on top in enqueue
        order. Returns None if the record is unknown or deleted locally.
        """
        key = (entity_type, record_id)
        record = self._records.get(key)
        view: Optional[Dict[str, Any]] = None
        if record is not None:
            view = record.to_dict()

        for overlay in self._overlays.values():
            if overlay.key != key:
                continue
            if overlay.mutation_type == MutationType.DELETE:
                view = None
            elif overlay.mutation_type == MutationType.CREATE and view is None:
                view = dict(overlay.changes)
                view['id'] = record_id
                view['updated_at'] = None
            elif view is not None:
                view.update({k: v for k, v in overlay.changes.items()
                             if k not in ('id', 'updated_at')})
        return view

    def replace_id(self, entity_type: str, temp_id: str, server_id: str) -> None:
        """Re-key everything cached under a temporary id."""
        old_key = (entity_type, temp_id)
        new_key = (entity_type, server_id)

        record = self._records.pop(old_key, None)
        if record is not None and new_key not in self._records:
            self._records[new_key] = VersionedRecord(
                id=server_id, updated_at=record.updated_at, fields=dict(record.fields)
            )

        for overlay in self._overlays.values():
            if overlay.key == old_key:
                overlay.key = new_key

    def clear(self) -> None:
        self._records.clear()
        self._overlays.clear()
