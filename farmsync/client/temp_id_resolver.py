"""
Temporary id resolution for records created offline.

A record created while offline gets a ``temp-`` id so dependent writes can
reference it. Once the create syncs and the server assigns the real id, the
mapping is registered here and every queued mutation still carrying the
temporary id is rewritten before dispatch.
"""

import logging
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, List, Optional

from farmsync.shared.interfaces import IClock, SystemClock
from farmsync.shared.models import format_timestamp, parse_timestamp


logger = logging.getLogger(__name__)

TEMP_ID_PREFIX = "temp-"
DEFAULT_MAX_AGE = timedelta(days=7)

# uuid4 renders as five dash-separated groups
_UUID_GROUPS = 5


def generate_temp_id() -> str:
    return f"{TEMP_ID_PREFIX}{uuid.uuid4()}"


def generate_entity_temp_id(entity_type: str) -> str:
    """Temporary id of the form ``temp-{entity_type}-{uuid4}``."""
    return f"{TEMP_ID_PREFIX}{entity_type}-{uuid.uuid4()}"


def is_temp_id(value: Any) -> bool:
    return isinstance(value, str) and value.startswith(TEMP_ID_PREFIX)


def extract_entity_type(temp_id: str) -> Optional[str]:
    """
    Entity type embedded in a temporary id.

    Returns None for values that are not temporary ids or that were generated
    without an entity type.
    """
    if not is_temp_id(temp_id):
        return None
    parts = temp_id[len(TEMP_ID_PREFIX):].split('-')
    if len(parts) <= _UUID_GROUPS:
        return None
    return '-'.join(parts[:-_UUID_GROUPS])


@dataclass
class TempIdMapping:
    """A temporary id and the server id it resolved to."""
    temp_id: str
    server_id: str
    entity_type: str
    created_at: datetime

    def to_dict(self) -> Dict[str, Any]:
        return {
            'temp_id': self.temp_id,
            'server_id': self.server_id,
            'entity_type': self.entity_type,
            'created_at': format_timestamp(self.created_at)
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "TempIdMapping":
        return cls(
            temp_id=data['temp_id'],
            server_id=data['server_id'],
            entity_type=data['entity_type'],
            created_at=parse_timestamp(data['created_at'], 'created_at')
        )


@dataclass
class BlockedMutation:
    """A mutation held back because it references an unresolved temporary id."""
    mutation_key: str
    unresolved_temp_id: str
    description: str
    blocked_at: datetime

    def to_dict(self) -> Dict[str, Any]:
        return {
            'mutation_key': self.mutation_key,
            'unresolved_temp_id': self.unresolved_temp_id,
            'description': self.description,
            'blocked_at': format_timestamp(self.blocked_at)
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "BlockedMutation":
        return cls(
            mutation_key=data['mutation_key'],
            unresolved_temp_id=data['unresolved_temp_id'],
            description=data.get('description', ''),
            blocked_at=parse_timestamp(data['blocked_at'], 'blocked_at')
        )


BlockedListener = Callable[[List[BlockedMutation]], None]


class TempIdResolver:
    """
    Maps temporary ids to server ids and tracks blocked mutations.

    When a ``store`` is supplied, mappings and blocked mutations are saved to
    it after every change and loaded on construction.
    """

    def __init__(self, clock: Optional[IClock] = None, store=None):
        self._clock = clock or SystemClock()
        self._store = store
        self._mappings: Dict[str, TempIdMapping] = {}
        self._blocked: Dict[str, BlockedMutation] = {}
        self._listeners: List[BlockedListener] = []

        if self._store is not None:
            self._load()

    def register(self, temp_id: str, server_id: str, entity_type: str) -> TempIdMapping:
        mapping = TempIdMapping(
            temp_id=temp_id,
            server_id=server_id,
            entity_type=entity_type,
            created_at=self._clock.now()
        )
        self._mappings[temp_id] = mapping
        self._persist()
        logger.debug(f"Registered temp id {temp_id} -> {server_id}")
        return mapping

    def resolve(self, value: str) -> str:
        """Server id for a temporary id; anything else is returned unchanged."""
        if not is_temp_id(value):
            return value
        mapping = self._mappings.get(value)
        return mapping.server_id if mapping else value

    def is_resolved(self, temp_id: str) -> bool:
        return temp_id in self._mappings

    def mappings_for_type(self, entity_type: str) -> List[TempIdMapping]:
        return [m for m in self._mappings.values() if m.entity_type == entity_type]

    def all_mappings(self) -> List[TempIdMapping]:
        return list(self._mappings.values())

    def clear(self, temp_id: str) -> None:
        self._mappings.pop(temp_id, None)
        self._persist()

    def clear_all(self) -> None:
        self._mappings.clear()
        self._persist()

    def clear_old(self, max_age: timedelta = DEFAULT_MAX_AGE) -> int:
        """Drop mappings older than ``max_age``. Returns how many were dropped."""
        now = self._clock.now()
        stale = [
            temp_id for temp_id, mapping in self._mappings.items()
            if now - mapping.created_at > max_age
        ]
        for temp_id in stale:
            del self._mappings[temp_id]

        if stale:
            self._persist()
            logger.info(f"Cleared {len(stale)} temp id mapping(s) older than {max_age}")
        return len(stale)

    def mark_blocked(self, mutation_key: str, unresolved_temp_id: str,
                     description: str) -> BlockedMutation:
        blocked = BlockedMutation(
            mutation_key=mutation_key,
            unresolved_temp_id=unresolved_temp_id,
            description=description,
            blocked_at=self._clock.now()
        )
        self._blocked[mutation_key] = blocked
        self._persist()
        self._notify_blocked_change()
        return blocked

    def unblock(self, mutation_key: str) -> None:
        if self._blocked.pop(mutation_key, None) is None:
            return
        self._persist()
        self._notify_blocked_change()

    def blocked_mutations(self) -> List[BlockedMutation]:
        return list(self._blocked.values())

    def on_blocked_change(self, listener: BlockedListener) -> Callable[[], None]:
        """
        Subscribe to blocked-mutation changes.

        Returns:
            A callable that removes the listener
        """
        self._listeners.append(listener)

        def unsubscribe():
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    def _notify_blocked_change(self) -> None:
        blocked = self.blocked_mutations()
        for listener in list(self._listeners):
            try:
                listener(blocked)
            except Exception as e:
                logger.error(f"Blocked-mutation listener failed: {e}")

    def _persist(self) -> None:
        if self._store is None:
            return
        self._store.write({
            'mappings': [m.to_dict() for m in self._mappings.values()],
            'blocked': [b.to_dict() for b in self._blocked.values()]
        })

    def _load(self) -> None:
        data = self._store.read()
        if not data:
            return
        for item in data.get('mappings', []):
            mapping = TempIdMapping.from_dict(item)
            self._mappings[mapping.temp_id] = mapping
        for item in data.get('blocked', []):
            blocked = BlockedMutation.from_dict(item)
            self._blocked[blocked.mutation_key] = blocked
        logger.debug(f"Loaded {len(self._mappings)} temp id mapping(s)")


def resolve_all_temp_ids(obj: Any, resolver: TempIdResolver) -> Any:
    """Copy of ``obj`` with every resolvable temporary id replaced, at any depth."""
    if isinstance(obj, str):
        return resolver.resolve(obj)
    if isinstance(obj, dict):
        return {key: resolve_all_temp_ids(value, resolver) for key, value in obj.items()}
    if isinstance(obj, (list, tuple)):
        return type(obj)(resolve_all_temp_ids(item, resolver) for item in obj)
    return obj


def find_unresolved_temp_ids(obj: Any, resolver: TempIdResolver) -> List[str]:
    """Unresolved temporary ids referenced anywhere in ``obj``, first-seen order."""
    found: List[str] = []

    def scan(value: Any) -> None:
        if isinstance(value, str):
            if is_temp_id(value) and not resolver.is_resolved(value) and value not in found:
                found.append(value)
        elif isinstance(value, dict):
            for item in value.values():
                scan(item)
        elif isinstance(value, (list, tuple)):
            for item in value:
                scan(item)

    scan(obj)
    return found
