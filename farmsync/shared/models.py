"""
Core data models for FarmSync.

This module defines the data structures shared by the client-side mutation
queue and the server-side conflict guard: versioned records, conflict
descriptors, queued mutations and the derived sync state.
"""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import List, Optional, Dict, Any, Tuple, Union
from enum import Enum
import uuid

from farmsync.shared.exceptions import ValidationError, ErrorCode


Timestamp = Union[datetime, str, int, float]


class Resolution(Enum):
    """Outcome of comparing server and client versions."""
    SERVER_WINS = "server-wins"
    CLIENT_WINS = "client-wins"


class MutationStatus(Enum):
    """Lifecycle status of a queued mutation."""
    IDLE = "idle"
    PENDING = "pending"
    SUCCESS = "success"
    ERROR = "error"


class MutationOutcome(Enum):
    """How a settled mutation ended."""
    APPLIED = "applied"
    SERVER_WON = "server_won"
    FAILED = "failed"


class MutationType(Enum):
    """Kind of write a mutation performs."""
    CREATE = "create"
    UPDATE = "update"
    DELETE = "delete"


class SyncState(Enum):
    """Aggregate synchronization state shown to the user."""
    OFFLINE = "offline"
    FAILED = "failed"
    SYNCING = "syncing"
    PENDING = "pending"
    SYNCED = "synced"


def utc_now() -> datetime:
    """Current time as an aware UTC datetime."""
    return datetime.now(timezone.utc)


def parse_timestamp(value: Timestamp, field_name: str = "updated_at") -> datetime:
    """
    Convert a timestamp to an aware UTC datetime.

    Accepts datetimes (naive values are read as UTC), ISO-8601 strings
    (a trailing ``Z`` is allowed) and epoch milliseconds.

    Raises:
        ValidationError: If the value cannot be read as an instant
    """
    if isinstance(value, datetime):
        if value.tzinfo is None:
            return value.replace(tzinfo=timezone.utc)
        return value.astimezone(timezone.utc)

    if isinstance(value, bool):
        raise ValidationError(
            f"Invalid timestamp for {field_name}: {value!r}",
            field_name=field_name,
            error_code=ErrorCode.VALIDATION_INVALID_FORMAT
        )

    if isinstance(value, (int, float)):
        if value != value or value in (float('inf'), float('-inf')):
            raise ValidationError(
                f"Invalid timestamp for {field_name}: {value!r}",
                field_name=field_name,
                error_code=ErrorCode.VALIDATION_INVALID_FORMAT
            )
        try:
            return datetime.fromtimestamp(value / 1000.0, tz=timezone.utc)
        except (OverflowError, OSError, ValueError) as e:
            raise ValidationError(
                f"Timestamp out of range for {field_name}: {value!r}",
                field_name=field_name,
                error_code=ErrorCode.VALIDATION_INVALID_FORMAT,
                cause=e
            )

    if isinstance(value, str):
        text = value.strip()
        if text.endswith('Z') or text.endswith('z'):
            text = text[:-1] + '+00:00'
        try:
            parsed = datetime.fromisoformat(text)
        except ValueError as e:
            raise ValidationError(
                f"Invalid timestamp for {field_name}: {value!r}",
                field_name=field_name,
                error_code=ErrorCode.VALIDATION_INVALID_FORMAT,
                cause=e
            )
        return parse_timestamp(parsed, field_name)

    raise ValidationError(
        f"Unsupported timestamp type for {field_name}: {type(value).__name__}",
        field_name=field_name,
        error_code=ErrorCode.VALIDATION_INVALID_FORMAT
    )


def format_timestamp(value: datetime) -> str:
    """Render an instant as ISO-8601 with a ``Z`` suffix."""
    return parse_timestamp(value).isoformat().replace('+00:00', 'Z')


@dataclass
class VersionedRecord:
    """
    A persisted entity subject to concurrent edits.

    ``updated_at`` is issued by the server on every successful write; the
    client only ever holds cached copies.
    """
    id: str
    updated_at: datetime
    fields: Dict[str, Any] = field(default_factory=dict)

    def __post_init__(self):
        if not self.id:
            raise ValueError("Record ID cannot be empty")
        if 'id' in self.fields or 'updated_at' in self.fields:
            raise ValueError("Record fields cannot shadow id or updated_at")

    def get(self, key: str, default: Any = None) -> Any:
        return self.fields.get(key, default)

    def to_dict(self) -> Dict[str, Any]:
        data = dict(self.fields)
        data['id'] = self.id
        data['updated_at'] = format_timestamp(self.updated_at)
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "VersionedRecord":
        if 'id' not in data:
            raise ValidationError("Record is missing id", field_name='id',
                                  error_code=ErrorCode.VALIDATION_MISSING_REQUIRED_FIELD)
        if 'updated_at' not in data:
            raise ValidationError("Record is missing updated_at", field_name='updated_at',
                                  error_code=ErrorCode.VALIDATION_MISSING_REQUIRED_FIELD)
        fields = {k: v for k, v in data.items() if k not in ('id', 'updated_at')}
        return cls(
            id=str(data['id']),
            updated_at=parse_timestamp(data['updated_at']),
            fields=fields
        )


@dataclass
class ConflictDescriptor:
    """Server and client snapshots of a record whose versions diverged."""
    server_version: VersionedRecord
    client_version: VersionedRecord
    resolution: Resolution

    def to_dict(self) -> Dict[str, Any]:
        return {
            'server_version': self.server_version.to_dict(),
            'client_version': self.client_version.to_dict(),
            'resolution': self.resolution.value
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ConflictDescriptor":
        try:
            return cls(
                server_version=VersionedRecord.from_dict(data['server_version']),
                client_version=VersionedRecord.from_dict(data['client_version']),
                resolution=Resolution(data['resolution'])
            )
        except (KeyError, TypeError, ValueError) as e:
            raise ValidationError(f"Malformed conflict payload: {e}",
                                  error_code=ErrorCode.VALIDATION_INVALID_FORMAT, cause=e)


@dataclass
class QueuedMutation:
    """A single outstanding client-originated write."""
    entity_type: str
    entity_id: str
    mutation_type: MutationType
    variables: Dict[str, Any] = field(default_factory=dict)
    base_updated_at: Optional[datetime] = None
    mutation_id: str = field(default_factory=lambda: str(uuid.uuid4()))
    status: MutationStatus = MutationStatus.IDLE
    is_paused: bool = False
    attempt_index: int = 0
    outcome: Optional[MutationOutcome] = None
    submitted_at: datetime = field(default_factory=utc_now)
    settled_at: Optional[datetime] = None
    last_error: Optional[str] = None
    blocked_on: Optional[str] = None

    def __post_init__(self):
        if not self.entity_type:
            raise ValueError("Entity type cannot be empty")
        if not self.entity_id:
            raise ValueError("Entity ID cannot be empty")
        if self.attempt_index < 0:
            raise ValueError("Attempt index cannot be negative")

    @property
    def mutation_key(self) -> Tuple[str, str]:
        """Identifies the target entity type and operation."""
        return (self.entity_type, self.mutation_type.value)

    @property
    def entity_key(self) -> str:
        """Serialization key: mutations sharing it are dispatched FIFO."""
        return f"{self.entity_type}:{self.entity_id}"

    @property
    def is_settled(self) -> bool:
        return self.status in (MutationStatus.SUCCESS, MutationStatus.ERROR)

    @property
    def counts_as_pending(self) -> bool:
        return self.status == MutationStatus.PENDING or self.is_paused

    def consume_attempt(self) -> int:
        """Advance the attempt index; it never decreases."""
        self.attempt_index += 1
        return self.attempt_index

    def mark_queued(self) -> None:
        """Waiting for dispatch: counted as pending from the moment it is queued."""
        self.status = MutationStatus.PENDING

    def pause(self, blocked_on: Optional[str] = None) -> None:
        self.status = MutationStatus.PENDING
        self.is_paused = True
        self.blocked_on = blocked_on

    def start(self) -> None:
        self.status = MutationStatus.PENDING
        self.is_paused = False
        self.blocked_on = None

    def succeed(self, outcome: MutationOutcome = MutationOutcome.APPLIED) -> None:
        self.status = MutationStatus.SUCCESS
        self.is_paused = False
        self.outcome = outcome
        self.settled_at = utc_now()

    def fail(self, message: str) -> None:
        self.status = MutationStatus.ERROR
        self.is_paused = False
        self.outcome = MutationOutcome.FAILED
        self.last_error = message
        self.settled_at = utc_now()

    def to_dict(self) -> Dict[str, Any]:
        return {
            'mutation_id': self.mutation_id,
            'entity_type': self.entity_type,
            'entity_id': self.entity_id,
            'mutation_type': self.mutation_type.value,
            'variables': self.variables,
            'base_updated_at': format_timestamp(self.base_updated_at) if self.base_updated_at else None,
            'status': self.status.value,
            'is_paused': self.is_paused,
            'attempt_index': self.attempt_index,
            'outcome': self.outcome.value if self.outcome else None,
            'submitted_at': format_timestamp(self.submitted_at),
            'settled_at': format_timestamp(self.settled_at) if self.settled_at else None,
            'last_error': self.last_error,
            'blocked_on': self.blocked_on
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "QueuedMutation":
        return cls(
            mutation_id=data['mutation_id'],
            entity_type=data['entity_type'],
            entity_id=data['entity_id'],
            mutation_type=MutationType(data['mutation_type']),
            variables=dict(data.get('variables') or {}),
            base_updated_at=parse_timestamp(data['base_updated_at']) if data.get('base_updated_at') else None,
            status=MutationStatus(data.get('status', MutationStatus.IDLE.value)),
            is_paused=bool(data.get('is_paused', False)),
            attempt_index=int(data.get('attempt_index', 0)),
            outcome=MutationOutcome(data['outcome']) if data.get('outcome') else None,
            submitted_at=parse_timestamp(data['submitted_at']),
            settled_at=parse_timestamp(data['settled_at']) if data.get('settled_at') else None,
            last_error=data.get('last_error'),
            blocked_on=data.get('blocked_on')
        )


@dataclass
class SyncSnapshot:
    """Point-in-time view of the queue, as reported to the UI."""
    state: SyncState
    pending_count: int
    paused_count: int
    failed_count: int
    failed_mutations: List[QueuedMutation] = field(default_factory=list)
