"""
Last-write-wins conflict resolution.

Pure functions that compare server and client version stamps, build the
structured conflict error returned for a stale write, and rebase a client's
changes onto the current server record.
"""

import logging
from typing import Any, Dict, Optional

from farmsync.shared.exceptions import CONFLICT_REASON, ConflictError
from farmsync.shared.models import (
    ConflictDescriptor, Resolution, Timestamp, VersionedRecord, parse_timestamp
)


logger = logging.getLogger(__name__)

PROTECTED_FIELDS = ('id', 'updated_at')


def resolve_conflict(server_updated_at: Timestamp, client_updated_at: Timestamp) -> Resolution:
    """
    Decide which version wins.

    The client wins only when its instant is strictly later than the
    server's. Equal instants resolve to the server.

    Raises:
        ValidationError: If either timestamp cannot be parsed
    """
    server_instant = parse_timestamp(server_updated_at, 'server_updated_at')
    client_instant = parse_timestamp(client_updated_at, 'client_updated_at')

    if client_instant > server_instant:
        return Resolution.CLIENT_WINS
    return Resolution.SERVER_WINS


def has_conflict(server_updated_at: Timestamp, client_expected_updated_at: Timestamp) -> bool:
    """
    True iff another write landed after the client's base version.

    Equal or older server stamps are not conflicts.
    """
    server_instant = parse_timestamp(server_updated_at, 'server_updated_at')
    expected_instant = parse_timestamp(client_expected_updated_at, 'expected_updated_at')
    return server_instant > expected_instant


def create_conflict_error(server_version: VersionedRecord,
                          client_version: VersionedRecord) -> ConflictError:
    """
    Build the structured 409 error for a stale write.

    Args:
        server_version: Record as currently stored on the server
        client_version: Record as the client attempted to write it

    Returns:
        ConflictError carrying both snapshots and the computed resolution
    """
    resolution = resolve_conflict(server_version.updated_at, client_version.updated_at)
    descriptor = ConflictDescriptor(
        server_version=server_version,
        client_version=client_version,
        resolution=resolution
    )
    return ConflictError(
        f"Record {server_version.id} was modified on the server",
        conflict=descriptor,
        user_message="This record was changed elsewhere."
    )


def is_conflict_error(error: Optional[BaseException]) -> bool:
    return getattr(error, 'reason', None) == CONFLICT_REASON


def extract_conflict_data(error: Optional[BaseException]) -> Optional[ConflictDescriptor]:
    """Return the embedded descriptor, or None for any non-conflict error."""
    if not is_conflict_error(error):
        return None
    conflict = getattr(error, 'conflict', None)
    if isinstance(conflict, ConflictDescriptor):
        return conflict
    return None


def merge_for_retry(server_version: VersionedRecord,
                    client_updates: Dict[str, Any]) -> VersionedRecord:
    """
    Rebase client changes onto the current server record.

    Every key present in ``client_updates`` overrides the server's field,
    including an explicit None that clears it. Absent keys keep the server
    value. ``id`` and ``updated_at`` always come from the server.
    Neither input is modified.
    """
    fields = dict(server_version.fields)
    for key, value in client_updates.items():
        if key in PROTECTED_FIELDS:
            continue
        fields[key] = value

    merged = VersionedRecord(
        id=server_version.id,
        updated_at=server_version.updated_at,
        fields=fields
    )
    logger.debug(f"Rebased {len(client_updates)} client field(s) onto {server_version.id}")
    return merged
