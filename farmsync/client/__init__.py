"""
Client layer for FarmSync.

Conflict resolution, retry scheduling and the mutation queue coordinator
that keeps the application usable while disconnected, plus the HTTP
transport and configuration that wire it to a server.
"""

from .conflict_resolution import (
    resolve_conflict, has_conflict, create_conflict_error,
    extract_conflict_data, merge_for_retry
)
from .retry_policy import retry_delay, RetryPolicy
from .sync_coordinator import derive_sync_state, MutationQueueCoordinator

__all__ = [
    'resolve_conflict', 'has_conflict', 'create_conflict_error',
    'extract_conflict_data', 'merge_for_retry', 'retry_delay', 'RetryPolicy',
    'derive_sync_state', 'MutationQueueCoordinator',
]
