"""
Owned store of outstanding client mutations.

The queue keeps every mutation in enqueue order and answers the count
queries the sync indicator is derived from. It is only ever touched from the
event loop that owns the coordinator.
"""

import logging
from typing import Dict, Iterator, List, Optional

from farmsync.shared.exceptions import ErrorCode, SynchronizationError
from farmsync.shared.models import MutationStatus, QueuedMutation


logger = logging.getLogger(__name__)


class MutationQueue:
    """Insertion-ordered collection of QueuedMutations keyed by mutation id."""

    def __init__(self):
        self._mutations: Dict[str, QueuedMutation] = {}

    def __len__(self) -> int:
        return len(self._mutations)

    def __iter__(self) -> Iterator[QueuedMutation]:
        return iter(list(self._mutations.values()))

    def __contains__(self, mutation_id: str) -> bool:
        return mutation_id in self._mutations

    def enqueue(self, mutation: QueuedMutation) -> QueuedMutation:
        if mutation.mutation_id in self._mutations:
            raise SynchronizationError(
                f"Mutation {mutation.mutation_id} is already queued",
                error_code=ErrorCode.SYNC_OPERATION_FAILED,
                mutation_id=mutation.mutation_id
            )
        self._mutations[mutation.mutation_id] = mutation
        return mutation

    def get(self, mutation_id: str) -> Optional[QueuedMutation]:
        return self._mutations.get(mutation_id)

    def require(self, mutation_id: str) -> QueuedMutation:
        mutation = self._mutations.get(mutation_id)
        if mutation is None:
            raise SynchronizationError(
                f"Mutation {mutation_id} is not queued",
                error_code=ErrorCode.SYNC_MUTATION_NOT_FOUND,
                mutation_id=mutation_id
            )
        return mutation

    def remove(self, mutation_id: str) -> Optional[QueuedMutation]:
        return self._mutations.pop(mutation_id, None)

    def replace(self, old_id: str, mutation: QueuedMutation) -> QueuedMutation:
        """Swap a mutation for another while keeping its place in the order."""
        self.require(old_id)
        self._mutations = {
            (mutation.mutation_id if key == old_id else key):
                (mutation if key == old_id else value)
            for key, value in self._mutations.items()
        }
        return mutation

    def all(self) -> List[QueuedMutation]:
        return list(self._mutations.values())

    def unsettled(self) -> List[QueuedMutation]:
        return [m for m in self._mutations.values() if not m.is_settled]

    def for_entity(self, entity_key: str) -> List[QueuedMutation]:
        """Unsettled mutations for one entity, in FIFO order."""
        return [
            m for m in self._mutations.values()
            if m.entity_key == entity_key and not m.is_settled
        ]

    def head(self, entity_key: str) -> Optional[QueuedMutation]:
        for mutation in self._mutations.values():
            if mutation.entity_key == entity_key and not mutation.is_settled:
                return mutation
        return None

    def entity_keys(self) -> List[str]:
        """Entity keys that still have unsettled work, in first-seen order."""
        keys: List[str] = []
        for mutation in self._mutations.values():
            if not mutation.is_settled and mutation.entity_key not in keys:
                keys.append(mutation.entity_key)
        return keys

    def failed(self) -> List[QueuedMutation]:
        return [m for m in self._mutations.values() if m.status == MutationStatus.ERROR]

    def paused(self) -> List[QueuedMutation]:
        return [m for m in self._mutations.values() if m.is_paused]

    @property
    def pending_count(self) -> int:
        """Mutations that are pending or paused, each counted once."""
        return sum(1 for m in self._mutations.values() if m.counts_as_pending)

    @property
    def paused_count(self) -> int:
        return sum(1 for m in self._mutations.values() if m.is_paused)

    @property
    def failed_count(self) -> int:
        return sum(1 for m in self._mutations.values() if m.status == MutationStatus.ERROR)
