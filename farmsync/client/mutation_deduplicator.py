"""
Mutation deduplication.

Collapses redundant queued writes before they are sent: a create followed by
a delete of a never-synced entity cancels out, updates before a delete are
dropped, and several updates to one entity fold into the latest.
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, Iterable, List, Optional

from farmsync.shared.models import MutationType, QueuedMutation
from .temp_id_resolver import is_temp_id


logger = logging.getLogger(__name__)


@dataclass
class MutationMeta:
    """The parts of a queued mutation deduplication looks at."""
    id: str
    type: MutationType
    entity_type: str
    entity_id: str
    timestamp: datetime
    variables: Dict[str, Any] = field(default_factory=dict)

    @property
    def entity_key(self) -> str:
        return f"{self.entity_type}:{self.entity_id}"

    @classmethod
    def from_mutation(cls, mutation: QueuedMutation) -> "MutationMeta":
        return cls(
            id=mutation.mutation_id,
            type=mutation.mutation_type,
            entity_type=mutation.entity_type,
            entity_id=mutation.entity_id,
            timestamp=mutation.submitted_at,
            variables=dict(mutation.variables)
        )


@dataclass
class DeduplicationResult:
    """Mutation ids to keep and remove, with a note per collapsed entity."""
    keep: List[str] = field(default_factory=list)
    remove: List[str] = field(default_factory=list)
    actions: List[str] = field(default_factory=list)

    @property
    def changed(self) -> bool:
        return bool(self.remove)


def deduplicate_mutations(mutations: Iterable[MutationMeta]) -> DeduplicationResult:
    """
    Work out which mutations are redundant.

    Mutations are grouped per entity and ordered by timestamp. Every input id
    ends up in exactly one of ``keep`` or ``remove``.
    """
    result = DeduplicationResult()

    by_entity: Dict[str, List[MutationMeta]] = {}
    for meta in mutations:
        by_entity.setdefault(meta.entity_key, []).append(meta)

    for entity_key, entity_mutations in by_entity.items():
        ordered = sorted(entity_mutations, key=lambda m: m.timestamp)

        creates = [m for m in ordered if m.type == MutationType.CREATE]
        deletes = [m for m in ordered if m.type == MutationType.DELETE]
        updates = [m for m in ordered if m.type == MutationType.UPDATE]

        # Entity never reached the server
        if creates and deletes and is_temp_id(creates[0].entity_id):
            result.remove.extend(m.id for m in ordered)
            result.actions.append(f"Cancelled create+delete for {entity_key}")
            continue

        if deletes and updates:
            result.keep.extend(m.id for m in deletes)
            result.keep.extend(m.id for m in creates)
            result.remove.extend(m.id for m in updates)
            result.actions.append(
                f"Removed {len(updates)} updates before delete for {entity_key}"
            )
            continue

        if len(updates) > 1:
            result.keep.extend(m.id for m in creates)
            result.keep.append(updates[-1].id)
            result.remove.extend(m.id for m in updates[:-1])
            result.actions.append(f"Merged {len(updates)} updates into one for {entity_key}")
            continue

        result.keep.extend(m.id for m in ordered)

    if result.actions:
        logger.debug(f"Deduplication: {'; '.join(result.actions)}")

    return result


def merge_update_variables(updates: Iterable[Dict[str, Any]]) -> Dict[str, Any]:
    """Fold update payloads in order; later values override earlier ones."""
    merged: Dict[str, Any] = {}
    for update in updates:
        merged.update(update)
    return merged


def collapsed_updates(metas: List[MutationMeta], result: DeduplicationResult,
                      survivor_id: str) -> Optional[List[MutationMeta]]:
    """
    Updates folded into ``survivor_id``, oldest first, ending with the survivor.

    Returns None when the survivor is not an update that absorbed others.
    """
    by_id = {m.id: m for m in metas}
    survivor = by_id.get(survivor_id)
    if survivor is None or survivor.type != MutationType.UPDATE:
        return None

    removed = set(result.remove)
    absorbed = [
        m for m in metas
        if m.id in removed
        and m.type == MutationType.UPDATE
        and m.entity_key == survivor.entity_key
    ]
    if not absorbed:
        return None

    # Updates removed because of a later delete are not folded anywhere
    if any(m.type == MutationType.DELETE and m.entity_key == survivor.entity_key for m in metas):
        return None

    return sorted(absorbed, key=lambda m: m.timestamp) + [survivor]
