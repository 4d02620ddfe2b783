"""
Tests for mutation deduplication.
"""

from datetime import datetime, timedelta, timezone

import pytest

from farmsync.client.mutation_deduplicator import (
    MutationMeta,
    collapsed_updates,
    deduplicate_mutations,
    merge_update_variables,
)
from farmsync.shared.models import MutationType, QueuedMutation


T0 = datetime(2024, 1, 1, tzinfo=timezone.utc)


def meta(mutation_id, mutation_type, entity_id="field-1", offset=0, **variables):
    return MutationMeta(
        id=mutation_id,
        type=mutation_type,
        entity_type="field",
        entity_id=entity_id,
        timestamp=T0 + timedelta(seconds=offset),
        variables=variables
    )


class TestDeduplicateMutations:
    """Test the collapse rules."""

    def test_nothing_to_collapse(self):
        metas = [
            meta("c1", MutationType.CREATE, entity_id="temp-field-a"),
            meta("u1", MutationType.UPDATE, entity_id="field-2"),
        ]

        result = deduplicate_mutations(metas)

        assert sorted(result.keep) == ["c1", "u1"]
        assert result.remove == []
        assert not result.changed

    def test_create_then_delete_of_temp_entity_cancels(self):
        metas = [
            meta("c1", MutationType.CREATE, entity_id="temp-field-a", offset=0),
            meta("u1", MutationType.UPDATE, entity_id="temp-field-a", offset=1),
            meta("d1", MutationType.DELETE, entity_id="temp-field-a", offset=2),
        ]

        result = deduplicate_mutations(metas)

        assert result.keep == []
        assert sorted(result.remove) == ["c1", "d1", "u1"]
        assert "Cancelled create+delete" in result.actions[0]

    def test_updates_before_delete_are_dropped(self):
        metas = [
            meta("u1", MutationType.UPDATE, offset=0),
            meta("u2", MutationType.UPDATE, offset=1),
            meta("d1", MutationType.DELETE, offset=2),
        ]

        result = deduplicate_mutations(metas)

        assert result.keep == ["d1"]
        assert result.remove == ["u1", "u2"]

    def test_multiple_updates_keep_the_latest(self):
        metas = [
            meta("u2", MutationType.UPDATE, offset=5),
            meta("u1", MutationType.UPDATE, offset=0),
            meta("u3", MutationType.UPDATE, offset=9),
        ]

        result = deduplicate_mutations(metas)

        assert result.keep == ["u3"]
        assert result.remove == ["u1", "u2"]
        assert "Merged 3 updates" in result.actions[0]

    def test_create_of_server_entity_is_kept_with_latest_update(self):
        metas = [
            meta("c1", MutationType.CREATE, entity_id="field-9", offset=0),
            meta("u1", MutationType.UPDATE, entity_id="field-9", offset=1),
            meta("u2", MutationType.UPDATE, entity_id="field-9", offset=2),
        ]

        result = deduplicate_mutations(metas)

        assert result.keep == ["c1", "u2"]
        assert result.remove == ["u1"]

    def test_every_id_lands_in_exactly_one_list(self):
        metas = [
            meta("a", MutationType.UPDATE, entity_id="f1", offset=0),
            meta("b", MutationType.UPDATE, entity_id="f1", offset=1),
            meta("c", MutationType.DELETE, entity_id="f2", offset=0),
            meta("d", MutationType.UPDATE, entity_id="f2", offset=1),
            meta("e", MutationType.CREATE, entity_id="temp-field-x", offset=0),
        ]

        result = deduplicate_mutations(metas)

        assert sorted(result.keep + result.remove) == ["a", "b", "c", "d", "e"]
        assert not set(result.keep) & set(result.remove)

    def test_from_mutation(self):
        mutation = QueuedMutation(entity_type="field", entity_id="field-1",
                                  mutation_type=MutationType.UPDATE, variables={"name": "x"})

        converted = MutationMeta.from_mutation(mutation)

        assert converted.id == mutation.mutation_id
        assert converted.entity_key == "field:field-1"
        assert converted.timestamp == mutation.submitted_at
        assert converted.variables == {"name": "x"}


class TestMergeHelpers:
    """Test folding absorbed updates into the survivor."""

    def test_later_values_override(self):
        merged = merge_update_variables([{"name": "a", "acres": 1}, {"name": "b"}, {"notes": "n"}])
        assert merged == {"name": "b", "acres": 1, "notes": "n"}

    def test_collapsed_updates_in_order(self):
        metas = [
            meta("u2", MutationType.UPDATE, offset=5),
            meta("u1", MutationType.UPDATE, offset=0),
            meta("u3", MutationType.UPDATE, offset=9),
        ]
        result = deduplicate_mutations(metas)

        chain = collapsed_updates(metas, result, "u3")

        assert [m.id for m in chain] == ["u1", "u2", "u3"]

    @pytest.mark.parametrize("survivor", ["d1", "missing"])
    def test_no_chain_for_delete_or_unknown(self, survivor):
        metas = [
            meta("u1", MutationType.UPDATE, offset=0),
            meta("d1", MutationType.DELETE, offset=1),
        ]
        result = deduplicate_mutations(metas)

        assert collapsed_updates(metas, result, survivor) is None

    def test_no_chain_for_lone_update(self):
        metas = [meta("u1", MutationType.UPDATE)]
        result = deduplicate_mutations(metas)

        assert collapsed_updates(metas, result, "u1") is None
