"""
Tests for the mutation queue and the derived sync state.
"""

import pytest
from hypothesis import given, settings, strategies as st

from farmsync.client.mutation_queue import MutationQueue
from farmsync.client.sync_coordinator import derive_sync_state
from farmsync.shared.exceptions import ErrorCode, SynchronizationError
from farmsync.shared.models import (
    MutationStatus, MutationType, QueuedMutation, SyncState
)


def make_mutation(entity_id="field-1", mutation_type=MutationType.UPDATE, **kwargs):
    return QueuedMutation(entity_type="field", entity_id=entity_id,
                          mutation_type=mutation_type, **kwargs)


class TestMutationQueue:
    """Test queue storage and ordering."""

    @pytest.fixture
    def queue(self):
        return MutationQueue()

    def test_enqueue_and_lookup(self, queue):
        mutation = queue.enqueue(make_mutation())

        assert len(queue) == 1
        assert mutation.mutation_id in queue
        assert queue.get(mutation.mutation_id) is mutation
        assert queue.require(mutation.mutation_id) is mutation

    def test_duplicate_enqueue_is_rejected(self, queue):
        mutation = queue.enqueue(make_mutation())
        with pytest.raises(SynchronizationError):
            queue.enqueue(mutation)

    def test_require_unknown(self, queue):
        with pytest.raises(SynchronizationError) as exc_info:
            queue.require("missing")
        assert exc_info.value.error_code == ErrorCode.SYNC_MUTATION_NOT_FOUND

    def test_head_is_oldest_unsettled_for_entity(self, queue):
        first = queue.enqueue(make_mutation())
        second = queue.enqueue(make_mutation())
        other = queue.enqueue(make_mutation(entity_id="field-2"))

        assert queue.head("field:field-1") is first
        first.fail("rejected")
        assert queue.head("field:field-1") is second
        assert queue.for_entity("field:field-1") == [second]
        assert queue.entity_keys() == ["field:field-1", "field:field-2"]
        assert queue.head("field:field-2") is other

    def test_replace_keeps_position(self, queue):
        first = queue.enqueue(make_mutation(entity_id="a"))
        middle = queue.enqueue(make_mutation(entity_id="b"))
        last = queue.enqueue(make_mutation(entity_id="c"))

        replacement = make_mutation(entity_id="b")
        queue.replace(middle.mutation_id, replacement)

        assert queue.all() == [first, replacement, last]
        assert middle.mutation_id not in queue

    def test_remove(self, queue):
        mutation = queue.enqueue(make_mutation())
        assert queue.remove(mutation.mutation_id) is mutation
        assert queue.remove(mutation.mutation_id) is None
        assert len(queue) == 0

    def test_counts(self, queue):
        running = queue.enqueue(make_mutation(entity_id="a"))
        running.start()
        paused = queue.enqueue(make_mutation(entity_id="b"))
        paused.pause()
        failed = queue.enqueue(make_mutation(entity_id="c"))
        failed.fail("boom")
        queue.enqueue(make_mutation(entity_id="d"))

        assert queue.pending_count == 2
        assert queue.paused_count == 1
        assert queue.failed_count == 1
        assert queue.failed() == [failed]
        assert queue.paused() == [paused]
        assert len(queue.unsettled()) == 3

    @settings(max_examples=100, deadline=None)
    @given(states=st.lists(
        st.tuples(st.sampled_from(list(MutationStatus)), st.booleans()),
        max_size=25
    ))
    def test_pending_count_is_union_of_pending_and_paused(self, states):
        queue = MutationQueue()
        for status, paused in states:
            queue.enqueue(make_mutation(status=status, is_paused=paused))

        expected = sum(1 for status, paused in states
                       if status == MutationStatus.PENDING or paused)
        assert queue.pending_count == expected
        assert queue.pending_count <= len(queue)


class TestDeriveSyncState:
    """Test the sync indicator priority."""

    def test_scenario_syncing(self):
        assert derive_sync_state(True, 2, 0, 0) == SyncState.SYNCING

    def test_scenario_pending(self):
        assert derive_sync_state(True, 0, 3, 0) == SyncState.PENDING

    def test_synced_when_idle(self):
        assert derive_sync_state(True, 0, 0, 0) == SyncState.SYNCED

    def test_failed_beats_pending(self):
        assert derive_sync_state(True, 4, 0, 1) == SyncState.FAILED
        assert derive_sync_state(True, 4, 2, 1) == SyncState.FAILED

    def test_paused_work_is_pending_not_syncing(self):
        assert derive_sync_state(True, 3, 1, 0) == SyncState.PENDING

    @settings(max_examples=100, deadline=None)
    @given(pending=st.integers(min_value=0, max_value=50),
           paused=st.integers(min_value=0, max_value=50),
           failed=st.integers(min_value=0, max_value=50))
    def test_offline_always_wins(self, pending, paused, failed):
        assert derive_sync_state(False, pending, paused, failed) == SyncState.OFFLINE

    @settings(max_examples=100, deadline=None)
    @given(pending=st.integers(min_value=0, max_value=50),
           paused=st.integers(min_value=0, max_value=50),
           failed=st.integers(min_value=1, max_value=50))
    def test_failures_win_when_online(self, pending, paused, failed):
        assert derive_sync_state(True, pending, paused, failed) == SyncState.FAILED
