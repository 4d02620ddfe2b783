"""
Mutation Queue Coordinator for FarmSync Client.

This module tracks every outstanding client write, dispatches them through
the injected transport, resolves version conflicts, schedules retries and
derives the single sync state shown to the user.

Dispatch is serialized per entity (FIFO) and runs concurrently across
entities. All state is owned by one asyncio event loop, so no locking is
needed.
"""

import asyncio
import concurrent.futures
import logging
import time
from typing import Any, Awaitable, Callable, Dict, List, Optional, Set, Union

from farmsync.shared.exceptions import (
    ConflictError, ErrorCode, FarmSyncError, StorageError, SynchronizationError,
    TransportError, ValidationError, handle_exception
)
from farmsync.shared.interfaces import (
    IClock, IConnectivityMonitor, IMutationTransport, StaticConnectivity, SystemClock
)
from farmsync.shared.logging_config import (
    AuditEventType, OperationLogger, SyncAuditLogger, log_structured_error
)
from farmsync.shared.models import (
    MutationOutcome, MutationStatus, MutationType, QueuedMutation, Resolution,
    SyncSnapshot, SyncState, Timestamp, VersionedRecord, parse_timestamp
)
from .conflict_resolution import extract_conflict_data, merge_for_retry
from .mutation_deduplicator import (
    DeduplicationResult, MutationMeta, collapsed_updates, deduplicate_mutations,
    merge_update_variables
)
from .mutation_queue import MutationQueue
from .queue_persistence import LockedJsonFile, QueuePersistenceManager
from .record_cache import RecordCache
from .retry_policy import RetryDecision, RetryPolicy
from .storage_monitor import StorageMonitor
from .temp_id_resolver import (
    TempIdResolver, find_unresolved_temp_ids, generate_entity_temp_id, is_temp_id,
    resolve_all_temp_ids
)

logger = logging.getLogger(__name__)

SleepFunc = Callable[[float], Awaitable[Any]]
SyncListener = Callable[[SyncSnapshot], None]


def derive_sync_state(is_online: bool, pending_count: int, paused_count: int,
                      failed_count: int) -> SyncState:
    """
    Collapse connectivity and queue counts into one state.

    Priority: offline, failed, syncing (work in flight and nothing paused),
    pending (something paused), synced.
    """
    if not is_online:
        return SyncState.OFFLINE
    if failed_count > 0:
        return SyncState.FAILED
    if pending_count > 0 and paused_count == 0:
        return SyncState.SYNCING
    if paused_count > 0:
        return SyncState.PENDING
    return SyncState.SYNCED


class MutationQueueCoordinator:
    """
    Owns the mutation queue and drives every mutation to a settled state.

    Every dispatch outcome is a handled branch: success, conflict, transport
    failure and rejection. Nothing raised by the transport escapes.
    """

    def __init__(
        self,
        transport: IMutationTransport,
        connectivity: Optional[IConnectivityMonitor] = None,
        clock: Optional[IClock] = None,
        retry_policy: Optional[RetryPolicy] = None,
        queue: Optional[MutationQueue] = None,
        cache: Optional[RecordCache] = None,
        temp_ids: Optional[TempIdResolver] = None,
        storage_monitor: Optional[StorageMonitor] = None,
        persistence: Optional[QueuePersistenceManager] = None,
        sleep: SleepFunc = asyncio.sleep,
        offline_first: bool = True
    ):
        self._transport = transport
        self._connectivity = connectivity or StaticConnectivity(True)
        self._clock = clock or SystemClock()
        self.retry_policy = retry_policy or RetryPolicy()
        self.queue = queue if queue is not None else MutationQueue()
        self.cache = cache or RecordCache()
        self.temp_ids = temp_ids or TempIdResolver(clock=self._clock)
        self._storage_monitor = storage_monitor
        self._persistence = persistence
        self._sleep = sleep
        self.offline_first = offline_first

        self._workers: Dict[str, asyncio.Task] = {}
        self._active: Set[str] = set()
        self._in_flight: Set[str] = set()
        self._listeners: List[SyncListener] = []
        self._persist_executor: Optional[concurrent.futures.ThreadPoolExecutor] = None
        self._pending_saves: Set[asyncio.Future] = set()

        self._audit_logger = SyncAuditLogger("audit")
        self._operation_logger = OperationLogger("operations")

        logger.info("Mutation queue coordinator initialized")

    @classmethod
    def from_configuration(cls, config, transport: IMutationTransport,
                           connectivity: Optional[IConnectivityMonitor] = None,
                           clock: Optional[IClock] = None) -> "MutationQueueCoordinator":
        """Build a coordinator wired to the files and limits in ``config``."""
        clock = clock or SystemClock()
        queue_file = config.get_queue_file()

        temp_file = config.get_temp_id_file()
        temp_ids = TempIdResolver(
            clock=clock,
            store=LockedJsonFile(temp_file) if temp_file else None
        )
        temp_ids.clear_old(config.get_temp_id_max_age())

        return cls(
            transport=transport,
            connectivity=connectivity,
            clock=clock,
            retry_policy=config.get_retry_policy(),
            temp_ids=temp_ids,
            storage_monitor=StorageMonitor(queue_file.parent, config.get_storage_thresholds()),
            persistence=QueuePersistenceManager(queue_file),
            offline_first=config.is_offline_first()
        )

    # Introspection

    @property
    def is_online(self) -> bool:
        return self._connectivity.is_online()

    @property
    def pending_count(self) -> int:
        return self.queue.pending_count

    @property
    def paused_count(self) -> int:
        return self.queue.paused_count

    @property
    def failed_count(self) -> int:
        return self.queue.failed_count

    @property
    def sync_state(self) -> SyncState:
        return derive_sync_state(self.is_online, self.pending_count,
                                 self.paused_count, self.failed_count)

    def snapshot(self) -> SyncSnapshot:
        return SyncSnapshot(
            state=self.sync_state,
            pending_count=self.pending_count,
            paused_count=self.paused_count,
            failed_count=self.failed_count,
            failed_mutations=self.queue.failed()
        )

    def get_mutation(self, mutation_id: str) -> Optional[QueuedMutation]:
        return self.queue.get(mutation_id)

    def is_in_flight(self, mutation_id: str) -> bool:
        return mutation_id in self._in_flight

    def add_listener(self, listener: SyncListener) -> Callable[[], None]:
        """
        Subscribe to sync-state snapshots.

        Returns:
            A callable that removes the listener
        """
        self._listeners.append(listener)

        def unsubscribe():
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    def _notify(self) -> None:
        if not self._listeners:
            return
        snapshot = self.snapshot()
        for listener in list(self._listeners):
            try:
                listener(snapshot)
            except Exception as e:
                logger.error(f"Sync listener failed: {e}")

    # Public operations

    def submit(
        self,
        entity_type: str,
        mutation_type: Union[MutationType, str],
        variables: Optional[Dict[str, Any]] = None,
        entity_id: Optional[str] = None,
        base_updated_at: Optional[Timestamp] = None
    ) -> QueuedMutation:
        """
        Queue a write and start dispatching it.

        Creates without an ``entity_id`` get a temporary id. Updates and
        deletes default their base version to the cached server copy.

        Raises:
            StorageError: If local storage is too full to queue more work
            ValidationError: If the mutation is malformed
        """
        if isinstance(mutation_type, str):
            try:
                mutation_type = MutationType(mutation_type)
            except ValueError as e:
                raise ValidationError(f"Unknown mutation type: {mutation_type}",
                                      field_name='mutation_type', cause=e)

        if self._storage_monitor is not None and not self._storage_monitor.can_queue():
            error = StorageError("Local storage is full; write was not queued",
                                 user_message="Free up storage to keep working offline.")
            log_structured_error(logger, error)
            raise error

        if entity_id is None:
            if mutation_type != MutationType.CREATE:
                raise ValidationError(
                    f"{mutation_type.value} of {entity_type} needs an entity id",
                    field_name='entity_id',
                    error_code=ErrorCode.VALIDATION_MISSING_REQUIRED_FIELD
                )
            entity_id = generate_entity_temp_id(entity_type)

        if base_updated_at is not None:
            base = parse_timestamp(base_updated_at, 'base_updated_at')
        else:
            base = self.cache.base_version(entity_type, entity_id)

        try:
            mutation = QueuedMutation(
                entity_type=entity_type,
                entity_id=entity_id,
                mutation_type=mutation_type,
                variables=dict(variables or {}),
                base_updated_at=base,
                submitted_at=self._clock.now()
            )
        except ValueError as e:
            raise ValidationError(str(e), cause=e)

        if not self.is_online and not self.offline_first:
            mutation.pause()
        else:
            mutation.mark_queued()

        self.queue.enqueue(mutation)
        self.cache.apply_optimistic(mutation)

        self._audit_logger.log_event(
            event_type=AuditEventType.MUTATION_ENQUEUED,
            message=f"Queued {mutation_type.value} of {mutation.entity_key}",
            mutation_id=mutation.mutation_id,
            entity_key=mutation.entity_key,
            additional_context={'online': self.is_online}
        )

        self._schedule(mutation.entity_key)
        self._persist()
        self._notify()
        return mutation

    def set_online(self, online: bool) -> None:
        """Record a connectivity change and resume queued work when online."""
        if isinstance(self._connectivity, StaticConnectivity):
            self._connectivity.set_online(online)

        self._audit_logger.log_event(
            event_type=AuditEventType.CONNECTIVITY_CHANGED,
            message=f"Connectivity changed: {'online' if online else 'offline'}",
            result='online' if online else 'offline'
        )

        if online:
            self.resume()
        self._notify()

    def resume(self) -> None:
        """Restart dispatch for every entity with waiting mutations."""
        if self.is_online:
            logger.info(f"Resuming {self.paused_count} paused mutation(s)")
        self._schedule_all()

    def discard(self, mutation_id: str) -> QueuedMutation:
        """
        Drop a queued or failed mutation and roll back its local changes.

        Raises:
            SynchronizationError: If the mutation is unknown or in flight
        """
        mutation = self.queue.require(mutation_id)
        if mutation_id in self._in_flight:
            raise SynchronizationError(
                f"Mutation {mutation_id} is in flight and cannot be discarded",
                error_code=ErrorCode.SYNC_OPERATION_IN_FLIGHT,
                mutation_id=mutation_id
            )

        self.queue.remove(mutation_id)
        self.cache.discard_optimistic(mutation_id)
        self.temp_ids.unblock(mutation_id)

        self._audit_logger.log_event(
            event_type=AuditEventType.MUTATION_DISCARDED,
            message=f"Discarded {mutation.mutation_type.value} of {mutation.entity_key}",
            mutation_id=mutation_id,
            entity_key=mutation.entity_key,
            result=mutation.status.value
        )

        self._persist()
        self._notify()
        self._schedule_all()
        return mutation

    def retry_failed(self, mutation_id: Optional[str] = None) -> List[QueuedMutation]:
        """
        Re-queue failed mutations as fresh mutations with a new attempt budget.

        Args:
            mutation_id: A single failed mutation, or None for all of them

        Returns:
            The replacement mutations, in queue order
        """
        if mutation_id is not None:
            targets = [self.queue.require(mutation_id)]
        else:
            targets = self.queue.failed()

        replacements = []
        for failed in targets:
            if failed.status != MutationStatus.ERROR:
                raise SynchronizationError(
                    f"Mutation {failed.mutation_id} has not failed",
                    error_code=ErrorCode.SYNC_OPERATION_FAILED,
                    mutation_id=failed.mutation_id
                )

            replacement = QueuedMutation(
                entity_type=failed.entity_type,
                entity_id=failed.entity_id,
                mutation_type=failed.mutation_type,
                variables=dict(failed.variables),
                base_updated_at=failed.base_updated_at,
                submitted_at=self._clock.now()
            )
            if not self.is_online and not self.offline_first:
                replacement.pause()
            else:
                replacement.mark_queued()

            self.queue.replace(failed.mutation_id, replacement)
            self.cache.apply_optimistic(replacement)
            replacements.append(replacement)
            logger.info(f"Retrying failed mutation {failed.mutation_id} as {replacement.mutation_id}")

        if replacements:
            self._persist()
            self._notify()
            self._schedule_all()
        return replacements

    def compact(self) -> DeduplicationResult:
        """Collapse redundant waiting mutations; in-flight work is untouched."""
        candidates = [
            m for m in self.queue.unsettled()
            if m.mutation_id not in self._active
        ]
        metas = [MutationMeta.from_mutation(m) for m in candidates]
        result = deduplicate_mutations(metas)
        if not result.changed:
            return result

        for kept_id in result.keep:
            chain = collapsed_updates(metas, result, kept_id)
            if not chain:
                continue
            survivor = self.queue.get(kept_id)
            survivor.variables = merge_update_variables(m.variables for m in chain)
            # The oldest base is the version the user started editing from
            bases = [b for b in (self.queue.get(m.id).base_updated_at for m in chain) if b]
            if bases:
                survivor.base_updated_at = min(bases)
            self.cache.apply_optimistic(survivor)

        for removed_id in result.remove:
            self.queue.remove(removed_id)
            self.cache.discard_optimistic(removed_id)
            self.temp_ids.unblock(removed_id)

        for action in result.actions:
            logger.info(action)

        self._persist()
        self._notify()
        self._schedule_all()
        return result

    def restore(self) -> int:
        """
        Reload mutations saved by a previous session.

        Returns:
            Number of mutations restored
        """
        if self._persistence is None:
            return 0

        restored = 0
        for mutation in self._persistence.load():
            if mutation.mutation_id in self.queue:
                continue
            self.queue.enqueue(mutation)
            if mutation.status != MutationStatus.ERROR:
                self.cache.apply_optimistic(mutation)
            restored += 1

        self._notify()
        self._schedule_all()
        return restored

    async def flush(self) -> None:
        """Wait until no entity has dispatchable work left and the queue is saved."""
        while True:
            tasks = [task for task in self._workers.values() if not task.done()]
            if not tasks:
                break
            results = await asyncio.gather(*tasks, return_exceptions=True)
            for result in results:
                if isinstance(result, Exception):
                    logger.error(f"Dispatch worker crashed: {result}")
        await self._wait_for_saves()

    async def close(self) -> None:
        """Cancel dispatch workers and save the queue."""
        for task in list(self._workers.values()):
            task.cancel()
        await asyncio.gather(*self._workers.values(), return_exceptions=True)
        self._workers.clear()
        self._persist()
        await self._wait_for_saves()
        if self._persist_executor is not None:
            self._persist_executor.shutdown(wait=True)
            self._persist_executor = None

    # Scheduling

    def _schedule(self, entity_key: str) -> None:
        task = self._workers.get(entity_key)
        if task is not None and not task.done():
            return

        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            # Nothing can dispatch until resume() runs on a loop
            for waiting in self.queue.for_entity(entity_key):
                if not waiting.is_paused:
                    waiting.pause()
            logger.debug(f"No running event loop; {entity_key} waits for resume()")
            return

        self._workers[entity_key] = loop.create_task(self._drain(entity_key))

    def _schedule_all(self) -> None:
        for entity_key in self.queue.entity_keys():
            self._schedule(entity_key)

    async def _drain(self, entity_key: str) -> None:
        try:
            while True:
                mutation = self._next_dispatchable(entity_key)
                if mutation is None:
                    break
                await self._process(mutation)
        finally:
            if self._workers.get(entity_key) is asyncio.current_task():
                del self._workers[entity_key]

    def _next_dispatchable(self, entity_key: str) -> Optional[QueuedMutation]:
        mutation = self.queue.head(entity_key)
        if mutation is None or mutation.mutation_id in self._active:
            return None

        if mutation.blocked_on is not None:
            if (not self.temp_ids.is_resolved(mutation.blocked_on)
                    and self._has_queued_create(mutation.blocked_on)):
                return None
            self.temp_ids.unblock(mutation.mutation_id)
            mutation.blocked_on = None

        if mutation.is_paused and not self.is_online:
            return None
        return mutation

    def _has_queued_create(self, temp_id: str) -> bool:
        return any(
            m.mutation_type == MutationType.CREATE and m.entity_id == temp_id
            for m in self.queue.all()
        )

    # Dispatch

    async def _process(self, mutation: QueuedMutation) -> None:
        self._active.add(mutation.mutation_id)
        try:
            if not self._prepare(mutation):
                return
            await self._dispatch_until_settled(mutation)
        finally:
            self._active.discard(mutation.mutation_id)

    def _prepare(self, mutation: QueuedMutation) -> bool:
        """
        Swap resolved temporary ids in and hold mutations that still need one.

        Returns:
            True if the mutation may be dispatched now
        """
        if mutation.mutation_type != MutationType.CREATE:
            mutation.entity_id = self.temp_ids.resolve(mutation.entity_id)
        mutation.variables = resolve_all_temp_ids(mutation.variables, self.temp_ids)

        references = find_unresolved_temp_ids(mutation.variables, self.temp_ids)
        if mutation.mutation_type != MutationType.CREATE and is_temp_id(mutation.entity_id):
            references.insert(0, mutation.entity_id)

        for temp_id in references:
            if self._has_queued_create(temp_id):
                mutation.pause(blocked_on=temp_id)
                self.temp_ids.mark_blocked(
                    mutation.mutation_id,
                    temp_id,
                    f"{mutation.mutation_type.value} of {mutation.entity_key} waits for {temp_id}"
                )
                logger.info(f"Mutation {mutation.mutation_id} blocked on {temp_id}")
                self._persist()
                self._notify()
                return False

            self._settle_failure(mutation, ValidationError(
                f"Mutation references unknown temporary id {temp_id}",
                field_name='entity_id',
                error_code=ErrorCode.VALIDATION_INVALID_INPUT
            ))
            return False

        return True

    async def _dispatch_until_settled(self, mutation: QueuedMutation) -> None:
        while True:
            if self.queue.get(mutation.mutation_id) is not mutation:
                logger.debug(f"Mutation {mutation.mutation_id} was discarded before dispatch")
                return

            mutation.start()
            self._notify()

            record: Optional[VersionedRecord] = None
            error: Optional[FarmSyncError] = None
            self._in_flight.add(mutation.mutation_id)
            self._operation_logger.log_operation_start(
                operation_type=f"dispatch_{mutation.mutation_type.value}",
                operation_id=mutation.mutation_id,
                context={'entity_key': mutation.entity_key, 'attempt_index': mutation.attempt_index}
            )
            start_time = time.time()
            try:
                record = await self._transport.dispatch(mutation)
            except Exception as e:
                error = handle_exception(e, context={'mutation_id': mutation.mutation_id})
            finally:
                self._in_flight.discard(mutation.mutation_id)

            self._operation_logger.log_operation_complete(
                operation_id=mutation.mutation_id,
                success=error is None,
                duration_seconds=time.time() - start_time,
                result_summary=error.reason if error else None
            )

            if error is None:
                self._on_applied(mutation, record)
                return

            decision = self.retry_policy.classify(error, mutation.attempt_index + 1, self.is_online)

            if decision == RetryDecision.RESOLVE_CONFLICT:
                if self._on_conflict(mutation, error):
                    continue
                return

            if decision == RetryDecision.PAUSE:
                mutation.pause()
                logger.info(f"Offline: paused {mutation.entity_key} ({error.reason})")
                self._persist()
                self._notify()
                return

            if decision == RetryDecision.RETRY:
                attempts = mutation.consume_attempt()
                delay = self.retry_policy.delay_seconds(attempts - 1)
                if isinstance(error, TransportError) and error.is_connectivity_loss:
                    logger.info(f"Server unreachable for {mutation.entity_key}")
                logger.warning(
                    f"Dispatch of {mutation.entity_key} failed ({error.reason}); "
                    f"retry {attempts}/{self.retry_policy.max_retries - 1} in {delay:.1f}s"
                )
                self._notify()
                await self._sleep(delay)

                if self.queue.get(mutation.mutation_id) is not mutation:
                    return
                if not self.is_online:
                    mutation.pause()
                    self._persist()
                    self._notify()
                    return
                continue

            if isinstance(error, TransportError):
                mutation.consume_attempt()
                error = SynchronizationError(
                    f"Gave up on {mutation.entity_key} after {mutation.attempt_index} attempts: {error.message}",
                    error_code=ErrorCode.SYNC_RETRIES_EXHAUSTED,
                    mutation_id=mutation.mutation_id,
                    cause=error,
                    user_message="Sync failed, action required."
                )
            self._settle_failure(mutation, error)
            return

    def _on_applied(self, mutation: QueuedMutation, record: VersionedRecord) -> None:
        self.cache.settle(mutation.mutation_id)
        if mutation.mutation_type == MutationType.DELETE:
            self.cache.remove(mutation.entity_type, record.id)
        else:
            self.cache.adopt(mutation.entity_type, record)

        if (mutation.mutation_type == MutationType.CREATE
                and is_temp_id(mutation.entity_id) and record.id != mutation.entity_id):
            self._register_server_id(mutation, record)
        if mutation.mutation_type != MutationType.DELETE:
            self._advance_queued_bases(mutation, record)

        mutation.succeed(MutationOutcome.APPLIED)
        self.queue.remove(mutation.mutation_id)

        self._audit_logger.log_event(
            event_type=AuditEventType.MUTATION_APPLIED,
            message=f"Applied {mutation.mutation_type.value} of {mutation.entity_key}",
            mutation_id=mutation.mutation_id,
            entity_key=mutation.entity_key,
            result=MutationOutcome.APPLIED.value,
            additional_context={'attempt_index': mutation.attempt_index}
        )

        self._persist()
        self._notify()

    def _advance_queued_bases(self, applied: QueuedMutation, record: VersionedRecord) -> None:
        """
        Move later writes to the same record onto the version ``applied`` produced.

        They were made on top of this client's own change, so their base is
        the stamp the server just issued rather than the one cached at submit.
        """
        for waiting in self.queue.for_entity(f"{applied.entity_type}:{record.id}"):
            if waiting is applied or waiting.mutation_id in self._active:
                continue
            if waiting.mutation_type == MutationType.CREATE:
                continue
            if waiting.base_updated_at is None or waiting.base_updated_at < record.updated_at:
                logger.debug(f"Advanced base of {waiting.mutation_id} to {record.updated_at.isoformat()}")
                waiting.base_updated_at = record.updated_at

    def _register_server_id(self, mutation: QueuedMutation, record: VersionedRecord) -> None:
        temp_id = mutation.entity_id
        self.temp_ids.register(temp_id, record.id, mutation.entity_type)
        self.cache.replace_id(mutation.entity_type, temp_id, record.id)

        for waiting in self.queue.unsettled():
            if waiting is mutation:
                continue
            if waiting.entity_id == temp_id:
                waiting.entity_id = record.id
                if waiting.base_updated_at is None:
                    waiting.base_updated_at = record.updated_at
            waiting.variables = resolve_all_temp_ids(waiting.variables, self.temp_ids)
            if waiting.blocked_on == temp_id:
                waiting.blocked_on = None
                self.temp_ids.unblock(waiting.mutation_id)

        logger.info(f"Resolved {temp_id} -> {record.id}")
        self._schedule_all()

    def _on_conflict(self, mutation: QueuedMutation, error: FarmSyncError) -> bool:
        """
        Apply the conflict's resolution.

        Returns:
            True if the rebased mutation should be dispatched again
        """
        descriptor = extract_conflict_data(error)
        if descriptor is None:
            self._settle_failure(mutation, error)
            return False

        server_version = descriptor.server_version
        self._audit_logger.log_conflict(
            mutation_id=mutation.mutation_id,
            entity_key=mutation.entity_key,
            resolution=descriptor.resolution.value,
            attempt_index=mutation.attempt_index
        )

        if descriptor.resolution == Resolution.SERVER_WINS:
            self.cache.discard_optimistic(mutation.mutation_id)
            self.cache.adopt(mutation.entity_type, server_version)
            mutation.succeed(MutationOutcome.SERVER_WON)
            self.queue.remove(mutation.mutation_id)
            logger.info(f"Server version kept for {mutation.entity_key}; local change discarded")
            self._persist()
            self._notify()
            return False

        attempts = mutation.consume_attempt()
        if not self.retry_policy.has_budget(attempts):
            self._settle_failure(mutation, SynchronizationError(
                f"Conflict on {mutation.entity_key} persisted after {attempts} rebase(s)",
                error_code=ErrorCode.SYNC_REBASE_LIMIT_EXCEEDED,
                mutation_id=mutation.mutation_id,
                cause=error if isinstance(error, ConflictError) else None,
                user_message="Sync failed, action required."
            ))
            return False

        self.cache.adopt(mutation.entity_type, server_version)
        if mutation.mutation_type == MutationType.UPDATE:
            merged = merge_for_retry(server_version, mutation.variables)
            mutation.variables = dict(merged.fields)
        mutation.base_updated_at = server_version.updated_at
        self.cache.apply_optimistic(mutation)

        logger.info(f"Rebased {mutation.entity_key} onto server version; re-dispatching")
        self._persist()
        return True

    def _settle_failure(self, mutation: QueuedMutation, error: FarmSyncError) -> None:
        mutation.fail(error.message)
        self.cache.discard_optimistic(mutation.mutation_id)
        self.temp_ids.unblock(mutation.mutation_id)

        log_structured_error(logger, error, mutation_id=mutation.mutation_id,
                             entity_key=mutation.entity_key, level=logging.WARNING)
        self._audit_logger.log_error(error, mutation_id=mutation.mutation_id,
                                     entity_key=mutation.entity_key)

        self._persist()
        self._notify()

    def _persist(self) -> None:
        """
        Save the queue. On a running loop the file write runs on a single
        worker thread, in the order the saves were requested.
        """
        if self._persistence is None:
            return
        snapshot = self._persistence.snapshot(self.queue.all())

        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            self._write_snapshot(snapshot)
            return

        if self._persist_executor is None:
            self._persist_executor = concurrent.futures.ThreadPoolExecutor(
                max_workers=1, thread_name_prefix="farmsync-queue"
            )
        future = loop.run_in_executor(self._persist_executor, self._write_snapshot, snapshot)
        self._pending_saves.add(future)
        future.add_done_callback(self._pending_saves.discard)

    def _write_snapshot(self, snapshot: Dict[str, Any]) -> None:
        try:
            self._persistence.write(snapshot)
        except StorageError as e:
            log_structured_error(logger, e)

    async def _wait_for_saves(self) -> None:
        while self._pending_saves:
            pending = list(self._pending_saves)
            await asyncio.gather(*pending)
            self._pending_saves.difference_update(pending)
