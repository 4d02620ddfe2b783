"""
Shared fixtures for the FarmSync test suite.

The coordinator is exercised against a scripted in-memory transport, a
controllable clock and a sleep that records backoff delays instead of
waiting.
"""

import asyncio
import itertools
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional

import pytest

from farmsync.client.mutation_queue import MutationQueue
from farmsync.client.sync_coordinator import MutationQueueCoordinator
from farmsync.client.temp_id_resolver import is_temp_id
from farmsync.shared.interfaces import IClock, IMutationTransport, StaticConnectivity
from farmsync.shared.models import MutationType, QueuedMutation, VersionedRecord


T0 = datetime(2024, 1, 1, tzinfo=timezone.utc)


class FakeClock(IClock):
    def __init__(self, start: datetime = T0):
        self.current = start

    def now(self) -> datetime:
        return self.current

    def advance(self, seconds: float) -> datetime:
        self.current += timedelta(seconds=seconds)
        return self.current


@dataclass
class DispatchCall:
    """What the transport saw when a mutation was dispatched."""
    mutation_id: str
    mutation_type: MutationType
    entity_id: str
    variables: Dict[str, Any]
    base_updated_at: Optional[datetime]


class FakeTransport(IMutationTransport):
    """
    Transport that answers from a script.

    Each dispatch pops the next scripted outcome: an exception is raised, a
    record is returned, and an empty script echoes the mutation back as the
    server would store it. Setting ``gate`` holds every dispatch until the
    event is set.
    """

    def __init__(self):
        self.calls: List[DispatchCall] = []
        self.returned: List[VersionedRecord] = []
        self.script: List[Any] = []
        self.gate: Optional[asyncio.Event] = None
        self._ids = itertools.count(1)
        self._stamp = datetime(2024, 6, 1, tzinfo=timezone.utc)

    def respond(self, *outcomes) -> "FakeTransport":
        self.script.extend(outcomes)
        return self

    def echo(self, mutation: QueuedMutation) -> VersionedRecord:
        self._stamp += timedelta(seconds=1)
        if is_temp_id(mutation.entity_id):
            record_id = f"server-{next(self._ids)}"
        else:
            record_id = mutation.entity_id
        return VersionedRecord(id=record_id, updated_at=self._stamp, fields=dict(mutation.variables))

    async def dispatch(self, mutation: QueuedMutation) -> VersionedRecord:
        self.calls.append(DispatchCall(
            mutation_id=mutation.mutation_id,
            mutation_type=mutation.mutation_type,
            entity_id=mutation.entity_id,
            variables=dict(mutation.variables),
            base_updated_at=mutation.base_updated_at
        ))
        await asyncio.sleep(0)
        if self.gate is not None:
            await self.gate.wait()

        outcome = self.script.pop(0) if self.script else None
        if isinstance(outcome, BaseException):
            raise outcome
        record = outcome if outcome is not None else self.echo(mutation)
        self.returned.append(record)
        return record


class RecordingSleep:
    def __init__(self):
        self.delays: List[float] = []

    async def __call__(self, seconds: float) -> None:
        self.delays.append(seconds)


async def run_pending(rounds: int = 10) -> None:
    """Let scheduled worker tasks run until they block."""
    for _ in range(rounds):
        await asyncio.sleep(0)


@pytest.fixture
def pump():
    return run_pending


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def transport():
    return FakeTransport()


@pytest.fixture
def sleeper():
    return RecordingSleep()


@pytest.fixture
def connectivity():
    return StaticConnectivity(True)


@pytest.fixture
def coordinator(transport, connectivity, clock, sleeper):
    return MutationQueueCoordinator(
        transport=transport,
        connectivity=connectivity,
        clock=clock,
        queue=MutationQueue(),
        sleep=sleeper
    )


@pytest.fixture
def field_record():
    return VersionedRecord(id="field-1", updated_at=T0, fields={"name": "North", "acres": 10})
