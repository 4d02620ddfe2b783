"""
Tests for the records server: the version guard, the REST endpoints and a
client coordinator talking to the real application.
"""

from datetime import datetime, timedelta, timezone

import pytest
from fastapi.testclient import TestClient

from farmsync.client.api_client import HttpMutationTransport
from farmsync.client.sync_coordinator import MutationQueueCoordinator
from farmsync.server.api.main import create_app
from farmsync.server.config import ServerConfig
from farmsync.server.conflict_guard import VersionedRecordStore, ensure_no_conflict
from farmsync.shared.exceptions import ConflictError, RecordNotFoundError, ValidationError
from farmsync.shared.models import MutationOutcome, Resolution, VersionedRecord, parse_timestamp


T0 = datetime(2024, 1, 1, tzinfo=timezone.utc)


class FrozenClock:
    def now(self):
        return T0


class TestVersionedRecordStore:
    """Test the in-memory store and its guard."""

    @pytest.fixture
    def store(self):
        return VersionedRecordStore(clock=FrozenClock())

    def test_stamps_advance_even_with_frozen_clock(self, store):
        record = store.create("field", {"name": "North"})
        updated = store.update("field", record.id, {"name": "South"}, record.updated_at)

        assert record.updated_at == T0
        assert updated.updated_at == T0 + timedelta(microseconds=1)
        assert updated.fields == {"name": "South"}
        assert len(store) == 1

    def test_create_ignores_identity_fields(self, store):
        record = store.create("field", {"id": "mine", "updated_at": "2030-01-01", "name": "x"})
        assert record.id != "mine"
        assert record.fields == {"name": "x"}

    def test_stale_update_conflicts_with_server_wins(self, store):
        record = store.create("field", {"name": "North", "acres": 10})
        store.update("field", record.id, {"acres": 11}, record.updated_at)

        with pytest.raises(ConflictError) as exc_info:
            store.update("field", record.id, {"name": "Stale"}, record.updated_at)

        conflict = exc_info.value.conflict
        assert conflict.resolution == Resolution.SERVER_WINS
        assert conflict.server_version.fields == {"name": "North", "acres": 11}
        assert conflict.client_version.fields == {"name": "Stale", "acres": 11}
        assert conflict.client_version.updated_at == record.updated_at
        assert store.get("field", record.id).fields["name"] == "North"

    def test_newer_base_is_accepted(self, store):
        record = store.create("field", {"name": "North"})
        ensure_no_conflict(record, record.updated_at + timedelta(seconds=1))

    def test_invalid_base_is_rejected(self, store):
        record = store.create("field", {"name": "North"})
        with pytest.raises(ValidationError):
            store.update("field", record.id, {"name": "x"}, "yesterday")

    def test_delete(self, store):
        record = store.create("field", {"name": "North"})
        store.create("plot", {"crop": "maize"})

        with pytest.raises(ConflictError):
            store.delete("field", record.id, T0 - timedelta(days=1))

        assert store.delete("field", record.id, record.updated_at) == record
        assert store.list("field") == []
        assert len(store.list("plot")) == 1
        with pytest.raises(RecordNotFoundError):
            store.get("field", record.id)


class TestRecordsApi:
    """Test the REST endpoints."""

    @pytest.fixture
    def app(self):
        return create_app(config=ServerConfig(environment="development"))

    @pytest.fixture
    def client(self, app):
        return TestClient(app)

    def create(self, client, **fields):
        response = client.post("/api/records/field", json={"fields": fields, "client_id": "temp-field-1"})
        assert response.status_code == 201
        return response.json()

    def test_create_and_read(self, client):
        created = self.create(client, name="North")

        assert created["client_id"] == "temp-field-1"
        record = created["record"]
        assert record["name"] == "North"
        assert record["updated_at"].endswith("Z")

        fetched = client.get(f"/api/records/field/{record['id']}")
        assert fetched.status_code == 200
        assert fetched.json()["record"] == record

        listing = client.get("/api/records/field").json()
        assert listing["total_count"] == 1

    def test_update_with_current_base(self, client):
        record = self.create(client, name="North")["record"]

        response = client.patch(f"/api/records/field/{record['id']}", json={
            "changes": {"name": "South"},
            "expected_updated_at": record["updated_at"],
        })

        assert response.status_code == 200
        updated = response.json()["record"]
        assert updated["name"] == "South"
        assert parse_timestamp(updated["updated_at"]) > parse_timestamp(record["updated_at"])

    def test_stale_update_returns_structured_conflict(self, client):
        record = self.create(client, name="North")["record"]
        client.patch(f"/api/records/field/{record['id']}", json={
            "changes": {"name": "South"}, "expected_updated_at": record["updated_at"],
        })

        response = client.patch(f"/api/records/field/{record['id']}", json={
            "changes": {"name": "Stale"}, "expected_updated_at": record["updated_at"],
        })

        assert response.status_code == 409
        assert response.headers["X-Error-Code"] == "SYNC_6002"
        error = response.json()["error"]
        assert error["reason"] == "CONFLICT"
        assert error["user_message"] == "This record was changed elsewhere."
        assert error["conflict"]["resolution"] == "server-wins"
        assert error["conflict"]["server_version"]["name"] == "South"
        assert error["request_context"]["method"] == "PATCH"

    def test_unknown_record(self, client):
        response = client.get("/api/records/field/nope")

        assert response.status_code == 404
        assert response.json()["error"]["code"] == "RECORD_5001"

    def test_invalid_base(self, client):
        record = self.create(client, name="North")["record"]

        response = client.patch(f"/api/records/field/{record['id']}", json={
            "changes": {"name": "x"}, "expected_updated_at": "last tuesday",
        })

        assert response.status_code == 400
        assert response.json()["error"]["context"]["field_name"] == "expected_updated_at"

    def test_missing_body_field(self, client):
        response = client.patch("/api/records/field/x", json={"changes": {}})
        assert response.status_code == 422

    def test_delete(self, client):
        record = self.create(client, name="North")["record"]

        stale = client.delete(f"/api/records/field/{record['id']}",
                              params={"expected_updated_at": "2000-01-01T00:00:00Z"})
        assert stale.status_code == 409

        deleted = client.delete(f"/api/records/field/{record['id']}",
                                params={"expected_updated_at": record["updated_at"]})
        assert deleted.status_code == 200
        assert client.get(f"/api/records/field/{record['id']}").status_code == 404

    def test_health(self, client):
        live = client.get("/health/live").json()
        assert live["status"] == "alive"
        assert live["service"] == "farmsync"

        ready = client.get("/health/ready").json()
        assert ready == {"status": "ready", "records": 0, "timestamp": ready["timestamp"]}

    def test_not_ready_without_store(self, app, client):
        app.state.record_store = None
        assert client.get("/health/ready").status_code == 503


class InProcessTransport(HttpMutationTransport):
    """Routes transport requests through the in-process test client."""

    def __init__(self, client):
        super().__init__("http://testserver")
        self.client = client

    async def _send(self, method, path, data=None, params=None):
        response = self.client.request(method, path, json=data, params=params or None)
        return response.status_code, response.json()


class TestEndToEnd:
    """Test the coordinator against the real application."""

    @pytest.fixture
    def client(self):
        return TestClient(create_app(config=ServerConfig(environment="development")))

    def device(self, client, clock, sleeper):
        return MutationQueueCoordinator(transport=InProcessTransport(client), clock=clock, sleep=sleeper)

    @pytest.mark.asyncio
    async def test_offline_create_then_edit(self, client, clock, sleeper):
        device = self.device(client, clock, sleeper)

        create = device.submit("field", "create", {"name": "North", "acres": 10})
        device.submit("field", "update", {"acres": 12}, entity_id=create.entity_id)
        await device.flush()

        server_id = device.temp_ids.resolve(create.entity_id)
        stored = client.get(f"/api/records/field/{server_id}").json()["record"]
        assert stored["name"] == "North"
        assert stored["acres"] == 12
        assert device.cache.view("field", server_id)["acres"] == 12
        assert len(device.queue) == 0

    @pytest.mark.asyncio
    async def test_concurrent_edit_keeps_server_version(self, client, clock, sleeper):
        created = client.post("/api/records/field", json={"fields": {"name": "North"}}).json()["record"]
        record = VersionedRecord.from_dict(created)

        first = self.device(client, clock, sleeper)
        second = self.device(client, clock, sleeper)
        first.cache.adopt("field", record)
        second.cache.adopt("field", record)

        first.submit("field", "update", {"name": "From first"}, entity_id=record.id)
        await first.flush()

        stale = second.submit("field", "update", {"name": "From second"}, entity_id=record.id)
        await second.flush()

        assert stale.outcome == MutationOutcome.SERVER_WON
        assert second.cache.view("field", record.id)["name"] == "From first"
        assert client.get(f"/api/records/field/{record.id}").json()["record"]["name"] == "From first"
        assert second.failed_count == 0

    @pytest.mark.asyncio
    async def test_sequential_edits_to_one_record_all_apply(self, client, clock, sleeper):
        created = client.post("/api/records/field", json={"fields": {"name": "North", "acres": 10}}).json()["record"]
        record = VersionedRecord.from_dict(created)
        device = self.device(client, clock, sleeper)
        device.cache.adopt("field", record)

        rename = device.submit("field", "update", {"name": "Renamed"}, entity_id=record.id)
        resize = device.submit("field", "update", {"acres": 99}, entity_id=record.id)
        await device.flush()

        assert rename.outcome == MutationOutcome.APPLIED
        assert resize.outcome == MutationOutcome.APPLIED
        stored = client.get(f"/api/records/field/{record.id}").json()["record"]
        assert (stored["name"], stored["acres"]) == ("Renamed", 99)

    @pytest.mark.asyncio
    async def test_update_then_delete_of_one_record(self, client, clock, sleeper):
        created = client.post("/api/records/field", json={"fields": {"name": "North"}}).json()["record"]
        record = VersionedRecord.from_dict(created)
        device = self.device(client, clock, sleeper)
        device.cache.adopt("field", record)

        update = device.submit("field", "update", {"name": "Renamed"}, entity_id=record.id)
        delete = device.submit("field", "delete", entity_id=record.id)
        await device.flush()

        assert update.outcome == MutationOutcome.APPLIED
        assert delete.outcome == MutationOutcome.APPLIED
        assert client.get(f"/api/records/field/{record.id}").status_code == 404
        assert device.cache.view("field", record.id) is None

    @pytest.mark.asyncio
    async def test_create_then_two_edits_offline(self, client, clock, sleeper):
        device = self.device(client, clock, sleeper)

        create = device.submit("field", "create", {"name": "North"})
        device.submit("field", "update", {"acres": 10}, entity_id=create.entity_id)
        device.submit("field", "update", {"name": "South"}, entity_id=create.entity_id)
        await device.flush()

        server_id = device.temp_ids.resolve(create.entity_id)
        stored = client.get(f"/api/records/field/{server_id}").json()["record"]
        assert (stored["name"], stored["acres"]) == ("South", 10)
        assert len(device.queue) == 0
