"""Tests for the audit HTTP API.

Covers:
- HTTP Basic Auth (401 without creds, 401 wrong password, 503 unconfigured)
- Append: 201 on first write, 200 on idempotent resubmission, 422 on rejected fields
- Verify, lookup, tail and eligible partitions
"""

from __future__ import annotations

import base64
import contextlib
from unittest.mock import AsyncMock, patch

import pytest
from fastapi.testclient import TestClient

from auditchain.events import event_bus
from auditchain.exceptions import AppendFailed
from auditchain.main import app
from auditchain.retention.sinks import FileArchiveSink
from auditchain.schemas.events import EventType
from auditchain.services import build_services, get_services
from auditchain.store.inmemory import InMemoryAuditStore

CHAIN = "sox-ledger"


def _make_auth_header(username: str = "auditor", password: str = "testpass123") -> dict[str, str]:
    """Build HTTP Basic Auth header."""
    credentials = base64.b64encode(f"{username}:{password}".encode()).decode()
    return {"Authorization": f"Basic {credentials}"}


def _payload(event_id: str = "e-1", **overrides) -> dict:
    body = {
        "event_id": event_id,
        "actor": {"id": "u-1042", "session_id": "s-9", "source_address": "10.0.0.7"},
        "action": "invoice.approved",
        "entity_type": "invoice",
        "entity_id": "INV-7",
        "before_state": {"status": "pending"},
        "after_state": {"status": "approved"},
        "metadata": {"request_id": "r-1"},
        "timestamp": "2024-05-01T09:30:00+00:00",
    }
    body.update(overrides)
    return body


@pytest.fixture
def mock_settings():
    """Patch settings to use test credentials."""
    with patch("auditchain.api.auth.settings") as mock:
        mock.security.api_username = "auditor"
        mock.security.api_password = "testpass123"
        yield mock


@pytest.fixture
def services(tmp_path):
    services = build_services(InMemoryAuditStore(), sink=FileArchiveSink(tmp_path))
    app.dependency_overrides[get_services] = lambda: services
    yield services
    app.dependency_overrides.pop(get_services, None)


@pytest.fixture
def client(mock_settings, services):
    """Create test client with in-memory services and test credentials."""
    return TestClient(app)


class TestAuth:
    def test_401_without_credentials(self, client):
        resp = client.get(f"/api/v1/chains/{CHAIN}/tail")
        assert resp.status_code == 401

    def test_401_wrong_password(self, client):
        resp = client.get(f"/api/v1/chains/{CHAIN}/tail", headers=_make_auth_header(password="wrong"))
        assert resp.status_code == 401
        assert resp.headers["WWW-Authenticate"].startswith("Basic")

    def test_401_wrong_username(self, client):
        resp = client.get(f"/api/v1/chains/{CHAIN}/tail", headers=_make_auth_header(username="admin"))
        assert resp.status_code == 401

    def test_503_without_configured_password(self, client, mock_settings):
        mock_settings.security.api_password = ""
        resp = client.get(f"/api/v1/chains/{CHAIN}/tail", headers=_make_auth_header())
        assert resp.status_code == 503


class TestAppend:
    def test_created(self, client):
        resp = client.post(f"/api/v1/chains/{CHAIN}/records", json=_payload(), headers=_make_auth_header())
        assert resp.status_code == 201
        body = resp.json()
        assert body["sequence"] == 1
        assert body["previous_hash"] == "0" * 64
        assert body["changed_fields"] == ["status"]
        assert len(body["record_hash"]) == 64

    def test_resubmission_returns_existing(self, client):
        first = client.post(f"/api/v1/chains/{CHAIN}/records", json=_payload(), headers=_make_auth_header())
        again = client.post(f"/api/v1/chains/{CHAIN}/records", json=_payload(), headers=_make_auth_header())
        assert again.status_code == 200
        assert again.json() == first.json()

    def test_actor_as_plain_id(self, client):
        resp = client.post(
            f"/api/v1/chains/{CHAIN}/records",
            json=_payload(actor="svc-billing"),
            headers=_make_auth_header(),
        )
        assert resp.status_code == 201
        assert resp.json()["actor"]["id"] == "svc-billing"

    def test_anonymous_actor_rejected(self, client):
        resp = client.post(
            f"/api/v1/chains/{CHAIN}/records",
            json=_payload(actor="anonymous"),
            headers=_make_auth_header(),
        )
        assert resp.status_code == 422
        assert resp.json()["detail"]["field"] == "actor"

    def test_card_number_in_metadata_rejected(self, client, services):
        resp = client.post(
            f"/api/v1/chains/{CHAIN}/records",
            json=_payload(metadata={"payment": {"reference": "4111 1111 1111 1111"}}),
            headers=_make_auth_header(),
        )
        assert resp.status_code == 422
        assert resp.json()["detail"]["field"] == "metadata"
        assert services.store._records == {}

    def test_status_follows_engine_not_prior_lookup(self, client, services):
        # The record exists by the time the request is handled, yet this call created it
        first = client.post(f"/api/v1/chains/{CHAIN}/records", json=_payload(), headers=_make_auth_header())
        stored = services.store._records[CHAIN][1]
        with patch.object(services.engine, "append_with_status", new=AsyncMock(return_value=(stored, True))):
            resp = client.post(f"/api/v1/chains/{CHAIN}/records", json=_payload(), headers=_make_auth_header())
        assert first.status_code == 201
        assert resp.status_code == 201

    def test_store_unavailable(self, client, services):
        with patch.object(services.engine, "append_with_status", new=AsyncMock(side_effect=AppendFailed(CHAIN, "store down"))):
            resp = client.post(f"/api/v1/chains/{CHAIN}/records", json=_payload(), headers=_make_auth_header())
        assert resp.status_code == 503


class TestVerify:
    def _seed(self, client, count=3):
        for i in range(count):
            resp = client.post(
                f"/api/v1/chains/{CHAIN}/records",
                json=_payload(f"e-{i}", entity_id=f"INV-{i}"),
                headers=_make_auth_header(),
            )
            assert resp.status_code == 201

    def test_intact_chain(self, client):
        self._seed(client)
        resp = client.get(f"/api/v1/chains/{CHAIN}/verify", headers=_make_auth_header())
        assert resp.status_code == 200
        body = resp.json()
        assert body["checked_count"] == 3
        assert body["broken_links"] == []

    def test_tampered_record_reported(self, client, services):
        self._seed(client)
        records = services.store._records[CHAIN]
        records[2] = records[2].model_copy(update={"entity_id": "INV-forged"})

        resp = client.get(f"/api/v1/chains/{CHAIN}/verify", headers=_make_auth_header())

        assert resp.status_code == 200
        kinds = {(link["sequence"], link["kind"]) for link in resp.json()["broken_links"]}
        assert (2, "hash_mismatch") in kinds

    def test_partial_range(self, client):
        self._seed(client)
        resp = client.get(
            f"/api/v1/chains/{CHAIN}/verify",
            params={"from_sequence": 2, "to_sequence": 3},
            headers=_make_auth_header(),
        )
        assert resp.json()["checked_count"] == 2

    def test_invalid_range(self, client):
        resp = client.get(
            f"/api/v1/chains/{CHAIN}/verify",
            params={"from_sequence": 0},
            headers=_make_auth_header(),
        )
        assert resp.status_code == 422


class TestLookup:
    def test_find_by_entity(self, client):
        for i, entity_id in enumerate(["INV-1", "INV-2", "INV-1"]):
            client.post(
                f"/api/v1/chains/{CHAIN}/records",
                json=_payload(f"e-{i}", entity_id=entity_id),
                headers=_make_auth_header(),
            )
        resp = client.get(
            f"/api/v1/chains/{CHAIN}/records",
            params={"entity_type": "invoice", "entity_id": "INV-1"},
            headers=_make_auth_header(),
        )
        assert resp.status_code == 200
        assert [r["event_id"] for r in resp.json()] == ["e-0", "e-2"]

    def test_naive_time_bound_rejected(self, client):
        resp = client.get(
            f"/api/v1/chains/{CHAIN}/records",
            params={"start": "2024-01-01T00:00:00"},
            headers=_make_auth_header(),
        )
        assert resp.status_code == 422

    def test_tail(self, client):
        assert client.get(f"/api/v1/chains/{CHAIN}/tail", headers=_make_auth_header()).json()["sequence"] == 0
        created = client.post(f"/api/v1/chains/{CHAIN}/records", json=_payload(), headers=_make_auth_header()).json()
        tail = client.get(f"/api/v1/chains/{CHAIN}/tail", headers=_make_auth_header()).json()
        assert tail == {"chain_id": CHAIN, "sequence": 1, "record_hash": created["record_hash"]}

    def test_eligible_partitions(self, client):
        client.post(
            f"/api/v1/chains/{CHAIN}/records",
            json=_payload(timestamp="2010-03-01T00:00:00+00:00"),
            headers=_make_auth_header(),
        )
        resp = client.get(f"/api/v1/chains/{CHAIN}/partitions/eligible", headers=_make_auth_header())
        assert resp.status_code == 200
        body = resp.json()
        assert body["partition_ids"] == ["2010"]
        assert body["retention_years"] == 7


class TestHealth:
    def test_health(self, client):
        resp = client.get("/health")
        assert resp.status_code == 200
        assert resp.json()["status"] == "ok"


@contextlib.asynccontextmanager
async def _no_db():
    yield


class TestLifespan:
    def test_startup_and_shutdown_events(self, mock_settings, services):
        handler = AsyncMock()
        handler.__name__ = "handler"
        event_bus.subscribe(handler, [EventType.SYSTEM_STARTUP, EventType.SYSTEM_SHUTDOWN])
        try:
            with patch("auditchain.main.db_lifespan", _no_db), TestClient(app) as client:
                assert client.get("/health").status_code == 200
        finally:
            event_bus.unsubscribe(handler)

        emitted = [call.args[0].event_type for call in handler.await_args_list]
        assert emitted == [EventType.SYSTEM_STARTUP, EventType.SYSTEM_SHUTDOWN]
