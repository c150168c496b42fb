"""
Tests for the Channel Manager API router

Tests cover:
- Engine errors rendered as JSON with their HTTP status
- Request validation (ARI push range, room mapping conflicts)
- Pushed booking ingestion over HTTP
- Discrepancy listing and state transitions
- Request ID propagation
- Connection health summary
"""

import pytest
from datetime import date
from fastapi.testclient import TestClient

import sys
import os
sys.path.insert(0, os.path.join(os.path.dirname(__file__), '..'))

from channel_engine.main import app
from channel_engine.database import get_db
from channel_engine.models import Discrepancy, DiscrepancyStatus, Reservation
from channel_engine.services.engine import ChannelEngine

API = "/api/channel-manager"


@pytest.fixture
def client(provider, session_factory, cipher, retry_policy):
    """Test client over the in-memory database; the lifespan is not run"""
    def override_get_db():
        session = session_factory()
        try:
            yield session
        finally:
            session.close()

    app.state.engine = ChannelEngine(
        http_client=provider.http_client(),
        session_factory=session_factory,
        cipher=cipher,
        retry_policy=retry_policy,
    )
    app.dependency_overrides[get_db] = override_get_db
    yield TestClient(app)
    app.dependency_overrides.clear()


@pytest.fixture
def open_discrepancy(db, connection):
    row = Discrepancy(
        hotel_id="hotel-1", connection_id=connection.id, channel="beds24",
        room_type_id="rt-1", date=date(2024, 8, 1), discrepancy_type="Rate", field="price1",
        severity="High", status=DiscrepancyStatus.OPEN.value, local_value="120", remote_value="110",
        difference=-10.0,
    )
    db.add(row)
    db.commit()
    return row


class TestBasics:

    def test_health(self, client):
        response = client.get("/health")

        assert response.status_code == 200
        assert response.json() == {"status": "healthy"}

    def test_request_id_echoed(self, client):
        response = client.get("/health", headers={"X-Request-ID": "abc123"})

        assert response.headers["X-Request-ID"] == "abc123"

    def test_unknown_connection_is_404(self, client):
        response = client.get(f"{API}/connections/missing")

        assert response.status_code == 404
        body = response.json()
        assert body["error"]["code"] == "not_found"
        assert "missing" in body["detail"]

    def test_connection_response_hides_credential(self, client, connection):
        response = client.get(f"{API}/connections/{connection.id}")

        assert response.status_code == 200
        body = response.json()
        assert body["hotel_id"] == "hotel-1"
        assert "refresh_credential_encrypted" not in body

    def test_connection_health(self, client, connection):
        response = client.get(f"{API}/connections/{connection.id}/health", params={"window_hours": 6})

        assert response.status_code == 200
        body = response.json()
        assert body["window_hours"] == 6
        assert body["calls"] == 0
        assert [t["operation_class"] for t in body["tokens"]] == ["read", "write"]
        assert all(not t["cached"] for t in body["tokens"])


class TestMappingsApi:

    def test_room_mapping_conflict_is_422(self, client, room_mapping, property_mapping):
        response = client.post(f"{API}/room-mappings", json={
            "property_mapping_id": property_mapping.id,
            "local_room_type_id": "rt-other",
            "remote_room_id": "R1",
        })

        assert response.status_code == 422
        assert response.json()["error"]["code"] == "mapping_error"

    def test_set_defaults(self, client, property_mapping):
        response = client.patch(
            f"{API}/properties/{property_mapping.id}/defaults",
            json={"default_room_type_id": "rt-default"}
        )

        assert response.status_code == 200
        assert response.json()["default_room_type_id"] == "rt-default"


class TestAriPushApi:

    def test_reversed_range_rejected(self, client):
        response = client.post(f"{API}/ari/push", json={
            "hotel_id": "hotel-1",
            "room_type_id": "rt-1",
            "start_date": "2024-06-05",
            "end_date": "2024-06-01",
            "updates": {"rate": 100},
        })

        assert response.status_code == 422

    def test_unmapped_room_type_rejected(self, client, room_mapping, provider):
        response = client.post(f"{API}/ari/push", json={
            "hotel_id": "hotel-1",
            "room_type_id": "rt-unknown",
            "start_date": "2024-06-01",
            "end_date": "2024-06-02",
            "updates": {"rate": 100},
        })

        assert response.status_code == 422
        assert response.json()["error"]["code"] == "mapping_error"
        assert provider.requests == []


class TestBookingsApi:

    def test_pushed_booking_ingested(self, client, connection, room_mapping, db):
        response = client.post(f"{API}/connections/{connection.id}/bookings", json={
            "id": 8001,
            "propertyId": "P1",
            "roomId": "R1",
            "arrival": "2024-09-01",
            "departure": "2024-09-03",
            "firstName": "Lina",
            "email": "lina@example.com",
            "price": 240,
        })

        assert response.status_code == 200
        body = response.json()
        assert body["success"] is True
        assert body["action"] == "created"
        assert db.query(Reservation).filter(Reservation.remote_booking_id == "8001").count() == 1

    def test_unmapped_booking_reported_in_body(self, client, connection, property_mapping):
        response = client.post(f"{API}/connections/{connection.id}/bookings", json={
            "id": 8002,
            "propertyId": "P1",
            "roomId": "R-unknown",
            "arrival": "2024-09-01",
            "departure": "2024-09-03",
        })

        assert response.status_code == 200
        assert response.json()["error_code"] == "mapping_error"


class TestDiscrepanciesApi:

    def test_list_filters_by_status(self, client, open_discrepancy):
        response = client.get(f"{API}/discrepancies", params={"hotel_id": "hotel-1", "status": "Open"})

        assert response.status_code == 200
        rows = response.json()
        assert len(rows) == 1
        assert rows[0]["field"] == "price1"
        assert rows[0]["difference"] == -10.0

        response = client.get(f"{API}/discrepancies", params={"hotel_id": "hotel-1", "status": "Resolved"})
        assert response.json() == []

    def test_resolve_then_ignore_is_409(self, client, open_discrepancy):
        response = client.post(f"{API}/discrepancies/{open_discrepancy.id}/resolve")
        assert response.status_code == 200
        assert response.json()["status"] == "Resolved"

        response = client.post(f"{API}/discrepancies/{open_discrepancy.id}/ignore")
        assert response.status_code == 409
        assert response.json()["error"]["code"] == "discrepancy_state"

    def test_unknown_discrepancy_is_404(self, client):
        response = client.post(f"{API}/discrepancies/missing/resolve")

        assert response.status_code == 404
