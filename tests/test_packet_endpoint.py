"""Tests HTTP de /piot/packets y /health."""

import pytest
from fastapi.testclient import TestClient

from thing_ingest.dispatch import AvailabilitySweeper
from thing_ingest.endpoints.deps import IngestServices
from thing_ingest.errors import StorageError
from thing_ingest.main import create_app


class BrokenRateGuard:
    stats = {}

    def admit(self, key, now):
        raise StorageError("redis down")


@pytest.fixture
def services(directory, rate_guard, bus, dispatcher, processor, message_service):
    return IngestServices(
        directory=directory,
        rate_guard=rate_guard,
        bus=bus,
        dispatcher=dispatcher,
        processor=processor,
        message_service=message_service,
        sweeper=AvailabilitySweeper(dispatcher, directory),
    )


@pytest.fixture
def client(services):
    with TestClient(create_app(services=services)) as client:
        yield client


PACKET = {
    "device": "dev1",
    "wifi_ssid": "home",
    "readings": [{"address": "28-0001", "temperature": 21.5}],
}


class TestPacketEndpoint:

    def test_accepts_packet(self, client, store):
        response = client.post("/piot/packets", json=PACKET)

        assert response.status_code == 200
        assert response.json() == {"accepted": True, "device": "dev1", "readings": 1}
        assert store.find_by_name("28-0001").sensor.value == "21.5"

    def test_duplicate_is_429(self, client):
        assert client.post("/piot/packets", json=PACKET).status_code == 200

        response = client.post("/piot/packets", json=PACKET)

        assert response.status_code == 429

    def test_invalid_body_is_422(self, client):
        response = client.post("/piot/packets", json={"readings": []})

        assert response.status_code == 422

    def test_non_finite_reading_is_422(self, client, store):
        body = '{"device": "dev1", "readings": [{"address": "s1", "temperature": NaN}]}'

        response = client.post("/piot/packets", content=body, headers={"Content-Type": "application/json"})

        assert response.status_code == 422
        assert store.find_by_name("dev1") is None

    def test_storage_error_is_503(self, services, processor):
        processor._rate_guard = BrokenRateGuard()
        with TestClient(create_app(services=services)) as client:
            response = client.post("/piot/packets", json=PACKET)

        assert response.status_code == 503


class TestHealth:

    def test_health(self, client):
        response = client.get("/health")

        body = response.json()
        assert response.status_code == 200
        assert body["status"] == "ok"
        assert body["store"]["backend"] == "memory"
        assert body["receiver"] is None
        assert "admitted" in body["rate_guard"]
