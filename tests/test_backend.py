"""Tests for the Flask backend routes."""

from unittest.mock import patch

import pytest

from Backend.app import create_app
from ledger_services.errors import StoreUnavailableError


# ==================== FIXTURES ====================

@pytest.fixture
def app(contract):
    app = create_app(contract)
    app.config["TESTING"] = True
    return app


@pytest.fixture
def client(app):
    return app.test_client()


READING_BODY = {"sensorId": "M01", "building": "Building_1", "floor": "1st floor",
                "CO2": "1200", "PM25": "3.5", "VOCs": "20"}


class TestReadingsRoutes:

    def test_register_reading(self, client):
        response = client.post("/readings", json=READING_BODY)
        assert response.status_code == 201
        body = response.get_json()
        assert body["reading"]["sensorId"] == "M01"
        assert body["simulated"] is False
        assert [alert["pollutant"] for alert in body["alerts"]] == ["CO2"]

    def test_register_without_body_simulates(self, client):
        response = client.post("/readings")
        assert response.status_code == 201
        assert response.get_json()["simulated"] is True

    def test_bad_number_is_400(self, client):
        response = client.post("/readings", json={**READING_BODY, "CO2": "abc"})
        assert response.status_code == 400
        assert response.get_json()["status"] == "error"

    def test_non_object_body_is_400(self, client):
        assert client.post("/readings", json=[1, 2]).status_code == 400

    def test_query_and_clear(self, client):
        client.post("/readings", json=READING_BODY)
        assert len(client.get("/readings").get_json()) == 1
        assert client.delete("/readings").get_json()["deleted"] == 1
        assert client.get("/readings").get_json() == []


class TestAggregationRoutes:

    def test_aggregate_then_too_soon(self, client):
        client.post("/readings", json=READING_BODY)
        first = client.post("/aggregate")
        assert first.status_code == 201
        assert first.get_json()["aggregatedData"]["dataCount"] == 1

        second = client.post("/aggregate")
        assert second.status_code == 429
        assert second.get_json()["status"] == "too_soon"
        assert len(client.get("/aggregates").get_json()) == 1

    def test_aggregate_without_data(self, client):
        response = client.post("/aggregate")
        assert response.status_code == 200
        assert response.get_json()["status"] == "no_data"

    def test_validate_with_posted_credentials(self, client, org_credentials):
        client.post("/readings", json=READING_BODY)
        client.post("/aggregate")
        organizations = {org: {"privateKey": c.private_key_pem, "certificate": c.certificate_pem}
                         for org, c in org_credentials.items()}
        response = client.post("/validate", json={"organizations": organizations})
        assert response.status_code == 200
        assert response.get_json()["statistics"] == {"total": 1, "successful": 1, "failed": 0}
        assert client.get("/aggregates").get_json() == []

    def test_validate_without_any_credentials(self, client):
        with patch("Backend.app.credentials_from_settings", return_value={}):
            response = client.post("/validate")
        assert response.status_code == 400

    def test_validate_with_malformed_pem(self, client):
        organizations = {"Org1MSP": {"privateKey": "nope", "certificate": "nope"}}
        response = client.post("/validate", json={"organizations": organizations})
        assert response.status_code == 400
        assert "Org1MSP" in response.get_json()["message"]


class TestMiscRoutes:

    def test_anchor_verify(self, client):
        client.post("/readings", json=READING_BODY)
        body = client.get("/anchor/verify").get_json()
        assert body["ok"] is True
        assert body["storedCount"] == 1

    def test_reading_proof(self, client):
        reading = client.post("/readings", json=READING_BODY).get_json()["reading"]
        response = client.get("/readings/proof",
                              query_string={"timestamp": reading["timestamp"], "sensorId": "M01"})
        assert response.status_code == 200
        body = response.get_json()
        assert body["verified"] is True
        assert body["root"] == client.get("/anchor/verify").get_json()["storedRoot"]

    def test_reading_proof_errors(self, client):
        assert client.get("/readings/proof").status_code == 400
        response = client.get("/readings/proof",
                              query_string={"timestamp": "2024-05-01T10:00:00.000Z", "sensorId": "M99"})
        assert response.status_code == 404
        assert response.get_json()["status"] == "error"

    def test_health(self, client):
        assert client.get("/health").get_json() == {"status": "ok", "readings": 0}

    def test_unknown_route_is_404(self, client):
        response = client.get("/nowhere")
        assert response.status_code == 404
        assert response.get_json()["status"] == "error"

    def test_store_outage_is_503(self, client, contract):
        with patch.object(contract.readings, "count", side_effect=StoreUnavailableError("down")):
            response = client.get("/health")
        assert response.status_code == 503

    def test_cors_headers(self, client):
        response = client.get("/health", headers={"Origin": "http://example.com"})
        assert response.headers.get("Access-Control-Allow-Origin") in ("*", "http://example.com")
