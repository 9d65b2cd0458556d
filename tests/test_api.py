"""
Tests for health, metrics, SMS test-send and queue trigger endpoints.
"""

import os

import httpx
import pytest
from fastapi.testclient import TestClient

from msgbridge.http_gateway import HttpGateway
from msgbridge.main import app, get_gateway
from msgbridge.route_service import create_sms_route


KEY = os.environ["ENCRYPTION_KEY"]


@pytest.fixture
def provider_requests():
    return []


@pytest.fixture(scope="function")
def client(db, provider_requests):
    def handler(request):
        provider_requests.append(request)
        if "fail" in str(request.url):
            return httpx.Response(503, json={"error": "unavailable"})
        return httpx.Response(200, json={"status": "ok", "id": "sms-1"})

    gateway = HttpGateway(transport=httpx.MockTransport(handler))
    app.dependency_overrides[get_gateway] = lambda: gateway
    with TestClient(app) as test_client:
        yield test_client
    app.dependency_overrides.clear()


def make_route(db, url="https://sms.example.com/send?to={{to}}&from={{from}}&text={{#urlEncode}}{{text}}{{/urlEncode}}"):
    return create_sms_route(
        db,
        1,
        KEY,
        credentials={"apiKey": "k"},
        provider="Termii",
        name="Main",
        request_url_template=url,
        request_method="GET",
        success_match="status==ok",
        message_id_path="id",
        sender_id="ACME",
    )


class TestHealth:
    def test_live(self, client):
        response = client.get("/health/live")
        assert response.status_code == 200
        assert response.json()["status"] == "ok"

    def test_ready(self, client):
        response = client.get("/health/ready")
        assert response.status_code == 200
        assert response.json()["status"] == "ready"


class TestRequestId:
    def test_generated(self, client):
        response = client.get("/health/live")
        assert len(response.headers["X-Request-ID"]) == 36

    def test_caller_supplied_id_is_echoed(self, client):
        response = client.get("/health/live", headers={"X-Request-ID": "req-123"})
        assert response.headers["X-Request-ID"] == "req-123"


class TestMetrics:
    def test_exposes_counters(self, client):
        client.get("/health/live")
        response = client.get("/metrics")

        assert response.status_code == 200
        assert "http_requests_total" in response.text
        assert "webhook_requests_total" in response.text
        assert "queue_messages_total" in response.text


class TestSmsTestSend:
    """Test POST /routes/sms/{id}/test."""

    def test_send(self, client, db, provider_requests):
        route = make_route(db)

        response = client.post(f"/routes/sms/{route.id}/test", json={"to": "2348012345678", "text": "Hi there"})

        assert response.status_code == 200
        assert response.json() == {
            "success": True,
            "provider_message_id": "sms-1",
            "response": {"status": "ok", "id": "sms-1"},
        }
        assert str(provider_requests[0].url) == "https://sms.example.com/send?to=2348012345678&from=ACME&text=Hi%20there"

    def test_sender_override(self, client, db, provider_requests):
        route = make_route(db)

        client.post(f"/routes/sms/{route.id}/test", json={"to": "1", "text": "Hi", "from": "OTHER"})

        assert "from=OTHER" in str(provider_requests[0].url)

    def test_unknown_route(self, client):
        response = client.post("/routes/sms/999/test", json={"to": "1", "text": "Hi"})
        assert response.status_code == 404

    def test_provider_failure_is_502(self, client, db):
        route = make_route(db, url="https://sms.example.com/fail?to={{to}}")

        response = client.post(f"/routes/sms/{route.id}/test", json={"to": "1", "text": "Hi"})

        assert response.status_code == 502

    def test_unencodable_header_is_502(self, client, db, provider_requests):
        route = make_route(db)
        route.headers_template = '{"X-Text": "{{text}}"}'
        db.commit()

        response = client.post(f"/routes/sms/{route.id}/test", json={"to": "1", "text": "naïve ✓"})

        assert response.status_code == 502
        assert provider_requests == []

    def test_broken_template_is_422(self, client, db):
        route = make_route(db, url="https://sms.example.com/send?to={{#each}}")

        response = client.post(f"/routes/sms/{route.id}/test", json={"to": "1", "text": "Hi"})

        assert response.status_code == 422


class TestQueueRun:
    def test_empty_queue(self, client):
        response = client.post("/queue/run")

        assert response.status_code == 200
        assert response.json() == {"skipped": False, "fetched": 0, "processed": 0, "requeued": 0, "failed": 0}
