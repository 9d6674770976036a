"""
Tests for the HTTP routes.

Tests cover:
- Queue, synchronous send and bulk endpoints
- Message lookup, cancel and retry
- Provider ranking, reset, forced failover and status callbacks
- Health and metrics endpoints
"""
import httpx
import pytest

from notifyhub.main import create_app
from notifyhub.models.health import CircuitState
from notifyhub.models.message import MessageStatus
from notifyhub.queue import JOB_STATUS_UPDATE


@pytest.fixture
async def client(settings, components):
    app = create_app(settings, components=components)
    app.state.components = components
    transport = httpx.ASGITransport(app=app)
    async with httpx.AsyncClient(transport=transport, base_url="http://test") as client:
        yield client


SMS = {"channel": "sms", "to": "+255712345678", "message": "Your code is 4821"}


class TestMessages:

    async def test_queue_message(self, client, pool):
        response = await client.post("/api/messages", json=SMS)

        assert response.status_code == 202
        body = response.json()
        assert body["status"] == "queued"
        assert len(pool.jobs) == 1

    async def test_send_now(self, client):
        response = await client.post("/api/messages/send", json=SMS)

        assert response.status_code == 200
        assert response.json()["provider"] == "beem"

    async def test_invalid_channel(self, client):
        response = await client.post("/api/messages/send", json={**SMS, "channel": "fax"})

        assert response.status_code == 400
        assert "fax" in response.json()["detail"]

    async def test_provider_failure_is_502(self, client, adapters):
        adapters["beem"].fail = True

        response = await client.post("/api/messages/send", json=SMS)

        assert response.status_code == 502
        assert response.json()["detail"]["provider"] == "beem"

    async def test_get_message(self, client):
        created = await client.post("/api/messages/send", json=SMS)
        message_id = created.json()["message_id"]

        response = await client.get(f"/api/messages/{message_id}")

        assert response.status_code == 200
        body = response.json()
        assert body["status"] == "sent"
        assert body["provider"] == "beem"
        assert body["external_id"] == "beem-1"

    async def test_get_missing_message(self, client):
        response = await client.get("/api/messages/missing")
        assert response.status_code == 404

    async def test_cancel_then_cancel_again(self, client):
        created = await client.post("/api/messages", json=SMS)
        message_id = created.json()["message_id"]

        first = await client.post(f"/api/messages/{message_id}/cancel")
        second = await client.post(f"/api/messages/{message_id}/cancel")

        assert first.status_code == 200
        assert first.json()["status"] == "cancelled"
        assert second.status_code == 409

    async def test_retry_failed(self, client, components):
        created = await client.post("/api/messages", json=SMS)
        message_id = created.json()["message_id"]
        await components["store"].transition(message_id, MessageStatus.FAILED, error_message="boom")

        response = await client.post(f"/api/messages/{message_id}/retry")

        assert response.status_code == 200
        assert response.json()["status"] == "queued"
        assert response.json()["retry_count"] == 1

    async def test_bulk(self, client, pool):
        response = await client.post("/api/messages/bulk", json={
            "messages": [SMS, {**SMS, "to": "+255700000001"}],
        })

        assert response.status_code == 202
        assert response.json()["summary"] == {"successful": 2, "failed": 0}
        assert len(pool.jobs) == 2


class TestProviders:

    async def test_ranking(self, client, components):
        await components["health"].force_open("beem", "outage")

        response = await client.get("/api/providers", params={"channel": "sms"})

        assert response.status_code == 200
        rows = response.json()["sms"]
        assert [row["provider"] for row in rows] == ["termii", "beem"]
        assert rows[1]["circuit_state"] == "open"
        assert rows[1]["available"] is False

    async def test_reset(self, client, components):
        await components["health"].force_open("beem", "outage")

        response = await client.post("/api/providers/beem/reset")

        assert response.status_code == 200
        assert await components["health"].is_available("beem") is True

    async def test_force_failover(self, client, components):
        response = await client.post("/api/providers/beem/failover", params={"reason": "carrier outage"})

        assert response.status_code == 200
        record = await components["health"].get_record("beem")
        assert record.circuit_state == CircuitState.OPEN
        assert await components["health"].is_available("beem") is False

        sent = await client.post("/api/messages/send", json=SMS)
        assert sent.json()["provider"] == "termii"

    async def test_force_failover_unknown_provider(self, client):
        response = await client.post("/api/providers/nobody/failover")
        assert response.status_code == 404

    async def test_reset_unknown_provider(self, client):
        response = await client.post("/api/providers/nobody/reset")
        assert response.status_code == 404

    async def test_status_callback_enqueues_job(self, client, pool):
        response = await client.post("/api/providers/beem/events", json={
            "status": "delivered",
            "external_id": "beem-1",
        })

        assert response.status_code == 202
        function, args, _ = pool.named(JOB_STATUS_UPDATE)[0]
        assert args[:3] == ("delivered", None, "beem-1")
        assert args[3]["provider"] == "beem"

    async def test_unknown_status_rejected(self, client):
        response = await client.post("/api/providers/beem/events", json={
            "status": "teleported",
            "message_id": "m1",
        })
        assert response.status_code == 422


class TestOps:

    async def test_health(self, client):
        response = await client.get("/health")
        assert response.json() == {"status": "healthy"}

    async def test_metrics(self, client):
        await client.post("/api/messages/send", json=SMS)

        response = await client.get("/metrics")

        assert response.status_code == 200
        assert "notifyhub_messages_dispatched_total" in response.text
        assert "http_requests_total" in response.text
