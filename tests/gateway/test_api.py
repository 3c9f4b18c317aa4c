"""HTTP tests for the gateway application.

Runs the FastAPI app with its real lifespan (in-memory persistence, no
tunnel) through TestClient.
"""

import base64

import pytest
from fastapi.testclient import TestClient

from src.gateway import main
from src.gateway.main import _redact_secret, app
from src.gateway.webhook.signature import CredentialVerifier


@pytest.fixture
def client(monkeypatch, tmp_path):
    monkeypatch.delenv("GATEWAY_DATABASE_URL", raising=False)
    monkeypatch.setenv("GATEWAY_TUNNEL_CONFIG_PATH", str(tmp_path / "missing.yml"))
    monkeypatch.setenv("GATEWAY_TUNNEL_AUTOSTART", "false")
    monkeypatch.setenv("GATEWAY_LOCAL_BASE_URL", "http://127.0.0.1:7842/")
    with TestClient(app) as test_client:
        yield test_client


def _create(client, **fields):
    response = client.post("/api/subscriptions", json={"session_id": "sess-1", **fields})
    assert response.status_code == 201
    return response.json()


class TestProbes:
    def test_health(self, client):
        assert client.get("/health").json() == {"status": "healthy"}

    def test_ready(self, client):
        response = client.get("/ready")

        assert response.status_code == 200
        assert response.json()["dependencies"] == {"database": "healthy", "tunnel": "stopped"}

    def test_metrics(self, client):
        sub = _create(client)
        client.post(f"/webhook/{sub['id']}", content=b"{}")

        response = client.get("/metrics")

        assert response.status_code == 200
        assert "gateway_webhook_requests_total" in response.text
        assert "gateway_tunnel_state" in response.text


class TestSubscriptionApi:
    def test_create_returns_redacted_subscription(self, client):
        sub = _create(client, secret_token="s3cret-token", hmac_header="X-Signature")

        assert sub["session_id"] == "sess-1"
        assert sub["webhook_url"] == f"http://127.0.0.1:7842/webhook/{sub['id']}"
        assert sub["secret_token"] == "s3cr..."
        assert sub["status"] == "active"

    def test_create_without_session_is_422(self, client):
        response = client.post("/api/subscriptions", json={"prompt": "x"})

        assert response.status_code == 422
        assert response.json()["field"] == "session_id"

    def test_create_with_bad_encoding_is_422(self, client):
        response = client.post(
            "/api/subscriptions",
            json={"session_id": "sess-1", "signature_encoding": "sha1"},
        )

        assert response.status_code == 422

    def test_list_filters_by_session(self, client):
        first = _create(client)
        client.post("/api/subscriptions", json={"session_id": "sess-2"})

        response = client.get("/api/subscriptions", params={"session_id": "sess-1"})

        assert [s["id"] for s in response.json()["subscriptions"]] == [first["id"]]
        assert len(client.get("/api/subscriptions").json()["subscriptions"]) == 2

    def test_get_unknown_is_404(self, client):
        response = client.get("/api/subscriptions/missing")

        assert response.status_code == 404
        assert "missing" in response.json()["detail"]

    def test_patch_is_partial(self, client):
        sub = _create(client, name="n", prompt="old")

        response = client.patch(f"/api/subscriptions/{sub['id']}", json={"prompt": "new"})

        body = response.json()
        assert response.status_code == 200
        assert body["prompt"] == "new"
        assert body["name"] == "n"
        assert body["version"] == 2

    def test_patch_invalid_status_is_422(self, client):
        sub = _create(client)

        response = client.patch(f"/api/subscriptions/{sub['id']}", json={"status": "gone"})

        assert response.status_code == 422
        assert client.get(f"/api/subscriptions/{sub['id']}").json()["version"] == 1

    def test_delete(self, client):
        sub = _create(client)

        assert client.delete(f"/api/subscriptions/{sub['id']}").status_code == 200
        assert client.get(f"/api/subscriptions/{sub['id']}").status_code == 404
        assert client.delete(f"/api/subscriptions/{sub['id']}").status_code == 404

    def test_url_without_tunnel_is_local(self, client):
        sub = _create(client)

        body = client.get(f"/api/subscriptions/{sub['id']}/url").json()

        assert body["local_url"] == sub["webhook_url"]
        assert body["public_url"] is None
        assert body["url"] == sub["webhook_url"]

    def test_url_for_unknown_is_404(self, client):
        assert client.get("/api/subscriptions/missing/url").status_code == 404


class TestWebhookApi:
    def test_delivery_and_payload_lookup(self, client):
        sub = _create(
            client,
            jq_filter='select(.action=="opened")',
            summary_filter="{title:.title}",
            prompt="Triage",
        )
        body = b'{"action":"opened","title":"Fix bug"}'

        response = client.post(f"/webhook/{sub['id']}", content=body)

        assert response.status_code == 200
        result = response.json()
        assert result["status"] == "delivered"

        drained = client.post("/sessions/sess-1/drain").json()["messages"]
        assert len(drained) == 1
        assert f'event-id="{result["event_id"]}"' in drained[0]
        assert '{"title": "Fix bug"}' in drained[0]

        event = client.get(f"/api/events/{result['event_id']}/payload").json()
        assert event["payload"] == body.decode()
        assert event["delivered"] is True

    def test_payload_lookup_returns_exact_bytes(self, client):
        sub = _create(client)
        body = b"\xff\xferaw-bytes\x80"

        result = client.post(f"/webhook/{sub['id']}", content=body).json()
        event = client.get(f"/api/events/{result['event_id']}/payload").json()

        assert base64.b64decode(event["payload_base64"]) == body
        assert event["payload"] == body.decode("utf-8", errors="replace")

    def test_filtered_is_acknowledged(self, client):
        sub = _create(client, jq_filter='select(.action=="opened")')

        response = client.post(f"/webhook/{sub['id']}", content=b'{"action":"closed"}')

        assert response.status_code == 200
        assert response.json() == {"status": "dropped_filtered", "event_id": None}

    def test_unknown_subscription_is_404(self, client):
        response = client.post("/webhook/missing", content=b"{}")

        assert response.status_code == 404
        assert response.json()["status"] == "rejected_not_found"

    def test_signature_is_enforced(self, client):
        sub = _create(
            client,
            secret_token="s3cret",
            hmac_header="X-Hub-Signature-256",
            signature_encoding="prefixed_hex",
        )
        body = b'{"zen":"Keep it logically awesome."}'
        signature = CredentialVerifier().sign("s3cret", body, "prefixed_hex")

        rejected = client.post(
            f"/webhook/{sub['id']}", content=body, headers={"X-Hub-Signature-256": "sha256=00"}
        )
        accepted = client.post(
            f"/webhook/{sub['id']}", content=body, headers={"X-Hub-Signature-256": signature}
        )

        assert rejected.status_code == 401
        assert accepted.status_code == 200

    def test_unknown_event_payload_is_404(self, client):
        assert client.get("/api/events/missing/payload").status_code == 404


class TestSessionStream:
    def test_second_consumer_is_409(self, client):
        consumer = main.gateway.channel.consume("sess-9")
        try:
            response = client.get("/sessions/sess-9/stream")
        finally:
            client.portal.call(consumer.aclose)

        assert response.status_code == 409

    def test_unstarted_stream_releases_consumer(self, client):
        response = client.portal.call(main.stream_session, "sess-5")
        assert main.gateway.channel.has_consumer("sess-5")

        # Client went away before the body was iterated
        client.portal.call(response.background)

        assert not main.gateway.channel.has_consumer("sess-5")
        consumer = main.gateway.channel.consume("sess-5")
        client.portal.call(consumer.aclose)


class TestNotificationStream:
    def test_unstarted_stream_releases_observer(self, client):
        response = client.portal.call(main.stream_notifications)
        assert len(main.gateway.observers.snapshot()) == 1

        client.portal.call(response.background)

        assert main.gateway.observers.snapshot() == []


class TestTunnelApi:
    def test_initial_status(self, client):
        body = client.get("/api/tunnel").json()

        assert body["state"] == "stopped"
        assert body["public_url"] is None

    def test_start_without_config_fails(self, client):
        body = client.post("/api/tunnel/start").json()

        assert body["state"] == "failed"
        assert "not found" in body["error"]

        stopped = client.post("/api/tunnel/stop").json()
        assert stopped["state"] == "stopped"


def test_redact_secret():
    assert _redact_secret("postgresql://user:pw@db/gateway") == "post" + "*" * 27
    assert _redact_secret("abc") == "***"
