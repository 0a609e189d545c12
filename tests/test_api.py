"""Tests for the webhook API."""
import pytest
from fastapi.testclient import TestClient

from castbot import __version__
from castbot.config import Settings
from castbot.main import create_app
from conftest import FakeKeySigner, FakeNeynar, RecordingTransport


@pytest.fixture
def transport():
    return RecordingTransport()


@pytest.fixture
def neynar():
    return FakeNeynar()


@pytest.fixture
def client(tmp_path, neynar, transport):
    """Create a test client with the lifespan running."""
    config = Settings(
        database_path=str(tmp_path / "castbot.db"),
        telegram_webhook_secret="s3cret",
        signer_sweep_interval_seconds=0,
    )
    app = create_app(config, neynar=neynar, transport=transport, key_signer=FakeKeySigner())
    with TestClient(app) as test_client:
        yield test_client


def webhook(client, update, secret="s3cret"):
    return client.post("/telegram/webhook", json=update, headers={"X-Telegram-Bot-Api-Secret-Token": secret})


def test_health_endpoint(client):
    """Test the health check endpoint."""
    response = client.get("/health")
    assert response.status_code == 200
    data = response.json()
    assert data["status"] == "healthy"
    assert data["service"] == "castbot"
    assert data["version"] == __version__


def test_webhook_start_command(client, transport):
    """Test a /start message is answered through the transport."""
    response = webhook(client, {
        "update_id": 1,
        "message": {"message_id": 1, "from": {"id": 55}, "chat": {"id": 55}, "text": "/start"},
    })
    assert response.status_code == 200
    assert response.json() == {"ok": True}
    assert transport.messages[0]["chat_id"] == 55
    assert transport.texts()[0].startswith("Welcome!")


def test_webhook_rejects_wrong_secret(client, transport):
    """Test updates without the shared secret are refused."""
    response = webhook(client, {"update_id": 1}, secret="wrong")
    assert response.status_code == 403
    assert transport.messages == []


def test_webhook_ignores_unknown_updates(client, neynar):
    """Test an update type the bot does not handle is acknowledged."""
    response = webhook(client, {"update_id": 2, "channel_post": {"text": "hi"}})
    assert response.status_code == 200
    assert neynar.calls == []


def test_webhook_survives_malformed_update(client):
    """Test a broken update is logged and still acknowledged."""
    response = webhook(client, {"update_id": 3, "callback_query": {"data": "like:0x1"}})
    assert response.status_code == 200
    assert response.json() == {"ok": True}
