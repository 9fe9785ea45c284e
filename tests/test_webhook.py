"""
Tests for the /api/webhook endpoints.

Tests cover:
- Subscription handshake (200 / 403 / 400)
- Delivery ingestion through the message processor
- Malformed deliveries (500)
- Duplicate deliveries (idempotency)
- Optional X-Hub-Signature-256 verification (401)
- Webhook request log
"""

import hashlib
import hmac
import json

import pytest
from fastapi.testclient import TestClient

from whatsapp_bot.config import Settings
from whatsapp_bot.main import create_app
from whatsapp_bot.storage import DEFAULT_BOT_CONFIG

from conftest import (
    BOT_NUMBER,
    TEST_APP_SECRET,
    TEST_VERIFY_TOKEN,
    make_inbound,
    make_payload,
    post_webhook,
)


SEEDED = {key: value for key, value, _ in DEFAULT_BOT_CONFIG}


def compute_signature(body: str, secret: str) -> str:
    """Compute the X-Hub-Signature-256 header value for a request body."""
    digest = hmac.new(secret.encode("utf-8"), body.encode("utf-8"), hashlib.sha256).hexdigest()
    return f"sha256={digest}"


@pytest.fixture
def signed_client(storage, notifier, clock):
    """Client whose settings require signed deliveries."""
    settings = Settings(WHATSAPP_VERIFY_TOKEN=TEST_VERIFY_TOKEN, WHATSAPP_APP_SECRET=TEST_APP_SECRET)
    app = create_app(storage=storage, notifier=notifier, clock=clock, settings=settings)
    with TestClient(app) as test_client:
        yield test_client


class TestVerification:
    """Test the GET subscription handshake."""

    def verify(self, client, **params):
        return client.get("/api/webhook", params={f"hub.{k}": v for k, v in params.items()})

    def test_echoes_challenge(self, client):
        response = self.verify(client, mode="subscribe", verify_token=TEST_VERIFY_TOKEN, challenge="xyz123")

        assert response.status_code == 200
        assert response.text == "xyz123"
        assert response.headers["content-type"].startswith("text/plain")

    def test_wrong_token(self, client):
        response = self.verify(client, mode="subscribe", verify_token="nope", challenge="xyz123")

        assert response.status_code == 403
        assert response.json()["detail"] == "Verification failed"

    def test_wrong_mode(self, client):
        response = self.verify(client, mode="unsubscribe", verify_token=TEST_VERIFY_TOKEN, challenge="xyz123")

        assert response.status_code == 400

    @pytest.mark.parametrize("missing", ["mode", "verify_token", "challenge"])
    def test_missing_parameter(self, client, missing):
        params = {"mode": "subscribe", "verify_token": TEST_VERIFY_TOKEN, "challenge": "xyz123"}
        del params[missing]

        response = self.verify(client, **params)

        assert response.status_code == 400
        assert response.json()["detail"] == "Invalid verification request"


class TestDelivery:
    """Test POST deliveries."""

    def test_processes_messages(self, client, storage, notifier):
        payload = make_payload(make_inbound("wamid.1", "+1111", "/help"), make_inbound("wamid.2", "+2222", "hello"))

        response = post_webhook(client, payload)

        assert response.status_code == 200
        assert response.json() == {"status": "ok"}

        first = storage.get_message_by_external_id("wamid.1")
        assert first.to_number == BOT_NUMBER
        assert first.status == "responded"
        assert first.bot_response == SEEDED["help_message"]
        assert storage.get_message_by_external_id("wamid.2").bot_response == SEEDED["default_response"]
        assert [address for address, _ in notifier.sent] == ["+1111", "+2222"]

    def test_multiple_entries_and_changes(self, client, storage):
        payload = {
            "entry": [
                {"changes": [
                    {"value": {"metadata": {"display_phone_number": "111"},
                               "messages": [make_inbound("m1", "+1", "hi")]}},
                    {"value": {"metadata": {"display_phone_number": "222"},
                               "messages": [make_inbound("m2", "+1", "/info")]}},
                ]},
                {"changes": [
                    {"value": {"metadata": {"display_phone_number": "333"},
                               "messages": [make_inbound("m3", "+2", "yo")]}},
                ]},
            ]
        }

        response = post_webhook(client, payload)

        assert response.status_code == 200
        assert storage.get_message_by_external_id("m2").to_number == "222"
        assert storage.get_conversation("+1").message_count == 2
        assert storage.get_conversation("+1").last_command == "info"
        assert storage.get_conversation("+2").message_count == 1

    def test_change_without_messages(self, client, storage):
        response = post_webhook(client, make_payload())

        assert response.status_code == 200
        assert storage.get_messages() == []

    def test_empty_entry_list(self, client):
        response = post_webhook(client, {"entry": []})

        assert response.status_code == 200

    def test_non_text_message(self, client, storage):
        response = post_webhook(client, make_payload(make_inbound("wamid.img", "+1111", msg_type="image")))

        assert response.status_code == 200
        message = storage.get_message_by_external_id("wamid.img")
        assert message.message_type == "image"
        assert message.message_text is None
        assert message.bot_response == SEEDED["default_response"]

    def test_duplicate_delivery_stored_once(self, client, storage, notifier):
        payload = make_payload(make_inbound("wamid.1", "+1111", "/help"))

        assert post_webhook(client, payload).status_code == 200
        assert post_webhook(client, payload).status_code == 200

        assert len(storage.get_messages()) == 1
        assert storage.get_conversation("+1111").message_count == 1
        assert len(notifier.sent) == 1

    def test_pipeline_failure_still_acknowledged(self, client, storage, monkeypatch):
        def broken_lookup(key):
            raise RuntimeError("config table unavailable")

        monkeypatch.setattr(storage, "get_bot_config_by_key", broken_lookup)

        response = post_webhook(client, make_payload(make_inbound("wamid.1", "+1111", "hi")))

        assert response.status_code == 200
        assert storage.get_message_by_external_id("wamid.1").status == "received"


class TestMalformedDelivery:
    """Test bodies that cannot be parsed."""

    def test_invalid_json(self, client):
        response = post_webhook(client, "{not json")

        assert response.status_code == 500
        assert response.json()["detail"] == "Webhook processing failed"

    def test_missing_entry(self, client):
        assert post_webhook(client, {"object": "whatsapp_business_account"}).status_code == 500

    def test_missing_metadata(self, client, storage):
        payload = {"entry": [{"changes": [{"value": {"messages": [make_inbound("m1", "+1", "hi")]}}]}]}

        response = post_webhook(client, payload)

        assert response.status_code == 500
        assert storage.get_messages() == []

    def test_message_missing_sender(self, client):
        message = make_inbound("m1", "+1", "hi")
        del message["from"]

        assert post_webhook(client, make_payload(message)).status_code == 500


class TestSignature:
    """Test X-Hub-Signature-256 checks when an app secret is configured."""

    def test_valid_signature(self, signed_client, storage):
        body = json.dumps(make_payload(make_inbound("wamid.1", "+1111", "hi")))

        response = post_webhook(
            signed_client, body, headers={"X-Hub-Signature-256": compute_signature(body, TEST_APP_SECRET)}
        )

        assert response.status_code == 200
        assert storage.get_message_by_external_id("wamid.1") is not None

    def test_missing_signature(self, signed_client, storage):
        response = post_webhook(signed_client, make_payload(make_inbound("wamid.1", "+1111", "hi")))

        assert response.status_code == 401
        assert response.json()["detail"] == "invalid signature"
        assert storage.get_messages() == []

    def test_wrong_signature(self, signed_client, storage):
        body = json.dumps(make_payload(make_inbound("wamid.1", "+1111", "hi")))

        response = post_webhook(
            signed_client, body, headers={"X-Hub-Signature-256": compute_signature(body, "other_secret")}
        )

        assert response.status_code == 401
        assert storage.get_messages() == []

    def test_signature_without_prefix(self, signed_client):
        body = json.dumps(make_payload())
        bare = compute_signature(body, TEST_APP_SECRET)[len("sha256="):]

        response = post_webhook(signed_client, body, headers={"X-Hub-Signature-256": bare})

        assert response.status_code == 401

    def test_signature_ignored_without_secret(self, client):
        response = post_webhook(client, make_payload(), headers={"X-Hub-Signature-256": "sha256=bogus"})

        assert response.status_code == 200


class TestWebhookLog:
    """Test that webhook requests are appended to the webhook log."""

    def test_successful_delivery_logged(self, client, storage):
        post_webhook(client, make_payload(make_inbound("wamid.1", "+1111", "hi")))

        [log] = storage.get_webhook_logs()
        assert log.method == "POST"
        assert log.webhook_url.endswith("/api/webhook")
        assert log.response_status == 200
        assert log.is_successful is True
        assert log.error_message is None
        assert log.body == {"units": 1}

    def test_failed_delivery_logged(self, client, storage):
        post_webhook(client, "{not json")

        [log] = storage.get_webhook_logs()
        assert log.response_status == 500
        assert log.is_successful is False
        assert log.error_message == "validation_error"

    def test_verification_logged(self, client, storage):
        client.get("/api/webhook", params={"hub.mode": "subscribe", "hub.verify_token": "bad", "hub.challenge": "c"})

        [log] = storage.get_webhook_logs()
        assert log.method == "GET"
        assert log.response_status == 403
        assert log.error_message == "verification_failed"

    def test_other_routes_not_logged(self, client, storage):
        client.get("/api/messages")
        client.get("/health/live")

        assert storage.get_webhook_logs() == []


class TestRequestId:
    def test_response_carries_request_id(self, client):
        first = post_webhook(client, make_payload())
        second = post_webhook(client, make_payload())

        assert first.headers["X-Request-ID"]
        assert first.headers["X-Request-ID"] != second.headers["X-Request-ID"]
