"""
Pytest configuration and shared fixtures.

Every test gets a fresh in-memory store, a recording notifier and a fake
clock that starts at 2025-01-15T10:00:00Z and ticks one millisecond per read.
"""

import json
import os
from datetime import datetime, timedelta, timezone

import pytest
from fastapi.testclient import TestClient

os.environ["LOG_LEVEL"] = "WARNING"

# Clear settings cache before any app imports to ensure test env vars are used
from whatsapp_bot.config import Settings, get_settings
get_settings.cache_clear()

from whatsapp_bot.main import create_app
from whatsapp_bot.notifier import Notifier, SendResult
from whatsapp_bot.processor import MessageProcessor
from whatsapp_bot.schemas import InboundUnit
from whatsapp_bot.storage import SqlAlchemyStorage


TEST_VERIFY_TOKEN = "test_verify_token"
TEST_APP_SECRET = "test_app_secret"
BOT_NUMBER = "15550001111"

START_TIME = datetime(2025, 1, 15, 10, 0, 0, tzinfo=timezone.utc)


class FakeClock:
    """Callable clock that advances by step on every read."""

    def __init__(self, start: datetime = START_TIME, step: timedelta = timedelta(milliseconds=1)):
        self.current = start
        self.step = step

    def __call__(self) -> datetime:
        value = self.current
        self.current += self.step
        return value

    def advance(self, **kwargs) -> None:
        self.current += timedelta(**kwargs)


class RecordingNotifier(Notifier):
    """Notifier that records sends instead of delivering them."""

    def __init__(self):
        self.sent = []
        self.fail = False
        self.explode = False

    def send(self, address: str, text: str) -> SendResult:
        if self.explode:
            raise ConnectionError("platform unreachable")
        self.sent.append((address, text))
        if self.fail:
            return SendResult.failure("rejected by platform")
        return SendResult.success()


def make_unit(external_id: str, sender: str, body=None, kind: str = "text") -> InboundUnit:
    return InboundUnit(
        external_id=external_id,
        sender=sender,
        recipient=BOT_NUMBER,
        body=body,
        kind=kind,
        external_timestamp="1736935200",
    )


def make_payload(*messages, display_phone_number: str = BOT_NUMBER) -> dict:
    """Build a delivery body with one entry and one change holding messages."""
    value = {"metadata": {"display_phone_number": display_phone_number}}
    if messages:
        value["messages"] = list(messages)
    return {"entry": [{"changes": [{"value": value}]}]}


def make_inbound(message_id: str, sender: str, body=None, msg_type: str = "text") -> dict:
    message = {"id": message_id, "from": sender, "timestamp": "1736935200", "type": msg_type}
    if body is not None:
        message["text"] = {"body": body}
    return message


def post_webhook(client, payload, headers=None):
    body = payload if isinstance(payload, str) else json.dumps(payload)
    return client.post(
        "/api/webhook",
        content=body,
        headers={"Content-Type": "application/json", **(headers or {})},
    )


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def storage(clock):
    """Fresh, seeded in-memory store."""
    store = SqlAlchemyStorage(clock=clock)
    store.init()
    return store


@pytest.fixture
def notifier() -> RecordingNotifier:
    return RecordingNotifier()


@pytest.fixture
def processor(storage, notifier) -> MessageProcessor:
    return MessageProcessor(storage, notifier)


@pytest.fixture
def settings() -> Settings:
    return Settings(WHATSAPP_VERIFY_TOKEN=TEST_VERIFY_TOKEN, WHATSAPP_APP_SECRET=None)


@pytest.fixture
def client(storage, notifier, clock, settings):
    """Test client wired to the per-test store, notifier and clock."""
    app = create_app(storage=storage, notifier=notifier, clock=clock, settings=settings)
    with TestClient(app) as test_client:
        yield test_client
