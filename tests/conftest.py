"""
Shared fixtures.

No test talks to a real messaging backend: HTTP and engine tests use a
recording dispatcher, notifier tests patch apprise.
"""

import pytest

from relay_gateway.config import AppConfig
from relay_gateway.delivery import DeliveryOutcome
from relay_gateway.topics import build_registry

DEFAULT_TOPICS = {
    "myLab": {
        "allow_list": ["192.168.69.0/24"],
        "recipients": ["11111111"],
    },
}


class RecordingDispatcher:
    """Stands in for the apprise dispatcher and records every send."""

    def __init__(self, failing=(), raising=(), rejecting=()):
        self.calls = []
        self.registered = []
        self.failing = set(failing)
        self.raising = set(raising)
        self.rejecting = set(rejecting)

    def register_recipients(self, recipients):
        recipients = list(recipients)
        self.registered.extend(recipients)
        return [recipient for recipient in recipients if recipient in self.rejecting]

    async def send(self, recipient, message):
        self.calls.append((recipient, message))
        if recipient in self.raising:
            raise RuntimeError(f"backend exploded for {recipient}")
        if recipient in self.failing:
            return DeliveryOutcome.failed(recipient, "backend refused")
        return DeliveryOutcome.sent(recipient)


def build_multipart(parts, boundary="relayboundary42"):
    """Build a multipart/form-data body.

    parts is a list of (name, value, filename) tuples; filename None makes a
    plain form field.
    """
    body = b""
    for name, value, filename in parts:
        if isinstance(value, str):
            value = value.encode("utf-8")
        disposition = f'form-data; name="{name}"'
        if filename is not None:
            disposition += f'; filename="{filename}"'
        head = f"--{boundary}\r\nContent-Disposition: {disposition}\r\n"
        if filename is not None:
            head += "Content-Type: application/octet-stream\r\n"
        body += head.encode("utf-8") + b"\r\n" + value + b"\r\n"
    body += f"--{boundary}--\r\n".encode("utf-8")
    return body


def make_config(topics=None, **overrides):
    values = {
        "port": 8080,
        "secret": "123456:test-secret",
        "topics": build_registry(topics or DEFAULT_TOPICS),
        "retry_schedule_ms": [],
        "delivery_mode": "sync",
        "body_read_timeout_s": 5.0,
        "max_body_bytes": 1024 * 1024,
        "trust_forwarded_for": True,
    }
    values.update(overrides)
    return AppConfig(**values)


@pytest.fixture
def dispatcher():
    return RecordingDispatcher()


@pytest.fixture
def multipart():
    return build_multipart


@pytest.fixture
def config_factory():
    return make_config


@pytest.fixture
def dispatcher_cls():
    return RecordingDispatcher
