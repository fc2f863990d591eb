"""
HTTP ingest endpoint tests.
"""

import json
from unittest.mock import MagicMock, patch

import pytest
from fastapi.testclient import TestClient

from tripsync.config import STREAM
from tripsync.main import app


@pytest.fixture
def redis_mock():
    with patch("tripsync.webhook.r") as r:
        r.xadd = MagicMock(return_value=b"1-0")
        yield r


@pytest.fixture
def client():
    return TestClient(app)


def test_envelope_is_queued(client, redis_mock):
    envelope = {"collection": "logs", "document": {"_id": "abc", "timestamp": "2025-06-01T08:00:00Z", "gps_speed": 3.2}}

    resp = client.post("/telemetry", json=envelope)

    assert resp.status_code == 200
    assert resp.json() == {"ok": True}
    stream, fields = redis_mock.xadd.call_args[0]
    assert stream == STREAM
    assert json.loads(fields["data"]) == envelope
    assert "ts" in fields


@pytest.mark.parametrize("payload, detail", [
    ({"document": {"_id": "a"}}, "missing collection"),
    ({"collection": "logs"}, "missing document"),
    ({"collection": "logs", "document": {"timestamp": 0}}, "missing document _id"),
])
def test_invalid_envelope_is_rejected(client, redis_mock, payload, detail):
    resp = client.post("/telemetry", json=payload)

    assert resp.status_code == 400
    assert resp.json()["detail"] == detail
    redis_mock.xadd.assert_not_called()


def test_health(client):
    assert client.get("/health").json() == {"ok": True}
