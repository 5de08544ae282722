import json
import logging
import re

import pytest


@pytest.fixture(autouse=True)
def capture_logs(caplog):
    caplog.set_level(logging.INFO)
    yield


def request_logs(caplog):
    """Structured request lines emitted by the logging middleware"""
    logs = []
    for record in caplog.records:
        if record.name == "energy_market.request" and isinstance(record.msg, str) and record.msg.startswith("{"):
            logs.append((record, json.loads(record.msg)))
    return logs


def test_request_logged_with_correlation_id(client, caplog):
    response = client.get("/api/listings", headers={"X-Request-ID": "test-correlation-id"})

    assert response.status_code == 200
    assert response.headers["X-Request-ID"] == "test-correlation-id"
    (_, entry), = [item for item in request_logs(caplog) if item[1]["request_id"] == "test-correlation-id"]
    assert entry["method"] == "GET"
    assert entry["path"] == "/api/listings"
    assert entry["status_code"] == 200
    assert isinstance(entry["duration_ms"], float)
    assert entry["timestamp"].endswith("Z")


def test_request_id_generated_when_absent(client):
    response = client.get("/api/listings")

    assert re.fullmatch(r"[0-9a-f-]{36}", response.headers["X-Request-ID"])


def test_health_checks_are_not_logged_at_info(client, caplog):
    client.get("/api/health", headers={"X-Request-ID": "health-check"})

    assert not [entry for _, entry in request_logs(caplog) if entry["request_id"] == "health-check"]


def test_service_error_logged_with_request_context(client, caplog):
    response = client.get("/api/auth/me", headers={"X-Request-ID": "denied-request"})

    assert response.status_code == 401
    records = [r for r in caplog.records if getattr(r, "error_code", None) == "AUTHENTICATION_REQUIRED"]
    assert records
    assert records[0].levelno == logging.WARNING
    assert records[0].request_id == "denied-request"
    assert records[0].path == "/api/auth/me"


def test_rejected_request_logged(client, caplog):
    response = client.post("/api/listings", json={"amountKWh": "lots"}, headers={"X-Request-ID": "bad-body"})

    # Authentication is resolved before the body is used
    assert response.status_code == 401
    entries = [entry for _, entry in request_logs(caplog) if entry["request_id"] == "bad-body"]
    assert entries[0]["status_code"] == response.status_code
