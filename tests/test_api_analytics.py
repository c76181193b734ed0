"""Tests for the analytics HTTP endpoints."""

import uuid
from datetime import UTC, datetime, timedelta
from unittest.mock import patch

from app.services.outline_client import OutlineApiError
from tests.conftest import make_access_key, make_server, make_snapshot

MIB = 1024 * 1024


def _now():
    return datetime.now(UTC)


def test_top_consumers(client, db_session):
    server = make_server(db_session)
    a = make_access_key(db_session, server, "1", name="alice")
    b = make_access_key(db_session, server, "2", name="bob")
    c = make_access_key(db_session, server, "3", name="carol")
    for key, delta in ((a, 300), (b, 100), (c, 500)):
        make_snapshot(db_session, key, delta, delta, _now() - timedelta(hours=1))
    db_session.commit()

    resp = client.get("/analytics/top-consumers", params={"range": "24h", "limit": 2})

    assert resp.status_code == 200
    body = resp.json()
    assert [(row["name"], row["delta_bytes"]) for row in body] == [("carol", 500), ("alice", 300)]
    assert body[0]["key_type"] == "access_key"


def test_top_consumers_versioned_prefix(client):
    resp = client.get("/api/v1/analytics/top-consumers")
    assert resp.status_code == 200
    assert resp.json() == []


def test_invalid_range_rejected(client):
    resp = client.get("/analytics/top-consumers", params={"range": "1y"})
    assert resp.status_code == 422
    assert resp.json()["code"] == "validation_error"


def test_anomalies(client, db_session):
    server = make_server(db_session)
    key = make_access_key(db_session, server, "1", name="spiky")
    make_snapshot(db_session, key, 0, 5 * MIB, _now() - timedelta(days=3))
    make_snapshot(db_session, key, 0, 20 * MIB, _now() - timedelta(hours=1))
    db_session.commit()

    resp = client.get("/analytics/anomalies", params={"range": "24h", "threshold": 3})

    assert resp.status_code == 200
    body = resp.json()
    assert len(body) == 1
    assert body[0]["ratio"] == 4.0


def test_forecast(client, db_session):
    server = make_server(db_session)
    key = make_access_key(db_session, server, "1", used_bytes=200, data_limit_bytes=1000)
    now = _now()
    make_snapshot(db_session, key, 0, 0, now - timedelta(days=2))
    make_snapshot(db_session, key, 200, 200, now)
    db_session.commit()

    resp = client.get(f"/analytics/forecast/{key.id}")

    assert resp.status_code == 200
    body = resp.json()
    assert body["days_to_quota"] == 8
    assert body["confidence"] == "low"


def test_forecast_unknown_key(client):
    resp = client.get(f"/analytics/forecast/{uuid.uuid4()}", params={"key_type": "dynamic_key"})
    assert resp.status_code == 200
    assert resp.json()["message"] == "Key not found"


def test_forecast_bad_uuid(client):
    resp = client.get("/analytics/forecast/not-a-uuid")
    assert resp.status_code == 422


def test_usage_history(client, db_session):
    server = make_server(db_session)
    key = make_access_key(db_session, server, "1")
    make_snapshot(db_session, key, 10, 10, _now() - timedelta(hours=3))
    make_snapshot(db_session, key, 30, 20, _now() - timedelta(hours=1))
    db_session.commit()

    resp = client.get(f"/analytics/keys/{key.id}/usage-history", params={"range": "7d"})

    assert resp.status_code == 200
    assert [(p["used_bytes"], p["delta_bytes"]) for p in resp.json()] == [(10, 10), (30, 20)]


def test_summary(client, db_session):
    server = make_server(db_session)
    key = make_access_key(db_session, server, "1")
    make_snapshot(db_session, key, 100, 100, _now() - timedelta(hours=1))
    db_session.commit()

    resp = client.get("/analytics/summary")

    assert resp.status_code == 200
    assert resp.json() == {
        "range": "24h",
        "total_delta_bytes": 100,
        "active_keys_count": 1,
        "anomaly_count": 0,
        "snapshot_count": 1,
    }


def test_outline_error_maps_to_502(client):
    with patch(
        "app.services.analytics_service.AnalyticsService.summary",
        side_effect=OutlineApiError("unreachable", status_code=503),
    ):
        resp = client.get("/analytics/summary")

    assert resp.status_code == 502
    assert resp.json()["code"] == "outline_unavailable"


def test_metrics_endpoint(client):
    resp = client.get("/metrics")
    assert resp.status_code == 200
    assert "usage_snapshots_written_total" in resp.text
