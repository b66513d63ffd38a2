"""
Tests for the HTTP adapter
"""

import pytest
from fastapi.testclient import TestClient

from callguard.config import Settings, get_settings
from callguard.main import app
from callguard.scoring.fusion_engine import build_engine


@pytest.fixture
def client():
    with TestClient(app) as test_client:
        app.state.engine = build_engine(Settings(model_seed=7))
        yield test_client


@pytest.fixture
def headers():
    return {"X-API-Key": get_settings().api_key}


class TestHealth:

    def test_health(self, client):
        response = client.get("/health")

        assert response.status_code == 200
        assert response.json()["status"] == "healthy"

    def test_ready(self, client):
        response = client.get("/ready")

        assert response.status_code == 200
        assert response.json()["checks"] == {"engine": "ok", "rule_store": "ok"}


class TestDetectionApi:
    """Test suite for the detection, feedback and rule endpoints"""

    def test_missing_api_key_is_rejected(self, client):
        response = client.post("/api/v1/detect/sms", json={"phone_number": "+5511999990000", "content": "oi"})

        assert response.status_code == 401
        body = response.json()
        assert body["success"] is False
        assert body["error"]["code"] == "UNAUTHORIZED"

    def test_detect_sms(self, client, headers):
        response = client.post(
            "/api/v1/detect/sms",
            headers=headers,
            json={
                "phone_number": "+5511999990000",
                "content": "Oferta grátis! Acesse http://promo.example",
                "timestamp": "2026-01-26T23:15:00"
            }
        )

        assert response.status_code == 200
        body = response.json()
        assert body["success"] is True
        assert body["data"]["sender_id"] == "+5511999990000"
        assert body["data"]["kind"] == "sms"
        assert 0.0 <= body["data"]["final_score"] <= 1.0
        assert "content:contains_link" in body["data"]["reasons"]

    def test_detect_call_validation(self, client, headers):
        response = client.post("/api/v1/detect/call", headers=headers, json={"phone_number": ""})
        assert response.status_code == 422

    def test_rule_lifecycle(self, client, headers):
        created = client.post(
            "/api/v1/rules",
            headers=headers,
            json={"id": "bl1", "name": "known spammer", "type": "blacklist", "pattern": "+5500000000", "priority": 100}
        )
        assert created.status_code == 201
        assert created.json()["data"]["type"] == "blacklist"

        duplicate = client.post(
            "/api/v1/rules",
            headers=headers,
            json={"id": "bl1", "name": "again", "type": "blacklist", "pattern": "+5500000000"}
        )
        assert duplicate.status_code == 409

        detection = client.post("/api/v1/detect/call", headers=headers, json={"phone_number": "+5500000000"})
        assert detection.json()["data"]["spam_level"] == "spam"
        assert detection.json()["data"]["matched_rule_id"] == "bl1"

        listed = client.get("/api/v1/rules", headers=headers)
        assert [r["id"] for r in listed.json()["data"]] == ["bl1"]

        assert client.delete("/api/v1/rules/bl1", headers=headers).status_code == 200
        missing = client.delete("/api/v1/rules/bl1", headers=headers)
        assert missing.status_code == 404
        assert missing.json()["error"]["code"] == "RULE_NOT_FOUND"

    def test_unknown_rule_type(self, client, headers):
        response = client.post(
            "/api/v1/rules",
            headers=headers,
            json={"name": "odd", "type": "astrology", "pattern": "aries"}
        )

        assert response.status_code == 400
        assert response.json()["error"]["code"] == "INVALID_RULE_TYPE"

    def test_feedback_and_stats(self, client, headers):
        client.post("/api/v1/detect/call", headers=headers, json={"phone_number": "+5511999990000"})

        feedback = client.post(
            "/api/v1/feedback",
            headers=headers,
            json={"phone_number": "+5511999990000", "is_spam": True}
        )
        assert feedback.status_code == 200
        assert feedback.json()["data"]["invalidated_entries"] == 1
        assert feedback.json()["data"]["kind"] == "call"

        stats = client.get("/api/v1/stats", headers=headers).json()["data"]
        assert stats["total_detections"] == 1
        assert stats["profile_count"] == 1
        assert stats["cache_size"] == 0

    def test_metrics(self, client, headers):
        client.post("/api/v1/detect/call", headers=headers, json={"phone_number": "+5511999990000"})

        response = client.get("/api/v1/metrics", headers=headers)

        assert response.status_code == 200
        data = response.json()["data"]
        assert data["latencies"]["detection[kind=call]"]["count"] == 1
        assert data["detection"]["total_detections"] == 1
        assert data["cache_hit_rate"] == 0.0
