"""
Tests for the HTTP surface: health, chat, streaming, feedback and learner endpoints.
"""

import json
from unittest.mock import MagicMock

import pytest
from fastapi.testclient import TestClient

from aiteacher.api.app import create_app
from aiteacher.api.middleware.rate_limit import SlidingWindowRateLimiter, get_rate_limit_key
from aiteacher.llm.gateway import extract_chunk_content
from aiteacher.shared.config import settings


@pytest.fixture
def client(monkeypatch, tmp_path):
    """Test client in fallback mode with an in-memory store (runs lifespan for app.state)."""
    monkeypatch.setattr(settings.memory, "backend", "memory")
    monkeypatch.setattr(settings.llm, "provider", "deepseek")
    monkeypatch.setattr(settings.llm, "deepseek_api_key", None)
    monkeypatch.setattr(settings.health, "monitor_on_startup", False)
    monkeypatch.setattr(settings.teacher, "bootstrap_dir", tmp_path / "bootstrap")

    with TestClient(create_app()) as tc:
        yield tc


def chat_payload(**overrides):
    payload = {
        "userId": "learner-1",
        "sessionId": "session-1",
        "message": "Can you explain backpropagation and gradient descent?",
        "previousMessages": [],
        "context": {},
    }
    payload.update(overrides)
    return payload


def parse_events(body: str):
    events = []
    for block in body.strip().split("\n\n"):
        event = {"id": None, "data": []}
        for line in block.split("\n"):
            if line.startswith("id: "):
                event["id"] = line[4:]
            elif line.startswith("data: "):
                event["data"].append(line[6:])
        event["data"] = "\n".join(event["data"])
        events.append(event)
    return events


def test_health_returns_correct_structure(client):
    response = client.get("/health")

    assert response.status_code == 200
    data = response.json()
    assert data["status"] == "ok"
    assert data["deepSeekConfigured"] is False
    assert data["generationStatus"] in ("checking", "available", "partial", "unavailable", "error")
    assert isinstance(data["uptimeSeconds"], (int, float))


def test_cors_headers_present(client):
    response = client.get("/health", headers={"Origin": "http://localhost:3000"})
    assert response.headers.get("access-control-allow-origin") == "http://localhost:3000"


def test_request_id_is_echoed_or_assigned(client):
    assert client.get("/health", headers={"X-Request-ID": "abc123"}).headers["X-Request-ID"] == "abc123"
    assert client.get("/health").headers["X-Request-ID"]


def test_chat_returns_camel_case_reply(client):
    response = client.post("/api/teacher/chat", json=chat_payload())

    assert response.status_code == 200
    data = response.json()
    assert data["message"]["role"] == "assistant"
    assert "backpropagation" in data["message"]["content"]
    assert data["detectedConcepts"] == ["backpropagation", "gradient descent"]
    assert len(data["suggestedFollowups"]) == 3
    assert data["interactionId"]


def test_chat_rejects_missing_message(client):
    response = client.post("/api/teacher/chat", json={"userId": "learner-1"})
    assert response.status_code == 422


def test_chat_stream_sends_numbered_events_then_metadata(client):
    with client.stream("POST", "/api/teacher/chat/stream", json=chat_payload()) as response:
        assert response.status_code == 200
        assert response.headers["content-type"].startswith("text/event-stream")
        body = "".join(response.iter_text())

    events = parse_events(body)
    ids = [int(e["id"]) for e in events]
    assert ids == list(range(1, len(events) + 1))
    assert events[-1]["data"].startswith("METADATA:")
    metadata = json.loads(events[-1]["data"][len("METADATA:"):])
    assert metadata["concepts"] == ["backpropagation", "gradient descent"]

    content = "".join(extract_chunk_content(e["data"]) for e in events[:-1])
    assert content.startswith("I understand you're asking about backpropagation.")


def test_feedback_flow(client):
    interaction_id = client.post("/api/teacher/chat", json=chat_payload()).json()["interactionId"]

    response = client.post("/api/teacher/feedback", json={
        "userId": "learner-1", "interactionId": interaction_id, "rating": 5,
    })

    assert response.status_code == 200
    assert response.json() == {"interactionId": interaction_id, "effectiveness": 1.0}


def test_feedback_for_unknown_interaction_is_404(client):
    response = client.post("/api/teacher/feedback", json={
        "userId": "learner-1", "interactionId": "does-not-exist", "rating": 3,
    })
    assert response.status_code == 404


def test_feedback_rating_is_validated(client):
    response = client.post("/api/teacher/feedback", json={
        "userId": "learner-1", "interactionId": "x", "rating": 9,
    })
    assert response.status_code == 422


def test_analytics_for_new_user(client):
    response = client.get("/api/teacher/analytics/brand-new")

    assert response.status_code == 200
    data = response.json()
    assert data["total_interactions"] == 0
    assert data["learning_rate"] == 0.5


def test_update_learning_style(client):
    response = client.put("/api/teacher/learning-style/learner-1", json={"visualLearner": True, "technicalLevel": 4})

    assert response.status_code == 200
    assert response.json()["visual_learner"] is True
    assert response.json()["technical_level"] == 4

    bad = client.put("/api/teacher/learning-style/learner-1", json={"technicalLevel": 9})
    assert bad.status_code == 422


def test_analyze_understanding(client):
    response = client.post("/api/teacher/analyze", json={
        "userId": "learner-1", "message": "I'm confused about recursion", "concepts": ["recursion"],
    })

    assert response.status_code == 200
    assert response.json()["is_understanding"] is False
    assert response.json()["confused_concepts"] == ["recursion"]


def test_strategies(client):
    response = client.get("/api/teacher/strategies")

    assert response.status_code == 200
    assert {s["approach"] for s in response.json()} == {
        "explanatory", "socratic", "examples-based", "analogy", "visualization", "problem-solving",
    }


def test_sliding_window_rate_limiter():
    now = [0.0]
    limiter = SlidingWindowRateLimiter(requests_per_minute=2, clock=lambda: now[0])

    for _ in range(2):
        assert limiter.is_allowed("user:a")
        limiter.record("user:a")
    assert not limiter.is_allowed("user:a")
    assert limiter.is_allowed("user:b")
    assert limiter.retry_after_seconds("user:a") == 60

    now[0] = 61.0
    assert limiter.is_allowed("user:a")


def test_rate_limit_returns_429(monkeypatch, tmp_path):
    monkeypatch.setattr(settings.memory, "backend", "memory")
    monkeypatch.setattr(settings.llm, "deepseek_api_key", None)
    monkeypatch.setattr(settings.health, "monitor_on_startup", False)
    monkeypatch.setattr(settings.teacher, "bootstrap_dir", tmp_path / "bootstrap")
    monkeypatch.setattr(settings.api, "rate_limit_requests_per_minute", 2)

    with TestClient(create_app()) as tc:
        headers = {"X-User-Id": "learner-1"}
        assert tc.get("/api/teacher/strategies", headers=headers).status_code == 200
        assert tc.get("/api/teacher/strategies", headers=headers).status_code == 200
        limited = tc.get("/api/teacher/strategies", headers=headers)

        assert limited.status_code == 429
        assert int(limited.headers["Retry-After"]) >= 1
        # /health is never limited
        assert tc.get("/health", headers=headers).status_code == 200


def test_idle_callers_are_forgotten():
    now = [0.0]
    limiter = SlidingWindowRateLimiter(requests_per_minute=5, clock=lambda: now[0], prune_every=10)

    for n in range(9):
        limiter.record(f"user:{n}")
    assert len(limiter) == 9

    now[0] = 61.0
    limiter.record("user:late")
    assert len(limiter) == 1
    assert limiter.is_allowed("user:0")
    assert len(limiter) == 1


def test_rate_limit_key_prefers_learner_identity():
    def request(path, headers=None):
        req = MagicMock()
        req.url.path = path
        req.headers = headers or {}
        req.client.host = "10.0.0.1"
        return req

    assert get_rate_limit_key(request("/api/teacher/chat", {"X-User-Id": "learner-1"})) == "user:learner-1"
    assert get_rate_limit_key(request("/api/teacher/analytics/learner-2")) == "user:learner-2"
    assert get_rate_limit_key(request("/api/teacher/strategies", {"Authorization": "Bearer tok"})) == "bearer:tok"
    assert get_rate_limit_key(request("/api/teacher/strategies")) == "ip:10.0.0.1"
