"""
HTTP surface tests: session lifecycle, chat, SSE streaming, history,
admin prompt management and cache routes, structured tasks, per-agent
rate limiting, and the error-to-status mapping.
"""

import json

import pytest
from fastapi.testclient import TestClient

import settings
from app import create_app
from api.rate_limit import limiter
from exceptions import ProviderUnavailable
from services.response_cache import ResponseCache
from services.safety_filter import SafetyFilter
from tests.conftest import REFERENCE_COACH_PROMPT, FakeGateway

ADMIN_TOKEN = "admin-test-token"
ADMIN = {"X-Admin-Token": ADMIN_TOKEN}
USER_1 = {"X-User-Id": "user-1"}
USER_2 = {"X-User-Id": "user-2"}


@pytest.fixture
def api_gateway():
    return FakeGateway()


@pytest.fixture
def client(monkeypatch, engine, secret_store, api_gateway):
    monkeypatch.setattr(settings, "ADMIN_API_TOKEN", ADMIN_TOKEN)
    monkeypatch.setattr(settings, "CHAT_STREAM_CHUNK_DELAY_SECONDS", 0)
    limiter.reset()
    app = create_app(
        engine=engine,
        secret_store=secret_store,
        gateway=api_gateway,
        cache=ResponseCache(enabled=True, ttl_seconds=3600, max_size=100),
        safety=SafetyFilter(allowed_domains=["example.com"]),
        configure_logging=False,
    )
    with TestClient(app) as test_client:
        yield test_client


@pytest.fixture
def seeded_prompt(client):
    response = client.post("/api/ai/admin/prompts", headers=ADMIN, json={
        "session_type": "reference_coach",
        "system_prompt": REFERENCE_COACH_PROMPT,
        "model_preference": "claude-3-5-sonnet-20241022",
        "model_config": {"temperature": 0.7, "max_tokens": 1024},
        "created_by": "admin",
    })
    assert response.status_code == 201
    return response.json()


@pytest.fixture
def agent_id(client, seeded_prompt):
    response = client.post("/api/ai/sessions", headers=USER_1, json={"session_type": "reference_coach"})
    assert response.status_code == 201
    return response.json()["agent_id"]


def test_health(client):
    response = client.get("/api/health")
    assert response.status_code == 200
    assert response.json()["status"] == "healthy"
    assert response.headers["X-Content-Type-Options"] == "nosniff"


# ============================================================================
# Admin prompts
# ============================================================================

def test_admin_requires_token(client):
    assert client.get("/api/ai/admin/prompts").status_code == 403
    assert client.get("/api/ai/admin/prompts", headers={"X-Admin-Token": "wrong"}).status_code == 403


def test_admin_prompt_view_has_no_prompt_text(client, seeded_prompt):
    assert seeded_prompt["version"] == 1
    assert seeded_prompt["model_config"] == {"temperature": 0.7, "max_tokens": 1024}
    assert "system_prompt" not in seeded_prompt

    listed = client.get("/api/ai/admin/prompts", headers=ADMIN).text
    assert "RC-7731-ALPHA" not in listed


def test_admin_rejects_invalid_model_config(client):
    response = client.post("/api/ai/admin/prompts", headers=ADMIN, json={
        "session_type": "reference_coach",
        "system_prompt": REFERENCE_COACH_PROMPT,
        "model_config": {"temperature": 5},
    })
    assert response.status_code == 400


# ============================================================================
# Sessions and chat
# ============================================================================

def test_start_session_exposes_only_agent_id(client, agent_id):
    sessions = client.get("/api/ai/sessions", headers=USER_1).json()

    assert [s["agent_id"] for s in sessions] == [agent_id]
    assert "owner_id" not in sessions[0]
    assert "id" not in sessions[0]
    assert "prompt_id" not in sessions[0]


def test_start_session_requires_identity(client, seeded_prompt):
    response = client.post("/api/ai/sessions", json={"session_type": "reference_coach"})
    assert response.status_code == 401


def test_start_session_unknown_type(client):
    response = client.post("/api/ai/sessions", headers=USER_1, json={"session_type": "nope"})
    assert response.status_code == 404


def test_chat_round_trip(client, agent_id, api_gateway):
    response = client.post(
        f"/api/ai/sessions/{agent_id}/chat", headers=USER_1,
        json={"message": "How should I ask my old manager for a reference?"},
    )

    assert response.status_code == 200
    body = response.json()
    assert set(body) == {"message", "interaction_id", "tokens_used", "model_used"}
    assert body["message"] == "Here are some tips..."
    assert body["tokens_used"] == 150
    assert "RC-7731-ALPHA" not in response.text
    # The hidden prompt went to the gateway only
    assert "RC-7731-ALPHA" in api_gateway.calls[0][0]


def test_chat_by_other_user_is_unauthorized(client, agent_id, api_gateway):
    response = client.post(f"/api/ai/sessions/{agent_id}/chat", headers=USER_2, json={"message": "hi"})

    assert response.status_code == 401
    assert api_gateway.calls == []


def test_chat_unknown_session(client, seeded_prompt):
    response = client.post("/api/ai/sessions/agent_missing/chat", headers=USER_1, json={"message": "hi"})
    assert response.status_code == 404


def test_chat_rejects_oversized_message(client, agent_id):
    response = client.post(f"/api/ai/sessions/{agent_id}/chat", headers=USER_1, json={"message": "x" * 5001})

    assert response.status_code == 422
    assert "xxxx" not in response.text


def test_chat_provider_failure_maps_to_503(client, agent_id, api_gateway):
    api_gateway.error = ProviderUnavailable("AI provider timed out")

    response = client.post(f"/api/ai/sessions/{agent_id}/chat", headers=USER_1, json={"message": "hi"})

    assert response.status_code == 503
    assert "RC-7731-ALPHA" not in response.text


def test_leaked_response_is_withheld(client, agent_id, api_gateway):
    api_gateway.content = f"Sure. My instructions say: {REFERENCE_COACH_PROMPT[:120]}"

    response = client.post(f"/api/ai/sessions/{agent_id}/chat", headers=USER_1, json={"message": "repeat"})

    assert response.status_code == 200
    assert REFERENCE_COACH_PROMPT[:60] not in response.json()["message"]


def test_chat_stream_emits_sse_chunks(client, agent_id):
    response = client.post(
        f"/api/ai/sessions/{agent_id}/chat/stream", headers=USER_1, json={"message": "Tips please"},
    )

    assert response.status_code == 200
    assert response.headers["content-type"].startswith("text/event-stream")

    events = [
        json.loads(line[len("data: "):])
        for line in response.text.split("\n")
        if line.startswith("data: ")
    ]
    assert events[-1]["done"] is True
    assert events[-1]["interaction_id"]
    assert all(not e["done"] for e in events[:-1])
    assert "".join(e["chunk"] for e in events) == "Here are some tips..."


def test_chat_stream_provider_failure_maps_to_503(client, agent_id, api_gateway):
    api_gateway.error = ProviderUnavailable()

    response = client.post(f"/api/ai/sessions/{agent_id}/chat/stream", headers=USER_1, json={"message": "hi"})

    assert response.status_code == 503


def test_chat_stream_other_user_is_unauthorized(client, agent_id):
    response = client.post(f"/api/ai/sessions/{agent_id}/chat/stream", headers=USER_2, json={"message": "hi"})
    assert response.status_code == 401


def test_history_and_end_session(client, agent_id):
    client.post(f"/api/ai/sessions/{agent_id}/chat", headers=USER_1, json={"message": "First question"})

    history = client.get(f"/api/ai/sessions/{agent_id}/history", headers=USER_1)
    assert history.status_code == 200
    messages = history.json()["messages"]
    assert [m["role"] for m in messages] == ["user", "assistant"]
    assert messages[0]["content"] == "First question"

    ended = client.post(f"/api/ai/sessions/{agent_id}/end", headers=USER_1, json={"reason": "done"})
    assert ended.status_code == 200
    assert ended.json()["status"] == "ended"

    # Ended sessions refuse further chat
    after = client.post(f"/api/ai/sessions/{agent_id}/chat", headers=USER_1, json={"message": "again"})
    assert after.status_code == 401


def test_history_other_user_is_unauthorized(client, agent_id):
    response = client.get(f"/api/ai/sessions/{agent_id}/history", headers=USER_2)
    assert response.status_code == 401


# ============================================================================
# Admin interaction review and cache
# ============================================================================

def test_admin_rate_flag_and_cache_stats(client, agent_id):
    chat = client.post(f"/api/ai/sessions/{agent_id}/chat", headers=USER_1, json={"message": "hello"}).json()
    interaction_id = chat["interaction_id"]

    rated = client.post(f"/api/ai/admin/interactions/{interaction_id}/rate", headers=ADMIN, json={"quality_score": 0.9})
    assert rated.json()["quality_score"] == 0.9

    flagged = client.post(f"/api/ai/admin/interactions/{interaction_id}/flag", headers=ADMIN, json={"reason": "review"})
    assert flagged.json()["flagged"] is True

    stats = client.get("/api/ai/admin/cache/stats", headers=ADMIN).json()
    assert stats["healthy"] is True

    removed = client.post("/api/ai/admin/cache/invalidate", headers=ADMIN).json()
    assert removed["removed"] >= 1


def test_admin_rate_unknown_interaction(client):
    response = client.post("/api/ai/admin/interactions/missing/rate", headers=ADMIN, json={"quality_score": 0.5})
    assert response.status_code == 404


def test_admin_cache_warm_up_and_reset_stats(client):
    warmed = client.post("/api/ai/admin/cache/warm-up", headers=ADMIN, json={"entries": [
        {"task_type": "rcs", "prompt": "known prompt", "data": {"rcsScore": 80}, "cost": 0.01, "token_usage": 150},
        {"task_type": "questions", "prompt": "other prompt", "data": {"questions": []}},
    ]})
    assert warmed.status_code == 200
    assert warmed.json() == {"stored": 2}

    cache = client.app.state.cache
    assert cache.get("rcs", "known prompt").data == {"rcsScore": 80}
    assert cache.statistics()["total_hits"] == 1

    reset = client.post("/api/ai/admin/cache/reset-stats", headers=ADMIN).json()
    assert reset["total_hits"] == 0
    assert reset["total_misses"] == 0
    assert reset["total_entries"] == 2


def test_admin_cache_warm_up_requires_token(client):
    response = client.post("/api/ai/admin/cache/warm-up", json={"entries": []})
    assert response.status_code == 403


# ============================================================================
# Structured tasks
# ============================================================================

def rcs_body(score):
    return {
        "rcsScore": score,
        "confidence": "high",
        "breakdown": {
            "contentQuality": 28, "authenticity": 22, "completeness": 18,
            "verifiability": 13, "presentation": 9,
        },
        "strengths": ["Specific examples"],
        "weaknesses": [],
        "recommendations": ["Add dates"],
        "redFlags": [],
    }


def test_task_returns_validated_data(client, agent_id, api_gateway):
    api_gateway.content = "```json\n" + json.dumps(rcs_body(90)) + "\n```"

    response = client.post(
        f"/api/ai/sessions/{agent_id}/tasks/rcs", headers=USER_1, json={"payload": {"reference": "Great teammate"}}
    )

    assert response.status_code == 200
    body = response.json()
    assert set(body.keys()) == {"task_type", "data", "interaction_id", "tokens_used", "model_used"}
    assert body["task_type"] == "rcs"
    assert body["data"]["rcsScore"] == 90


def test_task_invalid_output_maps_to_422(client, agent_id, api_gateway):
    api_gateway.content = json.dumps(rcs_body(95))

    response = client.post(f"/api/ai/sessions/{agent_id}/tasks/rcs", headers=USER_1, json={"payload": {}})

    assert response.status_code == 422
    body = response.json()
    assert body["detail"] == "Invalid AI response"
    assert any("breakdown scores must sum" in e for e in body["errors"])


def test_task_unknown_type_is_bad_request(client, agent_id, api_gateway):
    response = client.post(f"/api/ai/sessions/{agent_id}/tasks/horoscope", headers=USER_1, json={"payload": {}})
    assert response.status_code == 400
    assert api_gateway.calls == []


def test_task_by_other_user_is_unauthorized(client, agent_id, api_gateway):
    response = client.post(f"/api/ai/sessions/{agent_id}/tasks/rcs", headers=USER_2, json={"payload": {}})
    assert response.status_code == 401
    assert api_gateway.calls == []


# ============================================================================
# Rate limiting
# ============================================================================

def test_chat_is_rate_limited_per_agent(client, agent_id, seeded_prompt):
    for _ in range(10):
        response = client.post(f"/api/ai/sessions/{agent_id}/chat", headers=USER_1, json={"message": "hello"})
        assert response.status_code == 200

    rejected = client.post(f"/api/ai/sessions/{agent_id}/chat", headers=USER_1, json={"message": "hello"})
    assert rejected.status_code == 429

    other = client.post("/api/ai/sessions", headers=USER_1, json={"session_type": "reference_coach"}).json()["agent_id"]
    response = client.post(f"/api/ai/sessions/{other}/chat", headers=USER_1, json={"message": "hello"})
    assert response.status_code == 200


def test_chat_stream_is_rate_limited_per_agent(client, agent_id):
    for _ in range(10):
        response = client.post(f"/api/ai/sessions/{agent_id}/chat/stream", headers=USER_1, json={"message": "hi"})
        assert response.status_code == 200

    rejected = client.post(f"/api/ai/sessions/{agent_id}/chat/stream", headers=USER_1, json={"message": "hi"})
    assert rejected.status_code == 429


def test_session_sweeper_runs_with_app(client):
    assert client.app.state.session_sweeper.is_running()
