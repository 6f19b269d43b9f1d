import asyncio
import json
from datetime import datetime, timezone

import httpx

from backend.intelligence import classifier
from backend.intelligence.models import FALLBACK_ANALYSIS, ConversationChunk, Message

RUNTIME = {
    "provider": "openai",
    "model": "gpt-4o-mini",
    "api_key": "sk-test",
    "api_base_url": "https://llm.test/v1",
    "temperature": 0.3,
    "max_tokens": 400,
    "timeout_seconds": 5.0,
}

GOOD_PAYLOAD = {
    "contextType": "daily_check_in",
    "emotionalIntensity": 4,
    "communicationPattern": "back-and-forth supportive",
    "temporalContext": "workday_evening",
    "relationshipDynamics": "warm and attentive",
    "tags": ["check-in", "work", "dinner"],
    "conflictLevel": 0,
    "intimacyLevel": 6,
    "supportLevel": 8,
}


def _chunk():
    ts = datetime(2025, 3, 1, 18, 0, tzinfo=timezone.utc)
    msg = Message(id=1, timestamp=ts, sender="sam", content="how was work?")
    return ConversationChunk(
        chunk_id="chunk_1_1",
        messages=[msg],
        start_time=ts,
        end_time=ts,
        participants=["sam"],
        chunk_text="[2025-03-01T18:00:00+00:00] sam: how was work?",
    )


def _assert_in_range(analysis):
    assert 1 <= analysis.emotional_intensity <= 10
    assert 0 <= analysis.conflict_level <= 5
    assert 1 <= analysis.intimacy_level <= 10
    assert 1 <= analysis.support_level <= 10
    assert analysis.context_type
    assert analysis.communication_pattern
    assert analysis.temporal_context
    assert analysis.relationship_dynamics
    assert isinstance(analysis.tags, list)


def test_classify_parses_valid_response(monkeypatch):
    async def _fake_call(prompt, runtime):
        assert "how was work?" in prompt
        return json.dumps(GOOD_PAYLOAD)

    monkeypatch.setattr(classifier, "_call_openai", _fake_call)

    analysis, used_fallback = asyncio.run(classifier.classify_with_source(_chunk(), RUNTIME))

    assert used_fallback is False
    assert analysis.context_type == "daily_check_in"
    assert analysis.support_level == 8
    assert analysis.tags == ["check-in", "work", "dinner"]


def test_classify_falls_back_when_call_raises(monkeypatch):
    async def _boom(prompt, runtime):
        raise httpx.ConnectError("connection refused")

    monkeypatch.setattr(classifier, "_call_openai", _boom)

    analysis, used_fallback = asyncio.run(classifier.classify_with_source(_chunk(), RUNTIME))

    assert used_fallback is True
    assert analysis == FALLBACK_ANALYSIS
    _assert_in_range(analysis)


def test_classify_falls_back_on_unparseable_text(monkeypatch):
    async def _prose(prompt, runtime):
        return "Sure! This conversation looks lovely."

    monkeypatch.setattr(classifier, "_call_openai", _prose)

    analysis = asyncio.run(classifier.classify(_chunk(), RUNTIME))

    assert analysis == FALLBACK_ANALYSIS


def test_classify_falls_back_on_out_of_range_levels(monkeypatch):
    bad = dict(GOOD_PAYLOAD, emotionalIntensity=14)

    async def _fake_call(prompt, runtime):
        return json.dumps(bad)

    monkeypatch.setattr(classifier, "_call_openai", _fake_call)

    analysis, used_fallback = asyncio.run(classifier.classify_with_source(_chunk(), RUNTIME))

    assert used_fallback is True
    assert analysis.emotional_intensity == 5


def test_classify_falls_back_on_missing_field(monkeypatch):
    partial = {k: v for k, v in GOOD_PAYLOAD.items() if k != "supportLevel"}

    async def _fake_call(prompt, runtime):
        return json.dumps(partial)

    monkeypatch.setattr(classifier, "_call_openai", _fake_call)

    assert asyncio.run(classifier.classify(_chunk(), RUNTIME)) == FALLBACK_ANALYSIS


def test_classify_without_api_key_uses_fallback_without_calling(monkeypatch):
    calls = []

    async def _fake_call(prompt, runtime):
        calls.append(prompt)
        return json.dumps(GOOD_PAYLOAD)

    monkeypatch.setattr(classifier, "_call_openai", _fake_call)

    analysis, used_fallback = asyncio.run(
        classifier.classify_with_source(_chunk(), dict(RUNTIME, api_key=""))
    )

    assert used_fallback is True
    assert calls == []
    _assert_in_range(analysis)


def test_parse_analysis_accepts_fenced_json_with_snake_case_keys():
    text = "```json\n" + json.dumps(
        {
            "context_type": "playful_banter",
            "emotional_intensity": 7,
            "communication_pattern": "playful teasing exchange",
            "temporal_context": "weekend_morning",
            "relationship_dynamics": "light and affectionate",
            "tags": ["fun", "Fun", "  weekend  "],
            "conflict_level": 1,
            "intimacy_level": 7,
            "support_level": 6,
        }
    ) + "\n```"

    analysis = classifier.parse_analysis(text)

    assert analysis is not None
    assert analysis.context_type == "playful_banter"
    assert analysis.tags == ["fun", "weekend"]


def test_parse_analysis_rejects_boolean_levels():
    payload = dict(GOOD_PAYLOAD, conflictLevel=True)

    assert classifier.parse_analysis(json.dumps(payload)) is None


def test_openai_call_sends_low_temperature_json_request(monkeypatch):
    seen = {}

    def handler(request: httpx.Request) -> httpx.Response:
        seen["url"] = str(request.url)
        seen["auth"] = request.headers.get("authorization")
        seen["body"] = json.loads(request.content)
        return httpx.Response(
            200,
            json={"choices": [{"message": {"content": json.dumps(GOOD_PAYLOAD)}}]},
        )

    real_client = httpx.AsyncClient

    def _client(*args, **kwargs):
        kwargs["transport"] = httpx.MockTransport(handler)
        return real_client(*args, **kwargs)

    monkeypatch.setattr(classifier.httpx, "AsyncClient", _client)

    analysis, used_fallback = asyncio.run(classifier.classify_with_source(_chunk(), RUNTIME))

    assert used_fallback is False
    assert analysis.context_type == "daily_check_in"
    assert seen["url"] == "https://llm.test/v1/chat/completions"
    assert seen["auth"] == "Bearer sk-test"
    assert seen["body"]["temperature"] == 0.3
    assert seen["body"]["response_format"] == {"type": "json_object"}


def test_http_error_status_falls_back(monkeypatch):
    real_client = httpx.AsyncClient

    def _client(*args, **kwargs):
        kwargs["transport"] = httpx.MockTransport(lambda request: httpx.Response(429, json={"error": "rate"}))
        return real_client(*args, **kwargs)

    monkeypatch.setattr(classifier.httpx, "AsyncClient", _client)

    analysis, used_fallback = asyncio.run(classifier.classify_with_source(_chunk(), RUNTIME))

    assert used_fallback is True
    assert analysis == FALLBACK_ANALYSIS


def test_resolve_runtime_reads_env_key(monkeypatch):
    monkeypatch.setenv("ANTHROPIC_API_KEY", "ak-env")
    monkeypatch.delenv("ANTHROPIC_BASE_URL", raising=False)

    runtime = classifier.resolve_runtime({"provider": "anthropic", "model": "", "api_key": ""})

    assert runtime["provider"] == "anthropic"
    assert runtime["api_key"] == "ak-env"
    assert runtime["model"] == "claude-3-5-haiku-latest"
    assert runtime["api_base_url"] == "https://api.anthropic.com/v1"


def test_resolve_runtime_replaces_non_numeric_settings_with_defaults(monkeypatch):
    monkeypatch.delenv("OPENAI_API_KEY", raising=False)

    runtime = classifier.resolve_runtime(
        {"provider": "openai", "api_key": "sk-test", "temperature": "low", "max_tokens": "lots", "timeout_seconds": None}
    )

    assert runtime["temperature"] == 0.3
    assert runtime["max_tokens"] == 400
    assert runtime["timeout_seconds"] == 30.0


def test_classify_falls_back_when_runtime_cannot_be_resolved(monkeypatch):
    def _broken_config(classifier_cfg=None):
        raise RuntimeError("config unreadable")

    monkeypatch.setattr(classifier, "resolve_runtime", _broken_config)

    analysis, used_fallback = asyncio.run(classifier.classify_with_source(_chunk()))

    assert used_fallback is True
    assert analysis == FALLBACK_ANALYSIS
