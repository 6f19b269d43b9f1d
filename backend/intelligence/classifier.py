from __future__ import annotations

import json
import logging
import os
import re
from typing import Any, Optional

import httpx

from backend.config import load_config
from backend.intelligence.models import ChunkAnalysis, ConversationChunk, fallback_analysis

logger = logging.getLogger(__name__)

SUPPORTED_PROVIDERS = {"openai", "anthropic", "ollama"}

_DEFAULT_MODELS = {
    "openai": "gpt-4o-mini",
    "anthropic": "claude-3-5-haiku-latest",
    "ollama": "llama3.2:3b",
}
_DEFAULT_BASE_URLS = {
    "openai": "https://api.openai.com/v1",
    "anthropic": "https://api.anthropic.com/v1",
    "ollama": "http://127.0.0.1:11434",
}

_FENCE_RE = re.compile(r"^```(?:json)?\s*|\s*```$", re.IGNORECASE)


def _as_number(value: Any, default: float, cast=float):
    try:
        return cast(value)
    except (TypeError, ValueError):
        logger.warning(f"Invalid numeric config value {value!r}; using {default}")
        return cast(default)


def _normalize_provider(value: Any) -> str:
    provider = str(value or "").strip().lower()
    return provider if provider in SUPPORTED_PROVIDERS else "openai"


def resolve_runtime(classifier_cfg: Optional[dict] = None) -> dict:
    if classifier_cfg is None:
        cfg = load_config()
        classifier_cfg = cfg.get("classifier", {}) if isinstance(cfg.get("classifier"), dict) else {}
    provider = _normalize_provider(classifier_cfg.get("provider"))

    api_key = str(classifier_cfg.get("api_key") or "").strip()
    if not api_key:
        if provider == "openai":
            api_key = os.environ.get("OPENAI_API_KEY", "")
        elif provider == "anthropic":
            api_key = os.environ.get("ANTHROPIC_API_KEY", "")
        elif provider == "ollama":
            api_key = os.environ.get("OLLAMA_API_KEY", "")

    model = str(classifier_cfg.get("model") or "").strip() or _DEFAULT_MODELS[provider]

    api_base_url = str(classifier_cfg.get("api_base_url") or "").strip()
    if not api_base_url:
        if provider == "openai":
            api_base_url = os.environ.get("OPENAI_BASE_URL", "")
        elif provider == "anthropic":
            api_base_url = os.environ.get("ANTHROPIC_BASE_URL", "")
        elif provider == "ollama":
            api_base_url = os.environ.get("OLLAMA_BASE_URL", "")
    api_base_url = (api_base_url or _DEFAULT_BASE_URLS[provider]).rstrip("/")

    return {
        "provider": provider,
        "model": model,
        "api_key": api_key,
        "api_base_url": api_base_url,
        "temperature": _as_number(classifier_cfg.get("temperature", 0.3), 0.3),
        "max_tokens": _as_number(classifier_cfg.get("max_tokens", 400), 400, int),
        "timeout_seconds": _as_number(classifier_cfg.get("timeout_seconds", 30), 30.0),
    }


def runtime_can_classify(runtime: dict) -> bool:
    provider = runtime.get("provider")
    if provider in {"openai", "anthropic"}:
        return bool(runtime.get("model")) and bool(runtime.get("api_key"))
    if provider == "ollama":
        return bool(runtime.get("model")) and bool(runtime.get("api_base_url"))
    return False


def build_prompt(chunk: ConversationChunk) -> str:
    return f"""You are analyzing a text-message conversation between two partners in a romantic relationship. Analyze this conversation chunk with relationship intelligence.

Conversation:
{chunk.chunk_text}

Time Context: {chunk.start_time.isoformat()} to {chunk.end_time.isoformat()}

Provide analysis in this EXACT JSON format (no additional text):
{{
  "contextType": "brief label like supportive_celebration, conflict_resolution, daily_check_in, intimate_planning, playful_banter, emotional_support, future_planning",
  "emotionalIntensity": number 1-10,
  "communicationPattern": "description like back-and-forth supportive, one-sided venting, playful teasing exchange, problem-solving dialogue",
  "temporalContext": "description like workday_evening, weekend_morning, late_night_intimate, busy_day_check_in",
  "relationshipDynamics": "description of the relationship dynamic shown in this conversation",
  "tags": ["tag1", "tag2", "tag3"],
  "conflictLevel": number 0-5,
  "intimacyLevel": number 1-10,
  "supportLevel": number 1-10
}}

Focus on what the exchange reveals about their connection, communication patterns, emotional state and relationship health."""


async def _call_openai(prompt: str, runtime: dict) -> str:
    headers = {"Content-Type": "application/json"}
    if runtime.get("api_key"):
        headers["Authorization"] = f"Bearer {runtime.get('api_key')}"
    body = {
        "model": runtime.get("model"),
        "temperature": runtime.get("temperature", 0.3),
        "max_tokens": runtime.get("max_tokens", 400),
        "response_format": {"type": "json_object"},
        "messages": [
            {"role": "system", "content": "Return valid JSON only."},
            {"role": "user", "content": prompt},
        ],
    }
    async with httpx.AsyncClient(timeout=runtime.get("timeout_seconds", 30.0)) as client:
        res = await client.post(f"{runtime.get('api_base_url')}/chat/completions", headers=headers, json=body)
        if res.status_code >= 400:
            raise RuntimeError(f"OpenAI request failed ({res.status_code})")
        data = res.json()
    choices = data.get("choices") if isinstance(data, dict) else None
    if not isinstance(choices, list) or not choices or not isinstance(choices[0], dict):
        return ""
    message = choices[0].get("message")
    return str(message.get("content") or "") if isinstance(message, dict) else ""


async def _call_anthropic(prompt: str, runtime: dict) -> str:
    headers = {
        "x-api-key": runtime.get("api_key") or "",
        "anthropic-version": "2023-06-01",
        "Content-Type": "application/json",
    }
    body = {
        "model": runtime.get("model"),
        "max_tokens": runtime.get("max_tokens", 400),
        "temperature": runtime.get("temperature", 0.3),
        "system": "Return valid JSON only.",
        "messages": [{"role": "user", "content": prompt}],
    }
    async with httpx.AsyncClient(timeout=runtime.get("timeout_seconds", 30.0)) as client:
        res = await client.post(f"{runtime.get('api_base_url')}/messages", headers=headers, json=body)
        if res.status_code >= 400:
            raise RuntimeError(f"Anthropic request failed ({res.status_code})")
        data = res.json()
    content = data.get("content", []) if isinstance(data, dict) else []
    parts = []
    if isinstance(content, list):
        for block in content:
            if isinstance(block, dict) and block.get("type") == "text":
                parts.append(str(block.get("text") or ""))
    return "\n".join(parts)


async def _call_ollama(prompt: str, runtime: dict) -> str:
    headers = {"Content-Type": "application/json"}
    if runtime.get("api_key"):
        headers["Authorization"] = f"Bearer {runtime.get('api_key')}"
    body = {
        "model": runtime.get("model"),
        "prompt": f"Return valid JSON only.\n\n{prompt}",
        "stream": False,
        "format": "json",
        "options": {"temperature": runtime.get("temperature", 0.3)},
    }
    async with httpx.AsyncClient(timeout=max(60.0, runtime.get("timeout_seconds", 30.0))) as client:
        res = await client.post(f"{runtime.get('api_base_url')}/api/generate", headers=headers, json=body)
        if res.status_code >= 400:
            raise RuntimeError(f"Ollama request failed ({res.status_code})")
        data = res.json()
    return str(data.get("response") or "") if isinstance(data, dict) else ""


def parse_analysis(text: str) -> Optional[ChunkAnalysis]:
    """Parse classifier output into a validated ChunkAnalysis, or None."""
    raw = _FENCE_RE.sub("", str(text or "").strip())
    if not raw:
        return None
    try:
        payload = json.loads(raw)
    except ValueError:
        start = raw.find("{")
        end = raw.rfind("}")
        if start < 0 or end <= start:
            return None
        try:
            payload = json.loads(raw[start:end + 1])
        except ValueError:
            return None
    return ChunkAnalysis.from_payload(payload)


async def classify_with_source(
    chunk: ConversationChunk,
    runtime: Optional[dict] = None,
) -> tuple[ChunkAnalysis, bool]:
    """Classify a chunk; the flag is True when the fallback analysis was used."""
    try:
        runtime = runtime or resolve_runtime()
    except Exception as e:
        logger.warning(f"Classifier runtime could not be resolved; using fallback for {chunk.chunk_id}: {e}")
        return fallback_analysis(), True
    if not runtime_can_classify(runtime):
        logger.warning(f"Classifier runtime not configured ({runtime.get('provider')}); using fallback for {chunk.chunk_id}")
        return fallback_analysis(), True

    prompt = build_prompt(chunk)
    provider = runtime.get("provider")
    try:
        if provider == "anthropic":
            text = await _call_anthropic(prompt, runtime)
        elif provider == "ollama":
            text = await _call_ollama(prompt, runtime)
        else:
            text = await _call_openai(prompt, runtime)
    except Exception as e:
        logger.warning(f"Classifier call failed for {chunk.chunk_id}: {e}")
        return fallback_analysis(), True

    analysis = parse_analysis(text)
    if analysis is None:
        logger.warning(f"Unparseable classifier response for {chunk.chunk_id}: {str(text)[:200]!r}")
        return fallback_analysis(), True
    return analysis, False


async def classify(chunk: ConversationChunk, runtime: Optional[dict] = None) -> ChunkAnalysis:
    analysis, _ = await classify_with_source(chunk, runtime)
    return analysis
