"""Tests for the strict-mode advisor, capability cache and OpenRouter loader."""

import httpx
import pytest

from scrapegate.capabilities import (
    OPENROUTER_MODELS_URL,
    CapabilityCache,
    ModelCapabilities,
    OpenRouterCapabilityLoader,
    StrictModeAdvisor,
    parse_openrouter_models,
)
from scrapegate.tasks import DetachedTaskRunner

MODELS_PAYLOAD = {
    "data": [
        {
            "id": "openai/gpt-4o-mini",
            "context_length": 128000,
            "supported_parameters": ["temperature", "structured_outputs"],
            "top_provider": {"max_completion_tokens": 16384},
        },
        {
            "id": "anthropic/claude-3-haiku",
            "context_length": 200000,
            "supported_parameters": ["temperature"],
            "top_provider": {"max_completion_tokens": 4096},
        },
        {"name": "entry without id"},
    ]
}


def _mock_client(payload=MODELS_PAYLOAD, status=200):
    requests = []

    def handler(request):
        requests.append(request)
        return httpx.Response(status, json=payload)

    client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    return client, requests


class TestParseOpenRouterModels:
    """Tests for parse_openrouter_models."""

    def test_structured_outputs_flag(self):
        table = parse_openrouter_models(MODELS_PAYLOAD)
        assert table["openai/gpt-4o-mini"].supports_structured_outputs is True
        assert table["anthropic/claude-3-haiku"].supports_structured_outputs is False

    def test_keeps_limits_and_skips_entries_without_id(self):
        table = parse_openrouter_models(MODELS_PAYLOAD)
        assert len(table) == 2
        assert table["anthropic/claude-3-haiku"].context_length == 200000
        assert table["anthropic/claude-3-haiku"].max_completion_tokens == 4096

    def test_empty_payload(self):
        assert parse_openrouter_models({}) == {}
        assert parse_openrouter_models(None) == {}


class TestOpenRouterCapabilityLoader:
    """Tests for the HTTP loader."""

    @pytest.mark.asyncio
    async def test_loads_with_shared_client(self):
        client, requests = _mock_client()
        async with client:
            table = await OpenRouterCapabilityLoader(client=client).load()

        assert str(requests[0].url) == OPENROUTER_MODELS_URL
        assert "openai/gpt-4o-mini" in table

    @pytest.mark.asyncio
    async def test_http_error_raises(self):
        client, _ = _mock_client(payload={"error": "down"}, status=503)
        async with client:
            with pytest.raises(httpx.HTTPStatusError):
                await OpenRouterCapabilityLoader(client=client).load()


class TestCapabilityCache:
    """Tests for the TTL cache."""

    def test_expires_after_ttl(self):
        now = [100.0]
        cache = CapabilityCache(ttl_seconds=10, clock=lambda: now[0])
        cache.put("openrouter", {"m": ModelCapabilities(supports_structured_outputs=True)})

        assert cache.get("openrouter", "m").supports_structured_outputs is True
        assert cache.is_fresh("openrouter") is True

        now[0] = 111.0
        assert cache.get("openrouter", "m") is None
        assert cache.is_fresh("openrouter") is False


class TestStrictModeAdvisor:
    """Tests for the advice order: override, cache, static table."""

    def test_static_defaults(self):
        advisor = StrictModeAdvisor()
        assert advisor.strict_mode("openai", "gpt-4o") is True
        assert advisor.strict_mode("helicone", "gpt-4o") is True
        assert advisor.strict_mode("anthropic", "claude-3-haiku") is False
        assert advisor.strict_mode("openrouter", "openai/gpt-4o") is False
        assert advisor.strict_mode("ollama", "llama3") is False
        assert advisor.strict_mode("mystery", "model") is False

    def test_override_wins(self):
        advisor = StrictModeAdvisor()
        assert advisor.strict_mode("anthropic", "claude-3-haiku", override=True) is True

    def test_cache_beats_static_table(self):
        advisor = StrictModeAdvisor()
        advisor.cache.put("openrouter", parse_openrouter_models(MODELS_PAYLOAD))

        assert advisor.strict_mode("openrouter", "openai/gpt-4o-mini") is True
        assert advisor.max_output_tokens("openrouter", "anthropic/claude-3-haiku") == 4096

    def test_max_output_tokens_override(self):
        assert StrictModeAdvisor().max_output_tokens("openai", "gpt-4o", override=1000) == 1000

    @pytest.mark.asyncio
    async def test_miss_schedules_refresh(self):
        client, requests = _mock_client()
        tasks = DetachedTaskRunner(backoff_seconds=0.0)
        advisor = StrictModeAdvisor(
            loaders={"openrouter": OpenRouterCapabilityLoader(client=client)},
            tasks=tasks,
        )

        async with client:
            # First answer comes from the static table
            assert advisor.strict_mode("openrouter", "openai/gpt-4o-mini") is False
            advisor.strict_mode("openrouter", "openai/gpt-4o-mini")
            await tasks.drain()

        assert len(requests) == 1
        assert advisor.strict_mode("openrouter", "openai/gpt-4o-mini") is True

    @pytest.mark.asyncio
    async def test_refresh_without_loader(self):
        assert await StrictModeAdvisor().refresh("openai") is False
