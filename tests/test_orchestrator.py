"""Tests for ExtractionOrchestrator (single-page extraction over a chain)."""

import asyncio
import logging

import pytest

from conftest import FakeEngine
from scrapegate.billing import LedgerBillingGate
from scrapegate.classifier import SANITIZED_MESSAGES, ErrorCategory
from scrapegate.config import DEFAULT_SNAPSHOT
from scrapegate.exceptions import (
    ClassifiedError,
    FetchError,
    InsufficientBalanceError,
    NoProvidersConfiguredError,
    ProviderError,
)
from scrapegate.models import (
    ConfigChain,
    ExtractContext,
    FallbackChainEntry,
    LLMConfig,
    PageOutcome,
)
from scrapegate.orchestrator import ExtractionOrchestrator
from scrapegate.resolver import ConfigChainResolver
from scrapegate.storage import InMemoryCredentialStore

URL = "https://example.com/about"


@pytest.fixture
def orchestrator(resolver, engine, billing, tasks):
    return ExtractionOrchestrator(resolver, engine, billing, tasks=tasks, fallback_delay=0)


class TestSuccess:
    """Tests for the first-candidate success path."""

    @pytest.mark.asyncio
    async def test_first_candidate_wins(self, orchestrator, engine, schema, ctx):
        engine.script("openai", "gpt-4o-mini", {"title": "About", "url": "/contact", "emails": []})

        output = await orchestrator.extract(URL, schema, ctx)

        assert engine.calls == [("openai", "gpt-4o-mini", URL)]
        assert output.data == {"title": "About", "url": "https://example.com/contact", "emails": []}
        assert output.metadata.provider == "openai"
        assert output.metadata.attempts == 1
        assert output.usage.input_tokens == 1000
        assert output.usage.is_byok is False

    @pytest.mark.asyncio
    async def test_charges_usage(self, orchestrator, billing, tasks, schema, ctx):
        output = await orchestrator.extract(URL, schema, ctx)
        await tasks.drain()

        records = billing.usage_records
        assert len(records) == 1
        assert records[0].status == "success"
        assert records[0].job_type == "extract"
        assert records[0].schema_id == schema.schema_id
        assert output.usage.cost_usd == pytest.approx(records[0].total_cost_usd)
        assert await billing.get_available_balance("user-1") == pytest.approx(10.0 - output.usage.cost_usd)

    @pytest.mark.asyncio
    async def test_charge_failure_still_returns_data(self, resolver, engine, tasks, schema, ctx):
        class FailingBilling(LedgerBillingGate):
            async def charge_for_usage(self, details):
                raise RuntimeError("ledger offline")

        orchestrator = ExtractionOrchestrator(resolver, engine, FailingBilling(tasks=tasks), fallback_delay=0)
        output = await orchestrator.extract(URL, schema, ctx)

        assert output.data["title"] == "Example"
        assert output.usage.cost_usd > 0


class TestFallback:
    """Tests for walking the chain."""

    @pytest.mark.asyncio
    async def test_context_length_falls_back_to_second(self, orchestrator, engine, schema, ctx, caplog):
        caplog.set_level(logging.INFO, logger="scrapegate.orchestrator")
        engine.script("openai", "gpt-4o-mini", RuntimeError("maximum context length exceeded"))
        engine.script("anthropic", "claude-3-haiku", {"title": "From Claude"})

        output = await orchestrator.extract(URL, schema, ctx)

        assert [call[:2] for call in engine.calls] == [
            ("openai", "gpt-4o-mini"),
            ("anthropic", "claude-3-haiku"),
        ]
        assert output.data["title"] == "From Claude"
        assert output.metadata.provider == "anthropic"
        assert output.metadata.attempts == 2
        transitions = [r for r in caplog.records if r.getMessage().startswith("Falling back from")]
        assert len(transitions) == 1
        assert "openai/gpt-4o-mini to anthropic/claude-3-haiku" in transitions[0].getMessage()

    @pytest.mark.asyncio
    async def test_delay_only_between_candidates(self, resolver, engine, billing, schema, ctx, monkeypatch):
        delays = []
        real_sleep = asyncio.sleep

        async def recording_sleep(delay, *args, **kwargs):
            delays.append(delay)
            await real_sleep(0)

        monkeypatch.setattr(asyncio, "sleep", recording_sleep)
        orchestrator = ExtractionOrchestrator(resolver, engine, billing, fallback_delay=0.25)
        chain = ConfigChain(
            configs=tuple(
                LLMConfig(provider=provider, model="m", api_key="sk")
                for provider in ("openai", "anthropic", "openrouter")
            )
        )
        for provider in ("openai", "anthropic", "openrouter"):
            engine.script(provider, "m", RuntimeError("status: 429"))

        with pytest.raises(ClassifiedError):
            await orchestrator.extract(URL, schema, ctx, chain=chain)

        assert len(engine.calls) == 3
        assert [d for d in delays if d] == [0.25, 0.25]

    @pytest.mark.asyncio
    async def test_no_delay_after_success(self, resolver, engine, billing, schema, ctx, monkeypatch):
        delays = []
        real_sleep = asyncio.sleep

        async def recording_sleep(delay, *args, **kwargs):
            delays.append(delay)
            await real_sleep(0)

        monkeypatch.setattr(asyncio, "sleep", recording_sleep)
        orchestrator = ExtractionOrchestrator(resolver, engine, billing, fallback_delay=0.25)

        await orchestrator.extract(URL, schema, ctx)

        assert [d for d in delays if d] == []

    @pytest.mark.asyncio
    async def test_error_outcome_is_treated_as_failure(self, orchestrator, engine, schema, ctx):
        engine.script(
            "openai",
            "gpt-4o-mini",
            PageOutcome(url=URL, error=ProviderError("Overloaded", status_code=529)),
        )
        output = await orchestrator.extract(URL, schema, ctx)
        assert output.metadata.provider == "anthropic"

    @pytest.mark.asyncio
    async def test_invalid_key_stops_immediately(self, orchestrator, engine, schema, ctx):
        engine.script("openai", "gpt-4o-mini", ProviderError("Invalid API key", status_code=401))

        with pytest.raises(ClassifiedError) as excinfo:
            await orchestrator.extract(URL, schema, ctx)

        assert excinfo.value.category == ErrorCategory.INVALID_KEY
        assert len(engine.calls) == 1

    @pytest.mark.asyncio
    async def test_fetch_error_stops_immediately(self, orchestrator, engine, schema, ctx):
        engine.script("openai", "gpt-4o-mini", FetchError("Not Found", url=URL, status_code=404))

        with pytest.raises(ClassifiedError) as excinfo:
            await orchestrator.extract(URL, schema, ctx)

        assert excinfo.value.category == ErrorCategory.FETCH_ERROR
        assert len(engine.calls) == 1

    @pytest.mark.asyncio
    async def test_each_candidate_called_at_most_once(self, orchestrator, engine, schema, ctx):
        engine.script("openai", "gpt-4o-mini", RuntimeError("status: 429"))
        engine.script("anthropic", "claude-3-haiku", RuntimeError("status: 503"))

        with pytest.raises(ClassifiedError) as excinfo:
            await orchestrator.extract(URL, schema, ctx)

        assert len(engine.calls) == 2
        assert excinfo.value.category == ErrorCategory.PROVIDER_ERROR
        assert excinfo.value.provider == "anthropic"

    @pytest.mark.asyncio
    async def test_cancellation_propagates(self, orchestrator, engine, schema, ctx):
        engine.script("openai", "gpt-4o-mini", asyncio.CancelledError())

        with pytest.raises(asyncio.CancelledError):
            await orchestrator.extract(URL, schema, ctx)
        assert len(engine.calls) == 1


class TestExhaustion:
    """Tests for what happens when every candidate fails."""

    @pytest.mark.asyncio
    async def test_records_failed_usage(self, orchestrator, engine, billing, schema, ctx):
        engine.script("openai", "gpt-4o-mini", RuntimeError("Rate limit reached"))
        engine.script("anthropic", "claude-3-haiku", RuntimeError("Rate limit reached"))

        with pytest.raises(ClassifiedError):
            await orchestrator.extract(URL, schema, ctx)

        records = billing.usage_records
        assert len(records) == 1
        record = records[0]
        assert record.status == "failed"
        assert record.error_code == "rate_limit"
        assert record.pages_attempted == 2
        assert record.error_message == SANITIZED_MESSAGES[ErrorCategory.RATE_LIMIT]

    @pytest.mark.asyncio
    async def test_byok_sees_raw_provider_text(self, orchestrator, engine, billing, schema):
        override = LLMConfig(provider="openai", model="gpt-4o", api_key="sk-own")
        engine.script("openai", "gpt-4o", RuntimeError("Rate limit reached for org-123"))
        ctx = ExtractContext(user_id="user-1", byok_allowed=True)

        with pytest.raises(ClassifiedError) as excinfo:
            await orchestrator.extract(URL, schema, ctx, override)

        assert str(excinfo.value) == "Rate limit reached for org-123"
        assert billing.usage_records[0].error_message == "Rate limit reached for org-123"
        assert billing.usage_records[0].is_byok is True

    @pytest.mark.asyncio
    async def test_empty_chain(self, engine, billing, schema, ctx):
        orchestrator = ExtractionOrchestrator(
            ConfigChainResolver(InMemoryCredentialStore()), engine, billing, fallback_delay=0
        )
        with pytest.raises(NoProvidersConfiguredError):
            await orchestrator.extract(URL, schema, ctx)
        assert engine.calls == []


class TestBalance:
    """Tests for pre-flight balance checks and budget skipping."""

    @pytest.fixture
    def premium_chain(self):
        return ConfigChain(configs=(
            LLMConfig(provider="openai", model="gpt-4", api_key="sk-sys"),
            LLMConfig(provider="anthropic", model="claude-3-haiku", api_key="sk-sys"),
        ))

    @pytest.mark.asyncio
    async def test_insufficient_balance_before_any_call(self, resolver, engine, schema):
        billing = LedgerBillingGate(DEFAULT_SNAPSHOT, balances={"poor": 0.0})
        orchestrator = ExtractionOrchestrator(resolver, engine, billing, fallback_delay=0)

        with pytest.raises(InsufficientBalanceError):
            await orchestrator.extract(URL, schema, ExtractContext(user_id="poor", tier="pro"))
        assert engine.calls == []

    @pytest.mark.asyncio
    async def test_free_tier_skips_balance_check(self, resolver, engine, schema):
        billing = LedgerBillingGate(DEFAULT_SNAPSHOT, balances={"poor": 0.0})
        orchestrator = ExtractionOrchestrator(resolver, engine, billing, fallback_delay=0)

        output = await orchestrator.extract(URL, schema, ExtractContext(user_id="poor", tier="free"))
        assert output.metadata.attempts == 1

    @pytest.mark.asyncio
    async def test_premium_skips_over_budget_candidates(self, resolver, engine, schema, premium_chain):
        billing = LedgerBillingGate(DEFAULT_SNAPSHOT, balances={"u": 0.01})
        orchestrator = ExtractionOrchestrator(resolver, engine, billing, fallback_delay=0)
        ctx = ExtractContext(user_id="u", tier="pro", models_premium=True)

        output = await orchestrator.extract(URL, schema, ctx, chain=premium_chain)

        assert [call[:2] for call in engine.calls] == [("anthropic", "claude-3-haiku")]
        assert len(output.metadata.budget_skips) == 1
        skip = output.metadata.budget_skips[0]
        assert (skip.provider, skip.model) == ("openai", "gpt-4")
        assert skip.available_usd == pytest.approx(0.01)

    @pytest.mark.asyncio
    async def test_premium_all_skipped(self, resolver, engine, schema, premium_chain):
        billing = LedgerBillingGate(DEFAULT_SNAPSHOT, balances={"u": 0.0001})
        orchestrator = ExtractionOrchestrator(resolver, engine, billing, fallback_delay=0)
        ctx = ExtractContext(user_id="u", tier="pro", models_premium=True)

        with pytest.raises(InsufficientBalanceError):
            await orchestrator.extract(URL, schema, ctx, chain=premium_chain)
        assert engine.calls == []

    @pytest.mark.asyncio
    async def test_byok_chain_not_balance_checked(self, resolver, engine, schema):
        billing = LedgerBillingGate(DEFAULT_SNAPSHOT, balances={"poor": 0.0})
        orchestrator = ExtractionOrchestrator(resolver, engine, billing, fallback_delay=0)
        ctx = ExtractContext(user_id="poor", tier="pro", byok_allowed=True)
        override = LLMConfig(provider="openai", model="gpt-4o", api_key="sk-own")

        output = await orchestrator.extract(URL, schema, ctx, override)
        assert output.usage.is_byok is True
        assert await billing.get_available_balance("poor") == 0.0


class TestUserChain:
    """A user chain resolved through the orchestrator."""

    @pytest.mark.asyncio
    async def test_user_chain_with_user_keys(self, billing, schema):
        store = InMemoryCredentialStore()
        store.set_user_chain("user-1", [FallbackChainEntry(provider="ollama", model="llama3")])
        engine = FakeEngine()
        orchestrator = ExtractionOrchestrator(ConfigChainResolver(store), engine, billing, fallback_delay=0)
        ctx = ExtractContext(user_id="user-1", byok_allowed=True, custom_models_allowed=True)

        output = await orchestrator.extract(URL, schema, ctx)
        assert output.metadata.provider == "ollama"
        assert output.usage.is_byok is True
