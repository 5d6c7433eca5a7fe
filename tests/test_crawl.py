"""Tests for CrawlOrchestrator and DepthTracker."""

import pytest

from conftest import page
from scrapegate.billing import LedgerBillingGate
from scrapegate.classifier import ErrorCategory
from scrapegate.config import DEFAULT_SNAPSHOT
from scrapegate.crawl import CrawlOrchestrator, DepthTracker
from scrapegate.exceptions import (
    ClassifiedError,
    ExtractionError,
    FetchError,
    InsufficientBalanceError,
    NoProvidersConfiguredError,
    ProviderError,
)
from scrapegate.models import (
    ConfigChain,
    CrawlOptions,
    CrawlRequest,
    ExtractContext,
    LLMConfig,
)
from scrapegate.resolver import ConfigChainResolver
from scrapegate.storage import InMemoryCredentialStore

SEED = "https://shop.example.com/"


@pytest.fixture
def chain():
    return ConfigChain(configs=(LLMConfig(provider="openai", model="gpt-4o-mini", api_key="sk-sys"),))


@pytest.fixture
def request_(schema, chain):
    return CrawlRequest(url=SEED, extraction_schema=schema, chain=chain)


@pytest.fixture
def crawler(resolver, engine, billing, tasks):
    return CrawlOrchestrator(resolver, engine, billing, tasks=tasks)


class TestDepthTracker:
    """Tests for depth/parent assignment."""

    def test_seeds_are_depth_zero(self):
        tracker = DepthTracker(["https://a.com/", "https://b.com/start"])
        assert tracker.assign("https://a.com") == (0, None)
        assert tracker.assign("https://b.com/start/") == (0, None)

    def test_others_are_depth_one_under_first_seed(self):
        tracker = DepthTracker(["https://a.com/", "https://b.com/start"])
        assert tracker.assign("https://b.com/start/deep/page") == (1, "https://a.com/")

    def test_assignment_is_fixed_at_first_sighting(self):
        tracker = DepthTracker(["https://a.com/"])
        first = tracker.assign("https://a.com/x#top")
        again = tracker.assign("https://A.com/x")
        assert first == again == (1, "https://a.com/")
        assert len(tracker) == 1


class TestCrawlResults:
    """Tests for the pages a crawl returns."""

    @pytest.mark.asyncio
    async def test_collects_pages_in_order(self, crawler, engine, request_, ctx):
        engine.pages = [
            page(SEED, {"title": "Home", "url": "/"}),
            page(SEED + "a", {"title": "A", "url": "a"}),
            page(SEED + "b", {"title": "B", "url": "//cdn.example.com/b"}),
        ]

        result = await crawler.crawl(request_, ctx)

        assert [p.url for p in result.pages] == [SEED, SEED + "a", SEED + "b"]
        assert [p.depth for p in result.pages] == [0, 1, 1]
        assert result.pages[0].parent_url is None
        assert result.pages[1].parent_url == SEED
        assert result.pages[1].data["url"] == "https://shop.example.com/a"
        assert result.pages[2].data["url"] == "https://cdn.example.com/b"
        assert result.page_count == 3
        assert result.failed_count == 0
        assert result.stopped_early is False
        assert result.total_input_tokens == 3000
        assert engine.closed is True

    @pytest.mark.asyncio
    async def test_failed_pages_are_kept_and_classified(self, crawler, engine, request_, ctx):
        engine.pages = [
            page(SEED, {"title": "Home"}),
            page(SEED + "gone", error=FetchError("Not Found", status_code=404), input_tokens=0, output_tokens=0),
        ]

        result = await crawler.crawl(request_, ctx)

        failed = result.pages[1]
        assert failed.success is False
        assert failed.error_category == ErrorCategory.FETCH_ERROR.value
        assert failed.error_details == ""
        assert failed.cost_usd == 0.0
        assert result.page_count == 1
        assert result.failed_count == 1

    @pytest.mark.asyncio
    async def test_byok_pages_carry_raw_details(self, crawler, engine, schema, ctx):
        byok_chain = ConfigChain(
            configs=(LLMConfig(provider="openai", model="gpt-4o", api_key="sk-own"),),
            is_byok=True,
        )
        engine.pages = [
            page(SEED, {"title": "Home"}),
            page(SEED + "busy", error=RuntimeError("Overloaded: try later")),
        ]
        request = CrawlRequest(url=SEED, extraction_schema=schema, chain=byok_chain)

        result = await crawler.crawl(request, ctx)

        assert result.pages[1].error == "Overloaded: try later"
        assert result.pages[1].error_details == "Overloaded: try later"
        assert result.is_byok is True

    @pytest.mark.asyncio
    async def test_failed_pages_are_not_priced(self, crawler, engine, request_, ctx):
        engine.pages = [
            page(SEED, {"title": "Home"}),
            page(SEED + "junk", error=ExtractionError("not json"), input_tokens=50_000, output_tokens=5_000),
        ]

        result = await crawler.crawl(request_, ctx)

        junk = result.pages[1]
        assert junk.error_category == ErrorCategory.INVALID_RESPONSE.value
        assert junk.cost_usd == 0.0
        assert junk.input_tokens == 50_000
        assert result.total_input_tokens == 1000
        assert result.total_output_tokens == 200
        assert result.total_cost_usd == pytest.approx(result.pages[0].cost_usd)

    @pytest.mark.asyncio
    async def test_passes_seeds_and_options(self, crawler, engine, schema, chain, ctx):
        options = CrawlOptions(max_pages=5, max_depth=2, concurrency=2)
        request = CrawlRequest(
            url=SEED,
            extraction_schema=schema,
            seed_urls=(SEED, "https://shop.example.com/sale"),
            options=options,
            chain=chain,
        )
        engine.pages = [page("https://shop.example.com/sale", {"title": "Sale"})]

        result = await crawler.crawl(request, ctx)

        call = engine.stream_calls[0]
        assert call["seeds"] == [SEED, "https://shop.example.com/sale"]
        assert call["options"] == options
        assert result.pages[0].depth == 0

    @pytest.mark.asyncio
    async def test_resolves_chain_when_not_given(self, crawler, engine, schema, ctx):
        engine.pages = [page(SEED, {"title": "Home"})]
        request = CrawlRequest(url=SEED, extraction_schema=schema)

        result = await crawler.crawl(request, ctx)

        assert engine.stream_calls[0]["provider"] == "openai"
        assert result.provider == "openai"
        assert result.model == "gpt-4o-mini"

    @pytest.mark.asyncio
    async def test_empty_chain(self, engine, billing, schema, ctx):
        crawler = CrawlOrchestrator(ConfigChainResolver(InMemoryCredentialStore()), engine, billing)
        with pytest.raises(NoProvidersConfiguredError):
            await crawler.crawl(CrawlRequest(url=SEED, extraction_schema=schema), ctx)
        assert engine.stream_calls == []

    @pytest.mark.asyncio
    async def test_empty_chain_on_request(self, crawler, engine, schema, ctx):
        request = CrawlRequest(url=SEED, extraction_schema=schema, chain=ConfigChain(configs=()))
        with pytest.raises(NoProvidersConfiguredError):
            await crawler.crawl(request, ctx)
        assert engine.stream_calls == []


class TestCallbacks:
    """Tests for on_result and on_urls_queued."""

    @pytest.mark.asyncio
    async def test_sync_callback(self, crawler, engine, request_, ctx):
        engine.pages = [page(SEED, {"title": "Home"}), page(SEED + "a", {"title": "A"})]
        seen = []

        await crawler.crawl(request_, ctx, on_result=lambda p: seen.append(p.url))

        assert seen == [SEED, SEED + "a"]

    @pytest.mark.asyncio
    async def test_async_callbacks(self, crawler, engine, request_, ctx):
        engine.pages = [page(SEED, {"title": "Home"})]
        seen = []
        queued = []

        async def on_result(p):
            seen.append(p.url)

        async def on_urls_queued(count):
            queued.append(count)

        await crawler.crawl(request_, ctx, on_result=on_result, on_urls_queued=on_urls_queued)

        assert seen == [SEED]
        assert queued == [1]

    @pytest.mark.asyncio
    async def test_failing_queue_callback_does_not_stop_crawl(self, crawler, engine, request_, ctx):
        engine.pages = [page(SEED, {"title": "Home"})]

        def on_urls_queued(count):
            raise RuntimeError("progress sink down")

        result = await crawler.crawl(request_, ctx, on_urls_queued=on_urls_queued)
        assert result.page_count == 1

    @pytest.mark.asyncio
    async def test_failing_result_callback_stops_crawl(self, crawler, engine, request_, ctx):
        engine.pages = [page(SEED + str(i), {"title": str(i)}) for i in range(5)]
        engine.in_flight = 3

        def on_result(p):
            raise ValueError("client went away")

        result = await crawler.crawl(request_, ctx, on_result=on_result)

        assert result.stopped_early is True
        assert result.stop_reason == "callback_error"
        assert len(result.pages) == 1
        assert engine.closed is True


class TestBalanceCancellation:
    """Tests for stopping a crawl when the balance runs out."""

    @pytest.mark.asyncio
    async def test_stops_and_drains_in_flight_pages(self, resolver, engine, tasks, request_):
        # 1M input tokens on gpt-4o-mini cost 0.153 USD on the pro tier
        billing = LedgerBillingGate(DEFAULT_SNAPSHOT, tasks=tasks, balances={"u": 0.4})
        crawler = CrawlOrchestrator(resolver, engine, billing, tasks=tasks)
        engine.pages = [
            page(SEED + str(i), {"title": str(i)}, input_tokens=1_000_000, output_tokens=0)
            for i in range(6)
        ]
        engine.in_flight = 1

        result = await crawler.crawl(request_, ExtractContext(user_id="u", tier="pro"))

        assert result.stopped_early is True
        assert result.stop_reason == "insufficient_balance"
        assert len(result.pages) == 3
        assert all(p.success for p in result.pages)
        assert result.total_cost_usd == pytest.approx(3 * 0.153)

    @pytest.mark.asyncio
    async def test_charges_once_for_the_crawl(self, resolver, engine, tasks, request_):
        billing = LedgerBillingGate(DEFAULT_SNAPSHOT, tasks=tasks, balances={"u": 5.0})
        crawler = CrawlOrchestrator(resolver, engine, billing, tasks=tasks)
        engine.pages = [page(SEED, {"title": "Home"}), page(SEED + "x", error=RuntimeError("boom"))]

        result = await crawler.crawl(request_, ExtractContext(user_id="u", tier="pro"))

        records = billing.usage_records
        assert len(records) == 1
        assert records[0].job_type == "crawl"
        assert records[0].status == "partial"
        assert records[0].pages_attempted == 2
        assert records[0].pages_successful == 1
        assert await billing.get_available_balance("u") == pytest.approx(5.0 - result.total_cost_usd)

    @pytest.mark.asyncio
    async def test_free_tier_never_cancels(self, resolver, engine, tasks, request_):
        billing = LedgerBillingGate(DEFAULT_SNAPSHOT, tasks=tasks, balances={"u": 0.0})
        crawler = CrawlOrchestrator(resolver, engine, billing, tasks=tasks)
        engine.pages = [
            page(SEED + str(i), {"title": str(i)}, input_tokens=1_000_000) for i in range(4)
        ]

        result = await crawler.crawl(request_, ExtractContext(user_id="u", tier="free"))

        assert result.stopped_early is False
        assert len(result.pages) == 4

    @pytest.mark.asyncio
    async def test_cannot_afford_first_page(self, resolver, engine, request_):
        billing = LedgerBillingGate(DEFAULT_SNAPSHOT, balances={"u": 0.0})
        crawler = CrawlOrchestrator(resolver, engine, billing)

        with pytest.raises(InsufficientBalanceError):
            await crawler.crawl(request_, ExtractContext(user_id="u", tier="pro"))
        assert engine.stream_calls == []


class TestStreamFailure:
    """Tests for a stream that raises."""

    @pytest.mark.asyncio
    async def test_no_pages_raises_and_records(self, crawler, engine, billing, request_, ctx):
        engine.stream_error = RuntimeError("status: 503")

        with pytest.raises(ClassifiedError) as excinfo:
            await crawler.crawl(request_, ctx)

        assert excinfo.value.category == ErrorCategory.PROVIDER_ERROR
        record = billing.usage_records[-1]
        assert record.status == "failed"
        assert record.job_type == "crawl"
        assert record.error_code == "provider_error"

    @pytest.mark.asyncio
    async def test_every_page_failed_raises_and_records(self, crawler, engine, billing, tasks, request_, ctx):
        engine.pages = [
            page(SEED, error=ProviderError("status: 401 invalid api key")),
            page(SEED + "a", error=ProviderError("status: 401 invalid api key")),
        ]

        with pytest.raises(ClassifiedError) as excinfo:
            await crawler.crawl(request_, ctx)
        await tasks.drain()

        assert excinfo.value.category == ErrorCategory.INVALID_KEY
        records = billing.usage_records
        assert len(records) == 1
        assert records[0].status == "failed"
        assert records[0].error_code == "invalid_key"
        assert records[0].input_tokens == 0
        assert await billing.get_available_balance("user-1") == pytest.approx(10.0)

    @pytest.mark.asyncio
    async def test_failure_after_pages_keeps_them(self, crawler, engine, request_, ctx):
        engine.pages = [page(SEED, {"title": "Home"}), page(SEED + "a", {"title": "A"})]
        engine.stream_error = RuntimeError("browser crashed")
        engine.stream_error_after = 1

        result = await crawler.crawl(request_, ctx)

        assert [p.url for p in result.pages] == [SEED]
        assert result.page_count == 1
