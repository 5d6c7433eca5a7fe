"""Extraction engines: fetch pages and run the LLM over them.

The orchestrators talk to an ``ExtractionEngine``:

- ``extract_page(config, schema, url)`` fetches one page, extracts it with
  one candidate and returns a ``PageOutcome``. Failures are raised.
- ``stream_crawl(config, schema, seeds, options, cancel=...)`` yields one
  ``PageOutcome`` per visited page, success or failure, until the crawl
  ends or ``cancel`` is set. Setting ``cancel`` stops new pages from being
  requested; pages already in flight are still yielded.

``Crawl4AIEngine`` implements both with crawl4ai, using either plain HTTP
requests or a Playwright browser.

Resource lifecycle:
    - On ``__aenter__``: creates the ``AsyncWebCrawler`` for the configured
      backend and calls ``start()``.
    - During extraction: the same crawler serves every call.
    - On ``__aexit__``: calls ``close()``. For the browser backend this
      shuts down the browser process.

Key crawl4ai classes used:
    - ``AsyncWebCrawler``, ``BrowserConfig``, ``HTTPCrawlerConfig``
    - ``AsyncHTTPCrawlerStrategy`` (from ``crawl4ai.async_crawler_strategy``)
    - ``BFSDeepCrawlStrategy``, ``DomainFilter``, ``URLPatternFilter``,
      ``FilterChain``

Schema handling and result parsing live in ``scrapegate.extraction``.
"""

from __future__ import annotations

import asyncio
import logging
import time
from typing import Any, AsyncIterator, Awaitable, Callable, List, Optional, Protocol, Set

from scrapegate.config import GatewayConfig
from scrapegate.exceptions import FetchError, ProviderError, ScrapeGateError
from scrapegate.extraction import (
    create_extraction_strategy,
    create_run_config,
    get_domain,
    normalize_url,
    parse_extraction_result,
)
from scrapegate.models import CrawlOptions, ExtractionSchema, LLMConfig, PageOutcome, TokenUsage

__all__ = ["ExtractionEngine", "Crawl4AIEngine", "QueueCallback"]

logger = logging.getLogger(__name__)

QueueCallback = Callable[[int], Awaitable[None]]
"""Receives the number of URLs discovered so far during a crawl."""

_UNLIMITED = 10**9


class ExtractionEngine(Protocol):
    """What the orchestrators need from an engine."""

    async def extract_page(
        self,
        config: LLMConfig,
        schema: ExtractionSchema,
        url: str,
    ) -> PageOutcome: ...

    def stream_crawl(
        self,
        config: LLMConfig,
        schema: ExtractionSchema,
        seeds: List[str],
        options: CrawlOptions,
        *,
        cancel: asyncio.Event,
        on_urls_queued: Optional[QueueCallback] = None,
    ) -> AsyncIterator[PageOutcome]: ...


def _usage_of(strategy: Any) -> TokenUsage:
    """Read the cumulative token usage an LLMExtractionStrategy has seen."""
    total = getattr(strategy, "total_usage", None)
    return TokenUsage(
        input_tokens=int(getattr(total, "prompt_tokens", 0) or 0),
        output_tokens=int(getattr(total, "completion_tokens", 0) or 0),
    )


def _delta(current: TokenUsage, baseline: TokenUsage) -> TokenUsage:
    return TokenUsage(
        input_tokens=max(0, current.input_tokens - baseline.input_tokens),
        output_tokens=max(0, current.output_tokens - baseline.output_tokens),
    )


def _elapsed_ms(started: float) -> int:
    return int((time.monotonic() - started) * 1000)


async def _iterate(crawl_output: Any) -> AsyncIterator[Any]:
    # crawl4ai may hand back a plain list instead of an async generator
    # after a deep-crawl strategy has been shut down.
    if hasattr(crawl_output, "__aiter__"):
        async for item in crawl_output:
            yield item
    else:
        for item in crawl_output or []:
            yield item


class Crawl4AIEngine:
    """crawl4ai-backed engine for the ``http`` and ``browser`` backends.

    Usage::

        async with Crawl4AIEngine(load_config(backend="browser")) as engine:
            outcome = await engine.extract_page(config, schema, url)

    Attributes:
        settings: The GatewayConfig controlling fetching and extraction.
    """

    def __init__(self, settings: Optional[GatewayConfig] = None) -> None:
        self.settings = settings or GatewayConfig()
        self._crawler: Any = None  # AsyncWebCrawler, set in __aenter__

    async def __aenter__(self) -> Crawl4AIEngine:
        from crawl4ai import AsyncWebCrawler

        if self.settings.backend == "browser":
            from crawl4ai import BrowserConfig

            browser_config = BrowserConfig(
                headless=self.settings.headless,
                verbose=self.settings.verbose,
                enable_stealth=self.settings.stealth,
                text_mode=True,  # disables images for faster loads
            )
            self._crawler = AsyncWebCrawler(config=browser_config)
        else:
            from crawl4ai import HTTPCrawlerConfig
            from crawl4ai.async_crawler_strategy import AsyncHTTPCrawlerStrategy

            http_strategy = AsyncHTTPCrawlerStrategy(browser_config=HTTPCrawlerConfig())
            self._crawler = AsyncWebCrawler(crawler_strategy=http_strategy)

        await self._crawler.start()
        logger.info("Crawl4AIEngine started (%s backend)", self.settings.backend)
        return self

    async def __aexit__(self, exc_type: Any, exc_val: Any, exc_tb: Any) -> None:
        if self._crawler:
            try:
                await self._crawler.close()
            except Exception:
                logger.warning("Error closing crawler", exc_info=True)
            finally:
                self._crawler = None
        logger.info("Crawl4AIEngine shut down")

    def _require_crawler(self) -> Any:
        if self._crawler is None:
            raise RuntimeError(
                "Crawl4AIEngine must be used as an async context manager: "
                "async with Crawl4AIEngine(settings) as engine: ..."
            )
        return self._crawler

    # ------------------------------------------------------------------
    # Single page
    # ------------------------------------------------------------------

    async def extract_page(
        self,
        config: LLMConfig,
        schema: ExtractionSchema,
        url: str,
    ) -> PageOutcome:
        """Fetch ``url`` and extract it with one candidate.

        Raises:
            FetchError: The page could not be fetched.
            ProviderError: The LLM call failed or timed out.
            ExtractionError: The LLM output could not be parsed.
        """
        crawler = self._require_crawler()
        strategy = create_extraction_strategy(schema, config, self.settings)
        run_config = create_run_config(strategy, page_timeout=self.settings.timeout_ms)

        budget = self.settings.llm_timeout_seconds + self.settings.timeout_ms / 1000
        started = time.monotonic()
        try:
            result = await asyncio.wait_for(crawler.arun(url=url, config=run_config), budget)
        except asyncio.TimeoutError as exc:
            raise ProviderError(
                f"Extraction timed out after {budget:.0f}s",
                url=url,
                provider=config.provider,
                model=config.model,
            ) from exc
        elapsed = _elapsed_ms(started)

        if not result.success:
            error_msg = result.error_message or "Unknown fetch error"
            logger.warning("Fetch failed for %s: %s", url, error_msg)
            raise FetchError(error_msg, url=url, status_code=getattr(result, "status_code", None))

        data = parse_extraction_result(
            result.extracted_content,
            schema,
            url,
            provider=config.provider,
            model=config.model,
        )
        return PageOutcome(
            url=url,
            data=data,
            usage=_usage_of(strategy),
            extract_duration_ms=elapsed,
            raw_content=result.extracted_content,
        )

    # ------------------------------------------------------------------
    # Streaming crawl
    # ------------------------------------------------------------------

    async def stream_crawl(
        self,
        config: LLMConfig,
        schema: ExtractionSchema,
        seeds: List[str],
        options: CrawlOptions,
        *,
        cancel: asyncio.Event,
        on_urls_queued: Optional[QueueCallback] = None,
    ) -> AsyncIterator[PageOutcome]:
        """Crawl from each seed in turn and yield one outcome per page.

        Seeds share one visited set and one page cap. Token usage per page
        is the growth of the strategy's cumulative usage since the previous
        yielded page, so it is approximate when pages run concurrently.

        ``follow_selector`` and ``next_selector`` are not supported by
        crawl4ai's link discovery and are ignored; ``follow_pattern`` limits
        followed links with a ``URLPatternFilter``.
        """
        crawler = self._require_crawler()
        if options.follow_selector or options.next_selector:
            logger.debug("CSS link selectors are not supported by the crawl4ai engine, ignoring")

        strategy = create_extraction_strategy(schema, config, self.settings)
        page_cap = min(cap for cap in (options.max_pages, options.max_urls, _UNLIMITED) if cap)
        seed_keys = {normalize_url(seed) for seed in seeds}
        visited: Set[str] = set()
        queued: Set[str] = set(seed_keys)
        yielded = 0
        baseline = TokenUsage()

        if on_urls_queued is not None:
            await on_urls_queued(len(queued))

        for seed in seeds:
            if cancel.is_set() or yielded >= page_cap:
                break

            bfs = self._deep_crawl_strategy(seed, options, page_cap - yielded)
            run_config = create_run_config(
                strategy,
                stream=True,
                page_timeout=self.settings.timeout_ms,
                deep_crawl_strategy=bfs,
                semaphore_count=options.concurrency,
                mean_delay=options.delay_seconds or None,
            )
            logger.info(
                "Crawling from %s (max_depth=%d, remaining pages=%s)",
                seed,
                options.max_depth,
                "unlimited" if page_cap >= _UNLIMITED else page_cap - yielded,
            )

            watcher = asyncio.ensure_future(self._shutdown_on_cancel(cancel, bfs))
            finished = False
            try:
                crawl_output = await crawler.arun(url=seed, config=run_config)
                started = time.monotonic()
                async for result in _iterate(crawl_output):
                    key = normalize_url(result.url)
                    if key in visited:
                        continue
                    visited.add(key)

                    if on_urls_queued is not None and self._discover(result, seed, options, queued):
                        await on_urls_queued(len(queued))

                    if key in seed_keys and not options.extract_from_seeds:
                        logger.debug("Not extracting seed page %s", result.url)
                        continue

                    usage = _usage_of(strategy)
                    outcome = self._outcome(result, schema, config, _delta(usage, baseline), started)
                    baseline = usage
                    started = time.monotonic()
                    yielded += 1
                    yield outcome

                    if yielded >= page_cap:
                        break
                finished = True
            finally:
                watcher.cancel()
                if not finished:
                    await self._shutdown(bfs)

        logger.info("Crawl stream closed after %d page(s)", yielded)

    def _outcome(
        self,
        result: Any,
        schema: ExtractionSchema,
        config: LLMConfig,
        usage: TokenUsage,
        started: float,
    ) -> PageOutcome:
        elapsed = _elapsed_ms(started)
        if not result.success:
            error_msg = result.error_message or "Crawl fetch failed"
            logger.warning("Crawl page failed (%s): %s", result.url, error_msg)
            error = FetchError(
                error_msg,
                url=result.url,
                status_code=getattr(result, "status_code", None),
            )
            return PageOutcome(url=result.url, error=error, usage=usage, extract_duration_ms=elapsed)

        try:
            data = parse_extraction_result(
                result.extracted_content,
                schema,
                result.url,
                provider=config.provider,
                model=config.model,
            )
        except ScrapeGateError as exc:
            logger.warning("Extraction failed for %s: %s", result.url, exc)
            return PageOutcome(
                url=result.url,
                error=exc,
                usage=usage,
                extract_duration_ms=elapsed,
                raw_content=result.extracted_content,
            )

        return PageOutcome(
            url=result.url,
            data=data,
            usage=usage,
            extract_duration_ms=elapsed,
            raw_content=result.extracted_content,
        )

    def _deep_crawl_strategy(self, seed: str, options: CrawlOptions, remaining: int) -> Any:
        from crawl4ai import BFSDeepCrawlStrategy, DomainFilter, FilterChain, URLPatternFilter

        filters: List[Any] = []
        if options.same_domain_only:
            filters.append(DomainFilter(allowed_domains=[get_domain(seed)]))
        if options.follow_pattern:
            filters.append(URLPatternFilter(patterns=[options.follow_pattern]))

        kwargs: dict = {
            "max_depth": options.max_depth,
            "filter_chain": FilterChain(filters),
            "include_external": not options.same_domain_only,
        }
        if remaining < _UNLIMITED:
            kwargs["max_pages"] = remaining
        return BFSDeepCrawlStrategy(**kwargs)

    def _discover(self, result: Any, seed: str, options: CrawlOptions, queued: Set[str]) -> bool:
        """Add links found on a page to ``queued``; return True if it grew."""
        links = getattr(result, "links", None) or {}
        candidates = list(links.get("internal", []))
        if not options.same_domain_only:
            candidates.extend(links.get("external", []))

        before = len(queued)
        for link in candidates:
            href = link.get("href") if isinstance(link, dict) else link
            if not href or not href.startswith(("http://", "https://")):
                continue
            if options.same_domain_only and get_domain(href) != get_domain(seed):
                continue
            if options.max_urls and len(queued) >= options.max_urls:
                break
            queued.add(normalize_url(href))
        return len(queued) > before

    async def _shutdown_on_cancel(self, cancel: asyncio.Event, bfs: Any) -> None:
        await cancel.wait()
        logger.info("Crawl cancelled, stopping link discovery")
        await self._shutdown(bfs)

    async def _shutdown(self, bfs: Any) -> None:
        try:
            await bfs.shutdown()
        except Exception:
            logger.debug("BFS shutdown raised (may already be done)", exc_info=True)
