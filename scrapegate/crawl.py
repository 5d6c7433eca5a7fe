"""Streaming multi-page extraction.

``CrawlOrchestrator.crawl()`` consumes the engine's page stream and builds
a ``CrawlResult`` as pages arrive:

- Every page gets depth and parent from a ``DepthTracker``: 0 and None
  for seeds, 1 and the first seed for everything else. The engine does
  not report true link distance, so deeper pages are not told apart.
- Failed pages are classified and kept, with the message pair chosen by
  the chain's BYOK flag. The stream keeps going.
- Successful pages are priced from their reported tokens, with no I/O.
  For non-BYOK callers the running total is compared with the balance
  read once at crawl start; when another page of the same cost cannot be
  covered, the crawl is cancelled. Pages already produced are still
  drained and kept.
- An ``on_result`` callback that raises stops the crawl immediately.

When the stream is done, the crawl's tokens are charged in one go
(``job_type="crawl"``). Only successful pages are priced and counted
towards the totals. A crawl without a single successful page, after a
page or the stream failed, records a failed usage entry and raises the
last classified error.
"""

from __future__ import annotations

import asyncio
import inspect
import logging
import time
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, Dict, Iterable, Optional, Tuple, Union

from scrapegate.billing import BillingGate
from scrapegate.classifier import classify_error
from scrapegate.engine import ExtractionEngine, QueueCallback
from scrapegate.exceptions import BillingError, ClassifiedError, NoProvidersConfiguredError
from scrapegate.extraction import normalize_url, resolve_relative_urls
from scrapegate.models import (
    ChargeDetails,
    ConfigChain,
    CostInput,
    CrawlRequest,
    CrawlResult,
    ExtractContext,
    LLMConfig,
    PageOutcome,
    PageResult,
    UsageRecord,
)
from scrapegate.resolver import ConfigChainResolver
from scrapegate.tasks import DetachedTaskRunner

__all__ = ["DepthTracker", "CrawlOrchestrator", "ResultCallback", "QueuedCallback"]

logger = logging.getLogger(__name__)

ResultCallback = Callable[[PageResult], Union[None, Awaitable[None]]]
QueuedCallback = Callable[[int], Union[None, Awaitable[None]]]


async def _invoke(callback: Callable[[Any], Any], argument: Any) -> None:
    outcome = callback(argument)
    if inspect.isawaitable(outcome):
        await outcome


def _queue_adapter(callback: QueuedCallback) -> QueueCallback:
    """Wrap a sync or async progress callback; its failures never stop the crawl."""

    async def report(count: int) -> None:
        try:
            await _invoke(callback, count)
        except Exception:
            logger.warning("on_urls_queued callback failed", exc_info=True)

    return report


class DepthTracker:
    """Assigns depth and parent the first time a URL is seen.

    Examples:
        >>> tracker = DepthTracker(["https://x.com/"])
        >>> tracker.assign("https://x.com/a")
        (1, 'https://x.com/')
        >>> tracker.assign("https://x.com")
        (0, None)
    """

    def __init__(self, seeds: Iterable[str]) -> None:
        seeds = list(seeds)
        self._seed_keys = {normalize_url(seed) for seed in seeds}
        self._first_seed: Optional[str] = seeds[0] if seeds else None
        self._assigned: Dict[str, Tuple[int, Optional[str]]] = {}

    def assign(self, url: str) -> Tuple[int, Optional[str]]:
        """Return ``(depth, parent)`` for ``url``, fixed at first sighting."""
        key = normalize_url(url)
        existing = self._assigned.get(key)
        if existing is not None:
            return existing
        if key in self._seed_keys:
            entry: Tuple[int, Optional[str]] = (0, None)
        else:
            entry = (1, self._first_seed)
        self._assigned[key] = entry
        return entry

    def __len__(self) -> int:
        return len(self._assigned)


class CrawlOrchestrator:
    """Runs a streaming crawl with the first candidate of the chain.

    Args:
        resolver: Produces the chain when the request carries none.
        engine: Streams crawled pages.
        billing: Pricing, balance snapshot, charge and usage records.
        tasks: Runner for failure records; written inline when None.
        record_timeout: Per-attempt timeout of a detached failure record.
        record_max_attempts: Attempts of a detached failure record.
    """

    def __init__(
        self,
        resolver: ConfigChainResolver,
        engine: ExtractionEngine,
        billing: BillingGate,
        tasks: Optional[DetachedTaskRunner] = None,
        record_timeout: float = 10.0,
        record_max_attempts: int = 3,
    ) -> None:
        self._resolver = resolver
        self._engine = engine
        self._billing = billing
        self._tasks = tasks
        self._record_timeout = record_timeout
        self._record_max_attempts = record_max_attempts

    async def crawl(
        self,
        request: CrawlRequest,
        ctx: ExtractContext,
        override: Optional[LLMConfig] = None,
        *,
        on_result: Optional[ResultCallback] = None,
        on_urls_queued: Optional[QueuedCallback] = None,
    ) -> CrawlResult:
        """Crawl from the request's seeds and extract every visited page.

        Args:
            request: Start URL, seeds, schema, options and optional chain.
            ctx: Caller's billing and feature context.
            override: Manual candidate, honored when BYOK is allowed.
            on_result: Called with each PageResult, sync or async. Raising
                       stops the crawl with ``stop_reason="callback_error"``.
            on_urls_queued: Called with the number of URLs discovered so far.

        Raises:
            NoProvidersConfiguredError: The chain is empty.
            InsufficientBalanceError: The balance cannot cover one page.
            ClassifiedError: No page succeeded and a page or the stream failed.
        """
        started = time.monotonic()
        chain = request.chain if request.chain is not None else await self._resolver.resolve(ctx, override)
        config = chain.first
        if config is None:
            logger.error("No providers configured for crawl of %s", request.url)
            raise NoProvidersConfiguredError(details={"tier": ctx.tier})

        seeds = request.seeds
        schema = request.extraction_schema
        page_estimate = self._billing.estimate_cost(1, config.provider, config.model)
        balance = await self._balance_snapshot(chain, ctx, page_estimate)

        result = CrawlResult(provider=config.provider, model=config.model, is_byok=chain.is_byok)
        tracker = DepthTracker(seeds)
        cancel = asyncio.Event()
        running_cost = 0.0
        last_error: Optional[ClassifiedError] = None

        logger.info(
            "Starting crawl of %s (%d seed(s)) with %s/%s (byok=%s, balance=%s)",
            request.url,
            len(seeds),
            config.provider,
            config.model,
            chain.is_byok,
            "n/a" if balance is None else f"${balance:.6f}",
        )

        queued_callback = _queue_adapter(on_urls_queued) if on_urls_queued is not None else None
        stream = self._engine.stream_crawl(
            config,
            schema,
            seeds,
            request.options,
            cancel=cancel,
            on_urls_queued=queued_callback,
        )
        try:
            async for outcome in stream:
                page, classified = self._page_result(outcome, tracker, ctx, chain, config)
                if classified is not None:
                    last_error = classified
                result.pages.append(page)
                running_cost += page.cost_usd

                if (
                    balance is not None
                    and page.success
                    and page.cost_usd > 0
                    and not cancel.is_set()
                    and balance - running_cost < page.cost_usd
                ):
                    logger.info(
                        "Stopping crawl of %s: balance $%.6f cannot cover another page after $%.6f",
                        request.url,
                        balance,
                        running_cost,
                    )
                    result.stopped_early = True
                    result.stop_reason = "insufficient_balance"
                    cancel.set()

                if on_result is not None:
                    try:
                        await _invoke(on_result, page)
                    except Exception as exc:
                        logger.warning("Result callback failed, stopping crawl of %s: %s", request.url, exc)
                        result.stopped_early = True
                        result.stop_reason = "callback_error"
                        cancel.set()
                        break
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            logger.error("Crawl stream for %s failed: %s", request.url, exc, exc_info=True)
            last_error = classify_error(exc, config.provider, config.model, chain.is_byok)
        finally:
            aclose = getattr(stream, "aclose", None)
            if aclose is not None:
                await aclose()

        self._finalize(result)
        duration_ms = int((time.monotonic() - started) * 1000)
        logger.info(
            "Crawl of %s finished: %d ok, %d failed, $%.6f (stopped_early=%s, reason=%s)",
            request.url,
            result.page_count,
            result.failed_count,
            result.total_cost_usd,
            result.stopped_early,
            result.stop_reason or "none",
        )

        if result.page_count == 0 and last_error is not None:
            await self._record_failure(request, ctx, chain, last_error, duration_ms)
            raise last_error

        if result.page_count:
            await self._charge(request, ctx, chain, config, result, duration_ms)
        return result

    # -------------------------------------------------------------------
    # Helpers
    # -------------------------------------------------------------------

    async def _balance_snapshot(
        self,
        chain: ConfigChain,
        ctx: ExtractContext,
        page_estimate: float,
    ) -> Optional[float]:
        """Check one page's worth up front and read the balance once."""
        if chain.is_byok:
            return None
        await self._billing.check_sufficient_balance(
            ctx.user_id,
            ctx.tier,
            page_estimate,
            skip_credit_check=ctx.skip_credit_check,
        )
        if not self._billing.balance_enforced(ctx.tier, skip_credit_check=ctx.skip_credit_check):
            return None
        try:
            return await self._billing.get_available_balance(ctx.user_id)
        except BillingError as exc:
            logger.warning("Balance lookup failed for %s, crawl runs unchecked: %s", ctx.user_id, exc)
            return None

    def _page_result(
        self,
        outcome: PageOutcome,
        tracker: DepthTracker,
        ctx: ExtractContext,
        chain: ConfigChain,
        config: LLMConfig,
    ) -> Tuple[PageResult, Optional[ClassifiedError]]:
        depth, parent = tracker.assign(outcome.url)
        usage = outcome.usage

        cost_usd = llm_cost_usd = 0.0
        if outcome.ok:
            costs = self._billing.calculate_costs(
                CostInput(
                    provider=config.provider,
                    model=config.model,
                    input_tokens=usage.input_tokens,
                    output_tokens=usage.output_tokens,
                    tier=ctx.tier,
                    is_byok=chain.is_byok,
                    generation_id=outcome.generation_id,
                )
            )
            cost_usd, llm_cost_usd = costs.user_cost_usd, costs.llm_cost_usd

        common = dict(
            url=outcome.url,
            parent_url=parent,
            depth=depth,
            input_tokens=usage.input_tokens,
            output_tokens=usage.output_tokens,
            cost_usd=cost_usd,
            llm_cost_usd=llm_cost_usd,
            fetch_duration_ms=outcome.fetch_duration_ms,
            extract_duration_ms=outcome.extract_duration_ms,
            is_byok=chain.is_byok,
            generation_id=outcome.generation_id,
            provider=config.provider,
            model=config.model,
        )
        if outcome.ok:
            return PageResult(data=resolve_relative_urls(outcome.data, outcome.url), **common), None

        classified = classify_error(outcome.error, config.provider, config.model, chain.is_byok)
        page = PageResult(
            error=classified.user_message,
            error_details=classified.detail_message,
            error_category=classified.category.value,
            **common,
        )
        return page, classified

    def _finalize(self, result: CrawlResult) -> None:
        result.page_count = sum(1 for page in result.pages if page.success)
        result.failed_count = len(result.pages) - result.page_count
        successful = [page for page in result.pages if page.success]
        result.total_input_tokens = sum(page.input_tokens for page in successful)
        result.total_output_tokens = sum(page.output_tokens for page in successful)
        result.total_cost_usd = sum(page.cost_usd for page in result.pages)
        result.total_llm_cost_usd = sum(page.llm_cost_usd for page in result.pages)
        result.finished_at = datetime.now(timezone.utc).isoformat()

    async def _charge(
        self,
        request: CrawlRequest,
        ctx: ExtractContext,
        chain: ConfigChain,
        config: LLMConfig,
        result: CrawlResult,
        duration_ms: int,
    ) -> None:
        try:
            await self._billing.charge_for_usage(
                ChargeDetails(
                    user_id=ctx.user_id,
                    tier=ctx.tier,
                    job_id=ctx.job_id,
                    job_type="crawl",
                    schema_id=ctx.schema_id or request.extraction_schema.schema_id,
                    url=request.url,
                    provider=config.provider,
                    model=config.model,
                    input_tokens=result.total_input_tokens,
                    output_tokens=result.total_output_tokens,
                    is_byok=chain.is_byok,
                    pages_attempted=len(result.pages),
                    pages_successful=result.page_count,
                    duration_ms=duration_ms,
                )
            )
        except asyncio.CancelledError:
            raise
        except Exception:
            logger.error("Failed to charge crawl of %s", request.url, exc_info=True)

    async def _record_failure(
        self,
        request: CrawlRequest,
        ctx: ExtractContext,
        chain: ConfigChain,
        error: ClassifiedError,
        duration_ms: int,
    ) -> None:
        record = UsageRecord(
            user_id=ctx.user_id,
            job_id=ctx.job_id,
            job_type="crawl",
            status="failed",
            tier=ctx.tier,
            schema_id=ctx.schema_id or request.extraction_schema.schema_id,
            url=request.url,
            provider=error.provider,
            model=error.model,
            is_byok=chain.is_byok,
            duration_ms=duration_ms,
            error_message=error.detail_message if chain.is_byok else error.user_message,
            error_code=error.category.value,
        )
        if self._tasks is None:
            try:
                await self._billing.record_usage(record)
            except Exception:
                logger.error("Failed to record failed crawl of %s", request.url, exc_info=True)
            return
        await self._tasks.run(
            lambda: self._billing.record_usage(record),
            name="record-failed-crawl",
            timeout=self._record_timeout,
            max_attempts=self._record_max_attempts,
        )
