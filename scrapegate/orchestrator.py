"""Single-page extraction over a fallback chain.

``ExtractionOrchestrator.extract()`` walks the resolved chain in order:

1. **Pre-flight**: an empty chain raises ``NoProvidersConfiguredError``.
   For non-BYOK chains the first candidate's estimate is checked against
   the balance, or, for premium-model callers, candidates whose estimate
   exceeds the balance are skipped.
2. **Attempts**: the engine is called once per candidate. The first
   success wins. A failure is classified; when the classification says not
   to fall back the walk stops at once, otherwise the orchestrator pauses
   for the fallback delay and moves to the next candidate.
3. **Success**: usage is charged (a billing failure is logged, the data
   is still returned) and links in the data are resolved against the URL.
4. **Exhaustion**: a failed-usage record is written through the detached
   runner and the last classified error is raised.
"""

from __future__ import annotations

import asyncio
import logging
import time
from typing import List, Optional, Tuple

from scrapegate.billing import BillingGate
from scrapegate.classifier import classify_error
from scrapegate.engine import ExtractionEngine
from scrapegate.exceptions import (
    BillingError,
    ClassifiedError,
    InsufficientBalanceError,
    NoProvidersConfiguredError,
)
from scrapegate.extraction import resolve_relative_urls
from scrapegate.models import (
    BudgetSkip,
    ChargeDetails,
    ConfigChain,
    CostInput,
    ExtractContext,
    ExtractionSchema,
    ExtractMeta,
    ExtractOutput,
    LLMConfig,
    PageOutcome,
    UsageInfo,
    UsageRecord,
)
from scrapegate.resolver import ConfigChainResolver
from scrapegate.tasks import DetachedTaskRunner

__all__ = ["ExtractionOrchestrator"]

logger = logging.getLogger(__name__)


class ExtractionOrchestrator:
    """Runs one extraction against a fallback chain.

    Args:
        resolver: Produces the chain when the caller does not pass one.
        engine: Fetches and extracts pages.
        billing: Balance checks, charges and usage records.
        tasks: Runner for failure records; written inline when None.
        fallback_delay: Seconds to wait before trying the next candidate.
        record_timeout: Per-attempt timeout of a detached failure record.
        record_max_attempts: Attempts of a detached failure record.
    """

    def __init__(
        self,
        resolver: ConfigChainResolver,
        engine: ExtractionEngine,
        billing: BillingGate,
        tasks: Optional[DetachedTaskRunner] = None,
        fallback_delay: float = 1.0,
        record_timeout: float = 10.0,
        record_max_attempts: int = 3,
    ) -> None:
        self._resolver = resolver
        self._engine = engine
        self._billing = billing
        self._tasks = tasks
        self._fallback_delay = fallback_delay
        self._record_timeout = record_timeout
        self._record_max_attempts = record_max_attempts

    async def extract(
        self,
        url: str,
        schema: ExtractionSchema,
        ctx: ExtractContext,
        override: Optional[LLMConfig] = None,
        chain: Optional[ConfigChain] = None,
    ) -> ExtractOutput:
        """Extract ``url`` with the first candidate that succeeds.

        Args:
            url: Page to extract.
            schema: What to extract.
            ctx: Caller's billing and feature context.
            override: Manual candidate, honored when BYOK is allowed.
            chain: Pre-resolved chain; resolved from ``ctx`` when None.

        Returns:
            The extracted data with usage and attribution.

        Raises:
            NoProvidersConfiguredError: The chain is empty.
            InsufficientBalanceError: The balance cannot cover the estimate.
            ClassifiedError: Every attempted candidate failed.
        """
        started = time.monotonic()
        if chain is None:
            chain = await self._resolver.resolve(ctx, override)
        if chain.is_empty:
            logger.error("No providers configured for user %s (tier %s)", ctx.user_id or "anonymous", ctx.tier)
            raise NoProvidersConfiguredError(details={"tier": ctx.tier})

        candidates, skips = await self._preflight(chain, ctx)

        last_error: Optional[ClassifiedError] = None
        attempts = 0
        for index, config in enumerate(candidates):
            position = index + 1
            attempts += 1
            logger.info(
                "Extracting %s with %s/%s (candidate %d/%d, byok=%s)",
                url,
                config.provider,
                config.model,
                position,
                len(candidates),
                chain.is_byok,
            )
            try:
                outcome = await self._engine.extract_page(config, schema, url)
                if outcome.error is not None:
                    raise outcome.error
            except asyncio.CancelledError:
                raise
            except Exception as exc:
                last_error = classify_error(exc, config.provider, config.model, chain.is_byok)
                logger.warning(
                    "Candidate %s/%s failed for %s: %s (fallback=%s)",
                    config.provider,
                    config.model,
                    url,
                    last_error.category.value,
                    last_error.should_fallback,
                )
                if not last_error.should_fallback:
                    logger.info(
                        "Not falling back after %s error, stopping at candidate %d/%d",
                        last_error.category.value,
                        position,
                        len(candidates),
                    )
                    break
                if position < len(candidates):
                    following = candidates[position]
                    logger.info(
                        "Falling back from %s/%s to %s/%s",
                        config.provider,
                        config.model,
                        following.provider,
                        following.model,
                    )
                    await asyncio.sleep(self._fallback_delay)
                continue

            return await self._succeed(url, schema, ctx, chain, config, outcome, attempts, skips, started)

        if last_error is None:
            logger.error("No candidate left to try for %s", url)
            raise NoProvidersConfiguredError(details={"tier": ctx.tier})
        logger.error(
            "All %d attempted candidate(s) failed for %s: %s",
            attempts,
            url,
            last_error.category.value,
        )
        await self._record_failure(url, schema, ctx, chain, last_error, attempts, started)
        raise last_error

    # -------------------------------------------------------------------
    # Pre-flight
    # -------------------------------------------------------------------

    async def _preflight(
        self,
        chain: ConfigChain,
        ctx: ExtractContext,
    ) -> Tuple[List[LLMConfig], List[BudgetSkip]]:
        candidates = list(chain)
        if chain.is_byok:
            return candidates, []

        if ctx.models_premium and self._billing.balance_enforced(
            ctx.tier, skip_credit_check=ctx.skip_credit_check
        ):
            try:
                available = await self._billing.get_available_balance(ctx.user_id)
            except BillingError as exc:
                logger.warning("Balance lookup failed for %s, not skipping models: %s", ctx.user_id, exc)
            else:
                return self._skip_over_budget(candidates, available)

        first = candidates[0]
        estimate = self._billing.estimate_cost(1, first.provider, first.model)
        await self._billing.check_sufficient_balance(
            ctx.user_id,
            ctx.tier,
            estimate,
            skip_credit_check=ctx.skip_credit_check,
        )
        return candidates, []

    def _skip_over_budget(
        self,
        candidates: List[LLMConfig],
        available: float,
    ) -> Tuple[List[LLMConfig], List[BudgetSkip]]:
        kept: List[LLMConfig] = []
        skips: List[BudgetSkip] = []
        for config in candidates:
            estimate = self._billing.estimate_cost(1, config.provider, config.model)
            if estimate > available:
                logger.info(
                    "Skipping %s/%s: estimate $%.6f exceeds balance $%.6f",
                    config.provider,
                    config.model,
                    estimate,
                    available,
                )
                skips.append(
                    BudgetSkip(
                        provider=config.provider,
                        model=config.model,
                        estimated_cost_usd=estimate,
                        available_usd=available,
                    )
                )
            else:
                kept.append(config)

        if not kept:
            raise InsufficientBalanceError(
                required_usd=min(skip.estimated_cost_usd for skip in skips),
                available_usd=available,
                details={"skipped": len(skips)},
            )
        return kept, skips

    # -------------------------------------------------------------------
    # Outcomes
    # -------------------------------------------------------------------

    async def _succeed(
        self,
        url: str,
        schema: ExtractionSchema,
        ctx: ExtractContext,
        chain: ConfigChain,
        config: LLMConfig,
        outcome: PageOutcome,
        attempts: int,
        skips: List[BudgetSkip],
        started: float,
    ) -> ExtractOutput:
        usage = outcome.usage
        try:
            charge = await self._billing.charge_for_usage(
                ChargeDetails(
                    user_id=ctx.user_id,
                    tier=ctx.tier,
                    job_id=ctx.job_id,
                    job_type="extract",
                    schema_id=ctx.schema_id or schema.schema_id,
                    url=url,
                    provider=config.provider,
                    model=config.model,
                    input_tokens=usage.input_tokens,
                    output_tokens=usage.output_tokens,
                    is_byok=chain.is_byok,
                    generation_id=outcome.generation_id,
                    duration_ms=int((time.monotonic() - started) * 1000),
                )
            )
            cost_usd, llm_cost_usd = charge.total_cost_usd, charge.llm_cost_usd
        except asyncio.CancelledError:
            raise
        except Exception:
            logger.error("Failed to charge extraction of %s", url, exc_info=True)
            costs = self._billing.calculate_costs(
                CostInput(
                    provider=config.provider,
                    model=config.model,
                    input_tokens=usage.input_tokens,
                    output_tokens=usage.output_tokens,
                    tier=ctx.tier,
                    is_byok=chain.is_byok,
                )
            )
            cost_usd, llm_cost_usd = costs.user_cost_usd, costs.llm_cost_usd

        logger.info(
            "Extracted %s with %s/%s after %d attempt(s)",
            url,
            config.provider,
            config.model,
            attempts,
        )
        return ExtractOutput(
            url=url,
            data=resolve_relative_urls(outcome.data, url),
            usage=UsageInfo(
                input_tokens=usage.input_tokens,
                output_tokens=usage.output_tokens,
                cost_usd=cost_usd,
                llm_cost_usd=llm_cost_usd,
                is_byok=chain.is_byok,
            ),
            metadata=ExtractMeta(
                provider=config.provider,
                model=config.model,
                attempts=attempts,
                fetch_duration_ms=outcome.fetch_duration_ms,
                extract_duration_ms=outcome.extract_duration_ms,
                generation_id=outcome.generation_id,
                budget_skips=tuple(skips),
            ),
        )

    async def _record_failure(
        self,
        url: str,
        schema: ExtractionSchema,
        ctx: ExtractContext,
        chain: ConfigChain,
        error: ClassifiedError,
        attempts: int,
        started: float,
    ) -> None:
        record = UsageRecord(
            user_id=ctx.user_id,
            job_id=ctx.job_id,
            job_type="extract",
            status="failed",
            tier=ctx.tier,
            schema_id=ctx.schema_id or schema.schema_id,
            url=url,
            provider=error.provider,
            model=error.model,
            is_byok=chain.is_byok,
            pages_attempted=attempts,
            pages_successful=0,
            duration_ms=int((time.monotonic() - started) * 1000),
            error_message=error.detail_message if chain.is_byok else error.user_message,
            error_code=error.category.value,
        )
        if self._tasks is None:
            try:
                await self._billing.record_usage(record)
            except Exception:
                logger.error("Failed to record failed extraction of %s", url, exc_info=True)
            return
        await self._tasks.run(
            lambda: self._billing.record_usage(record),
            name="record-failed-extract",
            timeout=self._record_timeout,
            max_attempts=self._record_max_attempts,
        )
