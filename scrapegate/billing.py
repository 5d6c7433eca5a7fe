"""Billing gate: cost estimation, balance checks, charging and usage records.

The orchestrators depend on the ``BillingGate`` protocol only. This module
also ships ``LedgerBillingGate``, a complete in-process implementation that
keeps balances and a usage ledger in memory. Prices come from the static
pricing table of the injected ``ConfigSnapshot``; tier markup and
per-transaction costs come from its tier limits.

Pricing rules:
- **estimate_cost**: 2000 input and 500 output tokens per page, priced for
  the model, then doubled so that any markup is covered.
- **calculate_costs**: provider cost from the reported tokens, plus the
  tier's markup rate and per-transaction cost. BYOK work carries neither,
  since the caller pays the provider directly.
- **check_sufficient_balance**: skipped for tiers without balance checks
  (the free tier) and when the caller asked to skip credit checks. A failed
  balance lookup lets the operation through.
- **charge_for_usage**: prices the work, deducts it for non-BYOK callers
  and records usage through the detached runner, so the record survives a
  cancelled caller.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Dict, List, Optional, Protocol

from scrapegate.config import DEFAULT_SNAPSHOT, ConfigSnapshot
from scrapegate.exceptions import BillingError, InsufficientBalanceError
from scrapegate.models import (
    ChargeDetails,
    ChargeResult,
    CostBreakdown,
    CostInput,
    UsageRecord,
)
from scrapegate.tasks import DetachedTaskRunner

__all__ = [
    "AVG_INPUT_TOKENS_PER_PAGE",
    "AVG_OUTPUT_TOKENS_PER_PAGE",
    "BillingGate",
    "LedgerBillingGate",
]

logger = logging.getLogger(__name__)

AVG_INPUT_TOKENS_PER_PAGE = 2000
AVG_OUTPUT_TOKENS_PER_PAGE = AVG_INPUT_TOKENS_PER_PAGE // 4


class BillingGate(Protocol):
    """What the orchestrators need from billing."""

    def estimate_cost(self, pages: int, provider: str, model: str) -> float: ...

    def calculate_costs(self, cost_input: CostInput) -> CostBreakdown:
        """Price work without any I/O."""
        ...

    async def check_sufficient_balance(
        self,
        user_id: str,
        tier: str,
        estimated_usd: float,
        *,
        skip_credit_check: bool = False,
    ) -> None:
        """Raise InsufficientBalanceError when the estimate cannot be covered."""
        ...

    def balance_enforced(self, tier: str, *, skip_credit_check: bool = False) -> bool:
        """Return whether balance checks apply to this tier and call."""
        ...

    async def get_available_balance(self, user_id: str) -> float: ...

    async def charge_for_usage(self, details: ChargeDetails) -> ChargeResult: ...

    async def record_usage(self, record: UsageRecord) -> None: ...


class LedgerBillingGate:
    """In-memory balances and usage ledger.

    Args:
        snapshot: Pricing and tier tables.
        tasks: Runner used to record usage detached from the caller.
               Records are written inline when None.
        balances: Initial balances in USD per user id.
        record_timeout: Per-attempt timeout for detached records.
        record_max_attempts: Attempts for detached records.

    Examples:
        >>> gate = LedgerBillingGate(balances={"user-1": 5.0})
        >>> costs = gate.calculate_costs(CostInput(provider="openai", model="gpt-4o-mini",
        ...     input_tokens=1_000_000, tier="pro"))
        >>> round(costs.user_cost_usd, 6)
        0.153
    """

    def __init__(
        self,
        snapshot: ConfigSnapshot = DEFAULT_SNAPSHOT,
        tasks: Optional[DetachedTaskRunner] = None,
        balances: Optional[Dict[str, float]] = None,
        record_timeout: float = 10.0,
        record_max_attempts: int = 3,
    ) -> None:
        self._snapshot = snapshot
        self._tasks = tasks
        self._balances: Dict[str, float] = dict(balances or {})
        self._records: List[UsageRecord] = []
        self._lock = asyncio.Lock()
        self._record_timeout = record_timeout
        self._record_max_attempts = record_max_attempts

    @property
    def usage_records(self) -> List[UsageRecord]:
        """Copy of every usage record written so far."""
        return list(self._records)

    # -------------------------------------------------------------------
    # Pricing
    # -------------------------------------------------------------------

    def _llm_cost(self, model: str, input_tokens: int, output_tokens: int) -> float:
        input_price, output_price = self._snapshot.price_per_million(model)
        return (input_tokens * input_price + output_tokens * output_price) / 1_000_000

    def estimate_cost(self, pages: int, provider: str, model: str) -> float:
        """Conservative pre-flight estimate for ``pages`` pages."""
        pages = max(1, pages)
        base = self._llm_cost(
            model,
            AVG_INPUT_TOKENS_PER_PAGE * pages,
            AVG_OUTPUT_TOKENS_PER_PAGE * pages,
        )
        return base * 2

    def calculate_costs(self, cost_input: CostInput) -> CostBreakdown:
        llm_cost = self._llm_cost(
            cost_input.model,
            cost_input.input_tokens,
            cost_input.output_tokens,
        )
        if cost_input.is_byok:
            return CostBreakdown(llm_cost_usd=llm_cost, user_cost_usd=llm_cost)

        limits = self._snapshot.tier_limits(cost_input.tier)
        markup = llm_cost * limits.markup_rate
        return CostBreakdown(
            llm_cost_usd=llm_cost,
            user_cost_usd=llm_cost + markup + limits.cost_per_transaction,
            markup_rate=limits.markup_rate,
            markup_usd=markup,
        )

    # -------------------------------------------------------------------
    # Balances
    # -------------------------------------------------------------------

    def balance_enforced(self, tier: str, *, skip_credit_check: bool = False) -> bool:
        if skip_credit_check:
            return False
        return self._snapshot.tier_limits(tier).balance_check

    async def get_available_balance(self, user_id: str) -> float:
        if not user_id:
            raise BillingError("Cannot look up a balance without a user id")
        async with self._lock:
            return self._balances.get(user_id, 0.0)

    async def credit(self, user_id: str, amount_usd: float) -> float:
        """Add funds to a user's balance and return the new balance."""
        async with self._lock:
            balance = self._balances.get(user_id, 0.0) + amount_usd
            self._balances[user_id] = balance
            return balance

    async def check_sufficient_balance(
        self,
        user_id: str,
        tier: str,
        estimated_usd: float,
        *,
        skip_credit_check: bool = False,
    ) -> None:
        if not self.balance_enforced(tier, skip_credit_check=skip_credit_check):
            logger.debug("Skipping balance check for %s (tier %s)", user_id, tier)
            return

        try:
            available = await self.get_available_balance(user_id)
        except BillingError as exc:
            logger.warning("Balance lookup failed for %s, allowing operation: %s", user_id, exc)
            return

        if available < estimated_usd:
            raise InsufficientBalanceError(
                required_usd=estimated_usd,
                available_usd=available,
                details={"user_id": user_id},
            )

    async def _deduct(self, user_id: str, amount_usd: float) -> None:
        async with self._lock:
            self._balances[user_id] = self._balances.get(user_id, 0.0) - amount_usd

    # -------------------------------------------------------------------
    # Charging and recording
    # -------------------------------------------------------------------

    async def charge_for_usage(self, details: ChargeDetails) -> ChargeResult:
        costs = self.calculate_costs(
            CostInput(
                provider=details.provider,
                model=details.model,
                input_tokens=details.input_tokens,
                output_tokens=details.output_tokens,
                tier=details.tier,
                is_byok=details.is_byok,
                generation_id=details.generation_id,
            )
        )

        deducted = False
        if not details.is_byok and details.user_id and costs.user_cost_usd > 0:
            await self._deduct(details.user_id, costs.user_cost_usd)
            deducted = True

        if details.pages_successful <= 0:
            status = "failed"
        elif details.pages_successful < details.pages_attempted:
            status = "partial"
        else:
            status = "success"

        record = UsageRecord(
            user_id=details.user_id,
            job_id=details.job_id,
            job_type=details.job_type,
            status=status,
            tier=self._snapshot.normalize_tier(details.tier),
            schema_id=details.schema_id,
            url=details.url,
            provider=details.provider,
            model=details.model,
            is_byok=details.is_byok,
            input_tokens=details.input_tokens,
            output_tokens=details.output_tokens,
            llm_cost_usd=costs.llm_cost_usd,
            total_cost_usd=costs.user_cost_usd,
            markup_rate=costs.markup_rate,
            markup_usd=costs.markup_usd,
            pages_attempted=details.pages_attempted,
            pages_successful=details.pages_successful,
            duration_ms=details.duration_ms,
        )
        await self._record_detached(record)

        logger.info(
            "Charged %s $%.6f for %s/%s (byok=%s, status=%s)",
            details.user_id or "anonymous",
            costs.user_cost_usd,
            details.provider,
            details.model,
            details.is_byok,
            status,
        )
        return ChargeResult(
            total_cost_usd=costs.user_cost_usd,
            llm_cost_usd=costs.llm_cost_usd,
            markup_rate=costs.markup_rate,
            markup_usd=costs.markup_usd,
            deducted=deducted,
        )

    async def record_usage(self, record: UsageRecord) -> None:
        async with self._lock:
            self._records.append(record)
        logger.debug(
            "Recorded %s usage for %s (%s)",
            record.status,
            record.user_id or "anonymous",
            record.error_code or "ok",
        )

    async def _record_detached(self, record: UsageRecord) -> None:
        if self._tasks is None:
            await self.record_usage(record)
            return
        await self._tasks.run(
            lambda: self.record_usage(record),
            name="record-usage",
            timeout=self._record_timeout,
            max_attempts=self._record_max_attempts,
        )
