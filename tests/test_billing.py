"""Tests for LedgerBillingGate pricing, balances and charging."""

import pytest

from scrapegate.billing import LedgerBillingGate
from scrapegate.config import DEFAULT_SNAPSHOT, ConfigSnapshot, TierLimits
from scrapegate.exceptions import InsufficientBalanceError
from scrapegate.models import ChargeDetails, CostInput, UsageRecord


@pytest.fixture
def gate():
    return LedgerBillingGate(DEFAULT_SNAPSHOT, balances={"user-1": 1.0})


class TestPricing:
    """Tests for estimate_cost and calculate_costs."""

    def test_estimate_is_doubled_average_page(self, gate):
        # 2000 * 0.15 + 500 * 0.60 per million, doubled
        assert gate.estimate_cost(1, "openai", "gpt-4o-mini") == pytest.approx(0.0012)
        assert gate.estimate_cost(10, "openai", "gpt-4o-mini") == pytest.approx(0.012)

    def test_estimate_treats_zero_pages_as_one(self, gate):
        assert gate.estimate_cost(0, "openai", "gpt-4o-mini") == gate.estimate_cost(1, "openai", "gpt-4o-mini")

    def test_free_models_cost_nothing(self, gate):
        assert gate.estimate_cost(1, "openrouter", "meta-llama/llama-3-8b:free") == 0.0

    def test_markup_applied(self, gate):
        costs = gate.calculate_costs(
            CostInput(provider="openai", model="gpt-4o-mini", input_tokens=1_000_000, tier="pro")
        )
        assert costs.llm_cost_usd == pytest.approx(0.15)
        assert costs.markup_rate == pytest.approx(0.02)
        assert costs.user_cost_usd == pytest.approx(0.153)

    def test_no_markup_for_byok(self, gate):
        costs = gate.calculate_costs(
            CostInput(provider="openai", model="gpt-4o-mini", input_tokens=1_000_000, tier="pro", is_byok=True)
        )
        assert costs.user_cost_usd == pytest.approx(0.15)
        assert costs.markup_usd == 0.0

    def test_cost_per_transaction(self):
        snapshot = ConfigSnapshot(
            tiers={"free": TierLimits(display_name="Free", markup_rate=0.0, cost_per_transaction=0.01)}
        )
        gate = LedgerBillingGate(snapshot)
        costs = gate.calculate_costs(CostInput(provider="openai", model="anything"))
        assert costs.user_cost_usd == pytest.approx(0.01)


class TestBalanceChecks:
    """Tests for check_sufficient_balance."""

    @pytest.mark.asyncio
    async def test_free_tier_always_passes(self, gate):
        await gate.check_sufficient_balance("user-1", "free", 100.0)

    @pytest.mark.asyncio
    async def test_skip_credit_check(self, gate):
        await gate.check_sufficient_balance("user-1", "pro", 100.0, skip_credit_check=True)
        assert gate.balance_enforced("pro", skip_credit_check=True) is False

    @pytest.mark.asyncio
    async def test_raises_when_short(self, gate):
        with pytest.raises(InsufficientBalanceError) as excinfo:
            await gate.check_sufficient_balance("user-1", "tier_v1_pro", 2.0)
        assert excinfo.value.required_usd == 2.0
        assert excinfo.value.available_usd == 1.0

    @pytest.mark.asyncio
    async def test_lookup_failure_allows(self, gate):
        await gate.check_sufficient_balance("", "pro", 2.0)

    @pytest.mark.asyncio
    async def test_credit(self, gate):
        assert await gate.credit("user-1", 0.5) == pytest.approx(1.5)
        assert await gate.get_available_balance("user-1") == pytest.approx(1.5)


class TestCharging:
    """Tests for charge_for_usage and record_usage."""

    @pytest.mark.asyncio
    async def test_charge_deducts_and_records(self, gate):
        result = await gate.charge_for_usage(
            ChargeDetails(
                user_id="user-1",
                tier="pro",
                provider="openai",
                model="gpt-4o-mini",
                input_tokens=1_000_000,
            )
        )

        assert result.deducted is True
        assert result.total_cost_usd == pytest.approx(0.153)
        assert await gate.get_available_balance("user-1") == pytest.approx(0.847)
        record = gate.usage_records[0]
        assert record.status == "success"
        assert record.tier == "pro"

    @pytest.mark.asyncio
    async def test_byok_is_recorded_but_not_deducted(self, gate):
        result = await gate.charge_for_usage(
            ChargeDetails(
                user_id="user-1",
                provider="openai",
                model="gpt-4o-mini",
                input_tokens=1_000_000,
                is_byok=True,
            )
        )

        assert result.deducted is False
        assert await gate.get_available_balance("user-1") == pytest.approx(1.0)
        assert gate.usage_records[0].is_byok is True

    @pytest.mark.asyncio
    async def test_status_from_page_counts(self, gate):
        for attempted, successful in ((3, 1), (3, 0)):
            await gate.charge_for_usage(
                ChargeDetails(
                    user_id="user-1",
                    job_type="crawl",
                    provider="openai",
                    model="gpt-4o-mini",
                    pages_attempted=attempted,
                    pages_successful=successful,
                )
            )
        assert [r.status for r in gate.usage_records] == ["partial", "failed"]

    @pytest.mark.asyncio
    async def test_record_usage(self, gate):
        await gate.record_usage(UsageRecord(user_id="user-1", status="failed", error_code="rate_limit"))
        assert gate.usage_records[0].error_code == "rate_limit"
