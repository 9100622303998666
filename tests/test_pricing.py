"""
Tests for plan catalogue and billing cycle arithmetic
"""

from datetime import datetime, timezone
from decimal import Decimal

import pytest

from billing_engine.shared.core.pricing import (
    PlanTier,
    BillingCycle,
    FREE_TIER_MAX_APPOINTMENTS,
    add_billing_cycle,
    get_tier_name,
    get_tier_price,
    get_tier_quota,
)


class TestCatalogue:
    @pytest.mark.parametrize("tier,quota", [
        (PlanTier.FREE, 30),
        (PlanTier.BASIC, 100),
        (PlanTier.PREMIUM, 500),
        (PlanTier.ENTERPRISE, 999999),
    ])
    def test_quotas(self, tier, quota):
        assert get_tier_quota(tier) == quota

    def test_unknown_tier_gets_free_quota(self):
        assert get_tier_quota("LEGACY") == FREE_TIER_MAX_APPOINTMENTS

    def test_prices_accept_enum_or_string(self):
        assert get_tier_price(PlanTier.BASIC, BillingCycle.MONTHLY) == Decimal("18900")
        assert get_tier_price("PREMIUM", "YEARLY") == Decimal("249000")

    def test_tier_name(self):
        assert get_tier_name("ENTERPRISE") == "Enterprise Plan"
        assert get_tier_name("LEGACY") == "LEGACY"


class TestBillingCycle:
    def test_monthly(self):
        start = datetime(2026, 3, 10, 9, 30, tzinfo=timezone.utc)
        assert add_billing_cycle(start, BillingCycle.MONTHLY) == datetime(2026, 4, 10, 9, 30, tzinfo=timezone.utc)

    def test_month_end_is_clamped(self):
        start = datetime(2026, 1, 31, tzinfo=timezone.utc)
        assert add_billing_cycle(start, "MONTHLY") == datetime(2026, 2, 28, tzinfo=timezone.utc)

    def test_december_rolls_year(self):
        start = datetime(2026, 12, 15, tzinfo=timezone.utc)
        assert add_billing_cycle(start, "MONTHLY") == datetime(2027, 1, 15, tzinfo=timezone.utc)

    def test_yearly_leap_day(self):
        start = datetime(2028, 2, 29, tzinfo=timezone.utc)
        assert add_billing_cycle(start, BillingCycle.YEARLY) == datetime(2029, 2, 28, tzinfo=timezone.utc)

    def test_negative_count_moves_back(self):
        start = datetime(2026, 3, 31, tzinfo=timezone.utc)
        assert add_billing_cycle(start, "MONTHLY", -1) == datetime(2026, 2, 28, tzinfo=timezone.utc)
