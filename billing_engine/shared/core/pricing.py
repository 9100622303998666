"""
Plan Catalogue and Billing Cycle Arithmetic

This module defines:
- Plan tiers, their renewal prices and appointment quotas
- Billing cycles and how far one cycle moves a billing date
"""

import calendar
from datetime import datetime
from decimal import Decimal
from enum import Enum


class PlanTier(str, Enum):
    """Available subscription tiers."""
    FREE = "FREE"
    BASIC = "BASIC"
    PREMIUM = "PREMIUM"
    ENTERPRISE = "ENTERPRISE"


class BillingCycle(str, Enum):
    MONTHLY = "MONTHLY"
    YEARLY = "YEARLY"


# Prices in ARS. Quotas are monthly appointment limits applied to the tenant.
TIER_CONFIG = {
    PlanTier.FREE: {
        "name": "Free Plan",
        "price": {"monthly": Decimal("0"), "yearly": Decimal("0")},
        "max_appointments": 30,
    },
    PlanTier.BASIC: {
        "name": "Basic Plan",
        "price": {"monthly": Decimal("18900"), "yearly": Decimal("189000")},
        "max_appointments": 100,
    },
    PlanTier.PREMIUM: {
        "name": "Premium Plan",
        "price": {"monthly": Decimal("24900"), "yearly": Decimal("249000")},
        "max_appointments": 500,
    },
    PlanTier.ENTERPRISE: {
        "name": "Enterprise Plan",
        "price": {"monthly": Decimal("90900"), "yearly": Decimal("909000")},
        "max_appointments": 999999,
    },
}

FREE_TIER_MAX_APPOINTMENTS = TIER_CONFIG[PlanTier.FREE]["max_appointments"]


def get_tier_quota(tier: PlanTier | str) -> int:
    """Appointment quota for a tier; unknown tiers fall back to the FREE limit."""
    try:
        return TIER_CONFIG[PlanTier(tier)]["max_appointments"]
    except ValueError:
        return FREE_TIER_MAX_APPOINTMENTS


def get_tier_name(tier: PlanTier | str) -> str:
    try:
        return TIER_CONFIG[PlanTier(tier)]["name"]
    except ValueError:
        return str(tier)


def get_tier_price(tier: PlanTier | str, cycle: BillingCycle | str) -> Decimal:
    key = "yearly" if BillingCycle(cycle) == BillingCycle.YEARLY else "monthly"
    return TIER_CONFIG[PlanTier(tier)]["price"][key]


def _add_months(value: datetime, months: int) -> datetime:
    month_index = value.month - 1 + months
    year = value.year + month_index // 12
    month = month_index % 12 + 1
    # Jan 31 + 1 month lands on the last day of February, never in March
    day = min(value.day, calendar.monthrange(year, month)[1])
    return value.replace(year=year, month=month, day=day)


def add_billing_cycle(value: datetime, cycle: BillingCycle | str, count: int = 1) -> datetime:
    """Move a billing date forward (or back, with a negative count) by whole cycles."""
    if BillingCycle(cycle) == BillingCycle.YEARLY:
        return _add_months(value, 12 * count)
    return _add_months(value, count)
