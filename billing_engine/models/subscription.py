from uuid import UUID, uuid4
from decimal import Decimal
from datetime import datetime
from enum import Enum
from typing import Any, List, Optional, TYPE_CHECKING
from sqlalchemy import String, Integer, Numeric, ForeignKey, Index, UniqueConstraint, Uuid, JSON
from sqlalchemy.orm import Mapped, mapped_column, relationship

from billing_engine.shared.db.base import Base, UTCDateTime, utcnow
from billing_engine.shared.core.config import get_settings
from billing_engine.shared.core.pricing import PlanTier, BillingCycle

if TYPE_CHECKING:
    from billing_engine.models.tenant import Tenant


def _default_currency() -> str:
    return get_settings().BILLING_CURRENCY


class SubscriptionStatus(str, Enum):
    """Lifecycle states. FREE is non-billable, CANCELLED is tenant-owned."""
    FREE = "FREE"
    ACTIVE = "ACTIVE"
    PAYMENT_FAILED = "PAYMENT_FAILED"
    GRACE_PERIOD = "GRACE_PERIOD"
    SUSPENDED = "SUSPENDED"
    CANCELLED = "CANCELLED"


class PaymentStatus(str, Enum):
    PENDING = "PENDING"
    APPROVED = "APPROVED"
    REJECTED = "REJECTED"


class Subscription(Base):
    """
    Persistent subscription state per tenant (1:1). Never hard-deleted.
    """
    __tablename__ = "subscriptions"

    id: Mapped[UUID] = mapped_column(Uuid, primary_key=True, default=uuid4)
    tenant_id: Mapped[UUID] = mapped_column(
        Uuid,
        ForeignKey("tenants.id"),
        unique=True,
        nullable=False,
        index=True
    )

    plan_tier: Mapped[str] = mapped_column(String(20), default=PlanTier.FREE.value)
    billing_cycle: Mapped[str] = mapped_column(String(10), default=BillingCycle.MONTHLY.value)
    price_amount: Mapped[Decimal] = mapped_column(Numeric(12, 2), default=Decimal("0"))
    currency: Mapped[str] = mapped_column(String(3), default=_default_currency)
    status: Mapped[str] = mapped_column(String(20), default=SubscriptionStatus.FREE.value, index=True)

    # Null only for FREE
    next_billing_date: Mapped[Optional[datetime]] = mapped_column(UTCDateTime, nullable=True, index=True)

    # Audit trail (reminders, dunning, suspension); see domain/audit.py
    audit_metadata: Mapped[dict[str, Any]] = mapped_column("metadata", JSON, default=dict)

    # Optimistic concurrency: every write bumps it, stale writers fail
    version: Mapped[int] = mapped_column(Integer, nullable=False, default=1)

    created_at: Mapped[datetime] = mapped_column(UTCDateTime, default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(UTCDateTime, default=utcnow, onupdate=utcnow)

    tenant: Mapped["Tenant"] = relationship(back_populates="subscription")
    payments: Mapped[List["Payment"]] = relationship(
        back_populates="subscription",
        order_by="Payment.created_at",
    )

    __mapper_args__ = {"version_id_col": version}


class Payment(Base):
    """One renewal attempt. Terminal once APPROVED or REJECTED."""
    __tablename__ = "payments"
    __table_args__ = (
        Index("ix_payments_subscription_status", "subscription_id", "status"),
    )

    id: Mapped[UUID] = mapped_column(Uuid, primary_key=True, default=uuid4)
    subscription_id: Mapped[UUID] = mapped_column(
        Uuid,
        ForeignKey("subscriptions.id"),
        nullable=False,
        index=True
    )

    amount: Mapped[Decimal] = mapped_column(Numeric(12, 2), nullable=False)
    currency: Mapped[str] = mapped_column(String(3), default=_default_currency)
    billing_cycle: Mapped[str] = mapped_column(String(10), nullable=False)
    status: Mapped[str] = mapped_column(String(20), default=PaymentStatus.PENDING.value, index=True)
    payment_method: Mapped[Optional[str]] = mapped_column(String(50), nullable=True)

    # Gateway references
    charge_id: Mapped[Optional[str]] = mapped_column(String(255), unique=True, nullable=True)
    order_id: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    checkout_url: Mapped[Optional[str]] = mapped_column(String(1024), nullable=True)
    failure_reason: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)

    paid_at: Mapped[Optional[datetime]] = mapped_column(UTCDateTime, nullable=True)
    # Set when the approval has advanced the billing date; consumed approvals never apply twice
    applied_at: Mapped[Optional[datetime]] = mapped_column(UTCDateTime, nullable=True)

    created_at: Mapped[datetime] = mapped_column(UTCDateTime, default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(UTCDateTime, default=utcnow, onupdate=utcnow)

    subscription: Mapped["Subscription"] = relationship(back_populates="payments")


class PaymentNotification(Base):
    """
    Idempotency ledger for gateway notifications.
    One row per (charge_id, target_status) effect that has been applied.
    """
    __tablename__ = "payment_notifications"
    __table_args__ = (
        UniqueConstraint("charge_id", "target_status", name="uq_payment_notification_effect"),
    )

    id: Mapped[UUID] = mapped_column(Uuid, primary_key=True, default=uuid4)
    charge_id: Mapped[str] = mapped_column(String(255), nullable=False, index=True)
    target_status: Mapped[str] = mapped_column(String(20), nullable=False)
    payment_id: Mapped[Optional[UUID]] = mapped_column(Uuid, ForeignKey("payments.id"), nullable=True)
    outcome: Mapped[str] = mapped_column(String(20), nullable=False)
    received_at: Mapped[datetime] = mapped_column(UTCDateTime, default=utcnow)
