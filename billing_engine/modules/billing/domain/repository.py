"""
Subscription Repository

Single source of truth for subscription, payment and tenant state.
Every method works inside the caller's session; the caller owns the
transaction. Candidate queries return ids only so that each subscription
is re-read inside its own unit of work.
"""

from datetime import datetime
from typing import List, Optional, Sequence
from uuid import UUID

from sqlalchemy import select, and_
from sqlalchemy.ext.asyncio import AsyncSession

from billing_engine.models.tenant import Tenant
from billing_engine.models.subscription import (
    Subscription,
    SubscriptionStatus,
    Payment,
    PaymentStatus,
    PaymentNotification,
)
from billing_engine.shared.core.exceptions import SubscriptionNotFoundError, TenantNotFoundError
from billing_engine.shared.core.pricing import PlanTier
from billing_engine.modules.billing.domain.audit import AuditMetadata
from billing_engine.modules.billing.domain.state_machine import (
    SubscriptionSnapshot,
    PaymentSnapshot,
    DUNNING_STATUSES,
    BILLABLE_STATUSES,
)


class SubscriptionRepository:
    def __init__(self, db: AsyncSession):
        self.db = db

    # Candidate scans

    async def _ids(self, query) -> List[UUID]:
        result = await self.db.execute(query.order_by(Subscription.next_billing_date))
        return list(result.scalars().all())

    async def find_overdue_active(self, now: datetime) -> List[UUID]:
        """Paid, ACTIVE subscriptions whose billing date has passed."""
        return await self._ids(
            select(Subscription.id).where(
                Subscription.plan_tier != PlanTier.FREE.value,
                Subscription.status == SubscriptionStatus.ACTIVE.value,
                Subscription.next_billing_date < now,
            )
        )

    async def find_in_dunning(self) -> List[UUID]:
        return await self._ids(
            select(Subscription.id).where(
                Subscription.plan_tier != PlanTier.FREE.value,
                Subscription.status.in_(DUNNING_STATUSES),
            )
        )

    async def find_upcoming(self, now: datetime, until: datetime) -> List[UUID]:
        """ACTIVE paid subscriptions due in [now, until)."""
        return await self._ids(
            select(Subscription.id).where(
                Subscription.plan_tier != PlanTier.FREE.value,
                Subscription.status == SubscriptionStatus.ACTIVE.value,
                Subscription.next_billing_date >= now,
                Subscription.next_billing_date < until,
            )
        )

    async def find_expired(self, now: datetime) -> List[UUID]:
        """Billable subscriptions of any dunning stage whose billing date is behind."""
        return await self._ids(
            select(Subscription.id).where(
                Subscription.plan_tier != PlanTier.FREE.value,
                Subscription.status.in_(BILLABLE_STATUSES),
                Subscription.next_billing_date < now,
            )
        )

    async def find_open_payments(self) -> Sequence[Payment]:
        """PENDING payments the gateway may have settled without telling us."""
        result = await self.db.execute(
            select(Payment)
            .join(Subscription, Subscription.id == Payment.subscription_id)
            .where(
                Payment.status == PaymentStatus.PENDING.value,
                Subscription.status.notin_(
                    (SubscriptionStatus.FREE.value, SubscriptionStatus.CANCELLED.value)
                ),
            )
            .order_by(Payment.created_at)
        )
        return result.scalars().all()

    async def find_recent_rejections(self, since: datetime) -> Sequence[Payment]:
        result = await self.db.execute(
            select(Payment)
            .where(
                Payment.status == PaymentStatus.REJECTED.value,
                Payment.updated_at >= since,
            )
            .order_by(Payment.updated_at)
        )
        return result.scalars().all()

    # Single rows

    async def get_subscription(self, subscription_id: UUID) -> Subscription:
        # populate_existing: always act on the freshest committed version
        result = await self.db.execute(
            select(Subscription)
            .where(Subscription.id == subscription_id)
            .execution_options(populate_existing=True)
        )
        subscription = result.scalar_one_or_none()
        if subscription is None:
            raise SubscriptionNotFoundError(
                "Subscription not found",
                details={"subscription_id": str(subscription_id)},
            )
        return subscription

    async def get_tenant(self, tenant_id: UUID) -> Tenant:
        tenant = await self.db.get(Tenant, tenant_id)
        if tenant is None:
            raise TenantNotFoundError(
                "Subscription references a missing tenant",
                details={"tenant_id": str(tenant_id)},
            )
        return tenant

    async def get_payment(self, payment_id: UUID) -> Optional[Payment]:
        result = await self.db.execute(
            select(Payment)
            .where(Payment.id == payment_id)
            .execution_options(populate_existing=True)
        )
        return result.scalar_one_or_none()

    async def get_payment_by_charge(self, charge_id: str) -> Optional[Payment]:
        result = await self.db.execute(
            select(Payment)
            .where(Payment.charge_id == charge_id)
            .execution_options(populate_existing=True)
        )
        return result.scalar_one_or_none()

    async def get_live_pending_payment(self, subscription_id: UUID) -> Optional[Payment]:
        """Newest PENDING payment; reused instead of opening a second charge."""
        result = await self.db.execute(
            select(Payment)
            .where(
                Payment.subscription_id == subscription_id,
                Payment.status == PaymentStatus.PENDING.value,
            )
            .order_by(Payment.created_at.desc())
            .limit(1)
        )
        return result.scalar_one_or_none()

    async def get_latest_unapplied_approval(self, subscription_id: UUID) -> Optional[Payment]:
        result = await self.db.execute(
            select(Payment)
            .where(
                and_(
                    Payment.subscription_id == subscription_id,
                    Payment.status == PaymentStatus.APPROVED.value,
                    Payment.applied_at.is_(None),
                )
            )
            .order_by(Payment.paid_at.desc())
            .limit(1)
        )
        return result.scalar_one_or_none()

    async def snapshot(self, subscription: Subscription) -> SubscriptionSnapshot:
        approval = await self.get_latest_unapplied_approval(subscription.id)
        return SubscriptionSnapshot(
            id=subscription.id,
            tenant_id=subscription.tenant_id,
            plan_tier=subscription.plan_tier,
            billing_cycle=subscription.billing_cycle,
            status=subscription.status,
            next_billing_date=subscription.next_billing_date,
            audit=AuditMetadata.from_dict(subscription.audit_metadata),
            approval=PaymentSnapshot(
                id=approval.id,
                status=approval.status,
                paid_at=approval.paid_at,
                applied_at=approval.applied_at,
                charge_id=approval.charge_id,
            ) if approval else None,
        )

    # Writes

    def add_payment(self, payment: Payment) -> Payment:
        self.db.add(payment)
        return payment

    def save_audit(self, subscription: Subscription, audit: AuditMetadata) -> None:
        # Reassign a new dict so the JSON column is flagged dirty
        subscription.audit_metadata = audit.to_dict()

    async def notification_applied(self, charge_id: str, target_status: str) -> bool:
        result = await self.db.execute(
            select(PaymentNotification.id).where(
                PaymentNotification.charge_id == charge_id,
                PaymentNotification.target_status == target_status,
            )
        )
        return result.scalar_one_or_none() is not None

    def record_notification(
        self,
        charge_id: str,
        target_status: str,
        outcome: str,
        payment_id: Optional[UUID],
        received_at: datetime,
    ) -> None:
        self.db.add(PaymentNotification(
            charge_id=charge_id,
            target_status=target_status,
            payment_id=payment_id,
            outcome=outcome,
            received_at=received_at,
        ))
