"""
Renewal Reminder Service

Runs on every renewal tick:
- Upcoming expirations: reminder with a checkout link exactly 7, 3 and 1
  days before the billing date
- Payment retries: reminder on each dunning retry slot (day 1, 3, 7 after due)
- Expired sweep: renew in place on a late approval, otherwise let the
  state machine advance dunning or suspend

Reminders go out at most once per UTC calendar day per subscription, so a
tick interval that does not line up with day boundaries cannot cause a
reminder storm.

Charge creation: a PENDING Payment is committed first, the gateway is
called with that payment id as idempotency key, then the checkout link is
attached. A PENDING payment left without a link is completed on a later
tick instead of opening a second charge.
"""

import uuid
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Dict, Optional
from uuid import UUID

import structlog

from billing_engine.models.subscription import Payment, PaymentStatus, Subscription, SubscriptionStatus
from billing_engine.shared.core.logging import bound_run
from billing_engine.shared.core.pricing import get_tier_price
from billing_engine.shared.db.base import utcnow
from billing_engine.modules.billing.domain.audit import AuditMetadata
from billing_engine.modules.billing.domain.batch import process_each
from billing_engine.modules.billing.domain.gateway import PaymentGateway, RenewalChargeRequest
from billing_engine.modules.billing.domain.lifecycle import LifecycleEngine, build_notification, iso_date
from billing_engine.modules.billing.domain.repository import SubscriptionRepository
from billing_engine.modules.billing.domain.state_machine import (
    DUNNING_STATUSES,
    retry_schedule_for,
    grace_deadline_for,
)

logger = structlog.get_logger()

REMINDER_LEAD_DAYS = (7, 3, 1)
UPCOMING_LOOKAHEAD_DAYS = 7

# (subscription, audit, now) -> extra template context, or None when no reminder is due
ReminderCheck = Callable[[Subscription, AuditMetadata, datetime], Optional[Dict[str, Any]]]


def days_until(due: datetime, now: datetime) -> int:
    """Whole UTC calendar days between now and the billing date."""
    return (due.astimezone(timezone.utc).date() - now.astimezone(timezone.utc).date()).days


def upcoming_window_end(now: datetime) -> datetime:
    """Midnight UTC after the last reminder day, so the scan covers whole calendar days."""
    today = now.astimezone(timezone.utc).replace(hour=0, minute=0, second=0, microsecond=0)
    return today + timedelta(days=UPCOMING_LOOKAHEAD_DAYS + 1)


def _upcoming_check(subscription: Subscription, audit: AuditMetadata, now: datetime) -> Optional[Dict[str, Any]]:
    if subscription.status != SubscriptionStatus.ACTIVE.value or subscription.next_billing_date is None:
        return None
    days_left = days_until(subscription.next_billing_date, now)
    if days_left not in REMINDER_LEAD_DAYS:
        return None
    return {"days_left": days_left}


def _retry_check(subscription: Subscription, audit: AuditMetadata, now: datetime) -> Optional[Dict[str, Any]]:
    if subscription.status not in DUNNING_STATUSES or subscription.next_billing_date is None:
        return None
    if audit.suspended_at is not None:
        return None
    schedule = audit.retry_schedule or retry_schedule_for(subscription.next_billing_date)
    today = now.astimezone(timezone.utc).date()
    slots = [slot.astimezone(timezone.utc).date() for slot in schedule]
    if today not in slots:
        return None
    return {"retry_attempt": slots.index(today) + 1, "retry_total": len(slots)}


class RenewalReminderService:
    def __init__(
        self,
        engine: LifecycleEngine,
        gateway: PaymentGateway,
        max_concurrency: Optional[int] = None,
    ):
        self.engine = engine
        self.gateway = gateway
        self.max_concurrency = max_concurrency
        self._errors = 0

    async def _remind(
        self,
        subscription_id: UUID,
        now: datetime,
        kind: str,
        check: ReminderCheck,
    ) -> bool:
        """Send one reminder with a checkout link if the check says one is due today."""
        async with self.engine.locks.hold(subscription_id):
            async with self.engine.unit_of_work(subscription_id, lock=False) as (repo, subscription):
                audit = AuditMetadata.from_dict(subscription.audit_metadata)
                extra = check(subscription, audit, now)
                if extra is None or audit.reminded_on(now):
                    return False

                tenant = await repo.get_tenant(subscription.tenant_id)
                payment = await self._ensure_payment(repo, subscription)
                payment_id, checkout_url = payment.id, payment.checkout_url
                request = RenewalChargeRequest(
                    payment_id=payment.id,
                    subscription_id=subscription.id,
                    tenant_id=tenant.id,
                    tenant_name=tenant.name,
                    tenant_email=tenant.email,
                    plan_tier=subscription.plan_tier,
                    billing_cycle=subscription.billing_cycle,
                    amount=payment.amount,
                    currency=payment.currency,
                )

            # Gateway call happens outside any open transaction
            charge = None
            if checkout_url is None:
                charge = await self.gateway.create_renewal_charge(request)
                checkout_url = charge.checkout_url

            async with self.engine.unit_of_work(subscription_id, lock=False) as (repo, subscription):
                if charge is not None:
                    payment = await repo.get_payment(payment_id)
                    payment.order_id = charge.order_id
                    payment.checkout_url = charge.checkout_url

                audit = AuditMetadata.from_dict(subscription.audit_metadata)
                repo.save_audit(subscription, audit.with_reminder(now))
                tenant = await repo.get_tenant(subscription.tenant_id)
                snapshot = await repo.snapshot(subscription)
                notification = build_notification(
                    kind,
                    tenant,
                    subscription,
                    checkout_url=checkout_url,
                    grace_deadline=iso_date(grace_deadline_for(snapshot)),
                    **extra,
                )

        self.engine.dispatch(notification)
        logger.info(
            "renewal_reminder_sent",
            kind=kind,
            subscription_id=str(subscription_id),
            payment_id=str(payment_id),
            reused_charge=charge is None,
            **extra,
        )
        return True

    async def _ensure_payment(self, repo: SubscriptionRepository, subscription: Subscription) -> Payment:
        """
        Reuse the live PENDING payment, or open a new one for this cycle.
        A subscription without a stored price is charged the catalogue price.
        """
        pending = await repo.get_live_pending_payment(subscription.id)
        if pending is not None:
            return pending

        payment = repo.add_payment(Payment(
            id=uuid.uuid4(),
            subscription_id=subscription.id,
            amount=subscription.price_amount or get_tier_price(subscription.plan_tier, subscription.billing_cycle),
            currency=subscription.currency,
            billing_cycle=subscription.billing_cycle,
            status=PaymentStatus.PENDING.value,
            payment_method="renewal",
        ))
        logger.info(
            "renewal_payment_created",
            subscription_id=str(subscription.id),
            payment_id=str(payment.id),
            amount=str(payment.amount),
        )
        return payment

    async def process_upcoming_expirations(self, now: Optional[datetime] = None) -> Dict[str, int]:
        now = now or utcnow()
        async with self.engine.session_maker() as db:
            ids = await SubscriptionRepository(db).find_upcoming(now, upcoming_window_end(now))

        batch = await process_each(
            "process_upcoming_expirations",
            ids,
            lambda sid: self._remind(sid, now, "renewal_reminder", _upcoming_check),
            self.max_concurrency,
        )
        self._errors += batch.errors
        return {"total": batch.total, "processed": batch.count()}

    async def process_payment_retries(self, now: Optional[datetime] = None) -> Dict[str, int]:
        now = now or utcnow()
        async with self.engine.session_maker() as db:
            ids = await SubscriptionRepository(db).find_in_dunning()

        batch = await process_each(
            "process_payment_retries",
            ids,
            lambda sid: self._remind(sid, now, "payment_retry", _retry_check),
            self.max_concurrency,
        )
        self._errors += batch.errors
        return {"total": batch.total, "processed": batch.count()}

    async def suspend_expired_subscriptions(self, now: Optional[datetime] = None) -> Dict[str, int]:
        """
        Last-chance sweep over billable subscriptions whose date has passed.
        Goes through the same state machine as the validation pass, so an
        approval renews in place and a suspension happens only once.
        """
        now = now or utcnow()
        async with self.engine.session_maker() as db:
            ids = await SubscriptionRepository(db).find_expired(now)

        batch = await process_each(
            "suspend_expired_subscriptions",
            ids,
            lambda sid: self.engine.apply(sid, now=now),
            self.max_concurrency,
        )
        self._errors += batch.errors
        return {
            "total": batch.total,
            "renewed": batch.count(
                lambda t: t is not None and t.to_status == SubscriptionStatus.ACTIVE.value
            ),
            "suspended": batch.count(
                lambda t: t is not None and t.to_status == SubscriptionStatus.SUSPENDED.value
            ),
        }

    async def run_all_renewal_tasks(self, now: Optional[datetime] = None) -> Dict[str, Any]:
        now = now or utcnow()
        self._errors = 0
        with bound_run("subscription_renewal"):
            logger.info("renewal_tasks_started")
            summary = {
                "upcomingExpirations": await self.process_upcoming_expirations(now),
                "retries": await self.process_payment_retries(now),
                "suspensions": await self.suspend_expired_subscriptions(now),
                "errors": self._errors,
            }
            logger.info("renewal_tasks_completed", **summary)
            return summary

