"""
Subscription Validation Service

Runs on every validation tick and reconciles each paid subscription
against the clock and its payment history:

1. Backstop reconciliation of PENDING payments with the gateway
2. ACTIVE subscriptions past their billing date -> PAYMENT_FAILED
3. Dunning: PAYMENT_FAILED -> GRACE_PERIOD -> SUSPENDED
4. One `payment_failed` notice per payment rejected in the last 24 hours

Every step is idempotent; a second run with nothing changed transitions
nothing.
"""

from collections import defaultdict
from datetime import datetime, timedelta
from typing import Dict, List, Optional
from uuid import UUID

import structlog

from billing_engine.models.subscription import Payment, SubscriptionStatus
from billing_engine.shared.core.logging import bound_run
from billing_engine.shared.db.base import utcnow
from billing_engine.modules.billing.domain.audit import AuditMetadata
from billing_engine.modules.billing.domain.batch import process_each
from billing_engine.modules.billing.domain.lifecycle import LifecycleEngine, build_notification
from billing_engine.modules.billing.domain.reconciler import PaymentReconciler, ReconcileOutcome
from billing_engine.modules.billing.domain.repository import SubscriptionRepository
from billing_engine.modules.billing.domain.state_machine import UNTOUCHABLE_STATUSES

logger = structlog.get_logger()

FAILED_PAYMENT_WINDOW_HOURS = 24


class SubscriptionValidationService:
    def __init__(
        self,
        engine: LifecycleEngine,
        reconciler: Optional[PaymentReconciler] = None,
        max_concurrency: Optional[int] = None,
    ):
        self.engine = engine
        self.reconciler = reconciler
        self.max_concurrency = max_concurrency
        self._errors = 0

    async def reconcile_pending_payments(self, now: Optional[datetime] = None) -> int:
        """Ask the gateway about every open payment. Returns approvals applied."""
        if self.reconciler is None:
            return 0
        now = now or utcnow()

        async with self.engine.session_maker() as db:
            payments = await SubscriptionRepository(db).find_open_payments()
            candidates = [(p.id, p.charge_id) for p in payments]

        async def _reconcile(candidate):
            payment_id, charge_id = candidate
            return await self.reconciler.reconcile_payment(payment_id, charge_id=charge_id, now=now)

        batch = await process_each("reconcile_pending_payments", candidates, _reconcile, self.max_concurrency)
        self._errors += batch.errors
        return batch.count(lambda outcome: outcome == ReconcileOutcome.APPLIED)

    async def validate_expired_subscriptions(self, now: Optional[datetime] = None) -> int:
        """Overdue ACTIVE subscriptions: renew on a late approval, else open dunning."""
        now = now or utcnow()
        async with self.engine.session_maker() as db:
            ids = await SubscriptionRepository(db).find_overdue_active(now)

        batch = await process_each(
            "validate_expired_subscriptions",
            ids,
            lambda sid: self.engine.apply(sid, now=now),
            self.max_concurrency,
        )
        self._errors += batch.errors
        expired = batch.count(lambda t: t is not None)
        if ids:
            logger.info("expired_subscriptions_processed", candidates=len(ids), transitioned=expired)
        return expired

    async def process_dunning(self, now: Optional[datetime] = None) -> Dict[str, int]:
        now = now or utcnow()
        async with self.engine.session_maker() as db:
            ids = await SubscriptionRepository(db).find_in_dunning()

        batch = await process_each(
            "process_dunning",
            ids,
            lambda sid: self.engine.apply(sid, now=now),
            self.max_concurrency,
        )
        self._errors += batch.errors
        return {
            "transitioned": batch.count(lambda t: t is not None),
            "suspended": batch.count(
                lambda t: t is not None and t.to_status == SubscriptionStatus.SUSPENDED.value
            ),
        }

    async def check_failed_payments(self, now: Optional[datetime] = None) -> int:
        """Notify tenants about payments rejected in the last 24 hours, once per payment."""
        now = now or utcnow()
        since = now - timedelta(hours=FAILED_PAYMENT_WINDOW_HOURS)

        async with self.engine.session_maker() as db:
            rejected = await SubscriptionRepository(db).find_recent_rejections(since)
            by_subscription: Dict[UUID, List[Payment]] = defaultdict(list)
            for payment in rejected:
                by_subscription[payment.subscription_id].append(payment)

        async def _notify(subscription_id: UUID) -> int:
            notifications = []
            async with self.engine.unit_of_work(subscription_id) as (repo, subscription):
                if subscription.status in UNTOUCHABLE_STATUSES:
                    return 0
                audit = AuditMetadata.from_dict(subscription.audit_metadata)
                fresh = [
                    p for p in by_subscription[subscription_id]
                    if audit.last_rejection_notified is None or p.updated_at > audit.last_rejection_notified
                ]
                if not fresh:
                    return 0
                tenant = await repo.get_tenant(subscription.tenant_id)
                for payment in fresh:
                    notifications.append(build_notification(
                        "payment_failed",
                        tenant,
                        subscription,
                        payment_id=str(payment.id),
                        failure_reason=payment.failure_reason,
                    ))
                repo.save_audit(subscription, audit.with_rejection_notified(max(p.updated_at for p in fresh)))

            for notification in notifications:
                self.engine.dispatch(notification)
            return len(notifications)

        batch = await process_each("check_failed_payments", list(by_subscription), _notify, self.max_concurrency)
        self._errors += batch.errors
        return sum(batch.results)

    async def run_all_validations(self, now: Optional[datetime] = None) -> Dict[str, int]:
        """
        One full validation pass. Never raises for a single subscription;
        raises only when a candidate query itself cannot run.
        """
        now = now or utcnow()
        self._errors = 0
        with bound_run("subscription_validation"):
            logger.info("subscription_validation_started")
            reconciled = await self.reconcile_pending_payments(now)
            expired = await self.validate_expired_subscriptions(now)
            dunning = await self.process_dunning(now)
            failed = await self.check_failed_payments(now)

            summary = {
                "reconciled": reconciled,
                "expiredProcessed": expired,
                "suspended": dunning["suspended"],
                "failedPayments": failed,
                "errors": self._errors,
            }
            logger.info("subscription_validation_completed", **summary)
            return summary
