"""
Subscription Lifecycle Engine

The one write path shared by the validation pass, the renewal sweep and the
webhook reconciler:

1. Serialize on the subscription id (in-process lock)
2. Re-read the subscription and its newest unapplied approval
3. Ask the state machine for a transition
4. Write subscription, payment and tenant effect in one transaction
   (the version column rejects a concurrent writer from another process)
5. Hand the tenant notification to the dispatcher after commit
"""

import asyncio
from collections import defaultdict
from contextlib import asynccontextmanager
from datetime import datetime
from typing import Any, AsyncIterator, Awaitable, Callable, Dict, Optional, Tuple
from uuid import UUID

import structlog
from sqlalchemy.exc import InterfaceError, OperationalError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker
from sqlalchemy.orm.exc import StaleDataError

from billing_engine.models.tenant import Tenant
from billing_engine.models.subscription import Subscription
from billing_engine.shared.core.exceptions import (
    ConcurrentModificationError,
    RepositoryUnavailableError,
)
from billing_engine.shared.core.metrics import SUBSCRIPTION_TRANSITIONS
from billing_engine.shared.core.pricing import (
    PlanTier,
    FREE_TIER_MAX_APPOINTMENTS,
    get_tier_name,
    get_tier_quota,
)
from billing_engine.shared.db.base import utcnow
from billing_engine.modules.billing.domain.repository import SubscriptionRepository
from billing_engine.modules.billing.domain.state_machine import (
    TenantEffect,
    Transition,
    Trigger,
    decide,
    grace_deadline_for,
    is_usable_approval,
)
from billing_engine.modules.notifications.domain.dispatcher import Notification, NotificationDispatcher

logger = structlog.get_logger()

PrepareHook = Callable[[SubscriptionRepository, Subscription], Awaitable[None]]


class SubscriptionLocks:
    """Per-subscription asyncio locks, dropped once nobody holds or waits on them."""

    def __init__(self):
        self._locks: Dict[UUID, asyncio.Lock] = {}
        self._users: Dict[UUID, int] = defaultdict(int)

    def __len__(self) -> int:
        return len(self._locks)

    @asynccontextmanager
    async def hold(self, subscription_id: UUID) -> AsyncIterator[None]:
        lock = self._locks.setdefault(subscription_id, asyncio.Lock())
        self._users[subscription_id] += 1
        try:
            async with lock:
                yield
        finally:
            self._users[subscription_id] -= 1
            if self._users[subscription_id] == 0:
                del self._users[subscription_id]
                self._locks.pop(subscription_id, None)


def build_notification(
    kind: str,
    tenant: Tenant,
    subscription: Subscription,
    **extra: Any,
) -> Notification:
    context = {
        "tenant_id": str(tenant.id),
        "tenant_name": tenant.name,
        "subscription_id": str(subscription.id),
        "plan_name": get_tier_name(subscription.plan_tier),
        "amount": str(subscription.price_amount),
        "currency": subscription.currency,
        "due_date": subscription.next_billing_date.date().isoformat()
        if subscription.next_billing_date else None,
    }
    context.update(extra)
    return Notification(kind=kind, contact=tenant.email, context=context)


class LifecycleEngine:
    def __init__(
        self,
        session_maker: async_sessionmaker[AsyncSession],
        dispatcher: Optional[NotificationDispatcher] = None,
        locks: Optional[SubscriptionLocks] = None,
    ):
        self.session_maker = session_maker
        self.dispatcher = dispatcher
        self.locks = locks or SubscriptionLocks()

    @asynccontextmanager
    async def unit_of_work(
        self,
        subscription_id: UUID,
        lock: bool = True,
    ) -> AsyncIterator[Tuple[SubscriptionRepository, Subscription]]:
        """
        One transaction around a freshly read subscription, under the
        in-process lock for its id. The row itself is not locked; a writer
        from another process is caught by the version column at commit.
        Pass lock=False when the caller already holds the in-process lock.
        """
        if lock:
            async with self.locks.hold(subscription_id):
                async with self.unit_of_work(subscription_id, lock=False) as unit:
                    yield unit
            return

        try:
            async with self.session_maker() as db:
                async with db.begin():
                    repo = SubscriptionRepository(db)
                    subscription = await repo.get_subscription(subscription_id)
                    yield repo, subscription
        except StaleDataError as e:
            raise ConcurrentModificationError(
                "Subscription changed by another writer",
                details={"subscription_id": str(subscription_id)},
            ) from e
        except (OperationalError, InterfaceError) as e:
            raise RepositoryUnavailableError(
                "Subscription store unavailable",
                details={"subscription_id": str(subscription_id), "error": str(e.orig)},
            ) from e

    def dispatch(self, notification: Optional[Notification]) -> None:
        if notification is not None and self.dispatcher is not None:
            self.dispatcher.enqueue(notification)

    async def apply(
        self,
        subscription_id: UUID,
        trigger: Trigger = Trigger.TICK,
        now: Optional[datetime] = None,
        prepare: Optional[PrepareHook] = None,
    ) -> Optional[Transition]:
        """
        Re-read, decide and persist. Returns the transition written, or None.

        `prepare` runs inside the same transaction before the decision (the
        reconciler uses it to record the payment outcome atomically).
        """
        now = now or utcnow()
        notification = None

        async with self.unit_of_work(subscription_id) as (repo, subscription):
            if prepare is not None:
                await prepare(repo, subscription)

            snapshot = await repo.snapshot(subscription)
            transition = decide(snapshot, now, trigger)

            if transition is None:
                if snapshot.approval is not None and not is_usable_approval(snapshot, snapshot.approval):
                    logger.info(
                        "stale_approval_ignored",
                        subscription_id=str(subscription_id),
                        payment_id=str(snapshot.approval.id),
                        status=snapshot.status,
                    )
                return None

            tenant = await repo.get_tenant(subscription.tenant_id)
            await self._write(repo, subscription, tenant, transition, now)

            if transition.notification:
                notification = build_notification(
                    transition.notification,
                    tenant,
                    subscription,
                    grace_deadline=iso_date(grace_deadline_for(snapshot)),
                )

        SUBSCRIPTION_TRANSITIONS.labels(
            from_status=transition.from_status,
            to_status=transition.to_status,
        ).inc()
        logger.info(
            "subscription_transition_applied",
            subscription_id=str(subscription_id),
            tenant_id=str(subscription.tenant_id),
            from_status=transition.from_status,
            to_status=transition.to_status,
            reason=transition.reason,
            trigger=trigger.value,
            next_billing_date=iso_date(transition.next_billing_date),
        )
        self.dispatch(notification)
        return transition

    async def _write(
        self,
        repo: SubscriptionRepository,
        subscription: Subscription,
        tenant: Tenant,
        transition: Transition,
        now: datetime,
    ) -> None:
        subscription.status = transition.to_status
        subscription.next_billing_date = transition.next_billing_date
        repo.save_audit(subscription, transition.audit)

        if transition.payment_id is not None:
            payment = await repo.get_payment(transition.payment_id)
            payment.applied_at = now

        if transition.tenant_effect == TenantEffect.DOWNGRADE_TO_FREE:
            tenant.plan_tier = PlanTier.FREE.value
            tenant.max_appointments = FREE_TIER_MAX_APPOINTMENTS
            logger.warning(
                "tenant_downgraded_to_free",
                tenant_id=str(tenant.id),
                subscription_id=str(subscription.id),
                reason=transition.reason,
            )
        elif transition.tenant_effect == TenantEffect.RESTORE_PLAN:
            tenant.plan_tier = subscription.plan_tier
            tenant.max_appointments = get_tier_quota(subscription.plan_tier)
            logger.info(
                "tenant_plan_restored",
                tenant_id=str(tenant.id),
                plan_tier=subscription.plan_tier,
            )


def iso_date(value: Optional[datetime]) -> Optional[str]:
    return value.date().isoformat() if value else None
