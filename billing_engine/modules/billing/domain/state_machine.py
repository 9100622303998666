"""
Subscription State Machine

Pure decision function over a subscription snapshot and the current time.
It is the only place that looks at subscription state and payment outcomes
together; callers persist whatever Transition it returns.

States: ACTIVE, PAYMENT_FAILED, GRACE_PERIOD, SUSPENDED.
FREE and CANCELLED are read but never written.

Dunning policy:
1. Renewal missed: ACTIVE -> PAYMENT_FAILED, retries on day 1, 3, 7 after due
2. Last retry slot passed: PAYMENT_FAILED -> GRACE_PERIOD
3. 10 days after the failure with no approval: -> SUSPENDED (tenant downgraded)
4. A usable approval returns any billable state to ACTIVE
"""

from dataclasses import dataclass
from datetime import datetime, timedelta
from enum import Enum
from typing import List, Optional
from uuid import UUID

from billing_engine.models.subscription import SubscriptionStatus, PaymentStatus
from billing_engine.shared.core.pricing import add_billing_cycle
from billing_engine.modules.billing.domain.audit import AuditMetadata

RETRY_SCHEDULE_DAYS = [1, 3, 7]  # Days after the original due date
GRACE_PERIOD_DAYS = 10  # Counted from the moment the payment failure is recorded
SUSPENSION_REASON_OVERDUE = "payment_overdue"

DUNNING_STATUSES = (
    SubscriptionStatus.PAYMENT_FAILED.value,
    SubscriptionStatus.GRACE_PERIOD.value,
)
BILLABLE_STATUSES = (SubscriptionStatus.ACTIVE.value,) + DUNNING_STATUSES
UNTOUCHABLE_STATUSES = (
    SubscriptionStatus.FREE.value,
    SubscriptionStatus.CANCELLED.value,
)


class Trigger(str, Enum):
    TICK = "tick"  # validation pass or expiry sweep
    APPROVAL = "approval"  # reconciled gateway approval only


class TenantEffect(str, Enum):
    DOWNGRADE_TO_FREE = "downgrade_to_free"
    RESTORE_PLAN = "restore_plan"


@dataclass(frozen=True)
class PaymentSnapshot:
    id: UUID
    status: str
    paid_at: Optional[datetime] = None
    applied_at: Optional[datetime] = None
    charge_id: Optional[str] = None


@dataclass(frozen=True)
class SubscriptionSnapshot:
    id: UUID
    tenant_id: UUID
    plan_tier: str
    billing_cycle: str
    status: str
    next_billing_date: Optional[datetime]
    audit: AuditMetadata
    # Newest APPROVED payment not yet consumed by a transition
    approval: Optional[PaymentSnapshot] = None

    @property
    def period_start(self) -> Optional[datetime]:
        if self.next_billing_date is None:
            return None
        return add_billing_cycle(self.next_billing_date, self.billing_cycle, -1)


@dataclass(frozen=True)
class Transition:
    from_status: str
    to_status: str
    reason: str
    next_billing_date: Optional[datetime]
    audit: AuditMetadata
    tenant_effect: Optional[TenantEffect] = None
    notification: Optional[str] = None
    payment_id: Optional[UUID] = None


def retry_schedule_for(due: datetime) -> List[datetime]:
    return [due + timedelta(days=d) for d in RETRY_SCHEDULE_DAYS]


def grace_deadline_for(snapshot: SubscriptionSnapshot) -> Optional[datetime]:
    audit = snapshot.audit
    if audit.grace_deadline:
        return audit.grace_deadline
    # Rows that entered dunning before the deadline was recorded
    anchor = audit.payment_failed_at or snapshot.next_billing_date
    return anchor + timedelta(days=GRACE_PERIOD_DAYS) if anchor else None


def is_usable_approval(snapshot: SubscriptionSnapshot, payment: Optional[PaymentSnapshot]) -> bool:
    """
    An approval can drive a transition only once, and only when it was paid
    within the current billing period. Older approvals are stale.
    """
    if payment is None or payment.status != PaymentStatus.APPROVED.value:
        return False
    if payment.applied_at is not None or payment.paid_at is None:
        return False
    period_start = snapshot.period_start
    if period_start is None:
        return False
    return payment.paid_at >= period_start


def _advance(due: datetime, cycle: str, now: datetime) -> datetime:
    """Next due date one cycle past the missed one, or past now if that is still behind."""
    candidate = add_billing_cycle(due, cycle)
    if candidate <= now:
        candidate = add_billing_cycle(now, cycle)
    return candidate


def _apply_approval(snapshot: SubscriptionSnapshot, now: datetime) -> Transition:
    payment = snapshot.approval
    status = snapshot.status

    if status == SubscriptionStatus.SUSPENDED.value:
        next_date = add_billing_cycle(now, snapshot.billing_cycle)
        return Transition(
            from_status=status,
            to_status=SubscriptionStatus.ACTIVE.value,
            reason="reactivated",
            next_billing_date=next_date,
            audit=snapshot.audit.close_episode(now, "reactivated"),
            tenant_effect=TenantEffect.RESTORE_PLAN,
            notification="subscription_reactivated",
            payment_id=payment.id,
        )

    next_date = _advance(snapshot.next_billing_date, snapshot.billing_cycle, now)
    if status == SubscriptionStatus.ACTIVE.value:
        return Transition(
            from_status=status,
            to_status=status,
            reason="renewed",
            next_billing_date=next_date,
            audit=snapshot.audit.renewed(now, next_date),
            payment_id=payment.id,
        )

    return Transition(
        from_status=status,
        to_status=SubscriptionStatus.ACTIVE.value,
        reason="payment_recovered",
        next_billing_date=next_date,
        audit=snapshot.audit.close_episode(now, "recovered"),
        notification="subscription_reactivated",
        payment_id=payment.id,
    )


def decide(
    snapshot: SubscriptionSnapshot,
    now: datetime,
    trigger: Trigger = Trigger.TICK,
) -> Optional[Transition]:
    """
    Return the transition the subscription should take now, or None.

    An approval always wins over a pending suspension, so it is evaluated
    first for every trigger.
    """
    status = snapshot.status
    if status in UNTOUCHABLE_STATUSES or snapshot.next_billing_date is None:
        return None

    if is_usable_approval(snapshot, snapshot.approval):
        return _apply_approval(snapshot, now)

    if trigger == Trigger.APPROVAL:
        return None

    due = snapshot.next_billing_date

    if status == SubscriptionStatus.ACTIVE.value:
        if due >= now:
            return None
        failed_at = now
        return Transition(
            from_status=status,
            to_status=SubscriptionStatus.PAYMENT_FAILED.value,
            reason="renewal_overdue",
            next_billing_date=due,
            audit=snapshot.audit.open_dunning(
                failed_at,
                retry_schedule_for(due),
                failed_at + timedelta(days=GRACE_PERIOD_DAYS),
            ),
            notification="payment_failed",
        )

    if status in DUNNING_STATUSES:
        # Already suspended in this episode: the downgrade never runs twice
        if snapshot.audit.suspended_at is not None:
            return None

        deadline = grace_deadline_for(snapshot)
        if deadline is not None and now >= deadline:
            return Transition(
                from_status=status,
                to_status=SubscriptionStatus.SUSPENDED.value,
                reason=SUSPENSION_REASON_OVERDUE,
                next_billing_date=due,
                audit=snapshot.audit.suspend(now, SUSPENSION_REASON_OVERDUE),
                tenant_effect=TenantEffect.DOWNGRADE_TO_FREE,
                notification="subscription_suspended",
            )

        if status == SubscriptionStatus.PAYMENT_FAILED.value:
            schedule = snapshot.audit.retry_schedule or retry_schedule_for(due)
            if now >= schedule[-1]:
                return Transition(
                    from_status=status,
                    to_status=SubscriptionStatus.GRACE_PERIOD.value,
                    reason="retries_exhausted",
                    next_billing_date=due,
                    audit=snapshot.audit.enter_grace(now),
                )

    return None
