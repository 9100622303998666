"""
Payment Reconciler

Applies gateway payment outcomes to local Payments and drives the
subscription transition that follows, exactly once.

Flow for a notification about charge X:
1. Ask the gateway for the authoritative status of X (never trust the payload)
2. PENDING: nothing to apply yet
3. Ledger already holds (X, status): duplicate, no-op
4. No local Payment yet: deferred, the periodic pass will pick it up
5. Otherwise, under the subscription lock and in one transaction:
   record the payment outcome, write the ledger row, run the state machine
"""

from datetime import datetime
from enum import Enum
from typing import Optional
from uuid import UUID

import structlog
from sqlalchemy.exc import IntegrityError

from billing_engine.models.subscription import Payment, PaymentStatus, Subscription
from billing_engine.shared.core.exceptions import GatewayError
from billing_engine.shared.core.metrics import PAYMENT_NOTIFICATIONS
from billing_engine.shared.db.base import utcnow
from billing_engine.modules.billing.domain.gateway import ChargeStatus, PaymentGateway
from billing_engine.modules.billing.domain.lifecycle import LifecycleEngine
from billing_engine.modules.billing.domain.repository import SubscriptionRepository
from billing_engine.modules.billing.domain.state_machine import Trigger

logger = structlog.get_logger()


class ReconcileOutcome(str, Enum):
    APPLIED = "applied"  # approval consumed by a subscription transition
    DUPLICATE = "duplicate"  # effect already recorded
    DEFERRED = "deferred"  # no local payment yet
    PENDING = "pending"  # gateway has no final answer
    REJECTED = "rejected"  # payment marked REJECTED
    STALE = "stale"  # approval recorded, subscription left untouched
    UNKNOWN = "unknown"  # gateway unreachable, retry later


def _parse_reference(value: Optional[str]) -> Optional[UUID]:
    if not value:
        return None
    try:
        return UUID(str(value))
    except ValueError:
        logger.warning("payment_reference_not_local", external_reference=value)
        return None


class PaymentReconciler:
    def __init__(self, engine: LifecycleEngine, gateway: PaymentGateway):
        self.engine = engine
        self.gateway = gateway

    async def on_payment_notification(
        self,
        charge_id: str,
        now: Optional[datetime] = None,
    ) -> ReconcileOutcome:
        """
        Entry point for inbound gateway notifications.
        Safe to call any number of times for the same charge.
        """
        try:
            charge = await self.gateway.get_charge_status(charge_id)
        except GatewayError as e:
            logger.warning("payment_notification_unresolved", charge_id=charge_id, code=e.code, error=e.message)
            PAYMENT_NOTIFICATIONS.labels(outcome=ReconcileOutcome.UNKNOWN.value).inc()
            return ReconcileOutcome.UNKNOWN
        return await self.reconcile(charge, now=now)

    async def reconcile_payment(
        self,
        payment_id: UUID,
        charge_id: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> ReconcileOutcome:
        """
        Backstop for a PENDING payment whose notification may have been lost.
        Gateway errors propagate so the calling batch can count them.
        """
        if charge_id:
            charge = await self.gateway.get_charge_status(charge_id)
        else:
            charge = await self.gateway.find_charge_by_reference(str(payment_id))
        if charge is None:
            return ReconcileOutcome.PENDING
        return await self.reconcile(charge, now=now, payment_id=payment_id)

    async def _locate(
        self,
        repo: SubscriptionRepository,
        charge: ChargeStatus,
        payment_id: Optional[UUID],
    ) -> Optional[Payment]:
        payment = await repo.get_payment_by_charge(charge.charge_id)
        if payment is None:
            reference = payment_id or _parse_reference(charge.external_reference)
            if reference is not None:
                payment = await repo.get_payment(reference)
        return payment

    async def reconcile(
        self,
        charge: ChargeStatus,
        now: Optional[datetime] = None,
        payment_id: Optional[UUID] = None,
    ) -> ReconcileOutcome:
        now = now or utcnow()
        outcome = await self._reconcile(charge, now, payment_id)
        PAYMENT_NOTIFICATIONS.labels(outcome=outcome.value).inc()
        return outcome

    async def _reconcile(
        self,
        charge: ChargeStatus,
        now: datetime,
        payment_id: Optional[UUID],
    ) -> ReconcileOutcome:
        target = charge.status.value
        log = logger.bind(charge_id=charge.charge_id, target_status=target)

        if charge.status == PaymentStatus.PENDING:
            log.info("payment_still_pending", raw_status=charge.raw_status)
            return ReconcileOutcome.PENDING

        async with self.engine.session_maker() as db:
            repo = SubscriptionRepository(db)
            if await repo.notification_applied(charge.charge_id, target):
                log.info("payment_notification_duplicate")
                return ReconcileOutcome.DUPLICATE
            payment = await self._locate(repo, charge, payment_id)
            if payment is None:
                log.info("payment_notification_deferred", external_reference=charge.external_reference)
                return ReconcileOutcome.DEFERRED
            local_payment_id = payment.id
            subscription_id = payment.subscription_id

        recorded = {"outcome": None}

        async def record_outcome(repo: SubscriptionRepository, subscription: Subscription) -> None:
            payment = await repo.get_payment(local_payment_id)

            # Re-checked under the lock: a concurrent delivery may have won
            if await repo.notification_applied(charge.charge_id, target):
                recorded["outcome"] = ReconcileOutcome.DUPLICATE
                return

            if payment.status == target:
                recorded["outcome"] = ReconcileOutcome.DUPLICATE
            elif payment.status != PaymentStatus.PENDING.value:
                log.warning(
                    "payment_outcome_conflict",
                    payment_id=str(payment.id),
                    current_status=payment.status,
                )
                recorded["outcome"] = ReconcileOutcome.STALE
            elif charge.status == PaymentStatus.APPROVED:
                payment.status = PaymentStatus.APPROVED.value
                payment.paid_at = charge.paid_at or now
                payment.charge_id = charge.charge_id
                recorded["outcome"] = ReconcileOutcome.APPLIED
            else:
                payment.status = PaymentStatus.REJECTED.value
                payment.charge_id = charge.charge_id
                payment.failure_reason = charge.status_detail or charge.raw_status
                recorded["outcome"] = ReconcileOutcome.REJECTED

            repo.record_notification(
                charge_id=charge.charge_id,
                target_status=target,
                outcome=recorded["outcome"].value,
                payment_id=payment.id,
                received_at=now,
            )

        try:
            transition = await self.engine.apply(
                subscription_id,
                trigger=Trigger.APPROVAL,
                now=now,
                prepare=record_outcome,
            )
        except IntegrityError:
            # Lost the race on the ledger's unique key to an identical delivery
            log.info("payment_notification_duplicate", race=True)
            return ReconcileOutcome.DUPLICATE

        outcome = recorded["outcome"]
        if outcome == ReconcileOutcome.APPLIED and transition is None:
            log.info(
                "payment_approval_not_applied",
                payment_id=str(local_payment_id),
                subscription_id=str(subscription_id),
            )
            return ReconcileOutcome.STALE

        if outcome == ReconcileOutcome.REJECTED:
            # Retry policy: the next dunning retry slot opens a new charge
            log.info("payment_rejected", payment_id=str(local_payment_id), reason=charge.status_detail)

        log.info(
            "payment_notification_reconciled",
            outcome=outcome.value,
            payment_id=str(local_payment_id),
            subscription_id=str(subscription_id),
            transition=transition.reason if transition else None,
        )
        return outcome
