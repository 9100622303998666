"""
Tests for RenewalReminderService

Tests cover:
- Reminder cadence: 7, 3 and 1 days before the billing date, once per UTC day
- One pending charge per cycle, reused across reminders
- Gateway failure leaves a pending payment that the next tick completes
- Retry reminders on dunning retry slots
- Expiry sweep: late approval renews in place, overdue rows advance dunning
"""

import pytest
from datetime import datetime, timedelta, timezone
from decimal import Decimal

from sqlalchemy import update

from billing_engine.models import PaymentStatus, Subscription, SubscriptionStatus
from billing_engine.shared.core.exceptions import GatewayError
from billing_engine.shared.core.pricing import PlanTier
from billing_engine.modules.billing.domain.audit import AuditMetadata
from billing_engine.modules.billing.domain.renewal_service import days_until, upcoming_window_end


class TestDaysUntil:
    def test_counts_calendar_days(self, now):
        assert days_until(now + timedelta(days=7), now) == 7

    def test_late_evening_due_date_counts_as_same_day(self, now):
        assert days_until(now.replace(hour=23, minute=59), now.replace(hour=0, minute=1)) == 0

    def test_past_due_is_negative(self, now):
        assert days_until(now - timedelta(days=2), now) == -2


class TestUpcomingReminders:
    @pytest.mark.asyncio
    async def test_reminder_cadence(
        self, renewal_service, gateway, make_subscription, payments_of, load, dispatcher, sender, now
    ):
        due = now + timedelta(days=7)
        sid = await make_subscription(next_billing_date=due)

        # 7 days out: reminder with a fresh charge
        assert await renewal_service.process_upcoming_expirations(now) == {"total": 1, "processed": 1}
        # Same UTC day, later tick: nothing
        assert (await renewal_service.process_upcoming_expirations(now + timedelta(hours=6)))["processed"] == 0
        # 6 days out: not a reminder day
        assert (await renewal_service.process_upcoming_expirations(now + timedelta(days=1)))["processed"] == 0
        # 3 and 1 days out
        assert (await renewal_service.process_upcoming_expirations(now + timedelta(days=4)))["processed"] == 1
        assert (await renewal_service.process_upcoming_expirations(now + timedelta(days=6)))["processed"] == 1

        await dispatcher.drain()
        assert sender.kinds() == ["renewal_reminder"] * 3
        assert [m["context"]["days_left"] for m in sender.sent] == [7, 3, 1]
        assert all(m["context"]["checkout_url"] == "https://checkout.test/pref-1" for m in sender.sent)

        # One charge for the whole cycle
        payments = await payments_of(sid)
        assert len(payments) == 1
        assert len(gateway.created) == 1
        assert payments[0].order_id == "pref-1"
        assert payments[0].status == PaymentStatus.PENDING.value

        audit = AuditMetadata.from_dict((await load(Subscription, sid)).audit_metadata)
        assert audit.reminder_count == 3
        assert audit.last_reminder_sent == now + timedelta(days=6)

    @pytest.mark.asyncio
    async def test_due_later_in_the_day_than_the_tick(self, renewal_service, make_subscription, dispatcher, sender, now):
        # Due at 13:00, seven days after a 12:00 tick; ticks every 12 hours
        await make_subscription(next_billing_date=now + timedelta(days=7, hours=1))

        for tick in range(15):
            await renewal_service.process_upcoming_expirations(now + timedelta(hours=12 * tick))

        await dispatcher.drain()
        assert [m["context"]["days_left"] for m in sender.sent] == [7, 3, 1]

    def test_window_ends_at_midnight_after_last_reminder_day(self, now):
        assert upcoming_window_end(now) == datetime(2026, 3, 18, tzinfo=timezone.utc)
        assert upcoming_window_end(now.replace(hour=23, minute=59)) == datetime(2026, 3, 18, tzinfo=timezone.utc)

    @pytest.mark.asyncio
    async def test_missing_price_charges_catalogue_price(
        self, renewal_service, gateway, make_subscription, session_maker, payments_of, now
    ):
        sid = await make_subscription(next_billing_date=now + timedelta(days=3), plan_tier=PlanTier.PREMIUM)
        async with session_maker() as db:
            async with db.begin():
                await db.execute(update(Subscription).where(Subscription.id == sid).values(price_amount=Decimal("0")))

        await renewal_service.process_upcoming_expirations(now)

        assert gateway.created[0].amount == Decimal("24900")
        assert (await payments_of(sid))[0].amount == Decimal("24900")

    @pytest.mark.asyncio
    async def test_charge_request_uses_payment_id(
        self, renewal_service, gateway, make_subscription, payments_of, now
    ):
        sid = await make_subscription(next_billing_date=now + timedelta(days=3))

        await renewal_service.process_upcoming_expirations(now)

        request = gateway.created[0]
        payment = (await payments_of(sid))[0]
        assert request.payment_id == payment.id
        assert request.subscription_id == sid
        assert request.amount == Decimal("18900")
        assert request.currency == "ARS"
        assert request.tenant_email == "owner@salon.test"

    @pytest.mark.asyncio
    async def test_gateway_failure_is_completed_next_tick(
        self, renewal_service, gateway, make_subscription, payments_of, load, dispatcher, sender, now
    ):
        sid = await make_subscription(next_billing_date=now + timedelta(days=1))
        gateway.create_error = GatewayError("MercadoPago returned 503 for /checkout/preferences")

        result = await renewal_service.process_upcoming_expirations(now)

        assert result == {"total": 1, "processed": 0}
        payments = await payments_of(sid)
        assert len(payments) == 1
        assert payments[0].checkout_url is None
        assert "lastReminderSent" not in (await load(Subscription, sid)).audit_metadata

        gateway.create_error = None
        result = await renewal_service.process_upcoming_expirations(now + timedelta(hours=2))

        assert result["processed"] == 1
        payments = await payments_of(sid)
        assert len(payments) == 1
        assert payments[0].checkout_url == "https://checkout.test/pref-1"
        assert gateway.created[0].payment_id == payments[0].id
        await dispatcher.drain()
        assert sender.kinds() == ["renewal_reminder"]

    @pytest.mark.asyncio
    async def test_only_active_paid_subscriptions(self, renewal_service, gateway, make_subscription, now):
        from billing_engine.shared.core.pricing import PlanTier

        await make_subscription(SubscriptionStatus.FREE, next_billing_date=now + timedelta(days=7), plan_tier=PlanTier.FREE)
        await make_subscription(SubscriptionStatus.CANCELLED, next_billing_date=now + timedelta(days=7))

        assert await renewal_service.process_upcoming_expirations(now) == {"total": 0, "processed": 0}
        assert gateway.created == []


class TestRetryReminders:
    @pytest.mark.asyncio
    async def test_reminder_on_retry_slots_only(
        self, renewal_service, make_subscription, dispatcher, sender, now
    ):
        due = now - timedelta(days=1)
        audit = AuditMetadata().open_dunning(
            due + timedelta(hours=2),
            [due + timedelta(days=d) for d in (1, 3, 7)],
            due + timedelta(days=10, hours=2),
        )
        await make_subscription(
            SubscriptionStatus.PAYMENT_FAILED,
            next_billing_date=due,
            audit=audit.to_dict(),
        )

        assert (await renewal_service.process_payment_retries(now))["processed"] == 1
        assert (await renewal_service.process_payment_retries(now + timedelta(days=1)))["processed"] == 0
        assert (await renewal_service.process_payment_retries(now + timedelta(days=2)))["processed"] == 1

        await dispatcher.drain()
        assert sender.kinds() == ["payment_retry", "payment_retry"]
        assert [m["context"]["retry_attempt"] for m in sender.sent] == [1, 2]
        assert sender.sent[0]["context"]["grace_deadline"] == (due + timedelta(days=10)).date().isoformat()

    @pytest.mark.asyncio
    async def test_rejected_charge_gets_new_payment_on_next_slot(
        self, renewal_service, gateway, make_subscription, make_payment, payments_of, now
    ):
        due = now - timedelta(days=3)
        audit = AuditMetadata().open_dunning(
            due,
            [due + timedelta(days=d) for d in (1, 3, 7)],
            due + timedelta(days=10),
        )
        sid = await make_subscription(
            SubscriptionStatus.PAYMENT_FAILED, next_billing_date=due, audit=audit.to_dict()
        )
        await make_payment(sid, status=PaymentStatus.REJECTED, charge_id="ch-rejected")

        assert (await renewal_service.process_payment_retries(now))["processed"] == 1

        statuses = sorted(p.status for p in await payments_of(sid))
        assert statuses == [PaymentStatus.PENDING.value, PaymentStatus.REJECTED.value]
        assert len(gateway.created) == 1


class TestExpirySweep:
    @pytest.mark.asyncio
    async def test_late_approval_renews_in_place(
        self, renewal_service, make_subscription, make_payment, load, now
    ):
        due = now - timedelta(days=8)
        sid = await make_subscription(
            SubscriptionStatus.GRACE_PERIOD,
            next_billing_date=due,
            audit={"paymentFailedAt": due.isoformat(), "graceStartedAt": now.isoformat()},
        )
        await make_payment(sid, status=PaymentStatus.APPROVED, paid_at=now - timedelta(hours=3))

        result = await renewal_service.suspend_expired_subscriptions(now)

        assert result == {"total": 1, "renewed": 1, "suspended": 0}
        subscription = await load(Subscription, sid)
        assert subscription.status == SubscriptionStatus.ACTIVE.value
        assert subscription.next_billing_date == due.replace(month=4)

    @pytest.mark.asyncio
    async def test_overdue_active_enters_dunning_not_suspension(
        self, renewal_service, make_subscription, load, now
    ):
        sid = await make_subscription(next_billing_date=now - timedelta(days=1))

        result = await renewal_service.suspend_expired_subscriptions(now)

        assert result == {"total": 1, "renewed": 0, "suspended": 0}
        assert (await load(Subscription, sid)).status == SubscriptionStatus.PAYMENT_FAILED.value

    @pytest.mark.asyncio
    async def test_expired_grace_is_suspended_once(
        self, renewal_service, make_subscription, dispatcher, sender, now
    ):
        due = now - timedelta(days=12)
        await make_subscription(
            SubscriptionStatus.GRACE_PERIOD,
            next_billing_date=due,
            audit={"paymentFailedAt": due.isoformat()},
        )

        first = await renewal_service.suspend_expired_subscriptions(now)
        second = await renewal_service.suspend_expired_subscriptions(now + timedelta(hours=12))

        assert first["suspended"] == 1
        assert second == {"total": 0, "renewed": 0, "suspended": 0}
        await dispatcher.drain()
        assert sender.kinds() == ["subscription_suspended"]


class TestRunAll:
    @pytest.mark.asyncio
    async def test_summary_shape(self, renewal_service, make_subscription, now):
        await make_subscription(next_billing_date=now + timedelta(days=7))

        summary = await renewal_service.run_all_renewal_tasks(now)

        assert summary == {
            "upcomingExpirations": {"total": 1, "processed": 1},
            "retries": {"total": 0, "processed": 0},
            "suspensions": {"total": 0, "renewed": 0, "suspended": 0},
            "errors": 0,
        }

    @pytest.mark.asyncio
    async def test_errors_are_counted(self, renewal_service, gateway, make_subscription, now):
        gateway.create_error = GatewayError("MercadoPago returned 500 for /checkout/preferences")
        await make_subscription(next_billing_date=now + timedelta(days=3))
        await make_subscription(next_billing_date=now + timedelta(days=1))

        summary = await renewal_service.run_all_renewal_tasks(now)

        assert summary["errors"] == 2
        assert summary["upcomingExpirations"] == {"total": 2, "processed": 0}
