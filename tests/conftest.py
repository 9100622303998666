import os
# Configure the app for tests BEFORE any billing_engine imports
os.environ["DB_SSL_MODE"] = "disable"
os.environ["ENVIRONMENT"] = "development"
os.environ["TESTING"] = "True"
os.environ["DATABASE_URL"] = "sqlite+aiosqlite:///:memory:"
os.environ["MERCADOPAGO_ACCESS_TOKEN"] = "TEST-0000-token"
os.environ["ADMIN_API_KEY"] = "test-admin-key"
os.environ["BILLING_MAX_CONCURRENCY"] = "1"

import pytest
from datetime import datetime, timedelta, timezone
from decimal import Decimal
from typing import Any, Dict, List, Optional
from uuid import uuid4

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import NullPool

# Ensure all models are registered in the metadata for SQLAlchemy mappers
from billing_engine.shared.db.base import Base
from billing_engine.models import Tenant, Subscription, Payment, PaymentStatus, SubscriptionStatus
from billing_engine.shared.core.exceptions import GatewayError
from billing_engine.shared.core.pricing import PlanTier, BillingCycle, get_tier_price, get_tier_quota
from billing_engine.modules.billing.domain.gateway import ChargeResult, ChargeStatus, RenewalChargeRequest
from billing_engine.modules.billing.domain.lifecycle import LifecycleEngine
from billing_engine.modules.billing.domain.reconciler import PaymentReconciler
from billing_engine.modules.billing.domain.renewal_service import RenewalReminderService
from billing_engine.modules.billing.domain.validation_service import SubscriptionValidationService
from billing_engine.modules.notifications.domain.dispatcher import NotificationDispatcher

NOW = datetime(2026, 3, 10, 12, 0, tzinfo=timezone.utc)


class FakeGateway:
    """In-memory PaymentGateway: records created charges, answers status lookups."""

    def __init__(self):
        self.created: List[RenewalChargeRequest] = []
        self.charges: Dict[str, ChargeStatus] = {}
        self.create_error: Optional[Exception] = None
        self.status_error: Optional[Exception] = None
        self.status_calls: List[str] = []

    async def create_renewal_charge(self, request: RenewalChargeRequest) -> ChargeResult:
        if self.create_error is not None:
            raise self.create_error
        self.created.append(request)
        n = len(self.created)
        return ChargeResult(order_id=f"pref-{n}", checkout_url=f"https://checkout.test/pref-{n}")

    async def get_charge_status(self, charge_id: str) -> ChargeStatus:
        self.status_calls.append(charge_id)
        if self.status_error is not None:
            raise self.status_error
        if charge_id not in self.charges:
            raise GatewayError(f"MercadoPago returned 404 for /v1/payments/{charge_id}")
        return self.charges[charge_id]

    async def find_charge_by_reference(self, reference: str) -> Optional[ChargeStatus]:
        if self.status_error is not None:
            raise self.status_error
        for charge in self.charges.values():
            if charge.external_reference == reference:
                return charge
        return None

    def settle(
        self,
        charge_id: str,
        payment_id,
        status: PaymentStatus = PaymentStatus.APPROVED,
        paid_at: Optional[datetime] = None,
        raw_status: Optional[str] = None,
    ) -> ChargeStatus:
        charge = ChargeStatus(
            charge_id=charge_id,
            status=status,
            paid_at=paid_at,
            external_reference=str(payment_id) if payment_id else None,
            raw_status=raw_status or status.value.lower(),
            status_detail="cc_rejected_insufficient_amount" if status == PaymentStatus.REJECTED else None,
        )
        self.charges[charge_id] = charge
        return charge


class RecordingSender:
    """NotificationSender that keeps every message instead of emailing it."""

    def __init__(self, result: bool = True):
        self.sent: List[Dict[str, Any]] = []
        self.result = result

    async def send(self, contact, kind, context) -> bool:
        self.sent.append({"contact": contact, "kind": kind, "context": context})
        return self.result

    def kinds(self) -> List[str]:
        return [m["kind"] for m in self.sent]


@pytest.fixture
async def db_engine(tmp_path):
    """File-backed SQLite so concurrent sessions get their own connections."""
    engine = create_async_engine(
        f"sqlite+aiosqlite:///{tmp_path / 'billing.db'}",
        poolclass=NullPool,
        connect_args={"timeout": 30},
    )
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_maker(db_engine) -> async_sessionmaker[AsyncSession]:
    return async_sessionmaker(db_engine, class_=AsyncSession, expire_on_commit=False)


@pytest.fixture
def gateway() -> FakeGateway:
    return FakeGateway()


@pytest.fixture
def sender() -> RecordingSender:
    return RecordingSender()


@pytest.fixture
def dispatcher(sender) -> NotificationDispatcher:
    return NotificationDispatcher(sender, maxsize=100)


@pytest.fixture
def lifecycle(session_maker, dispatcher) -> LifecycleEngine:
    return LifecycleEngine(session_maker, dispatcher=dispatcher)


@pytest.fixture
def reconciler(lifecycle, gateway) -> PaymentReconciler:
    return PaymentReconciler(lifecycle, gateway)


@pytest.fixture
def validation_service(lifecycle, reconciler) -> SubscriptionValidationService:
    return SubscriptionValidationService(lifecycle, reconciler, max_concurrency=1)


@pytest.fixture
def renewal_service(lifecycle, gateway) -> RenewalReminderService:
    return RenewalReminderService(lifecycle, gateway, max_concurrency=1)


@pytest.fixture
def make_subscription(session_maker):
    """Create a tenant with one subscription; returns the subscription id."""

    async def _make(
        status: SubscriptionStatus = SubscriptionStatus.ACTIVE,
        next_billing_date: Optional[datetime] = None,
        plan_tier: PlanTier = PlanTier.BASIC,
        billing_cycle: BillingCycle = BillingCycle.MONTHLY,
        audit: Optional[Dict[str, Any]] = None,
        tenant_plan: Optional[PlanTier] = None,
        email: Optional[str] = "owner@salon.test",
    ):
        tenant_plan = tenant_plan or plan_tier
        async with session_maker() as db:
            async with db.begin():
                tenant = Tenant(
                    id=uuid4(),
                    name="Salon Aurora",
                    email=email,
                    plan_tier=tenant_plan.value,
                    max_appointments=get_tier_quota(tenant_plan),
                )
                db.add(tenant)
                subscription = Subscription(
                    id=uuid4(),
                    tenant_id=tenant.id,
                    plan_tier=plan_tier.value,
                    billing_cycle=billing_cycle.value,
                    price_amount=get_tier_price(plan_tier, billing_cycle),
                    currency="ARS",
                    status=status.value,
                    next_billing_date=next_billing_date,
                    audit_metadata=audit or {},
                )
                db.add(subscription)
        return subscription.id

    return _make


@pytest.fixture
def make_payment(session_maker):
    async def _make(
        subscription_id,
        status: PaymentStatus = PaymentStatus.PENDING,
        paid_at: Optional[datetime] = None,
        charge_id: Optional[str] = None,
        checkout_url: Optional[str] = None,
        applied_at: Optional[datetime] = None,
        updated_at: Optional[datetime] = None,
    ):
        async with session_maker() as db:
            async with db.begin():
                payment = Payment(
                    id=uuid4(),
                    subscription_id=subscription_id,
                    amount=Decimal("18900"),
                    currency="ARS",
                    billing_cycle=BillingCycle.MONTHLY.value,
                    status=status.value,
                    paid_at=paid_at,
                    charge_id=charge_id,
                    checkout_url=checkout_url,
                    applied_at=applied_at,
                    payment_method="renewal",
                )
                if updated_at is not None:
                    payment.created_at = updated_at
                    payment.updated_at = updated_at
                db.add(payment)
        return payment.id

    return _make


@pytest.fixture
def load(session_maker):
    """Fetch a fresh copy of a row."""

    async def _load(model, key):
        async with session_maker() as db:
            return await db.get(model, key)

    return _load


@pytest.fixture
def payments_of(session_maker):
    from sqlalchemy import select

    async def _payments(subscription_id) -> List[Payment]:
        async with session_maker() as db:
            result = await db.execute(
                select(Payment).where(Payment.subscription_id == subscription_id).order_by(Payment.created_at)
            )
            return list(result.scalars().all())

    return _payments


@pytest.fixture
def now() -> datetime:
    return NOW


def days(n: float) -> timedelta:
    return timedelta(days=n)
