from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI
from prometheus_fastapi_instrumentator import Instrumentator
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker
import structlog

from billing_engine.shared.core.config import get_settings
from billing_engine.shared.core.exceptions import ConfigurationError
from billing_engine.shared.core.logging import setup_logging
from billing_engine.modules.billing.api.v1.lifecycle import router as billing_router
from billing_engine.modules.billing.domain.gateway import MercadoPagoGateway, PaymentGateway
from billing_engine.modules.billing.domain.lifecycle import LifecycleEngine
from billing_engine.modules.billing.domain.reconciler import PaymentReconciler
from billing_engine.modules.billing.domain.renewal_service import RenewalReminderService
from billing_engine.modules.billing.domain.scheduler import BillingScheduler
from billing_engine.modules.billing.domain.validation_service import SubscriptionValidationService
from billing_engine.modules.notifications.domain.dispatcher import NotificationDispatcher, NotificationSender
from billing_engine.modules.notifications.domain.email_service import EmailService

# Configure logging
setup_logging()

logger = structlog.get_logger()


def build_billing_scheduler(
    session_maker: async_sessionmaker[AsyncSession],
    gateway: PaymentGateway,
    dispatcher: NotificationDispatcher,
) -> tuple[BillingScheduler, PaymentReconciler]:
    """Wire the lifecycle engine, its three writers and the timers around one lock registry."""
    engine = LifecycleEngine(session_maker, dispatcher=dispatcher)
    reconciler = PaymentReconciler(engine, gateway)
    scheduler = BillingScheduler(
        validation_service=SubscriptionValidationService(engine, reconciler),
        renewal_service=RenewalReminderService(engine, gateway),
    )
    return scheduler, reconciler


def _build_gateway() -> Optional[PaymentGateway]:
    try:
        return MercadoPagoGateway()
    except ConfigurationError as e:
        logger.critical("billing_gateway_not_configured", error=e.message)
        return None


@asynccontextmanager
async def lifespan(app: FastAPI):
    settings = get_settings()
    logger.info("app_starting", app=settings.APP_NAME, environment=settings.ENVIRONMENT)

    from billing_engine.shared.db.session import async_session_maker

    sender: NotificationSender = EmailService()
    dispatcher = NotificationDispatcher(sender)
    dispatcher.start()

    scheduler, reconciler = None, None
    gateway = _build_gateway()
    if gateway is not None:
        scheduler, reconciler = build_billing_scheduler(async_session_maker, gateway, dispatcher)
        if settings.SCHEDULER_ENABLED:
            scheduler.start()

    app.state.scheduler = scheduler
    app.state.reconciler = reconciler
    app.state.dispatcher = dispatcher

    yield

    logger.info("app_shutting_down", app=settings.APP_NAME)
    if scheduler is not None:
        scheduler.stop()
        await scheduler.wait_idle()
    await dispatcher.stop()


settings = get_settings()

app = FastAPI(
    title=settings.APP_NAME,
    version=settings.VERSION,
    lifespan=lifespan,
)

# Initialize Prometheus Metrics
Instrumentator().instrument(app).expose(app)

app.include_router(billing_router)


@app.get("/health")
async def health_check():
    scheduler = getattr(app.state, "scheduler", None)
    return {
        "status": "active",
        "app": settings.APP_NAME,
        "version": settings.VERSION,
        "scheduler": scheduler.get_scheduler_status() if scheduler else None,
    }
