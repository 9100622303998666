from uuid import UUID, uuid4
from datetime import datetime
from typing import Optional, TYPE_CHECKING
from sqlalchemy import String, Integer, Uuid
from sqlalchemy.orm import Mapped, mapped_column, relationship

from billing_engine.shared.db.base import Base, UTCDateTime, utcnow
from billing_engine.shared.core.pricing import PlanTier, FREE_TIER_MAX_APPOINTMENTS

if TYPE_CHECKING:
    from billing_engine.models.subscription import Subscription


class Tenant(Base):
    """
    A registered business. Owned by the booking system; the billing engine
    only reads contact details and writes the effective plan and quota on
    suspension or restore.
    """
    __tablename__ = "tenants"

    id: Mapped[UUID] = mapped_column(Uuid, primary_key=True, default=uuid4)
    name: Mapped[str] = mapped_column(String(255))
    email: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    plan_tier: Mapped[str] = mapped_column(String(20), default=PlanTier.FREE.value)
    max_appointments: Mapped[int] = mapped_column(Integer, default=FREE_TIER_MAX_APPOINTMENTS)

    created_at: Mapped[datetime] = mapped_column(UTCDateTime, default=utcnow)

    subscription: Mapped[Optional["Subscription"]] = relationship(back_populates="tenant", uselist=False)
