"""
Subscription Audit Metadata

Typed view over the JSON `metadata` column of a subscription.

The stored map is append-only from the engine's point of view:
- Known keys are read into fields and written back under their original
  camelCase names, so older rows and other readers keep working.
- Unknown keys are carried through untouched in `extra`.
- Closing a dunning episode moves its keys into `history` instead of
  dropping them.
"""

from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

# Keys owned by one dunning episode; archived together when it closes
EPISODE_KEYS = (
    "paymentFailedAt",
    "retrySchedule",
    "graceDeadline",
    "graceStartedAt",
    "suspendedAt",
    "suspensionReason",
)

KNOWN_KEYS = EPISODE_KEYS + (
    "lastReminderSent",
    "reminderCount",
    "reactivatedAt",
    "lastRejectionNotified",
    "history",
)


def _parse(value: Any) -> Optional[datetime]:
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        parsed = value
    else:
        parsed = datetime.fromisoformat(str(value).replace("Z", "+00:00"))
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def _format(value: Optional[datetime]) -> Optional[str]:
    return value.astimezone(timezone.utc).isoformat() if value else None


@dataclass(frozen=True)
class AuditMetadata:
    last_reminder_sent: Optional[datetime] = None
    reminder_count: int = 0
    payment_failed_at: Optional[datetime] = None
    retry_schedule: List[datetime] = field(default_factory=list)
    grace_deadline: Optional[datetime] = None
    grace_started_at: Optional[datetime] = None
    suspended_at: Optional[datetime] = None
    suspension_reason: Optional[str] = None
    reactivated_at: Optional[datetime] = None
    # updated_at of the newest rejected payment already announced
    last_rejection_notified: Optional[datetime] = None
    history: List[Dict[str, Any]] = field(default_factory=list)
    extra: Dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_dict(cls, raw: Optional[Dict[str, Any]]) -> "AuditMetadata":
        raw = dict(raw or {})
        return cls(
            last_reminder_sent=_parse(raw.get("lastReminderSent")),
            reminder_count=int(raw.get("reminderCount") or 0),
            payment_failed_at=_parse(raw.get("paymentFailedAt")),
            retry_schedule=[_parse(v) for v in raw.get("retrySchedule") or [] if v],
            grace_deadline=_parse(raw.get("graceDeadline")),
            grace_started_at=_parse(raw.get("graceStartedAt")),
            suspended_at=_parse(raw.get("suspendedAt")),
            suspension_reason=raw.get("suspensionReason"),
            reactivated_at=_parse(raw.get("reactivatedAt")),
            last_rejection_notified=_parse(raw.get("lastRejectionNotified")),
            history=list(raw.get("history") or []),
            extra={k: v for k, v in raw.items() if k not in KNOWN_KEYS},
        )

    def to_dict(self) -> Dict[str, Any]:
        data = dict(self.extra)
        values = {
            "lastReminderSent": _format(self.last_reminder_sent),
            "reminderCount": self.reminder_count or None,
            "paymentFailedAt": _format(self.payment_failed_at),
            "retrySchedule": [_format(v) for v in self.retry_schedule] or None,
            "graceDeadline": _format(self.grace_deadline),
            "graceStartedAt": _format(self.grace_started_at),
            "suspendedAt": _format(self.suspended_at),
            "suspensionReason": self.suspension_reason,
            "reactivatedAt": _format(self.reactivated_at),
            "lastRejectionNotified": _format(self.last_rejection_notified),
            "history": list(self.history) or None,
        }
        data.update({k: v for k, v in values.items() if v is not None})
        return data

    def reminded_on(self, now: datetime) -> bool:
        """True when a reminder already went out on the same UTC calendar day."""
        if self.last_reminder_sent is None:
            return False
        return self.last_reminder_sent.astimezone(timezone.utc).date() == now.astimezone(timezone.utc).date()

    def with_reminder(self, now: datetime) -> "AuditMetadata":
        return replace(self, last_reminder_sent=now, reminder_count=self.reminder_count + 1)

    def with_rejection_notified(self, at: datetime) -> "AuditMetadata":
        return replace(self, last_rejection_notified=at)

    def open_dunning(
        self,
        now: datetime,
        retry_schedule: List[datetime],
        grace_deadline: datetime,
    ) -> "AuditMetadata":
        return replace(
            self,
            payment_failed_at=now,
            retry_schedule=list(retry_schedule),
            grace_deadline=grace_deadline,
            grace_started_at=None,
            suspended_at=None,
            suspension_reason=None,
        )

    def enter_grace(self, now: datetime) -> "AuditMetadata":
        return replace(self, grace_started_at=now)

    def suspend(self, now: datetime, reason: str) -> "AuditMetadata":
        return replace(self, suspended_at=now, suspension_reason=reason)

    def renewed(self, now: datetime, next_billing_date: datetime) -> "AuditMetadata":
        entry = {"event": "renewed", "at": _format(now), "nextBillingDate": _format(next_billing_date)}
        return replace(self, reminder_count=0, history=self.history + [entry])

    def close_episode(self, now: datetime, event: str) -> "AuditMetadata":
        """Archive the current dunning episode into history and clear it."""
        current = self.to_dict()
        entry = {"event": event, "at": _format(now)}
        entry.update({k: current[k] for k in EPISODE_KEYS if k in current})
        return replace(
            self,
            payment_failed_at=None,
            retry_schedule=[],
            grace_deadline=None,
            grace_started_at=None,
            suspended_at=None,
            suspension_reason=None,
            reactivated_at=now if self.suspended_at else self.reactivated_at,
            # Reminder cadence restarts with the new billing period
            reminder_count=0,
            history=self.history + [entry],
        )
