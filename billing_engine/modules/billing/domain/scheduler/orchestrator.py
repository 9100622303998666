import asyncio
import time
from datetime import datetime, timedelta, timezone
from typing import Any, Awaitable, Callable, Dict, Optional

import structlog
from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.interval import IntervalTrigger

from billing_engine.shared.core.config import get_settings
from billing_engine.shared.core.metrics import SCHEDULER_JOB_RUNS, SCHEDULER_JOB_DURATION
from billing_engine.modules.billing.domain.validation_service import SubscriptionValidationService
from billing_engine.modules.billing.domain.renewal_service import RenewalReminderService

logger = structlog.get_logger()

VALIDATION_JOB_ID = "subscription_validation"
RENEWAL_JOB_ID = "subscription_renewal"


class BillingScheduler:
    """
    Owns the two billing timers. Constructed once at startup and handed to
    whoever needs to start, stop or inspect them.

    Stopping a timer cancels future ticks only; a tick already running is
    shielded and allowed to finish.
    """

    def __init__(
        self,
        validation_service: SubscriptionValidationService,
        renewal_service: RenewalReminderService,
        validation_interval_hours: Optional[float] = None,
        renewal_interval_hours: Optional[float] = None,
        startup_delay_seconds: Optional[float] = None,
    ):
        settings = get_settings()
        self.scheduler = AsyncIOScheduler(timezone=timezone.utc)
        self.validation_service = validation_service
        self.renewal_service = renewal_service
        self.intervals = {
            VALIDATION_JOB_ID: validation_interval_hours or settings.VALIDATION_INTERVAL_HOURS,
            RENEWAL_JOB_ID: renewal_interval_hours or settings.RENEWAL_INTERVAL_HOURS,
        }
        self.startup_delay_seconds = (
            startup_delay_seconds if startup_delay_seconds is not None
            else settings.SCHEDULER_STARTUP_DELAY_SECONDS
        )
        self._in_flight: Dict[str, asyncio.Task] = {}
        self._last_runs: Dict[str, Optional[Dict[str, Any]]] = {
            VALIDATION_JOB_ID: None,
            RENEWAL_JOB_ID: None,
        }

    async def _run_job(self, job_name: str, runner: Callable[[], Awaitable[Dict[str, Any]]]) -> Optional[Dict[str, Any]]:
        start_time = time.time()
        summary = None
        try:
            summary = await runner()
            SCHEDULER_JOB_RUNS.labels(job_name=job_name, status="success").inc()
            success = True
        except Exception as e:
            # Setup failure (e.g. database unreachable): the next tick tries again
            logger.exception("billing_job_failed", job=job_name, error=str(e))
            SCHEDULER_JOB_RUNS.labels(job_name=job_name, status="failure").inc()
            success = False

        duration = time.time() - start_time
        SCHEDULER_JOB_DURATION.labels(job_name=job_name).observe(duration)
        self._last_runs[job_name] = {
            "time": datetime.now(timezone.utc).isoformat(),
            "success": success,
            "duration_seconds": round(duration, 3),
            "summary": summary,
        }
        return summary

    async def _tick(self, job_name: str, runner: Callable[[], Awaitable[Dict[str, Any]]]) -> Optional[Dict[str, Any]]:
        task = self._in_flight.get(job_name)
        if task is None or task.done():
            task = asyncio.ensure_future(self._run_job(job_name, runner))
            self._in_flight[job_name] = task
        else:
            logger.info("billing_job_already_running", job=job_name)
        # shield: scheduler shutdown cancels the wrapper, never the run itself
        return await asyncio.shield(task)

    async def validation_job(self) -> Optional[Dict[str, Any]]:
        return await self._tick(VALIDATION_JOB_ID, self.validation_service.run_all_validations)

    async def renewal_job(self) -> Optional[Dict[str, Any]]:
        return await self._tick(RENEWAL_JOB_ID, self.renewal_service.run_all_renewal_tasks)

    def _schedule(self, job_id: str, func: Callable[[], Awaitable[Any]]) -> None:
        self.scheduler.add_job(
            func,
            trigger=IntervalTrigger(hours=self.intervals[job_id], timezone=timezone.utc),
            id=job_id,
            next_run_time=datetime.now(timezone.utc) + timedelta(seconds=self.startup_delay_seconds),
            max_instances=1,
            coalesce=True,
            replace_existing=True,
        )
        if not self.scheduler.running:
            self.scheduler.start()
        logger.info(
            "billing_timer_started",
            job=job_id,
            interval_hours=self.intervals[job_id],
            first_run_in_seconds=self.startup_delay_seconds,
        )

    def _unschedule(self, job_id: str) -> None:
        if self.scheduler.get_job(job_id) is not None:
            self.scheduler.remove_job(job_id)
            logger.info("billing_timer_stopped", job=job_id)

    def start_validation(self) -> None:
        self._schedule(VALIDATION_JOB_ID, self.validation_job)

    def start_renewal(self) -> None:
        self._schedule(RENEWAL_JOB_ID, self.renewal_job)

    def start(self) -> None:
        """Start both timers; each runs once shortly after start, then on its interval."""
        self.start_validation()
        self.start_renewal()

    def stop_validation(self) -> None:
        self._unschedule(VALIDATION_JOB_ID)

    def stop_renewal(self) -> None:
        self._unschedule(RENEWAL_JOB_ID)

    def stop(self) -> None:
        self.stop_validation()
        self.stop_renewal()
        if self.scheduler.running:
            self.scheduler.shutdown(wait=False)

    async def wait_idle(self) -> None:
        """Wait for in-flight runs (used on process shutdown)."""
        pending = [t for t in self._in_flight.values() if not t.done()]
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)

    def _timer_running(self, job_id: str) -> bool:
        return self.scheduler.running and self.scheduler.get_job(job_id) is not None

    def get_scheduler_status(self) -> dict:
        return {
            "validation_running": self._timer_running(VALIDATION_JOB_ID),
            "renewal_running": self._timer_running(RENEWAL_JOB_ID),
            "jobs": [job.id for job in self.scheduler.get_jobs()],
            "in_flight": [name for name, task in self._in_flight.items() if not task.done()],
            "last_runs": dict(self._last_runs),
        }

    async def run_validations_once(self) -> Optional[Dict[str, Any]]:
        """Manual trigger for operational testing or replay."""
        return await self.validation_job()

    async def run_renewal_tasks_once(self) -> Optional[Dict[str, Any]]:
        return await self.renewal_job()
