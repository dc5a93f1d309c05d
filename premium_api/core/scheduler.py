"""
Reconciliation scheduler for subscriptions.

Runs four cron jobs on an APScheduler AsyncIOScheduler:
    - renewal reminders  (auto-renew on, expiring within the window)
    - expiry reminders   (auto-renew off, expiring within the window)
    - expiration sweep   (active rows past expires_at, then lapsed projections)
    - pending reaper     (checkouts never confirmed within PENDING_TTL_HOURS)

Each item is handled in its own session, concurrently but bounded by a
semaphore. One failing item is logged and never stops its siblings.
"""
import asyncio
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Awaitable, Callable, Optional

import structlog
from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.cron import CronTrigger

from premium_api.core import config
from premium_api.core.notifier import Notifier
from premium_api.core.subscription_service import ACTIVE, SubscriptionService
from premium_api.core.timeutils import utcnow

logger = structlog.get_logger(__name__)

RENEWAL_REMINDERS = "renewal-reminders"
EXPIRY_REMINDERS = "expiry-reminders"
EXPIRATION_SWEEP = "expiration-sweep"
PENDING_REAPER = "pending-reaper"


@dataclass
class JobResult:
    """Outcome of one job run."""
    job: str
    processed: int = 0
    failed: int = 0
    skipped: int = 0
    # True when the run was dropped because the previous one was still going
    overlapped: bool = False
    # True when the run itself crashed (item failures are counted in failed)
    errored: bool = False


class SubscriptionScheduler:
    """
    Subscription lifecycle jobs plus the APScheduler wiring that triggers them.

    Args:
        session_factory: Callable returning an AsyncSession context manager
        notifier: Email notifier for reminders and expiration notices
        reminder_window_hours: Look-ahead window for both reminder jobs
        pending_ttl_hours: Age after which a pending checkout is reaped
        concurrency: Maximum items processed at once within a job
        timezone: Timezone the cron expressions are evaluated in
    """

    def __init__(
        self,
        session_factory,
        notifier: Notifier,
        reminder_window_hours: int = 72,
        pending_ttl_hours: int = 24,
        concurrency: int = 10,
        timezone: str = "Asia/Kolkata",
    ):
        self.session_factory = session_factory
        self.notifier = notifier
        self.reminder_window_hours = reminder_window_hours
        self.pending_ttl_hours = pending_ttl_hours
        self.concurrency = max(1, concurrency)
        self.timezone = timezone

        self.scheduler: Optional[AsyncIOScheduler] = None
        self._in_flight: set[str] = set()

        self.jobs: dict[str, Callable[..., Awaitable[JobResult]]] = {
            RENEWAL_REMINDERS: self.run_renewal_reminders,
            EXPIRY_REMINDERS: self.run_expiry_reminders,
            EXPIRATION_SWEEP: self.run_expiration_sweep,
            PENDING_REAPER: self.run_pending_reaper,
        }

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------
    def start(self, crontabs: Optional[dict[str, str]] = None) -> None:
        """
        Register every job on its cron expression and start the scheduler.

        Does nothing when DISABLE_SUBSCRIPTION_JOBS is set.
        """
        if config.DISABLE_SUBSCRIPTION_JOBS:
            logger.info("subscription_jobs_disabled")
            return
        if self.scheduler is not None:
            logger.warning("subscription_scheduler_already_running")
            return

        crontabs = crontabs or {
            RENEWAL_REMINDERS: config.SUBSCRIPTION_RENEWAL_CRON,
            EXPIRY_REMINDERS: config.SUBSCRIPTION_EXPIRY_REMINDER_CRON,
            EXPIRATION_SWEEP: config.SUBSCRIPTION_EXPIRATION_CRON,
            PENDING_REAPER: config.SUBSCRIPTION_PENDING_REAPER_CRON,
        }

        self.scheduler = AsyncIOScheduler(timezone=self.timezone)
        for name, expression in crontabs.items():
            self.scheduler.add_job(
                self.jobs[name],
                trigger=CronTrigger.from_crontab(expression, timezone=self.timezone),
                id=name,
                name=name,
                max_instances=1,
                coalesce=True,
                replace_existing=True,
            )
        self.scheduler.start()
        logger.info("subscription_scheduler_started", jobs=crontabs, timezone=self.timezone)

    def shutdown(self) -> None:
        if self.scheduler is None:
            return
        self.scheduler.shutdown(wait=False)
        self.scheduler = None
        logger.info("subscription_scheduler_stopped")

    async def run_job(self, name: str, now: Optional[datetime] = None) -> JobResult:
        """Run one job immediately (admin trigger). Raises KeyError for unknown names."""
        return await self.jobs[name](now=now)

    # ------------------------------------------------------------------
    # Jobs
    # ------------------------------------------------------------------
    async def run_renewal_reminders(self, now: Optional[datetime] = None) -> JobResult:
        return await self._single_flight(RENEWAL_REMINDERS, self._renewal_reminders, now)

    async def run_expiry_reminders(self, now: Optional[datetime] = None) -> JobResult:
        return await self._single_flight(EXPIRY_REMINDERS, self._expiry_reminders, now)

    async def run_expiration_sweep(self, now: Optional[datetime] = None) -> JobResult:
        return await self._single_flight(EXPIRATION_SWEEP, self._expiration_sweep, now)

    async def run_pending_reaper(self, now: Optional[datetime] = None) -> JobResult:
        return await self._single_flight(PENDING_REAPER, self._pending_reaper, now)

    async def _renewal_reminders(self, now: datetime) -> JobResult:
        async with self.session_factory() as db:
            ids = await SubscriptionService.due_for_renewal_reminder(db, now, self.reminder_window_hours)

        async def remind(db, subscription_id):
            subscription = await SubscriptionService.get_by_id(db, subscription_id)
            if not subscription or subscription.status != ACTIVE or subscription.renewal_reminder_sent_at:
                return False
            # A failed send raises here and leaves the marker unset for the next tick
            await self.notifier.send_renewal_reminder(subscription.user, subscription)
            marked = await SubscriptionService.mark_renewal_reminder_sent(db, subscription_id, now)
            await db.commit()
            return marked

        return await self._run_items(RENEWAL_REMINDERS, ids, remind)

    async def _expiry_reminders(self, now: datetime) -> JobResult:
        async with self.session_factory() as db:
            ids = await SubscriptionService.due_for_expiry_reminder(db, now, self.reminder_window_hours)

        async def remind(db, subscription_id):
            subscription = await SubscriptionService.get_by_id(db, subscription_id)
            if not subscription or subscription.status != ACTIVE or subscription.expiry_reminder_sent_at:
                return False
            await self.notifier.send_expiry_reminder(subscription.user, subscription)
            marked = await SubscriptionService.mark_expiry_reminder_sent(db, subscription_id, now)
            await db.commit()
            return marked

        return await self._run_items(EXPIRY_REMINDERS, ids, remind)

    async def _expiration_sweep(self, now: datetime) -> JobResult:
        async with self.session_factory() as db:
            ids = await SubscriptionService.due_for_expiration(db, now)

        async def expire(db, subscription_id):
            if not await SubscriptionService.expire(db, subscription_id):
                return False
            subscription = await SubscriptionService.get_by_id(db, subscription_id)
            await SubscriptionService.recompute_premium_projection(db, subscription.user_id, now)
            await db.commit()
            logger.info("subscription_expired", subscription_id=subscription_id, user_id=subscription.user_id)

            try:
                await self.notifier.send_subscription_expired(subscription.user, subscription)
            except Exception:
                logger.warning("expiration_email_failed", exc_info=True, subscription_id=subscription_id)
            return True

        result = await self._run_items(EXPIRATION_SWEEP, ids, expire)

        # Canceled subscriptions reaching expires_at, and any projection
        # left behind by a partial activation, are settled here.
        async with self.session_factory() as db:
            user_ids = await SubscriptionService.users_with_lapsed_projection(db, now)

        async def rebuild(db, user_id):
            await SubscriptionService.recompute_premium_projection(db, user_id, now)
            await db.commit()
            return True

        rebuilt = await self._run_items(EXPIRATION_SWEEP, user_ids, rebuild, key="user_id")
        if user_ids:
            logger.info("premium_projections_rebuilt", count=rebuilt.processed, failed=rebuilt.failed)
        result.failed += rebuilt.failed
        return result

    async def _pending_reaper(self, now: datetime) -> JobResult:
        cutoff = now - timedelta(hours=self.pending_ttl_hours)
        async with self.session_factory() as db:
            ids = await SubscriptionService.stale_pending(db, cutoff)

        async def reap(db, subscription_id):
            reaped = await SubscriptionService.reap_pending(db, subscription_id)
            await db.commit()
            return reaped

        return await self._run_items(PENDING_REAPER, ids, reap)

    # ------------------------------------------------------------------
    # Plumbing
    # ------------------------------------------------------------------
    async def _single_flight(self, job: str, body, now: Optional[datetime]) -> JobResult:
        if job in self._in_flight:
            logger.warning("subscription_job_overlap_skipped", job=job)
            return JobResult(job=job, overlapped=True)

        self._in_flight.add(job)
        now = now or utcnow()
        logger.info("subscription_job_started", job=job, now=now.isoformat())
        try:
            result = await body(now)
        except Exception:
            logger.error("subscription_job_failed", job=job, exc_info=True)
            return JobResult(job=job, errored=True)
        finally:
            self._in_flight.discard(job)

        logger.info(
            "subscription_job_finished",
            job=job,
            processed=result.processed,
            failed=result.failed,
            skipped=result.skipped,
        )
        return result

    async def _run_items(self, job: str, ids: list[int], handler, key: str = "subscription_id") -> JobResult:
        semaphore = asyncio.Semaphore(self.concurrency)

        async def run_one(item_id):
            async with semaphore:
                try:
                    async with self.session_factory() as db:
                        return await handler(db, item_id)
                except Exception:
                    logger.error("subscription_job_item_failed", job=job, exc_info=True, **{key: item_id})
                    return None

        outcomes = await asyncio.gather(*(run_one(item_id) for item_id in ids))
        return JobResult(
            job=job,
            processed=sum(1 for outcome in outcomes if outcome is True),
            skipped=sum(1 for outcome in outcomes if outcome is False),
            failed=sum(1 for outcome in outcomes if outcome is None),
        )
