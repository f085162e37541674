"""Scheduler Loop.

Each tick first polls jobs that are still outstanding, then scans every
target and dispatches the ones that are due. Which target is "being
processed" lives in the target row (``outstanding_job_id``), so any number
of replicas can tick against the same database.
"""

import asyncio
import enum
import logging
import uuid
from collections.abc import Awaitable, Callable
from dataclasses import asdict, dataclass
from functools import lru_cache

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.cron import CronTrigger
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from crawl_orchestrator.config import settings
from crawl_orchestrator.models import Job, JobStatus, Target, now_ms
from crawl_orchestrator.runners import DispatchError, RunnerState, RunnerStatus
from crawl_orchestrator.services import job_ledger, target_store
from crawl_orchestrator.services.dispatcher import JobDispatcher, describe_exit
from crawl_orchestrator.services.due import is_due
from crawl_orchestrator.services.notifier import (
    CompletionNotifier,
    LocalChannel,
    SnsChannel,
    WebhookChannel,
)
from crawl_orchestrator.services.target_store import StaleWriteError

logger = logging.getLogger(__name__)

scheduler = AsyncIOScheduler()
TICK_JOB_ID = "crawl_scheduler_tick"

JOB_TIMEOUT_REASON = "exceeded maximum job duration"
WITHDRAWN_REASON = "withdrawn by operator"
LOST_RESUBMISSION_REASON = "resubmission was never recorded"

_RUNNER_TO_JOB_STATUS = {
    RunnerState.SUCCEEDED: JobStatus.SUCCEEDED,
    RunnerState.FAILED: JobStatus.FAILED,
    RunnerState.CANCELLED: JobStatus.CANCELLED,
}


class DispatchFailurePolicy(str, enum.Enum):
    # A failed dispatch never ran the worker, so the due-ness clock stays put.
    LEAVE_UNTOUCHED = "leave_untouched"
    # A failed dispatch counts as a finished (failed) run.
    RESET_CLOCK = "reset_clock"


class TargetNotFoundError(LookupError):
    pass


class JobNotFoundError(LookupError):
    pass


class JobOutstandingError(Exception):
    """The target already has a job in flight."""


@dataclass
class TickStats:
    polled: int = 0
    finalized: int = 0
    dispatched: int = 0
    dispatch_failed: int = 0
    skipped: int = 0

    def as_dict(self) -> dict[str, int]:
        return asdict(self)


class CrawlScheduler:
    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        dispatcher: JobDispatcher,
        notifier: CompletionNotifier,
        *,
        clock: Callable[[], int] = now_ms,
        max_concurrent_dispatches: int = 8,
        scan_page_size: int = 500,
        store_write_attempts: int = 3,
        claim_expiry_seconds: int = 600,
        job_timeout_hours: int = 24,
        job_timeout_grace_minutes: int = 30,
        dispatch_failure_policy: DispatchFailurePolicy = DispatchFailurePolicy.LEAVE_UNTOUCHED,
    ):
        self.session_factory = session_factory
        self.dispatcher = dispatcher
        self.notifier = notifier
        self.clock = clock
        self.scan_page_size = scan_page_size
        self.store_write_attempts = store_write_attempts
        self.claim_expiry_ms = claim_expiry_seconds * 1000
        self.job_ceiling_ms = (job_timeout_hours * 60 + job_timeout_grace_minutes) * 60 * 1000
        self.dispatch_failure_policy = DispatchFailurePolicy(dispatch_failure_policy)
        self._semaphore = asyncio.Semaphore(max_concurrent_dispatches)
        self._lock = asyncio.Lock()

    async def tick(self) -> TickStats:
        if self._lock.locked():
            logger.warning("Previous scheduler tick still running, skipping this one")
            return TickStats()

        async with self._lock:
            stats = TickStats()
            await self.poll_outstanding(stats)
            await self.dispatch_due(stats)
            logger.info("Scheduler tick finished: %s", stats.as_dict())
            return stats

    async def _isolated(self, step: Awaitable, label: str) -> None:
        async with self._semaphore:
            try:
                await step
            except Exception:
                logger.exception("Scheduling step failed for %s", label)

    def _finished_reference(self, job: Job) -> str | None:
        """Job id to store as ``last_finished_job_id``, if this job qualifies."""
        if job.status not in (JobStatus.SUCCEEDED.value, JobStatus.FAILED.value):
            return None
        never_ran = job.attempts == 0
        if never_ran and self.dispatch_failure_policy == DispatchFailurePolicy.LEAVE_UNTOUCHED:
            return None
        return job.job_id

    # -- completion path -------------------------------------------------

    async def poll_outstanding(self, stats: TickStats) -> None:
        async with self.session_factory() as db:
            active = await job_ledger.list_active_jobs(db)

        await asyncio.gather(
            *(self._isolated(self._poll_job(job, stats), job.target_url) for job in active)
        )
        await self._recover_claims(stats)

    async def _poll_job(self, job: Job, stats: TickStats, *, withdrawing: bool = False) -> None:
        if job.runner_job_id is None:
            await self._check_pending_resubmission(job, stats, withdrawing=withdrawing)
            return

        status = await self.dispatcher.runner.poll(job.runner_job_id)
        stats.polled += 1

        async with self.session_factory() as db:
            if not status.is_terminal:
                if status.state == RunnerState.RUNNING and job.status == JobStatus.SUBMITTED.value:
                    await job_ledger.mark_running(db, job, now=self.clock())
                if self.clock() - job.submitted_at > self.job_ceiling_ms:
                    logger.warning(
                        "Job=%s target=%s ran past its ceiling, cancelling",
                        job.job_id,
                        job.target_url,
                    )
                    await self.dispatcher.cancel(job, JOB_TIMEOUT_REASON)
                    await self._finish(db, job, JobStatus.FAILED, JOB_TIMEOUT_REASON, stats)
                return

            if (
                not withdrawing
                and status.state == RunnerState.FAILED
                and self.dispatcher.should_retry_exit(status, job.attempts)
            ):
                if await self._retry_job(db, job, status, stats):
                    return

            exit_reason = describe_exit(status) if status.state == RunnerState.FAILED else None
            await self._finish(db, job, _RUNNER_TO_JOB_STATUS[status.state], exit_reason, stats)

    async def _check_pending_resubmission(
        self, job: Job, stats: TickStats, *, withdrawing: bool
    ) -> None:
        """A retry was claimed but its new handle is not recorded yet."""
        async with self.session_factory() as db:
            if withdrawing:
                await self._finish(db, job, JobStatus.CANCELLED, None, stats)
            elif self.clock() - job.updated_at > self.claim_expiry_ms:
                logger.warning(
                    "Resubmission of job=%s target=%s was never recorded, failing it",
                    job.job_id,
                    job.target_url,
                )
                await self._finish(db, job, JobStatus.FAILED, LOST_RESUBMISSION_REASON, stats)

    async def _retry_job(
        self, db: AsyncSession, job: Job, status: RunnerStatus, stats: TickStats
    ) -> bool:
        target = await target_store.get_target(db, job.target_url)
        if target is None:
            return False

        attempts = await job_ledger.claim_retry(db, job, now=self.clock())
        if attempts is None:
            logger.info("Retry of job=%s target=%s already claimed", job.job_id, job.target_url)
            return True

        logger.warning(
            "Job=%s target=%s failed with retryable exit (%s)",
            job.job_id,
            job.target_url,
            describe_exit(status),
        )
        try:
            handle = await self.dispatcher.resubmit(target, job)
        except DispatchError as exc:
            reason = f"{describe_exit(status)}; resubmission failed: {exc}"
            await self._finish(db, job, JobStatus.FAILED, reason, stats)
            return True

        recorded = await job_ledger.record_resubmission(
            db, job, runner_job_id=handle.runner_job_id, attempts=attempts, now=self.clock()
        )
        if not recorded:
            logger.warning(
                "Job=%s target=%s finished while resubmitting, withdrawing %s",
                job.job_id,
                job.target_url,
                handle.runner_job_id,
            )
            await self.dispatcher.runner.cancel(handle.runner_job_id, WITHDRAWN_REASON)
        return True

    async def _finish(
        self,
        db: AsyncSession,
        job: Job,
        status: JobStatus,
        exit_reason: str | None,
        stats: TickStats,
    ) -> Job | None:
        finished = await job_ledger.finalize(
            db, job, status, exit_reason=exit_reason, now=self.clock()
        )
        if finished is None:
            # Finalized by another replica, which also notifies.
            return None
        stats.finalized += 1
        await self._release(db, finished)
        await self.notifier.notify(finished)
        return finished

    async def _release(self, db: AsyncSession, job: Job) -> None:
        try:
            await target_store.release_slot(
                db,
                job.target_url,
                job.job_id,
                finished_job_id=self._finished_reference(job),
                attempts=self.store_write_attempts,
                now=self.clock(),
            )
        except StaleWriteError:
            logger.error(
                "Could not update target %s after job=%s, leaving slot for the next tick",
                job.target_url,
                job.job_id,
            )

    async def _recover_claims(self, stats: TickStats) -> None:
        """Release slots whose job is already terminal or never made it to the ledger."""
        now = self.clock()
        async with self.session_factory() as db:
            for target in await target_store.list_claimed_targets(db):
                job = await job_ledger.get_job(db, target.url, target.outstanding_job_id)
                if job is None:
                    if now - (target.outstanding_since or 0) < self.claim_expiry_ms:
                        continue
                    logger.warning(
                        "Releasing expired claim of %s by unrecorded job=%s",
                        target.url,
                        target.outstanding_job_id,
                    )
                    await self._release_claim(db, target.url, target.outstanding_job_id, None)
                elif JobStatus(job.status).is_terminal:
                    logger.info(
                        "Releasing slot of %s held by finished job=%s", target.url, job.job_id
                    )
                    await self._release_claim(
                        db, target.url, job.job_id, self._finished_reference(job)
                    )

    async def _release_claim(
        self, db: AsyncSession, url: str, job_id: str, finished_job_id: str | None
    ) -> None:
        try:
            await target_store.release_slot(
                db,
                url,
                job_id,
                finished_job_id=finished_job_id,
                attempts=self.store_write_attempts,
                now=self.clock(),
            )
        except StaleWriteError:
            logger.error("Could not release slot of %s, retrying next tick", url)

    # -- dispatch path ---------------------------------------------------

    async def dispatch_due(self, stats: TickStats) -> None:
        now = self.clock()
        due: list[Target] = []
        async with self.session_factory() as db:
            async for target in target_store.iter_targets(db, self.scan_page_size):
                if target.outstanding_job_id or await job_ledger.has_active_job(db, target.url):
                    stats.skipped += 1
                    continue
                last_finished = None
                if target.last_finished_job_id:
                    last_finished = await job_ledger.get_job(
                        db, target.url, target.last_finished_job_id
                    )
                if not is_due(target, last_finished, now):
                    stats.skipped += 1
                    continue
                due.append(target)

        await asyncio.gather(
            *(self._isolated(self._dispatch(target, stats), target.url) for target in due)
        )

    async def _dispatch(self, target: Target, stats: TickStats) -> Job | None:
        job_id = uuid.uuid4().hex
        async with self.session_factory() as db:
            if not await target_store.claim_slot(db, target, job_id, now=self.clock()):
                logger.info("Slot of %s was taken by another writer, skipping", target.url)
                stats.skipped += 1
                return None

            try:
                handle = await self.dispatcher.submit(target, job_id)
            except DispatchError as exc:
                return await self._record_dispatch_failure(db, target, job_id, exc, stats)

            job = await job_ledger.record_submitted(
                db,
                target.url,
                job_id,
                runner_job_id=handle.runner_job_id,
                submitted_at=self.clock(),
            )
            stats.dispatched += 1
            return job

    async def _record_dispatch_failure(
        self,
        db: AsyncSession,
        target: Target,
        job_id: str,
        exc: DispatchError,
        stats: TickStats,
    ) -> Job:
        job = await job_ledger.record_dispatch_failure(
            db,
            target.url,
            job_id,
            exit_reason=f"dispatch failed: {exc}",
            at=self.clock(),
        )
        stats.dispatch_failed += 1
        await self._release(db, job)
        await self.notifier.notify(job)
        return job

    # -- operator actions ------------------------------------------------

    async def trigger(self, url: str) -> Job:
        """Dispatch ``url`` now, ignoring its interval."""
        async with self.session_factory() as db:
            target = await target_store.get_target(db, url)
            if target is None:
                raise TargetNotFoundError(url)
            if target.outstanding_job_id or await job_ledger.has_active_job(db, url):
                raise JobOutstandingError(url)

        job = await self._dispatch(target, TickStats())
        if job is None:
            raise JobOutstandingError(url)
        return job

    async def cancel(self, url: str, job_id: str) -> Job:
        """Withdraw an outstanding job; terminal jobs are returned unchanged."""
        async with self.session_factory() as db:
            job = await job_ledger.get_job(db, url, job_id)
        if job is None:
            raise JobNotFoundError(job_id)
        if JobStatus(job.status).is_terminal:
            return job

        await self.dispatcher.cancel(job, WITHDRAWN_REASON)
        await self._poll_job(job, TickStats(), withdrawing=True)

        async with self.session_factory() as db:
            return await job_ledger.get_job(db, url, job_id)


def build_crawl_scheduler(session_factory: async_sessionmaker[AsyncSession]) -> CrawlScheduler:
    if settings.job_runner == "batch":
        from crawl_orchestrator.runners.batch import BatchJobRunner

        runner = BatchJobRunner(
            job_queue=settings.batch_job_queue,
            job_definition=settings.batch_job_definition,
            region=settings.aws_region,
        )
    else:
        from crawl_orchestrator.runners import InMemoryJobRunner

        runner = InMemoryJobRunner()

    if settings.notifier == "sns":
        channel = SnsChannel(settings.sns_topic_arn, region=settings.aws_region)
    elif settings.notifier == "webhook":
        channel = WebhookChannel(settings.webhook_url, timeout=settings.webhook_timeout_seconds)
    else:
        channel = LocalChannel()

    dispatcher = JobDispatcher(
        runner,
        max_attempts=settings.dispatch_max_attempts,
        job_max_attempts=settings.job_max_attempts,
        submit_timeout_seconds=settings.dispatch_timeout_seconds,
        job_timeout_hours=settings.job_timeout_hours,
        data_bucket=settings.data_bucket_name,
        notification_topic=settings.sns_topic_arn,
    )
    return CrawlScheduler(
        session_factory,
        dispatcher,
        CompletionNotifier(channel),
        max_concurrent_dispatches=settings.max_concurrent_dispatches,
        scan_page_size=settings.scan_page_size,
        store_write_attempts=settings.store_write_attempts,
        claim_expiry_seconds=settings.claim_expiry_seconds,
        job_timeout_hours=settings.job_timeout_hours,
        job_timeout_grace_minutes=settings.job_timeout_grace_minutes,
        dispatch_failure_policy=DispatchFailurePolicy(settings.dispatch_failure_policy),
    )


@lru_cache
def get_crawl_scheduler() -> CrawlScheduler:
    from crawl_orchestrator.database import async_session

    return build_crawl_scheduler(async_session)


def start_schedule(crawl_scheduler: CrawlScheduler, cron_expression: str):
    """Register the periodic tick and start APScheduler."""
    trigger = CronTrigger.from_crontab(cron_expression)
    scheduler.add_job(
        crawl_scheduler.tick,
        trigger=trigger,
        id=TICK_JOB_ID,
        replace_existing=True,
        max_instances=1,
        coalesce=True,
    )
    if not scheduler.running:
        scheduler.start()
    logger.info("Scheduler tick registered with cron: %s", cron_expression)
