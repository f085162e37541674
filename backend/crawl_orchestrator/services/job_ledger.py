import logging

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from crawl_orchestrator.models import ACTIVE_STATUSES, Job, JobStatus, now_ms

logger = logging.getLogger(__name__)

ACTIVE_VALUES = tuple(status.value for status in ACTIVE_STATUSES)


async def get_job(db: AsyncSession, target_url: str, job_id: str) -> Job | None:
    return await db.get(Job, (target_url, job_id), populate_existing=True)


async def record_submitted(
    db: AsyncSession,
    target_url: str,
    job_id: str,
    *,
    runner_job_id: str,
    submitted_at: int,
) -> Job:
    # A duplicate (target_url, job_id) raises IntegrityError: ids are minted
    # once, so a collision is a bug and must not be retried.
    job = Job(
        target_url=target_url,
        job_id=job_id,
        status=JobStatus.SUBMITTED.value,
        runner_job_id=runner_job_id,
        attempts=1,
        submitted_at=submitted_at,
        created_at=submitted_at,
        updated_at=submitted_at,
    )
    db.add(job)
    await db.commit()
    logger.info(
        "Recorded job=%s target=%s runner_job=%s", job_id, target_url, runner_job_id
    )
    return job


async def record_dispatch_failure(
    db: AsyncSession,
    target_url: str,
    job_id: str,
    *,
    exit_reason: str,
    at: int,
) -> Job:
    """Record a job whose submission never reached the cluster."""
    job = Job(
        target_url=target_url,
        job_id=job_id,
        status=JobStatus.FAILED.value,
        runner_job_id=None,
        attempts=0,
        submitted_at=at,
        finished_at=at,
        exit_reason=exit_reason[:2048],
        created_at=at,
        updated_at=at,
    )
    db.add(job)
    await db.commit()
    logger.warning(
        "Recorded dispatch failure job=%s target=%s: %s", job_id, target_url, exit_reason
    )
    return job


async def list_active_jobs(db: AsyncSession, limit: int = 1000) -> list[Job]:
    result = await db.execute(
        select(Job)
        .where(Job.status.in_(ACTIVE_VALUES))
        .order_by(Job.submitted_at.asc())
        .limit(limit)
    )
    return list(result.scalars().all())


async def list_jobs_for_target(
    db: AsyncSession, target_url: str, limit: int = 20
) -> list[Job]:
    result = await db.execute(
        select(Job)
        .where(Job.target_url == target_url)
        .order_by(Job.submitted_at.desc())
        .limit(limit)
    )
    return list(result.scalars().all())


async def has_active_job(db: AsyncSession, target_url: str) -> bool:
    result = await db.execute(
        select(Job.job_id)
        .where(Job.target_url == target_url)
        .where(Job.status.in_(ACTIVE_VALUES))
        .limit(1)
    )
    return result.first() is not None


async def mark_running(db: AsyncSession, job: Job, *, now: int | None = None) -> bool:
    result = await db.execute(
        update(Job)
        .where(Job.target_url == job.target_url)
        .where(Job.job_id == job.job_id)
        .where(Job.status == JobStatus.SUBMITTED.value)
        .values(status=JobStatus.RUNNING.value, updated_at=now_ms() if now is None else now)
        .execution_options(synchronize_session=False)
    )
    await db.commit()
    return result.rowcount == 1


async def claim_retry(db: AsyncSession, job: Job, *, now: int | None = None) -> int | None:
    """Take the right to resubmit ``job`` after a retryable worker exit.

    The claim only succeeds against the handle and attempt count that were
    read, so concurrent pollers of the same failed attempt resubmit it once.
    The handle is cleared until ``record_resubmission`` attaches the new one.
    Returns the new attempt number, or None when another writer got there
    first.
    """
    stamp = now_ms() if now is None else now
    result = await db.execute(
        update(Job)
        .where(Job.target_url == job.target_url)
        .where(Job.job_id == job.job_id)
        .where(Job.status.in_(ACTIVE_VALUES))
        .where(Job.runner_job_id == job.runner_job_id)
        .where(Job.attempts == job.attempts)
        .values(
            status=JobStatus.SUBMITTED.value,
            runner_job_id=None,
            attempts=job.attempts + 1,
            updated_at=stamp,
        )
        .execution_options(synchronize_session=False)
    )
    await db.commit()
    if result.rowcount != 1:
        return None
    return job.attempts + 1


async def record_resubmission(
    db: AsyncSession,
    job: Job,
    *,
    runner_job_id: str,
    attempts: int,
    now: int | None = None,
) -> bool:
    """Attach the cluster handle of a claimed retry.

    Returns False when the job was finalized (e.g. withdrawn) in between.
    """
    stamp = now_ms() if now is None else now
    result = await db.execute(
        update(Job)
        .where(Job.target_url == job.target_url)
        .where(Job.job_id == job.job_id)
        .where(Job.status.in_(ACTIVE_VALUES))
        .where(Job.runner_job_id.is_(None))
        .where(Job.attempts == attempts)
        .values(
            runner_job_id=runner_job_id,
            submitted_at=stamp,
            updated_at=stamp,
        )
        .execution_options(synchronize_session=False)
    )
    await db.commit()
    return result.rowcount == 1


async def finalize(
    db: AsyncSession,
    job: Job,
    status: JobStatus,
    *,
    exit_reason: str | None = None,
    now: int | None = None,
) -> Job | None:
    """Move a job to a terminal status.

    Returns the updated job, or None when another writer finalized it first.
    Terminal jobs are never written again.
    """
    if not status.is_terminal:
        raise ValueError(f"{status.value} is not a terminal status")
    stamp = now_ms() if now is None else now
    result = await db.execute(
        update(Job)
        .where(Job.target_url == job.target_url)
        .where(Job.job_id == job.job_id)
        .where(Job.status.in_(ACTIVE_VALUES))
        .values(
            status=status.value,
            finished_at=stamp,
            exit_reason=exit_reason[:2048] if status == JobStatus.FAILED and exit_reason else None,
            updated_at=stamp,
        )
        .execution_options(synchronize_session=False)
    )
    await db.commit()
    if result.rowcount != 1:
        return None
    logger.info(
        "Job=%s target=%s finished with status=%s", job.job_id, job.target_url, status.value
    )
    return await get_job(db, job.target_url, job.job_id)
