"""Target Store: durable crawl targets keyed by URL.

Every mutation is a single-row conditional UPDATE guarded by the
``updated_at`` value read beforehand. ``updated_at`` always moves forward by
at least one millisecond so two writes landing in the same millisecond
still conflict.
"""

import logging
from collections.abc import AsyncIterator

from sqlalchemy import delete, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from crawl_orchestrator.models import Target, now_ms
from crawl_orchestrator.schemas import TargetUpsert

logger = logging.getLogger(__name__)

CONFIG_FIELDS = (
    "target_type",
    "max_requests",
    "max_files",
    "download_files",
    "file_types",
    "ignore_robots_txt",
    "crawl_interval_hours",
)


class StaleWriteError(Exception):
    """A conditional write kept losing to concurrent writers."""


def _next_updated_at(seen: int, now: int | None = None) -> int:
    now = now_ms() if now is None else now
    return max(now, seen + 1)


async def get_target(db: AsyncSession, url: str) -> Target | None:
    return await db.get(Target, url, populate_existing=True)


async def upsert_target(
    db: AsyncSession,
    body: TargetUpsert,
    *,
    attempts: int = 3,
    now: int | None = None,
) -> Target:
    """Create or reconfigure a target.

    Only configuration fields are written on update; crawl history
    (``sitemaps``, ``last_finished_job_id``, ``created_at``) and the
    scheduling slot are left alone.
    """
    values = {field: getattr(body, field) for field in CONFIG_FIELDS}
    values["target_type"] = body.target_type.value

    existing = await get_target(db, body.url)
    if existing is None:
        stamp = now_ms() if now is None else now
        target = Target(
            url=body.url,
            sitemaps=[],
            last_finished_job_id="",
            created_at=stamp,
            updated_at=stamp,
            **values,
        )
        db.add(target)
        try:
            await db.commit()
        except IntegrityError:
            # Another writer registered the same URL first.
            await db.rollback()
            logger.info("Concurrent registration for %s, updating instead", body.url)
        else:
            logger.info("Registered target %s", body.url)
            return target

    for attempt in range(1, attempts + 1):
        existing = await get_target(db, body.url)
        if existing is None:
            raise StaleWriteError(f"Target {body.url} vanished during upsert")
        result = await db.execute(
            update(Target)
            .where(Target.url == body.url)
            .where(Target.updated_at == existing.updated_at)
            .values(updated_at=_next_updated_at(existing.updated_at, now), **values)
            .execution_options(synchronize_session=False)
        )
        await db.commit()
        if result.rowcount == 1:
            logger.info("Updated target %s", body.url)
            return await get_target(db, body.url)
        logger.warning(
            "Conflicting write on target %s (attempt %s/%s)", body.url, attempt, attempts
        )
    raise StaleWriteError(f"Could not update target {body.url}")


async def delete_target(db: AsyncSession, url: str) -> bool:
    """Remove a target. Its jobs stay in the ledger."""
    result = await db.execute(delete(Target).where(Target.url == url))
    await db.commit()
    deleted = result.rowcount > 0
    if deleted:
        logger.info("Deregistered target %s", url)
    return deleted


async def list_targets(
    db: AsyncSession, *, after: str | None = None, limit: int = 500
) -> list[Target]:
    stmt = select(Target).order_by(Target.url).limit(limit)
    if after is not None:
        stmt = stmt.where(Target.url > after)
    result = await db.execute(stmt)
    return list(result.scalars().all())


async def iter_targets(db: AsyncSession, page_size: int) -> AsyncIterator[Target]:
    """Full scan in URL order, one page per query."""
    after = None
    while True:
        page = await list_targets(db, after=after, limit=page_size)
        for target in page:
            yield target
        if len(page) < page_size:
            return
        after = page[-1].url


async def claim_slot(
    db: AsyncSession, target: Target, job_id: str, *, now: int | None = None
) -> bool:
    """Take the target's scheduling slot for ``job_id``.

    Fails when the slot is already held or the row changed since ``target``
    was read.
    """
    stamp = now_ms() if now is None else now
    result = await db.execute(
        update(Target)
        .where(Target.url == target.url)
        .where(Target.updated_at == target.updated_at)
        .where(Target.outstanding_job_id.is_(None))
        .values(
            outstanding_job_id=job_id,
            outstanding_since=stamp,
            updated_at=_next_updated_at(target.updated_at, stamp),
        )
        .execution_options(synchronize_session=False)
    )
    await db.commit()
    return result.rowcount == 1


async def release_slot(
    db: AsyncSession,
    url: str,
    job_id: str,
    *,
    finished_job_id: str | None = None,
    attempts: int = 3,
    now: int | None = None,
) -> bool:
    """Release the slot held by ``job_id``.

    When ``finished_job_id`` is given the target's ``last_finished_job_id``
    is pointed at it in the same write. Returns False when the target no
    longer exists; raises ``StaleWriteError`` when every attempt lost a race.
    """
    for attempt in range(1, attempts + 1):
        target = await get_target(db, url)
        if target is None:
            logger.info("Target %s was deregistered, skipping bookkeeping", url)
            return False

        values: dict = {}
        if target.outstanding_job_id == job_id:
            values["outstanding_job_id"] = None
            values["outstanding_since"] = None
        if finished_job_id is not None:
            values["last_finished_job_id"] = finished_job_id
        if not values:
            return True

        values["updated_at"] = _next_updated_at(target.updated_at, now)
        result = await db.execute(
            update(Target)
            .where(Target.url == url)
            .where(Target.updated_at == target.updated_at)
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        await db.commit()
        if result.rowcount == 1:
            return True
        logger.warning(
            "Conflicting write on target %s (attempt %s/%s)", url, attempt, attempts
        )

    raise StaleWriteError(f"Could not release slot of {url} for job {job_id}")


async def list_claimed_targets(db: AsyncSession, limit: int = 1000) -> list[Target]:
    result = await db.execute(
        select(Target)
        .where(Target.outstanding_job_id.is_not(None))
        .order_by(Target.outstanding_since.asc())
        .limit(limit)
    )
    return list(result.scalars().all())
