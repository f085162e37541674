import logging

from crawl_orchestrator.models import Job, Target

logger = logging.getLogger(__name__)

MS_PER_HOUR = 60 * 60 * 1000


def is_due(target: Target, last_finished_job: Job | None, now: int) -> bool:
    """Decide whether ``target`` should get a new job at ``now`` (ms).

    ``last_finished_job`` is the ledger row referenced by the target's
    ``last_finished_job_id``, or None if the lookup found nothing.
    """
    if target.crawl_interval_hours <= 0:
        return False

    if not target.last_finished_job_id:
        return True

    if last_finished_job is None:
        logger.warning(
            "Target %s references missing job %s, treating as never run",
            target.url,
            target.last_finished_job_id,
        )
        return True

    finished_at = last_finished_job.finished_at
    if finished_at is None:
        finished_at = last_finished_job.submitted_at
    return now - finished_at >= target.crawl_interval_hours * MS_PER_HOUR
