"""Job Dispatcher: turns a target into a cluster submission.

Owns the retry policy. A submission that hits ``capacity_unavailable`` (or
times out) is tried again within the attempt budget; permission and spec
problems are surfaced at once. A job whose worker could not pull its image
or was OOM-killed (exit code 137) may be resubmitted once by the scheduler
through ``should_retry_exit``.
"""

import asyncio
import enum
import logging
from dataclasses import dataclass
from urllib.parse import urlparse

from tenacity import (
    AsyncRetrying,
    before_sleep_log,
    retry_if_exception,
    stop_after_attempt,
    wait_fixed,
)

from crawl_orchestrator.models import Job, Target, TargetType
from crawl_orchestrator.runners import (
    DispatchError,
    DispatchErrorKind,
    JobRunner,
    RunnerStatus,
    WorkSpec,
)

logger = logging.getLogger(__name__)

OOM_EXIT_CODE = 137
_TARGET_TYPES = {t.value for t in TargetType}


class ExitClass(str, enum.Enum):
    CANNOT_PULL_IMAGE = "cannot_pull_image"
    OUT_OF_MEMORY = "out_of_memory"
    OTHER = "other"


RETRYABLE_EXITS = (ExitClass.CANNOT_PULL_IMAGE, ExitClass.OUT_OF_MEMORY)


@dataclass(frozen=True)
class JobHandle:
    job_id: str
    runner_job_id: str
    submit_attempts: int


def classify_exit(status: RunnerStatus) -> ExitClass:
    reason = (status.reason or "").lower()
    if "cannotpullcontainer" in reason or "cannot pull" in reason:
        return ExitClass.CANNOT_PULL_IMAGE
    if status.exit_code == OOM_EXIT_CODE or "exit code 137" in reason or "outofmemory" in reason:
        return ExitClass.OUT_OF_MEMORY
    return ExitClass.OTHER


def describe_exit(status: RunnerStatus) -> str:
    reason = status.reason or ""
    if status.exit_code is not None and f"exit code {status.exit_code}" not in reason:
        reason = f"{reason} (exit code {status.exit_code})" if reason else f"exit code {status.exit_code}"
    return reason or "unknown failure"


def _is_retryable(exc: BaseException) -> bool:
    return isinstance(exc, DispatchError) and exc.retryable


class JobDispatcher:
    def __init__(
        self,
        runner: JobRunner,
        *,
        max_attempts: int = 2,
        job_max_attempts: int = 2,
        submit_timeout_seconds: float = 30.0,
        job_timeout_hours: int = 24,
        data_bucket: str = "",
        notification_topic: str = "",
        retry_wait_seconds: float = 1.0,
    ):
        self.runner = runner
        self.max_attempts = max_attempts
        self.job_max_attempts = job_max_attempts
        self.submit_timeout_seconds = submit_timeout_seconds
        self.job_timeout_hours = job_timeout_hours
        self.data_bucket = data_bucket
        self.notification_topic = notification_topic
        self.retry_wait_seconds = retry_wait_seconds

    def build_work_spec(self, target: Target, job_id: str) -> WorkSpec:
        parsed = urlparse(target.url)
        if parsed.scheme not in ("http", "https") or not parsed.netloc:
            raise DispatchError(DispatchErrorKind.INVALID_SPEC, f"Malformed target URL {target.url!r}")
        if target.target_type not in _TARGET_TYPES:
            raise DispatchError(
                DispatchErrorKind.INVALID_SPEC, f"Unknown target type {target.target_type!r}"
            )
        if (target.max_requests or 0) < 0 or (target.max_files or 0) < 0:
            raise DispatchError(DispatchErrorKind.INVALID_SPEC, "Limits must be non-negative")
        file_types = list(target.file_types or [])
        if not all(isinstance(ext, str) and ext for ext in file_types):
            raise DispatchError(DispatchErrorKind.INVALID_SPEC, "File types must be non-empty strings")

        return WorkSpec(
            job_id=job_id,
            target_url=target.url,
            target_type=target.target_type,
            max_requests=target.max_requests or 0,
            max_files=target.max_files or 0,
            download_files=bool(target.download_files),
            file_types=file_types,
            ignore_robots_txt=bool(target.ignore_robots_txt),
            timeout_seconds=self.job_timeout_hours * 3600,
            data_bucket=self.data_bucket,
            notification_topic=self.notification_topic,
        )

    async def _submit_once(self, spec: WorkSpec) -> str:
        try:
            return await asyncio.wait_for(
                self.runner.submit(spec), timeout=self.submit_timeout_seconds
            )
        except asyncio.TimeoutError as exc:
            raise DispatchError(
                DispatchErrorKind.CAPACITY_UNAVAILABLE,
                f"Submission timed out after {self.submit_timeout_seconds}s",
            ) from exc

    async def submit(self, target: Target, job_id: str) -> JobHandle:
        """Submit ``target`` as job ``job_id``; raises ``DispatchError``."""
        spec = self.build_work_spec(target, job_id)

        attempts = 0
        async for attempt in AsyncRetrying(
            retry=retry_if_exception(_is_retryable),
            stop=stop_after_attempt(self.max_attempts),
            wait=wait_fixed(self.retry_wait_seconds),
            before_sleep=before_sleep_log(logger, logging.WARNING),
            reraise=True,
        ):
            with attempt:
                attempts = attempt.retry_state.attempt_number
                handle = await self._submit_once(spec)

        logger.info(
            "Dispatched job=%s target=%s runner_job=%s after %s attempt(s)",
            job_id,
            target.url,
            handle,
            attempts,
        )
        return JobHandle(job_id=job_id, runner_job_id=handle, submit_attempts=attempts)

    async def resubmit(self, target: Target, job: Job) -> JobHandle:
        logger.info("Resubmitting job=%s target=%s (attempt %s)", job.job_id, target.url, job.attempts + 1)
        return await self.submit(target, job.job_id)

    async def cancel(self, job: Job, reason: str) -> None:
        if job.runner_job_id:
            await self.runner.cancel(job.runner_job_id, reason)

    def should_retry_exit(self, status: RunnerStatus, attempts: int) -> bool:
        return classify_exit(status) in RETRYABLE_EXITS and attempts < self.job_max_attempts
