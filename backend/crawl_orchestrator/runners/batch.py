"""AWS Batch adapter.

boto3 is synchronous, so each call runs in a worker thread to keep the
scheduler's event loop responsive.
"""

import asyncio
import logging

import boto3
from botocore.exceptions import BotoCoreError, ClientError, NoCredentialsError

from crawl_orchestrator.runners.base import (
    DispatchError,
    DispatchErrorKind,
    RunnerState,
    RunnerStatus,
    WorkSpec,
)

logger = logging.getLogger(__name__)

WITHDRAWN_PREFIX = "Withdrawn:"

_PENDING_STATES = {"SUBMITTED", "PENDING", "RUNNABLE"}
_RUNNING_STATES = {"STARTING", "RUNNING"}

_PERMISSION_CODES = {
    "AccessDenied",
    "AccessDeniedException",
    "UnauthorizedOperation",
    "UnrecognizedClientException",
}
_INVALID_CODES = {"ClientException", "ValidationException", "InvalidParameterException"}


def _dispatch_error(exc: Exception) -> DispatchError:
    if isinstance(exc, NoCredentialsError):
        return DispatchError(DispatchErrorKind.PERMISSION_DENIED, str(exc))
    if isinstance(exc, ClientError):
        code = exc.response.get("Error", {}).get("Code", "")
        message = exc.response.get("Error", {}).get("Message", str(exc))
        if code in _PERMISSION_CODES:
            return DispatchError(DispatchErrorKind.PERMISSION_DENIED, message)
        if code in _INVALID_CODES:
            return DispatchError(DispatchErrorKind.INVALID_SPEC, message)
        return DispatchError(DispatchErrorKind.CAPACITY_UNAVAILABLE, f"{code}: {message}")
    return DispatchError(DispatchErrorKind.CAPACITY_UNAVAILABLE, str(exc))


class BatchJobRunner:
    def __init__(
        self,
        *,
        job_queue: str,
        job_definition: str,
        region: str = "us-east-1",
        client=None,
    ):
        self.job_queue = job_queue
        self.job_definition = job_definition
        self.client = client or boto3.client("batch", region_name=region)

    async def submit(self, spec: WorkSpec) -> str:
        if not self.job_queue or not self.job_definition:
            raise DispatchError(
                DispatchErrorKind.INVALID_SPEC, "Batch job queue and definition must be configured"
            )
        params = {
            "jobName": f"crawl-{spec.job_id}",
            "jobQueue": self.job_queue,
            "jobDefinition": self.job_definition,
            "containerOverrides": {
                "environment": [
                    {"name": name, "value": value}
                    for name, value in sorted(spec.environment().items())
                ]
            },
            "timeout": {"attemptDurationSeconds": spec.timeout_seconds},
        }
        try:
            response = await asyncio.to_thread(self.client.submit_job, **params)
        except (ClientError, BotoCoreError) as exc:
            raise _dispatch_error(exc) from exc

        handle = response["jobId"]
        logger.info("Submitted batch job %s for %s", handle, spec.target_url)
        return handle

    async def poll(self, handle: str) -> RunnerStatus:
        response = await asyncio.to_thread(self.client.describe_jobs, jobs=[handle])
        jobs = response.get("jobs", [])
        if not jobs:
            return RunnerStatus(RunnerState.FAILED, reason=f"Batch job {handle} not found")

        detail = jobs[0]
        status = detail.get("status", "")
        if status in _PENDING_STATES:
            return RunnerStatus(RunnerState.SUBMITTED)
        if status in _RUNNING_STATES:
            return RunnerStatus(RunnerState.RUNNING)
        if status == "SUCCEEDED":
            return RunnerStatus(RunnerState.SUCCEEDED)

        status_reason = detail.get("statusReason") or ""
        if status_reason.startswith(WITHDRAWN_PREFIX):
            return RunnerStatus(RunnerState.CANCELLED, reason=status_reason)

        container = detail.get("container") or {}
        reason = container.get("reason") or status_reason or None
        return RunnerStatus(
            RunnerState.FAILED,
            reason=reason,
            exit_code=container.get("exitCode"),
        )

    async def cancel(self, handle: str, reason: str) -> None:
        await asyncio.to_thread(
            self.client.terminate_job,
            jobId=handle,
            reason=f"{WITHDRAWN_PREFIX} {reason}",
        )
        logger.info("Requested termination of batch job %s", handle)
