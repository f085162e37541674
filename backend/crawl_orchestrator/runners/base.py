"""Compute-cluster abstraction.

A runner accepts a ``WorkSpec``, hands back an opaque handle and later
reports a ``RunnerStatus`` for that handle.
"""

import enum
from dataclasses import dataclass, field
from typing import Protocol


class DispatchErrorKind(str, enum.Enum):
    CAPACITY_UNAVAILABLE = "capacity_unavailable"
    PERMISSION_DENIED = "permission_denied"
    INVALID_SPEC = "invalid_spec"


class DispatchError(Exception):
    def __init__(self, kind: DispatchErrorKind, message: str = ""):
        self.kind = kind
        self.message = message
        super().__init__(f"{kind.value}: {message}" if message else kind.value)

    @property
    def retryable(self) -> bool:
        return self.kind == DispatchErrorKind.CAPACITY_UNAVAILABLE


class RunnerState(str, enum.Enum):
    SUBMITTED = "submitted"
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    CANCELLED = "cancelled"


@dataclass(frozen=True)
class WorkSpec:
    job_id: str
    target_url: str
    target_type: str
    max_requests: int
    max_files: int
    download_files: bool
    file_types: list[str]
    ignore_robots_txt: bool
    timeout_seconds: int
    data_bucket: str = ""
    notification_topic: str = ""
    extra_environment: dict[str, str] = field(default_factory=dict)

    def environment(self) -> dict[str, str]:
        """Flatten the work spec into worker environment variables."""
        env = {
            "CRAWL_JOB_ID": self.job_id,
            "CRAWL_TARGET_URL": self.target_url,
            "CRAWL_TARGET_TYPE": self.target_type,
            "CRAWL_MAX_REQUESTS": str(self.max_requests),
            "CRAWL_MAX_FILES": str(self.max_files),
            "CRAWL_DOWNLOAD_FILES": "true" if self.download_files else "false",
            "CRAWL_FILE_TYPES": ",".join(self.file_types),
            "CRAWL_IGNORE_ROBOTS_TXT": "true" if self.ignore_robots_txt else "false",
            "DATA_BUCKET_NAME": self.data_bucket,
            "SNS_TOPIC_ARN": self.notification_topic,
        }
        env.update(self.extra_environment)
        return env


@dataclass(frozen=True)
class RunnerStatus:
    state: RunnerState
    reason: str | None = None
    exit_code: int | None = None

    @property
    def is_terminal(self) -> bool:
        return self.state in (RunnerState.SUCCEEDED, RunnerState.FAILED, RunnerState.CANCELLED)


class JobRunner(Protocol):
    async def submit(self, spec: WorkSpec) -> str: ...

    async def poll(self, handle: str) -> RunnerStatus: ...

    async def cancel(self, handle: str, reason: str) -> None: ...
