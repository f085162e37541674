import itertools
import logging
from collections import deque

from crawl_orchestrator.runners.base import RunnerState, RunnerStatus, WorkSpec

logger = logging.getLogger(__name__)


class InMemoryJobRunner:
    """Process-local runner for development and tests.

    Jobs stay ``submitted`` until their status is set explicitly, unless a
    ``default_outcome`` is given, in which case every submission reports it
    immediately.
    """

    def __init__(self, *, default_outcome: RunnerStatus | None = None):
        self.default_outcome = default_outcome
        self.submissions: list[WorkSpec] = []
        self.cancelled: dict[str, str] = {}
        self._statuses: dict[str, RunnerStatus] = {}
        self._handles: dict[str, list[str]] = {}
        self._submit_errors: deque[Exception] = deque()
        self._counter = itertools.count(1)
        self.submit_calls = 0

    def fail_next_submit(self, *errors: Exception) -> None:
        self._submit_errors.extend(errors)

    async def submit(self, spec: WorkSpec) -> str:
        self.submit_calls += 1
        if self._submit_errors:
            raise self._submit_errors.popleft()
        handle = f"mem-{next(self._counter)}"
        self.submissions.append(spec)
        self._handles.setdefault(spec.job_id, []).append(handle)
        self._statuses[handle] = self.default_outcome or RunnerStatus(RunnerState.SUBMITTED)
        logger.info("In-memory job %s accepted for %s", handle, spec.target_url)
        return handle

    async def poll(self, handle: str) -> RunnerStatus:
        status = self._statuses.get(handle)
        if status is None:
            return RunnerStatus(RunnerState.FAILED, reason=f"Unknown job handle {handle}")
        return status

    async def cancel(self, handle: str, reason: str) -> None:
        self.cancelled[handle] = reason
        current = self._statuses.get(handle)
        if current is not None and not current.is_terminal:
            self._statuses[handle] = RunnerStatus(RunnerState.CANCELLED, reason=reason)

    def set_status(
        self,
        handle: str,
        state: RunnerState,
        *,
        reason: str | None = None,
        exit_code: int | None = None,
    ) -> None:
        self._statuses[handle] = RunnerStatus(state, reason=reason, exit_code=exit_code)

    def handles_for(self, job_id: str) -> list[str]:
        return list(self._handles.get(job_id, []))
