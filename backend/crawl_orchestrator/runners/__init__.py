from crawl_orchestrator.runners.base import (
    DispatchError,
    DispatchErrorKind,
    JobRunner,
    RunnerState,
    RunnerStatus,
    WorkSpec,
)
from crawl_orchestrator.runners.memory import InMemoryJobRunner

__all__ = [
    "DispatchError", "DispatchErrorKind",
    "JobRunner", "RunnerState", "RunnerStatus", "WorkSpec",
    "InMemoryJobRunner",
]
