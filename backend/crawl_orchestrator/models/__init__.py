from crawl_orchestrator.models.base import Base, now_ms
from crawl_orchestrator.models.target import Target, TargetType
from crawl_orchestrator.models.job import (
    ACTIVE_STATUSES,
    TERMINAL_STATUSES,
    Job,
    JobStatus,
)

__all__ = [
    "Base", "now_ms",
    "Target", "TargetType",
    "Job", "JobStatus", "ACTIVE_STATUSES", "TERMINAL_STATUSES",
]
