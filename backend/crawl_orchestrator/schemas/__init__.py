from crawl_orchestrator.schemas.target import (
    TargetListResponse,
    TargetResponse,
    TargetUpsert,
    normalize_target_url,
)
from crawl_orchestrator.schemas.job import JobResponse, TickResponse

__all__ = [
    "TargetUpsert", "TargetResponse", "TargetListResponse", "normalize_target_url",
    "JobResponse", "TickResponse",
]
