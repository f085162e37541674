from pydantic import BaseModel


class JobResponse(BaseModel):
    target_url: str
    job_id: str
    status: str
    runner_job_id: str | None
    attempts: int
    submitted_at: int
    finished_at: int | None
    exit_reason: str | None

    model_config = {"from_attributes": True}


class TickResponse(BaseModel):
    polled: int
    finalized: int
    dispatched: int
    dispatch_failed: int
    skipped: int
