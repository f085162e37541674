from pydantic import BaseModel, Field, field_validator

from crawl_orchestrator.models import TargetType


def normalize_target_url(url: str) -> str:
    """Trim the URL and default the scheme to https."""
    url = url.strip()
    if not url.lower().startswith(("http://", "https://")):
        url = f"https://{url}"
    return url


class TargetUpsert(BaseModel):
    url: str = Field(min_length=1, max_length=2048)
    target_type: TargetType = TargetType.WEBSITE
    max_requests: int = Field(default=0, ge=0)
    max_files: int = Field(default=0, ge=0)
    download_files: bool = True
    file_types: list[str] = Field(default_factory=list)
    ignore_robots_txt: bool = False
    crawl_interval_hours: int = Field(default=0, ge=0)

    @field_validator("url")
    @classmethod
    def normalize_url(cls, value: str) -> str:
        return normalize_target_url(value)

    @field_validator("file_types")
    @classmethod
    def normalize_file_types(cls, value: list[str]) -> list[str]:
        cleaned = {ext.strip().lstrip(".").lower() for ext in value if ext.strip()}
        return sorted(cleaned)


class TargetResponse(BaseModel):
    url: str
    target_type: str
    sitemaps: list[str]
    max_requests: int
    max_files: int
    download_files: bool
    file_types: list[str]
    ignore_robots_txt: bool
    crawl_interval_hours: int
    last_finished_job_id: str
    outstanding_job_id: str | None
    created_at: int
    updated_at: int

    model_config = {"from_attributes": True}


class TargetListResponse(BaseModel):
    targets: list[TargetResponse]
