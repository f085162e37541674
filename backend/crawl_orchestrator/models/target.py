import enum

from sqlalchemy import JSON, BigInteger, Boolean, Index, Integer, String
from sqlalchemy.orm import Mapped, mapped_column

from crawl_orchestrator.models.base import Base, TimestampMixin


class TargetType(str, enum.Enum):
    WEBSITE = "website"
    RSS_FEED = "rss_feed"


class Target(Base, TimestampMixin):
    __tablename__ = "targets"
    __table_args__ = (Index("ix_targets_outstanding", "outstanding_job_id"),)

    url: Mapped[str] = mapped_column(String(2048), primary_key=True)
    target_type: Mapped[str] = mapped_column(String(20), default=TargetType.WEBSITE.value)
    sitemaps: Mapped[list[str]] = mapped_column(JSON, default=list)
    max_requests: Mapped[int] = mapped_column(Integer, default=0)  # 0 = crawler default
    max_files: Mapped[int] = mapped_column(Integer, default=0)
    download_files: Mapped[bool] = mapped_column(Boolean, default=True)
    file_types: Mapped[list[str]] = mapped_column(JSON, default=list)  # empty = all types
    ignore_robots_txt: Mapped[bool] = mapped_column(Boolean, default=False)
    crawl_interval_hours: Mapped[int] = mapped_column(Integer, default=0)  # 0 = manual only
    last_finished_job_id: Mapped[str] = mapped_column(String(64), default="")

    # Scheduling slot. Kept on the row so several replicas can share it.
    outstanding_job_id: Mapped[str | None] = mapped_column(String(64))
    outstanding_since: Mapped[int | None] = mapped_column(BigInteger)
