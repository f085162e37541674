"""Completion Notifier.

Publishing is best effort: every channel error is logged and swallowed so
the scheduler never fails on account of a notification.
"""

import asyncio
import json
import logging
from typing import Any, Protocol

import boto3
import httpx

from crawl_orchestrator.models import Job
from crawl_orchestrator.services import job_events

logger = logging.getLogger(__name__)


class Channel(Protocol):
    async def publish(self, event: dict[str, Any]) -> None: ...


class LocalChannel:
    """In-process fan-out through ``job_events``."""

    async def publish(self, event: dict[str, Any]) -> None:
        job_events.publish(event)


class SnsChannel:
    def __init__(self, topic_arn: str, *, region: str = "us-east-1", client=None):
        self.topic_arn = topic_arn
        self.client = client or boto3.client("sns", region_name=region)

    async def publish(self, event: dict[str, Any]) -> None:
        await asyncio.to_thread(
            self.client.publish,
            TopicArn=self.topic_arn,
            Subject=f"Crawl job {event['status']}",
            Message=json.dumps(event),
            MessageAttributes={
                "status": {"DataType": "String", "StringValue": event["status"]},
            },
        )


class WebhookChannel:
    def __init__(self, url: str, *, timeout: float = 10.0, client: httpx.AsyncClient | None = None):
        self.url = url
        self.timeout = timeout
        self.client = client

    async def publish(self, event: dict[str, Any]) -> None:
        if self.client is not None:
            response = await self.client.post(self.url, json=event, timeout=self.timeout)
            response.raise_for_status()
            return
        async with httpx.AsyncClient(timeout=self.timeout) as client:
            response = await client.post(self.url, json=event)
            response.raise_for_status()


def build_event(job: Job) -> dict[str, Any]:
    event: dict[str, Any] = {
        "type": "job_finished",
        "target_url": job.target_url,
        "job_id": job.job_id,
        "status": job.status,
        "finished_at": job.finished_at,
    }
    if job.exit_reason:
        event["exit_reason"] = job.exit_reason
    return event


class CompletionNotifier:
    def __init__(self, channel: Channel):
        self.channel = channel

    async def notify(self, job: Job) -> bool:
        """Publish the job's outcome. Returns False when publishing failed."""
        event = build_event(job)
        try:
            await self.channel.publish(event)
        except Exception:
            logger.exception(
                "Failed to publish completion of job=%s target=%s",
                job.job_id,
                job.target_url,
            )
            return False
        logger.info(
            "Published completion of job=%s target=%s status=%s",
            job.job_id,
            job.target_url,
            job.status,
        )
        return True
