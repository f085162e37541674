"""
Tests for the completion notifier and its channels.
"""

import json

import boto3
import httpx
import pytest
from botocore.stub import ANY, Stubber

from crawl_orchestrator.models import Job
from crawl_orchestrator.services import job_events
from crawl_orchestrator.services.notifier import (
    CompletionNotifier,
    LocalChannel,
    SnsChannel,
    WebhookChannel,
    build_event,
)


@pytest.fixture
def failed_job():
    return Job(
        target_url="https://example.com",
        job_id="job-1",
        status="failed",
        submitted_at=1000,
        finished_at=2000,
        exit_reason="exit code 137",
    )


class TestBuildEvent:
    def test_failed_job_includes_exit_reason(self, failed_job):
        assert build_event(failed_job) == {
            "type": "job_finished",
            "target_url": "https://example.com",
            "job_id": "job-1",
            "status": "failed",
            "finished_at": 2000,
            "exit_reason": "exit code 137",
        }

    def test_succeeded_job_has_no_exit_reason(self):
        job = Job(target_url="https://example.com", job_id="job-2", status="succeeded", finished_at=5)

        assert "exit_reason" not in build_event(job)


class TestChannels:
    async def test_local_channel_fans_out_by_target(self, failed_job):
        for_target = job_events.subscribe("https://example.com")
        for_all = job_events.subscribe()
        for_other = job_events.subscribe("https://other.example")
        try:
            assert await CompletionNotifier(LocalChannel()).notify(failed_job) is True

            assert for_target.get_nowait()["job_id"] == "job-1"
            assert for_all.get_nowait()["status"] == "failed"
            assert for_other.empty()
        finally:
            job_events.unsubscribe("https://example.com", for_target)
            job_events.unsubscribe(job_events.ALL_TARGETS, for_all)
            job_events.unsubscribe("https://other.example", for_other)

    async def test_sns_channel_publishes_json(self, failed_job):
        client = boto3.client(
            "sns",
            region_name="us-east-1",
            aws_access_key_id="testing",
            aws_secret_access_key="testing",
        )
        topic = "arn:aws:sns:us-east-1:123456789012:crawls"
        with Stubber(client) as stub:
            stub.add_response(
                "publish",
                {"MessageId": "m-1"},
                expected_params={
                    "TopicArn": topic,
                    "Subject": "Crawl job failed",
                    "Message": json.dumps(build_event(failed_job)),
                    "MessageAttributes": ANY,
                },
            )
            notified = await CompletionNotifier(SnsChannel(topic, client=client)).notify(failed_job)
            stub.assert_no_pending_responses()

        assert notified is True

    async def test_webhook_channel_posts_event(self, failed_job):
        received = []

        def handler(request: httpx.Request) -> httpx.Response:
            received.append(json.loads(request.content))
            return httpx.Response(204)

        async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as client:
            channel = WebhookChannel("https://hooks.example/crawl", client=client)
            assert await CompletionNotifier(channel).notify(failed_job) is True

        assert received == [build_event(failed_job)]

    async def test_publish_failure_is_swallowed(self, failed_job, caplog):
        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(503)

        async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as client:
            channel = WebhookChannel("https://hooks.example/crawl", client=client)
            assert await CompletionNotifier(channel).notify(failed_job) is False

        assert "Failed to publish completion of job=job-1" in caplog.text
