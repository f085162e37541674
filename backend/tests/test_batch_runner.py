"""
Tests for the AWS Batch runner using botocore's Stubber.
"""

import boto3
import pytest
from botocore.stub import ANY, Stubber

from crawl_orchestrator.runners import DispatchError, DispatchErrorKind, RunnerState, WorkSpec
from crawl_orchestrator.runners.batch import WITHDRAWN_PREFIX, BatchJobRunner


@pytest.fixture
def batch_client():
    return boto3.client(
        "batch",
        region_name="us-east-1",
        aws_access_key_id="testing",
        aws_secret_access_key="testing",
    )


@pytest.fixture
def stubber(batch_client):
    with Stubber(batch_client) as stub:
        yield stub
        stub.assert_no_pending_responses()


@pytest.fixture
def batch_runner(batch_client):
    return BatchJobRunner(
        job_queue="crawler-queue",
        job_definition="crawler-job:3",
        client=batch_client,
    )


@pytest.fixture
def spec():
    return WorkSpec(
        job_id="abc123",
        target_url="https://example.com",
        target_type="website",
        max_requests=0,
        max_files=5,
        download_files=False,
        file_types=["pdf", "docx"],
        ignore_robots_txt=True,
        timeout_seconds=86400,
        data_bucket="crawl-data",
        notification_topic="arn:aws:sns:us-east-1:123456789012:crawls",
    )


def job_detail(status: str, **extra) -> dict:
    detail = {
        "jobName": "crawl-abc123",
        "jobId": "batch-1",
        "jobQueue": "crawler-queue",
        "status": status,
        "startedAt": 1700000000000,
        "jobDefinition": "crawler-job:3",
    }
    detail.update(extra)
    return detail


class TestBatchSubmit:
    """submit_job mapping."""

    async def test_submit_passes_spec_and_timeout(self, stubber, batch_runner, spec):
        stubber.add_response(
            "submit_job",
            {"jobName": "crawl-abc123", "jobId": "batch-1"},
            expected_params={
                "jobName": "crawl-abc123",
                "jobQueue": "crawler-queue",
                "jobDefinition": "crawler-job:3",
                "containerOverrides": {"environment": ANY},
                "timeout": {"attemptDurationSeconds": 86400},
            },
        )

        handle = await batch_runner.submit(spec)

        assert handle == "batch-1"

    @pytest.mark.parametrize(
        "code, kind",
        [
            ("ClientException", DispatchErrorKind.INVALID_SPEC),
            ("AccessDeniedException", DispatchErrorKind.PERMISSION_DENIED),
            ("ServerException", DispatchErrorKind.CAPACITY_UNAVAILABLE),
        ],
    )
    async def test_client_errors_are_classified(self, stubber, batch_runner, spec, code, kind):
        stubber.add_client_error("submit_job", service_error_code=code, service_message="nope")

        with pytest.raises(DispatchError) as exc_info:
            await batch_runner.submit(spec)

        assert exc_info.value.kind == kind

    async def test_unconfigured_queue_is_invalid_spec(self, batch_client, spec):
        runner = BatchJobRunner(job_queue="", job_definition="", client=batch_client)

        with pytest.raises(DispatchError) as exc_info:
            await runner.submit(spec)

        assert exc_info.value.kind == DispatchErrorKind.INVALID_SPEC

    def test_environment_flattening(self, spec):
        env = spec.environment()

        assert env["CRAWL_FILE_TYPES"] == "pdf,docx"
        assert env["CRAWL_DOWNLOAD_FILES"] == "false"
        assert env["CRAWL_IGNORE_ROBOTS_TXT"] == "true"
        assert env["DATA_BUCKET_NAME"] == "crawl-data"


class TestBatchPoll:
    """describe_jobs mapping."""

    @pytest.mark.parametrize(
        "status, state",
        [
            ("SUBMITTED", RunnerState.SUBMITTED),
            ("RUNNABLE", RunnerState.SUBMITTED),
            ("STARTING", RunnerState.RUNNING),
            ("RUNNING", RunnerState.RUNNING),
            ("SUCCEEDED", RunnerState.SUCCEEDED),
        ],
    )
    async def test_status_mapping(self, stubber, batch_runner, status, state):
        stubber.add_response(
            "describe_jobs", {"jobs": [job_detail(status)]}, expected_params={"jobs": ["batch-1"]}
        )

        result = await batch_runner.poll("batch-1")

        assert result.state == state

    async def test_failed_job_reports_container_exit(self, stubber, batch_runner):
        stubber.add_response(
            "describe_jobs",
            {
                "jobs": [
                    job_detail(
                        "FAILED",
                        statusReason="Essential container in task exited",
                        container={"exitCode": 137, "reason": "OutOfMemoryError: Container killed due to memory usage"},
                    )
                ]
            },
        )

        result = await batch_runner.poll("batch-1")

        assert result.state == RunnerState.FAILED
        assert result.exit_code == 137
        assert result.reason.startswith("OutOfMemoryError")

    async def test_withdrawn_job_is_cancelled(self, stubber, batch_runner):
        stubber.add_response(
            "describe_jobs",
            {"jobs": [job_detail("FAILED", statusReason=f"{WITHDRAWN_PREFIX} withdrawn by operator")]},
        )

        result = await batch_runner.poll("batch-1")

        assert result.state == RunnerState.CANCELLED

    async def test_unknown_job_is_failed(self, stubber, batch_runner):
        stubber.add_response("describe_jobs", {"jobs": []})

        result = await batch_runner.poll("batch-1")

        assert result.state == RunnerState.FAILED
        assert "not found" in result.reason

    async def test_cancel_terminates_with_marker(self, stubber, batch_runner):
        stubber.add_response(
            "terminate_job",
            {},
            expected_params={"jobId": "batch-1", "reason": f"{WITHDRAWN_PREFIX} withdrawn by operator"},
        )

        await batch_runner.cancel("batch-1", "withdrawn by operator")
