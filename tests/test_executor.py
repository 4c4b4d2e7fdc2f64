"""作业执行器测试：成功回报、失败分类、非幂等降级与缺失处理器。"""

from __future__ import annotations

from datetime import datetime, timezone

import httpx
import pytest

from skillsync.application.dispatcher import JobDispatcher
from skillsync.application.executor import JobRunner
from skillsync.domain.enums import JobStatus, JobType
from skillsync.domain.errors import JobError, RateLimitedJobError, RetryableJobError
from skillsync.domain.models import JobContext
from skillsync.domain.payloads import SkillDetectionPayload
from skillsync.infra.db.job_repository import JobRepository
from skillsync.worker.registry import ProcessorRegistry

DETECTION = {"employee_id": "emp-1", "source": "github", "username": "octo"}
EMAIL = {"to": ["a@example.com"], "subject": "Your skills", "html": "<p>hi</p>"}


@pytest.fixture
def registry() -> ProcessorRegistry:
    return ProcessorRegistry()


@pytest.fixture
def runner(dispatcher: JobDispatcher, registry: ProcessorRegistry) -> JobRunner:
    return JobRunner(dispatcher=dispatcher, registry=registry)


def _server_error() -> httpx.HTTPStatusError:
    request = httpx.Request("POST", "https://gateway.example.com/emails")
    response = httpx.Response(502, request=request)
    return httpx.HTTPStatusError("bad gateway", request=request, response=response)


def test_run_next_returns_false_on_empty_queue(runner: JobRunner) -> None:
    assert runner.run_next(JobType.skill_detection) is False


def test_successful_handler_completes_job(
    runner: JobRunner, registry: ProcessorRegistry, dispatcher: JobDispatcher
) -> None:
    seen: list[JobContext] = []

    def _handler(ctx: JobContext) -> dict:
        seen.append(ctx)
        return {"username": ctx.payload.username}

    registry.register(JobType.skill_detection, _handler)
    job_id = dispatcher.submit(JobType.skill_detection, DETECTION)

    assert runner.run_next(JobType.skill_detection, worker="test-0") is True

    job = dispatcher.get_job(job_id)
    assert job.status == JobStatus.completed.value
    assert job.result == {"username": "octo"}
    assert isinstance(seen[0].payload, SkillDetectionPayload)
    assert seen[0].job_id == job_id
    assert seen[0].submitter is dispatcher


def test_retryable_exception_schedules_retry(
    runner: JobRunner, registry: ProcessorRegistry, dispatcher: JobDispatcher
) -> None:
    def _handler(ctx: JobContext) -> None:
        raise RetryableJobError("gateway timeout")

    registry.register(JobType.skill_detection, _handler)
    job_id = dispatcher.submit(JobType.skill_detection, DETECTION)

    runner.run_next(JobType.skill_detection)

    job = dispatcher.get_job(job_id)
    assert job.status == JobStatus.waiting.value
    assert job.attempts == 1
    assert job.last_error == "gateway timeout"


def test_unexpected_exception_is_fatal(
    runner: JobRunner, registry: ProcessorRegistry, dispatcher: JobDispatcher
) -> None:
    def _handler(ctx: JobContext) -> None:
        raise KeyError("missing field")

    registry.register(JobType.skill_detection, _handler)
    job_id = dispatcher.submit(JobType.skill_detection, DETECTION)

    runner.run_next(JobType.skill_detection)

    job = dispatcher.get_job(job_id)
    assert job.status == JobStatus.dead_lettered.value
    assert job.error_code == "internal"


def test_non_idempotent_handler_is_not_retried_on_ambiguous_failure(
    runner: JobRunner, registry: ProcessorRegistry, dispatcher: JobDispatcher
) -> None:
    def _handler(ctx: JobContext) -> None:
        raise _server_error()

    registry.register(JobType.email_send, _handler, idempotent=False)
    job_id = dispatcher.submit(JobType.email_send, EMAIL)

    runner.run_next(JobType.email_send)

    job = dispatcher.get_job(job_id)
    assert job.status == JobStatus.dead_lettered.value
    assert job.last_error.startswith("ambiguous outcome for non-idempotent job")


def test_non_idempotent_handler_still_retries_rate_limits(
    runner: JobRunner, registry: ProcessorRegistry, dispatcher: JobDispatcher
) -> None:
    def _handler(ctx: JobContext) -> None:
        raise RateLimitedJobError("too many requests", retry_after_seconds=30)

    registry.register(JobType.email_send, _handler, idempotent=False)
    job_id = dispatcher.submit(JobType.email_send, EMAIL)

    runner.run_next(JobType.email_send)

    job = dispatcher.get_job(job_id)
    assert job.status == JobStatus.waiting.value
    assert job.error_code == "rate_limited"


def test_missing_processor_dead_letters(runner: JobRunner, dispatcher: JobDispatcher) -> None:
    job_id = dispatcher.submit(JobType.cleanup, {"target": "finished_jobs", "before": "2026-01-01T00:00:00Z"})

    assert runner.run_next(JobType.cleanup) is True

    job = dispatcher.get_job(job_id)
    assert job.status == JobStatus.dead_lettered.value
    assert "no processor registered" in job.last_error


def test_corrupted_stored_payload_dead_letters(
    runner: JobRunner, registry: ProcessorRegistry, dispatcher: JobDispatcher, job_repository: JobRepository
) -> None:
    registry.register(JobType.skill_detection, lambda ctx: None)
    job_repository.create_job(
        job_id="corrupted",
        job_type=JobType.skill_detection.value,
        payload={"employee_id": "emp-1"},
        priority=0,
        max_attempts=3,
        delay_until=None,
        now=dispatcher.now(),
    )

    runner.run_next(JobType.skill_detection)

    job = dispatcher.get_job("corrupted")
    assert job.status == JobStatus.dead_lettered.value
    assert job.error_code == "validation"


def test_drain_stops_when_queue_is_empty(
    runner: JobRunner, registry: ProcessorRegistry, dispatcher: JobDispatcher
) -> None:
    registry.register(JobType.skill_detection, lambda ctx: None)
    for _ in range(2):
        dispatcher.submit(JobType.skill_detection, DETECTION)

    assert runner.drain(JobType.skill_detection, max_jobs=10) == 2
    assert runner.drain(JobType.skill_detection, max_jobs=10) == 0


def test_base_job_error_dead_letters(
    runner: JobRunner, registry: ProcessorRegistry, dispatcher: JobDispatcher
) -> None:
    def _handler(ctx: JobContext) -> None:
        raise JobError("repository archived")

    registry.register(JobType.skill_detection, _handler)
    job_id = dispatcher.submit(JobType.skill_detection, DETECTION)

    assert runner.run_next(JobType.skill_detection) is True

    job = dispatcher.get_job(job_id)
    assert job.status == JobStatus.dead_lettered.value
    assert job.lease_token is None
    assert job.last_error == "repository archived"
    assert job.error_code == "internal"


def test_result_values_are_stored_as_json(
    runner: JobRunner, registry: ProcessorRegistry, dispatcher: JobDispatcher
) -> None:
    finished_at = datetime(2026, 3, 1, 12, 30, tzinfo=timezone.utc)

    def _handler(ctx: JobContext) -> dict:
        return {"finished_at": finished_at, "skills": ("python", "docker")}

    registry.register(JobType.skill_detection, _handler)
    job_id = dispatcher.submit(JobType.skill_detection, DETECTION)

    runner.run_next(JobType.skill_detection)

    job = dispatcher.get_job(job_id)
    assert job.status == JobStatus.completed.value
    assert job.result == {"finished_at": "2026-03-01T12:30:00Z", "skills": ["python", "docker"]}


def test_unserializable_result_dead_letters_without_retry(
    runner: JobRunner, registry: ProcessorRegistry, dispatcher: JobDispatcher
) -> None:
    calls: list[str] = []

    def _handler(ctx: JobContext) -> dict:
        calls.append(ctx.job_id)
        return {"handle": object()}

    registry.register(JobType.skill_detection, _handler)
    job_id = dispatcher.submit(JobType.skill_detection, DETECTION)

    runner.run_next(JobType.skill_detection)

    job = dispatcher.get_job(job_id)
    assert job.status == JobStatus.dead_lettered.value
    assert job.lease_token is None
    assert job.error_code == "internal"
    assert job.last_error.startswith("handler result is not serializable")
    assert runner.run_next(JobType.skill_detection) is False
    assert calls == [job_id]
