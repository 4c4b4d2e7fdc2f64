"""作业调度器测试：提交校验、优先级与 FIFO、延迟、并发上限、退避重试与死信。"""

from __future__ import annotations

from datetime import timedelta

import pytest

from skillsync.application.dispatcher import JobDispatcher
from skillsync.domain.enums import JobStatus, JobType
from skillsync.domain.errors import InvalidTransitionError, JobFailure, PayloadValidationError, UnknownJobError
from skillsync.infra.db.models import ensure_utc

DETECTION = {"employee_id": "emp-1", "source": "github", "username": "octo"}


def _claim_required(dispatcher: JobDispatcher, job_type: JobType):
    job = dispatcher.claim(job_type)
    assert job is not None
    return job


def test_submit_creates_waiting_job(dispatcher: JobDispatcher) -> None:
    job_id = dispatcher.submit(JobType.skill_detection, DETECTION)
    job = dispatcher.get_job(job_id)

    assert job.status == JobStatus.waiting.value
    assert job.attempts == 0
    assert job.max_attempts == 3
    assert job.priority == 2
    assert job.payload == {**DETECTION, "repositories": None}


@pytest.mark.parametrize(
    ("job_type", "payload"),
    [
        ("skill-detection", {"employee_id": "emp-1"}),
        ("skill-detection", {**DETECTION, "unexpected": True}),
        ("email-send", {"to": "not-an-address", "subject": "hi", "html": "<p>x</p>"}),
        ("email-send", {"to": "a@example.com", "subject": "hi"}),
        ("cleanup", {"target": "everything", "before": "2026-01-01T00:00:00Z"}),
        ("unknown-type", {}),
    ],
)
def test_submit_rejects_malformed_payload(dispatcher: JobDispatcher, job_type: str, payload: dict) -> None:
    with pytest.raises(PayloadValidationError):
        dispatcher.submit(job_type, payload)
    assert dispatcher.list_jobs() == []


def test_submit_rejects_bad_options(dispatcher: JobDispatcher) -> None:
    with pytest.raises(PayloadValidationError):
        dispatcher.submit(JobType.skill_detection, DETECTION, delay_seconds=-1)
    with pytest.raises(PayloadValidationError):
        dispatcher.submit(JobType.skill_detection, DETECTION, max_attempts=0)


def test_claim_orders_by_priority_then_fifo(dispatcher: JobDispatcher) -> None:
    low = dispatcher.submit(JobType.email_send, {"to": "a@example.com", "subject": "a", "html": "x"}, priority=5)
    first = dispatcher.submit(JobType.email_send, {"to": "b@example.com", "subject": "b", "html": "x"}, priority=1)
    second = dispatcher.submit(JobType.email_send, {"to": "c@example.com", "subject": "c", "html": "x"}, priority=1)

    claimed = [_claim_required(dispatcher, JobType.email_send).id for _ in range(3)]

    assert claimed == [first, second, low]
    assert dispatcher.claim(JobType.email_send) is None


def test_claim_respects_delay(dispatcher: JobDispatcher, clock) -> None:
    dispatcher.submit(JobType.skill_detection, DETECTION, delay_seconds=60)

    assert dispatcher.claim(JobType.skill_detection) is None
    clock.advance(60)
    assert dispatcher.claim(JobType.skill_detection) is not None


def test_claim_respects_concurrency_limit(dispatcher: JobDispatcher) -> None:
    """org-sync 默认并发为 2，第三个作业需等待前面的完成。"""
    for index in range(3):
        dispatcher.submit(JobType.org_sync, {"company_id": f"co-{index}"})

    first = _claim_required(dispatcher, JobType.org_sync)
    _claim_required(dispatcher, JobType.org_sync)
    assert dispatcher.claim(JobType.org_sync) is None

    assert dispatcher.complete(first.id, {"ok": True}, lease_token=first.lease_token)
    assert dispatcher.claim(JobType.org_sync) is not None


def test_claim_only_returns_requested_type(dispatcher: JobDispatcher) -> None:
    dispatcher.submit(JobType.org_sync, {"company_id": "co-1"})
    assert dispatcher.claim(JobType.employee_sync) is None


def test_complete_records_result(dispatcher: JobDispatcher, clock) -> None:
    job_id = dispatcher.submit(JobType.skill_detection, DETECTION)
    job = _claim_required(dispatcher, JobType.skill_detection)
    clock.advance(5)

    assert dispatcher.complete(job_id, {"observations": 3}, lease_token=job.lease_token)
    stored = dispatcher.get_job(job_id)
    assert stored.status == JobStatus.completed.value
    assert stored.result == {"observations": 3}
    assert ensure_utc(stored.completed_at) == clock()
    assert stored.lease_token is None


def test_terminal_job_is_immutable(dispatcher: JobDispatcher) -> None:
    job_id = dispatcher.submit(JobType.skill_detection, DETECTION)
    job = _claim_required(dispatcher, JobType.skill_detection)
    assert dispatcher.complete(job_id, None, lease_token=job.lease_token)

    assert dispatcher.complete(job_id, {"again": True}, lease_token=job.lease_token) is False
    assert dispatcher.fail(job_id, JobFailure.fatal("late"), lease_token=job.lease_token) is None
    stored = dispatcher.get_job(job_id)
    assert stored.status == JobStatus.completed.value
    assert stored.result is None
    assert stored.attempts == 0


def test_outcome_with_wrong_lease_is_discarded(dispatcher: JobDispatcher) -> None:
    job_id = dispatcher.submit(JobType.skill_detection, DETECTION)
    _claim_required(dispatcher, JobType.skill_detection)

    assert dispatcher.complete(job_id, None, lease_token="someone-else") is False
    assert dispatcher.get_job(job_id).status == JobStatus.active.value


def test_unknown_job_raises(dispatcher: JobDispatcher) -> None:
    with pytest.raises(UnknownJobError):
        dispatcher.get_job("missing")
    with pytest.raises(UnknownJobError):
        dispatcher.complete("missing", None, lease_token="x")


def test_backoff_grows_and_dead_letters_at_max_attempts(dispatcher: JobDispatcher, clock) -> None:
    """第 n 次失败后 delay_until ≥ 失败时刻 + 2s × 2^n，attempts == max_attempts 时进入死信。"""
    job_id = dispatcher.submit(JobType.skill_detection, DETECTION, max_attempts=4)

    for attempt in range(1, 4):
        job = _claim_required(dispatcher, JobType.skill_detection)
        failed_at = clock()
        outcome = dispatcher.fail(job_id, JobFailure.retryable("upstream 503"), lease_token=job.lease_token)
        stored = dispatcher.get_job(job_id)

        assert outcome == JobStatus.waiting
        assert stored.attempts == attempt
        assert ensure_utc(stored.delay_until) >= failed_at + timedelta(seconds=2 * 2**attempt)
        assert dispatcher.claim(JobType.skill_detection) is None
        clock.advance(2 * 2**attempt)

    job = _claim_required(dispatcher, JobType.skill_detection)
    outcome = dispatcher.fail(job_id, JobFailure.retryable("upstream 503"), lease_token=job.lease_token)
    stored = dispatcher.get_job(job_id)

    assert outcome == JobStatus.dead_lettered
    assert stored.attempts == stored.max_attempts == 4
    assert stored.last_error == "upstream 503"
    assert dispatcher.claim(JobType.skill_detection) is None


def test_rate_limit_honors_retry_after(dispatcher: JobDispatcher, clock) -> None:
    """限流两次、retry-after 为 90s：第二次退避 8s，取较大值 90s。"""
    job_id = dispatcher.submit(JobType.skill_detection, DETECTION)
    failure = JobFailure.rate_limited("GitHub API rate limit exceeded", retry_after_seconds=90)

    job = _claim_required(dispatcher, JobType.skill_detection)
    dispatcher.fail(job_id, failure, lease_token=job.lease_token)
    clock.advance(90)

    job = _claim_required(dispatcher, JobType.skill_detection)
    now = clock()
    outcome = dispatcher.fail(job_id, failure, lease_token=job.lease_token)
    stored = dispatcher.get_job(job_id)

    assert outcome == JobStatus.waiting
    assert stored.attempts == 2
    assert ensure_utc(stored.delay_until) == now + timedelta(seconds=90)
    assert stored.error_code == "rate_limited"


def test_rate_limit_without_hint_uses_backoff(dispatcher: JobDispatcher, clock) -> None:
    job_id = dispatcher.submit(JobType.skill_detection, DETECTION)
    job = _claim_required(dispatcher, JobType.skill_detection)

    dispatcher.fail(job_id, JobFailure.rate_limited("slow down", retry_after_seconds=None), lease_token=job.lease_token)

    assert ensure_utc(dispatcher.get_job(job_id).delay_until) == clock() + timedelta(seconds=4)


def test_fatal_failure_dead_letters_immediately(dispatcher: JobDispatcher, caplog) -> None:
    job_id = dispatcher.submit(JobType.skill_detection, DETECTION)
    job = _claim_required(dispatcher, JobType.skill_detection)

    with caplog.at_level("ERROR"):
        outcome = dispatcher.fail(job_id, JobFailure.fatal("token revoked", code="auth"), lease_token=job.lease_token)

    stored = dispatcher.get_job(job_id)
    assert outcome == JobStatus.dead_lettered
    assert stored.attempts == 1
    assert stored.error_code == "auth"
    events = {getattr(record, "event", None) for record in caplog.records}
    assert {"job.dead_lettered", "integration.auth.failed"} <= events


def test_reaper_fails_timed_out_jobs(dispatcher: JobDispatcher, clock) -> None:
    job_id = dispatcher.submit(JobType.email_send, {"to": "a@example.com", "subject": "s", "html": "x"})
    job = _claim_required(dispatcher, JobType.email_send)

    clock.advance(dispatcher.policy(JobType.email_send).timeout_seconds - 1)
    assert dispatcher.reap_timed_out() == 0
    clock.advance(2)
    assert dispatcher.reap_timed_out() == 1

    stored = dispatcher.get_job(job_id)
    assert stored.status == JobStatus.waiting.value
    assert stored.error_code == "timeout"
    assert stored.attempts == 1
    # 原 worker 迟到的完成回报会被丢弃。
    assert dispatcher.complete(job_id, {"late": True}, lease_token=job.lease_token) is False


def test_queue_stats_reports_depth_and_failures(dispatcher: JobDispatcher, clock) -> None:
    retry_id = dispatcher.submit(JobType.skill_detection, DETECTION)
    dead_id = dispatcher.submit(JobType.skill_detection, DETECTION)
    dispatcher.submit(JobType.skill_detection, DETECTION, delay_seconds=600)

    job = _claim_required(dispatcher, JobType.skill_detection)
    assert job.id == retry_id
    dispatcher.fail(retry_id, JobFailure.retryable("timeout"), lease_token=job.lease_token)
    job = _claim_required(dispatcher, JobType.skill_detection)
    assert job.id == dead_id
    dispatcher.fail(dead_id, JobFailure.fatal("bug"), lease_token=job.lease_token)

    stats = dispatcher.queue_stats()["skill-detection"]

    assert stats.waiting == 2
    assert stats.delayed == 2
    assert stats.failed == 1
    assert stats.dead_lettered == 1
    assert stats.active == 0
    assert stats.total_failures == 2
    assert stats.concurrency == 3
    assert [job.id for job in dispatcher.list_jobs(status=JobStatus.failed)] == [retry_id]
    assert [job.id for job in dispatcher.list_jobs(status=JobStatus.dead_lettered)] == [dead_id]


def test_resubmit_dead_lettered_job(dispatcher: JobDispatcher) -> None:
    job_id = dispatcher.submit(JobType.skill_detection, DETECTION, priority=7)
    job = _claim_required(dispatcher, JobType.skill_detection)
    dispatcher.fail(job_id, JobFailure.fatal("bad credentials", code="auth"), lease_token=job.lease_token)

    new_id = dispatcher.resubmit(job_id)

    original = dispatcher.get_job(job_id)
    fresh = dispatcher.get_job(new_id)
    assert original.status == JobStatus.dead_lettered.value
    assert fresh.status == JobStatus.waiting.value
    assert fresh.payload == original.payload
    assert fresh.priority == 7
    assert fresh.attempts == 0


def test_resubmit_rejects_non_dead_lettered(dispatcher: JobDispatcher) -> None:
    job_id = dispatcher.submit(JobType.skill_detection, DETECTION)
    with pytest.raises(InvalidTransitionError):
        dispatcher.resubmit(job_id)


def test_purge_finished_keeps_dead_letters(dispatcher: JobDispatcher, clock) -> None:
    done_id = dispatcher.submit(JobType.skill_detection, DETECTION)
    job = _claim_required(dispatcher, JobType.skill_detection)
    dispatcher.complete(done_id, None, lease_token=job.lease_token)
    dead_id = dispatcher.submit(JobType.skill_detection, DETECTION)
    job = _claim_required(dispatcher, JobType.skill_detection)
    dispatcher.fail(dead_id, JobFailure.fatal("bug"), lease_token=job.lease_token)
    clock.advance(3600)

    assert dispatcher.purge_finished(clock()) == 1
    assert dispatcher.get_job(dead_id).status == JobStatus.dead_lettered.value
    with pytest.raises(UnknownJobError):
        dispatcher.get_job(done_id)


def test_eligible_counts(dispatcher: JobDispatcher) -> None:
    dispatcher.submit(JobType.skill_detection, DETECTION)
    dispatcher.submit(JobType.cleanup, {"target": "finished_jobs", "before": "2026-01-01T00:00:00Z"})
    dispatcher.submit(JobType.org_sync, {"company_id": "co"}, delay_seconds=30)

    assert dispatcher.eligible_counts() == {JobType.skill_detection: 1, JobType.cleanup: 1}


def test_repository_rejects_transition_outside_state_machine(dispatcher: JobDispatcher, job_repository) -> None:
    job_id = dispatcher.submit(JobType.skill_detection, DETECTION)

    with pytest.raises(InvalidTransitionError):
        job_repository.transition(
            job_id,
            expected_status=JobStatus.waiting,
            expected_lease=None,
            values={"status": JobStatus.completed.value},
        )
    assert dispatcher.get_job(job_id).status == JobStatus.waiting.value
