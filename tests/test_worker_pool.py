"""线程池测试：多线程消费队列、并发上限不被突破、停止后不再领取。"""

from __future__ import annotations

import threading
import time

from skillsync.application.dispatcher import JobDispatcher
from skillsync.application.executor import JobRunner
from skillsync.domain.enums import JobStatus, JobType
from skillsync.domain.models import JobContext
from skillsync.worker.pool import WorkerPool
from skillsync.worker.registry import ProcessorRegistry

DETECTION = {"employee_id": "emp-1", "source": "github", "username": "octo"}


def _wait_until(predicate, timeout: float = 20.0) -> bool:
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return True
        time.sleep(0.05)
    return False


def test_pool_processes_jobs_within_concurrency_limit(dispatcher: JobDispatcher) -> None:
    lock = threading.Lock()
    running = 0
    peak = 0

    def _handler(ctx: JobContext) -> dict:
        nonlocal running, peak
        with lock:
            running += 1
            peak = max(peak, running)
        time.sleep(0.05)
        with lock:
            running -= 1
        return {"ok": True}

    registry = ProcessorRegistry()
    registry.register(JobType.skill_detection, _handler)
    runner = JobRunner(dispatcher=dispatcher, registry=registry)
    job_ids = [dispatcher.submit(JobType.skill_detection, DETECTION) for _ in range(9)]

    pool = WorkerPool(
        dispatcher=dispatcher,
        runner=runner,
        job_types=[JobType.skill_detection],
        poll_interval_seconds=0.02,
        reaper_interval_seconds=0.1,
    )
    with pool:
        assert pool.running
        done = _wait_until(
            lambda: all(dispatcher.get_job(job_id).status == JobStatus.completed.value for job_id in job_ids)
        )

    assert done
    assert not pool.running
    assert 1 <= peak <= dispatcher.policy(JobType.skill_detection).concurrency


def test_stopped_pool_leaves_new_jobs_waiting(dispatcher: JobDispatcher) -> None:
    registry = ProcessorRegistry()
    registry.register(JobType.cleanup, lambda ctx: None)
    pool = WorkerPool(
        dispatcher=dispatcher,
        runner=JobRunner(dispatcher=dispatcher, registry=registry),
        job_types=[JobType.cleanup],
        poll_interval_seconds=0.02,
    )
    pool.start()
    pool.stop()

    job_id = dispatcher.submit(JobType.cleanup, {"target": "finished_jobs", "before": "2026-01-01T00:00:00Z"})
    time.sleep(0.1)

    assert dispatcher.get_job(job_id).status == JobStatus.waiting.value
