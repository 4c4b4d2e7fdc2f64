"""进程内工作线程池：每种作业类型按并发上限启动固定数量的执行线程，外加超时回收线程。"""

from __future__ import annotations

import logging
import threading

from skillsync.application.dispatcher import JobDispatcher
from skillsync.application.executor import JobRunner
from skillsync.domain.enums import JobType
from skillsync.infra.logging.context import bind_log_context

logger = logging.getLogger(__name__)


class WorkerPool:
    """单进程部署与测试使用的线程池；多进程部署由 Celery 任务承担同样的循环。"""

    def __init__(
        self,
        *,
        dispatcher: JobDispatcher,
        runner: JobRunner,
        job_types: list[JobType] | None = None,
        poll_interval_seconds: float = 1.0,
        reaper_interval_seconds: float = 30.0,
    ) -> None:
        self._dispatcher = dispatcher
        self._runner = runner
        self._job_types = list(job_types) if job_types is not None else list(JobType)
        self._poll_interval = poll_interval_seconds
        self._reaper_interval = reaper_interval_seconds
        self._stop = threading.Event()
        self._threads: list[threading.Thread] = []

    @property
    def running(self) -> bool:
        return any(thread.is_alive() for thread in self._threads)

    def start(self) -> None:
        if self.running:
            raise RuntimeError("worker pool already started")
        self._stop.clear()
        self._threads = []
        for job_type in self._job_types:
            for slot in range(self._dispatcher.policy(job_type).concurrency):
                name = f"{job_type.value}-{slot}"
                self._threads.append(
                    threading.Thread(target=self._work_loop, args=(job_type, name), name=f"worker-{name}", daemon=True)
                )
        self._threads.append(threading.Thread(target=self._reaper_loop, name="worker-reaper", daemon=True))
        for thread in self._threads:
            thread.start()
        logger.info(
            "worker pool started",
            extra={
                "event": "worker.pool.started",
                "payload_preview": {"threads": len(self._threads), "job_types": [item.value for item in self._job_types]},
            },
        )

    def stop(self, timeout: float = 10.0) -> None:
        """通知线程退出并等待当前作业结束；执行中的作业不会被中断。"""
        self._stop.set()
        for thread in self._threads:
            thread.join(timeout=timeout)
        alive = [thread.name for thread in self._threads if thread.is_alive()]
        self._threads = []
        logger.info(
            "worker pool stopped",
            extra={"event": "worker.pool.stopped", "payload_preview": {"still_running": alive}},
        )

    def __enter__(self) -> "WorkerPool":
        self.start()
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.stop()

    def _work_loop(self, job_type: JobType, name: str) -> None:
        with bind_log_context(worker=name, job_type=job_type.value):
            while not self._stop.is_set():
                try:
                    claimed = self._runner.run_next(job_type, worker=name)
                except Exception:
                    # 领取本身失败（如数据库暂不可用）时退避后继续，线程不能退出。
                    logger.exception("worker loop iteration failed", extra={"event": "worker.loop.failed"})
                    claimed = False
                if not claimed:
                    self._stop.wait(self._poll_interval)

    def _reaper_loop(self) -> None:
        with bind_log_context(worker="reaper"):
            while not self._stop.wait(self._reaper_interval):
                try:
                    reaped = self._dispatcher.reap_timed_out()
                except Exception:
                    logger.exception("job reaper iteration failed", extra={"event": "worker.reaper.failed"})
                    continue
                if reaped:
                    logger.info("timed out jobs reaped", extra={"event": "worker.reaper.reaped", "payload_preview": {"count": reaped}})
