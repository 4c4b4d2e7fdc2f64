"""作业执行器：领取作业、调用处理器并向调度器回报结果，异常不会逃出工作循环。"""

from __future__ import annotations

import logging
import time
from typing import Any

from pydantic_core import PydanticSerializationError, to_jsonable_python

from skillsync.application.dispatcher import JobDispatcher
from skillsync.domain.enums import FailureKind, JobType
from skillsync.domain.errors import JobFailure, classify_exception
from skillsync.domain.models import JobContext
from skillsync.domain.payloads import coerce_job_type, parse_payload
from skillsync.infra.db.models import JobORM
from skillsync.infra.logging.context import bind_log_context
from skillsync.worker.registry import ProcessorRegistry

logger = logging.getLogger(__name__)


class JobRunner:
    """单次 领取 → 执行 → 回报 循环，线程池与 Celery 任务共用。"""

    def __init__(self, *, dispatcher: JobDispatcher, registry: ProcessorRegistry) -> None:
        self._dispatcher = dispatcher
        self._registry = registry

    def run_next(self, job_type: JobType | str, *, worker: str | None = None) -> bool:
        """领取并执行一个作业；没有可领取作业时返回 False。"""
        resolved = coerce_job_type(job_type)
        job = self._dispatcher.claim(resolved)
        if job is None:
            return False
        with bind_log_context(job_id=job.id, job_type=job.job_type, worker=worker):
            self._execute(job)
        return True

    def drain(self, job_type: JobType | str, *, max_jobs: int, worker: str | None = None) -> int:
        """连续执行直到队列暂无可领取作业或达到数量上限。"""
        processed = 0
        while processed < max_jobs and self.run_next(job_type, worker=worker):
            processed += 1
        return processed

    def _execute(self, job: JobORM) -> None:
        lease_token = job.lease_token or ""
        processor = self._registry.get(job.job_type)
        if processor is None:
            self._report_failure(job, lease_token, JobFailure.fatal(f"no processor registered for {job.job_type}"))
            return

        started = time.perf_counter()
        try:
            ctx = JobContext(
                job_id=job.id,
                job_type=JobType(job.job_type),
                payload=parse_payload(job.job_type, job.payload),
                attempts=job.attempts,
                submitter=self._dispatcher,
                metadata={"priority": job.priority, "max_attempts": job.max_attempts},
            )
            result = processor.handler(ctx)
        except Exception as exc:
            failure = classify_exception(exc)
            if not processor.idempotent and failure.kind == FailureKind.retryable:
                # 请求可能已在对端生效，重试会重复发信或重复出证。
                failure = failure.as_fatal("ambiguous outcome for non-idempotent job")
            log = logger.exception if failure.kind == FailureKind.fatal else logger.warning
            log(
                "job handler failed",
                extra={
                    "event": "job.handler.failed",
                    "duration_ms": round((time.perf_counter() - started) * 1000, 2),
                    "retry": job.attempts,
                    "error_type": type(exc).__name__,
                    "error": str(exc),
                    "payload_preview": {"failure_kind": failure.kind.value, "code": failure.code},
                },
            )
            self._report_failure(job, lease_token, failure)
            return

        try:
            normalized = None if result is None else to_jsonable_python(result)
        except PydanticSerializationError as exc:
            logger.error(
                "job result not serializable",
                extra={"event": "job.result.unserializable", "error_type": type(exc).__name__, "error": str(exc)},
            )
            self._report_failure(job, lease_token, JobFailure.fatal(f"handler result is not serializable: {exc}"))
            return
        self._report_success(job, lease_token, normalized)

    def _report_success(self, job: JobORM, lease_token: str, result: dict[str, Any] | None) -> None:
        try:
            self._dispatcher.complete(job.id, result, lease_token=lease_token)
        except Exception:
            # 回报失败时作业保持 active，由超时回收重新调度。
            logger.exception("job completion report failed", extra={"event": "job.report.failed", "op": "complete"})

    def _report_failure(self, job: JobORM, lease_token: str, failure: JobFailure) -> None:
        try:
            self._dispatcher.fail(job.id, failure, lease_token=lease_token)
        except Exception:
            logger.exception("job failure report failed", extra={"event": "job.report.failed", "op": "fail"})
