"""作业调度器：提交、领取、完成、失败重试与死信处理，所有状态变更都是条件更新。"""

from __future__ import annotations

import logging
import threading
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Callable
from uuid import uuid4

from skillsync.domain.enums import FailureKind, JobStatus, JobType
from skillsync.domain.errors import InvalidTransitionError, JobFailure, PayloadValidationError, UnknownJobError
from skillsync.domain.payloads import coerce_job_type, parse_payload
from skillsync.domain.queue_policy import QueuePolicy
from skillsync.infra.db.job_repository import JobRepository
from skillsync.infra.db.models import JobORM, ensure_utc, utcnow

logger = logging.getLogger(__name__)

# 错误信息落库前截断，避免上游返回整页 HTML 撑大作业表。
_MAX_ERROR_CHARS = 4000


@dataclass(slots=True)
class QueueStats:
    """单个作业类型的队列监控快照。"""
    job_type: str
    concurrency: int
    waiting: int = 0
    delayed: int = 0
    active: int = 0
    completed: int = 0
    failed: int = 0
    dead_lettered: int = 0
    total_failures: int = 0

    def as_dict(self) -> dict[str, Any]:
        return {
            "job_type": self.job_type,
            "concurrency": self.concurrency,
            "waiting": self.waiting,
            "delayed": self.delayed,
            "active": self.active,
            "completed": self.completed,
            "failed": self.failed,
            "dead_lettered": self.dead_lettered,
            "total_failures": self.total_failures,
        }


class JobDispatcher:
    """作业调度器，处理器通过 JobContext.submitter 拿到同一个实例继续投递子作业。"""

    def __init__(
        self,
        *,
        repository: JobRepository,
        policies: dict[JobType, QueuePolicy],
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        missing = [item.value for item in JobType if item not in policies]
        if missing:
            raise ValueError(f"queue policy missing for: {', '.join(missing)}")
        self._repository = repository
        self._policies = dict(policies)
        self._clock = clock
        self._claim_locks = {item: threading.Lock() for item in JobType}

    def policy(self, job_type: JobType | str) -> QueuePolicy:
        return self._policies[coerce_job_type(job_type)]

    def now(self) -> datetime:
        return self._clock()

    def submit(
        self,
        job_type: JobType | str,
        payload: Any,
        *,
        priority: int | None = None,
        delay_seconds: float = 0,
        max_attempts: int | None = None,
    ) -> str:
        """校验载荷并以 waiting 状态入队，返回作业 ID；非法输入同步拒绝。"""
        resolved = coerce_job_type(job_type)
        model = parse_payload(resolved, payload)
        policy = self._policies[resolved]
        if priority is not None and (isinstance(priority, bool) or not isinstance(priority, int)):
            raise PayloadValidationError("priority must be an integer")
        if delay_seconds < 0:
            raise PayloadValidationError("delay_seconds must be >= 0")
        attempts_limit = policy.max_attempts if max_attempts is None else max_attempts
        if attempts_limit < 1:
            raise PayloadValidationError("max_attempts must be >= 1")

        now = self._clock()
        job_id = str(uuid4())
        job = self._repository.create_job(
            job_id=job_id,
            job_type=resolved.value,
            payload=model.model_dump(mode="json"),
            priority=policy.default_priority if priority is None else priority,
            max_attempts=attempts_limit,
            delay_until=now + timedelta(seconds=delay_seconds) if delay_seconds > 0 else None,
            now=now,
        )
        logger.info(
            "job submitted",
            extra={
                "event": "job.submitted",
                "job_id": job.id,
                "job_type": resolved.value,
                "payload_preview": {
                    "priority": job.priority,
                    "delay_seconds": delay_seconds,
                    "max_attempts": job.max_attempts,
                },
            },
        )
        return job.id

    def claim(self, job_type: JobType | str) -> JobORM | None:
        """领取该类型最早可执行的作业并置为 active；并发已满或无作业时返回 None。"""
        resolved = coerce_job_type(job_type)
        policy = self._policies[resolved]
        # 进程内按类型串行领取，跨进程由条件更新兜底。
        with self._claim_locks[resolved]:
            job = self._repository.claim_next(
                resolved.value,
                now=self._clock(),
                concurrency=policy.concurrency,
                lease_token=uuid4().hex,
            )
        if job is None:
            return None
        logger.info(
            "job claimed",
            extra={
                "event": "job.claimed",
                "job_id": job.id,
                "job_type": job.job_type,
                "retry": job.attempts,
            },
        )
        return job

    def complete(self, job_id: str, result: dict[str, Any] | None = None, *, lease_token: str) -> bool:
        """active → completed；租约不匹配（如已被超时回收）时不生效并返回 False。"""
        job = self._require(job_id)
        now = self._clock()
        applied = self._repository.transition(
            job_id,
            expected_status=JobStatus.active,
            expected_lease=lease_token,
            values={
                "status": JobStatus.completed.value,
                "result": result,
                "lease_token": None,
                "completed_at": now,
                "updated_at": now,
            },
        )
        if not applied:
            self._log_stale(job, "complete")
            return False
        logger.info(
            "job completed",
            extra={
                "event": "job.completed",
                "job_id": job_id,
                "job_type": job.job_type,
                "retry": job.attempts,
                "duration_ms": self._elapsed_ms(job, now),
            },
        )
        return True

    def fail(self, job_id: str, failure: JobFailure, *, lease_token: str) -> JobStatus | None:
        """记录一次失败：可重试且未达上限时按指数退避回到 waiting，否则进入死信。

        返回作业的新状态；租约不匹配时不生效并返回 None。
        """
        job = self._require(job_id)
        policy = self._policies[JobType(job.job_type)]
        now = self._clock()
        attempts = job.attempts + 1
        message = failure.message[:_MAX_ERROR_CHARS]

        if failure.is_retryable and attempts < job.max_attempts:
            delay = policy.backoff_seconds(attempts)
            if failure.kind == FailureKind.rate_limited and failure.retry_after_seconds is not None:
                delay = max(failure.retry_after_seconds, delay)
            delay_until = now + timedelta(seconds=delay)
            applied = self._repository.transition(
                job_id,
                expected_status=JobStatus.active,
                expected_lease=lease_token,
                values={
                    "status": JobStatus.waiting.value,
                    "attempts": attempts,
                    "delay_until": delay_until,
                    "lease_token": None,
                    "claimed_at": None,
                    "last_error": message,
                    "error_code": failure.code,
                    "updated_at": now,
                },
            )
            if not applied:
                self._log_stale(job, "fail")
                return None
            logger.warning(
                "job retry scheduled",
                extra={
                    "event": "job.retry_scheduled",
                    "job_id": job_id,
                    "job_type": job.job_type,
                    "retry": attempts,
                    "error_type": failure.code,
                    "error": message,
                    "payload_preview": {"delay_seconds": delay, "delay_until": delay_until.isoformat()},
                },
            )
            self._log_auth_failure(job, failure)
            return JobStatus.waiting

        applied = self._repository.transition(
            job_id,
            expected_status=JobStatus.active,
            expected_lease=lease_token,
            values={
                "status": JobStatus.dead_lettered.value,
                "attempts": attempts,
                "lease_token": None,
                "last_error": message,
                "error_code": failure.code,
                "completed_at": now,
                "updated_at": now,
            },
        )
        if not applied:
            self._log_stale(job, "fail")
            return None
        logger.error(
            "job dead-lettered",
            extra={
                "event": "job.dead_lettered",
                "job_id": job_id,
                "job_type": job.job_type,
                "retry": attempts,
                "error_type": failure.code,
                "error": message,
                "payload_preview": {"failure_kind": failure.kind.value, "max_attempts": job.max_attempts},
            },
        )
        self._log_auth_failure(job, failure)
        return JobStatus.dead_lettered

    def reap_timed_out(self) -> int:
        """回收超过类型最大执行时长的 active 作业，按可重试的 timeout 失败处理。"""
        now = self._clock()
        reaped = 0
        for job_type, policy in self._policies.items():
            cutoff = now - timedelta(seconds=policy.timeout_seconds)
            for job in self._repository.list_timed_out(job_type.value, cutoff):
                if job.lease_token is None:
                    continue
                logger.warning(
                    "job timed out",
                    extra={
                        "event": "job.timed_out",
                        "job_id": job.id,
                        "job_type": job.job_type,
                        "retry": job.attempts,
                        "payload_preview": {"timeout_seconds": policy.timeout_seconds},
                    },
                )
                outcome = self.fail(
                    job.id,
                    JobFailure.retryable(f"job exceeded {policy.timeout_seconds}s timeout", code="timeout"),
                    lease_token=job.lease_token,
                )
                if outcome is not None:
                    reaped += 1
        return reaped

    def get_job(self, job_id: str) -> JobORM:
        return self._require(job_id)

    def list_jobs(
        self,
        *,
        status: JobStatus | str | None = None,
        job_type: JobType | str | None = None,
        limit: int = 100,
    ) -> list[JobORM]:
        """按状态/类型查询作业；status=failed 返回等待重试的作业。"""
        resolved_status = JobStatus(status) if status is not None else None
        resolved_type = coerce_job_type(job_type).value if job_type is not None else None
        if resolved_status == JobStatus.failed:
            jobs = self._repository.list_jobs(status=JobStatus.waiting, job_type=resolved_type, limit=limit)
            return [job for job in jobs if job.attempts > 0]
        return self._repository.list_jobs(status=resolved_status, job_type=resolved_type, limit=limit)

    def resubmit(self, job_id: str) -> str:
        """以相同类型与载荷重新投递死信作业；原死信记录保持不变。"""
        job = self._require(job_id)
        if job.status != JobStatus.dead_lettered.value:
            raise InvalidTransitionError(f"only dead-lettered jobs can be resubmitted, job {job_id} is {job.status}")
        new_id = self.submit(job.job_type, job.payload, priority=job.priority)
        logger.info(
            "dead-lettered job resubmitted",
            extra={
                "event": "job.resubmitted",
                "job_id": new_id,
                "job_type": job.job_type,
                "payload_preview": {"original_job_id": job_id},
            },
        )
        return new_id

    def eligible_counts(self) -> dict[JobType, int]:
        """各类型当前可领取的作业数，供派发节拍决定唤醒哪些队列。"""
        counts = self._repository.eligible_counts(self._clock())
        return {JobType(key): value for key, value in counts.items() if value > 0}

    def queue_stats(self) -> dict[str, QueueStats]:
        """按类型汇总队列深度与失败计数。"""
        stats = {
            job_type.value: QueueStats(job_type=job_type.value, concurrency=policy.concurrency)
            for job_type, policy in self._policies.items()
        }
        for row in self._repository.status_counts(self._clock()):
            item = stats.get(row.job_type)
            if item is None:
                continue
            item.total_failures += row.attempts
            if row.status == JobStatus.waiting.value:
                item.waiting += row.count
                item.delayed += row.delayed
                item.failed += row.retrying
            elif row.status == JobStatus.active.value:
                item.active += row.count
            elif row.status == JobStatus.completed.value:
                item.completed += row.count
            elif row.status == JobStatus.dead_lettered.value:
                item.dead_lettered += row.count
        return stats

    def purge_finished(self, before: datetime) -> int:
        """删除截止时间前完成的作业，死信作业保留。"""
        purged = self._repository.purge_finished(before)
        logger.info(
            "finished jobs purged",
            extra={"event": "job.purged", "payload_preview": {"before": before.isoformat(), "count": purged}},
        )
        return purged

    def _require(self, job_id: str) -> JobORM:
        job = self._repository.get_job(job_id)
        if job is None:
            raise UnknownJobError(f"job not found: {job_id}")
        return job

    @staticmethod
    def _elapsed_ms(job: JobORM, now: datetime) -> float | None:
        if job.claimed_at is None:
            return None
        return round((now - ensure_utc(job.claimed_at)).total_seconds() * 1000, 2)

    @staticmethod
    def _log_stale(job: JobORM, op: str) -> None:
        logger.warning(
            "job outcome discarded",
            extra={
                "event": "job.outcome.discarded",
                "job_id": job.id,
                "job_type": job.job_type,
                "op": op,
                "payload_preview": {"status": job.status},
            },
        )

    @staticmethod
    def _log_auth_failure(job: JobORM, failure: JobFailure) -> None:
        if failure.code != "auth":
            return
        # 协作方据此事件停用对应集成，等待用户重新授权。
        logger.error(
            "integration authentication failed",
            extra={
                "event": "integration.auth.failed",
                "job_id": job.id,
                "job_type": job.job_type,
                "error": failure.message[:_MAX_ERROR_CHARS],
            },
        )
