"""作业仓储实现：封装作业持久化、原子领取与基于条件更新的状态流转。"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from typing import Any

from sqlalchemy import Select, and_, case, delete, func, or_, select, update
from sqlalchemy.orm import Session, aliased, sessionmaker

from skillsync.domain.enums import ALLOWED_TRANSITIONS, JobStatus
from skillsync.domain.errors import InvalidTransitionError
from skillsync.infra.db.models import JobORM


@dataclass(slots=True)
class StatusCountRow:
    """按类型与状态分组的统计行。"""
    job_type: str
    status: str
    count: int
    attempts: int
    delayed: int
    retrying: int


class JobRepository:
    """作业仓储实现，每个操作独立开启会话与事务。"""
    def __init__(self, session_factory: sessionmaker[Session]) -> None:
        self._session_factory = session_factory

    def get_job(self, job_id: str) -> JobORM | None:
        """按作业 ID 查询。"""
        with self._session_factory() as db:
            return db.execute(select(JobORM).where(JobORM.id == job_id)).scalars().first()

    def create_job(
        self,
        *,
        job_id: str,
        job_type: str,
        payload: dict[str, Any],
        priority: int,
        max_attempts: int,
        delay_until: datetime | None,
        now: datetime,
    ) -> JobORM:
        """以 waiting 状态写入新作业。"""
        with self._session_factory.begin() as db:
            job = JobORM(
                id=job_id,
                job_type=job_type,
                payload=payload,
                priority=priority,
                status=JobStatus.waiting.value,
                attempts=0,
                max_attempts=max_attempts,
                delay_until=delay_until,
                created_at=now,
                updated_at=now,
            )
            db.add(job)
            db.flush()
            return job

    def claim_next(
        self,
        job_type: str,
        *,
        now: datetime,
        concurrency: int,
        lease_token: str,
        scan_limit: int = 5,
    ) -> JobORM | None:
        """领取最早可执行的 waiting 作业；并发上限在条件更新内复核，保证原子性。"""
        with self._session_factory.begin() as db:
            candidates: Select[tuple[int]] = (
                select(JobORM.seq)
                .where(
                    JobORM.job_type == job_type,
                    JobORM.status == JobStatus.waiting.value,
                    or_(JobORM.delay_until.is_(None), JobORM.delay_until <= now),
                )
                .order_by(JobORM.priority.asc(), JobORM.seq.asc())
                .limit(scan_limit)
            )
            seqs = list(db.execute(candidates).scalars().all())
            if not seqs:
                return None

            # 使用别名统计活跃数，避免子查询与 UPDATE 目标表自动关联。
            active_jobs = aliased(JobORM, name="active_jobs")
            active_count = (
                select(func.count(active_jobs.seq))
                .where(
                    active_jobs.job_type == job_type,
                    active_jobs.status == JobStatus.active.value,
                )
                .scalar_subquery()
            )
            for seq in seqs:
                result = db.execute(
                    update(JobORM)
                    .where(
                        JobORM.seq == seq,
                        JobORM.status == JobStatus.waiting.value,
                        active_count < concurrency,
                    )
                    .values(
                        status=JobStatus.active.value,
                        lease_token=lease_token,
                        claimed_at=now,
                        updated_at=now,
                    )
                    .execution_options(synchronize_session=False)
                )
                if result.rowcount == 1:
                    return db.execute(select(JobORM).where(JobORM.seq == seq)).scalars().one()
            # 候选被其他领取者抢走，或并发已满。
            return None

    def transition(
        self,
        job_id: str,
        *,
        expected_status: JobStatus,
        expected_lease: str | None,
        values: dict[str, Any],
    ) -> bool:
        """条件更新作业：仅当状态（及租约）与预期一致时生效。"""
        if "status" in values:
            target = JobStatus(values["status"])
            if target not in ALLOWED_TRANSITIONS.get(expected_status, frozenset()):
                raise InvalidTransitionError(f"{expected_status.value} -> {target.value} is not allowed")
        with self._session_factory.begin() as db:
            stmt = update(JobORM).where(JobORM.id == job_id, JobORM.status == expected_status.value)
            if expected_lease is not None:
                stmt = stmt.where(JobORM.lease_token == expected_lease)
            result = db.execute(stmt.values(**values).execution_options(synchronize_session=False))
            return result.rowcount == 1

    def list_jobs(
        self,
        *,
        status: JobStatus | None = None,
        job_type: str | None = None,
        limit: int = 100,
    ) -> list[JobORM]:
        """按状态与类型过滤作业，新作业在前。"""
        with self._session_factory() as db:
            stmt = select(JobORM)
            if status is not None:
                stmt = stmt.where(JobORM.status == status.value)
            if job_type is not None:
                stmt = stmt.where(JobORM.job_type == job_type)
            stmt = stmt.order_by(JobORM.seq.desc()).limit(limit)
            return list(db.execute(stmt).scalars().all())

    def list_timed_out(self, job_type: str, cutoff: datetime) -> list[JobORM]:
        """查询领取时间早于截止时间仍处于 active 的作业。"""
        with self._session_factory() as db:
            stmt = (
                select(JobORM)
                .where(
                    JobORM.job_type == job_type,
                    JobORM.status == JobStatus.active.value,
                    JobORM.claimed_at < cutoff,
                )
                .order_by(JobORM.seq.asc())
            )
            return list(db.execute(stmt).scalars().all())

    def eligible_counts(self, now: datetime) -> dict[str, int]:
        """统计各类型当前可领取的 waiting 作业数。"""
        with self._session_factory() as db:
            stmt = (
                select(JobORM.job_type, func.count(JobORM.seq))
                .where(
                    JobORM.status == JobStatus.waiting.value,
                    or_(JobORM.delay_until.is_(None), JobORM.delay_until <= now),
                )
                .group_by(JobORM.job_type)
            )
            return {job_type: int(count) for job_type, count in db.execute(stmt).all()}

    def status_counts(self, now: datetime) -> list[StatusCountRow]:
        """按类型与状态聚合数量、累计失败次数、延迟中与重试中的作业数。"""
        with self._session_factory() as db:
            delayed = case(
                (and_(JobORM.delay_until.is_not(None), JobORM.delay_until > now), 1),
                else_=0,
            )
            retrying = case((JobORM.attempts > 0, 1), else_=0)
            stmt = (
                select(
                    JobORM.job_type,
                    JobORM.status,
                    func.count(JobORM.seq),
                    func.coalesce(func.sum(JobORM.attempts), 0),
                    func.coalesce(func.sum(delayed), 0),
                    func.coalesce(func.sum(retrying), 0),
                )
                .group_by(JobORM.job_type, JobORM.status)
            )
            return [
                StatusCountRow(
                    job_type=row[0],
                    status=row[1],
                    count=int(row[2]),
                    attempts=int(row[3]),
                    delayed=int(row[4]),
                    retrying=int(row[5]),
                )
                for row in db.execute(stmt).all()
            ]

    def purge_finished(self, before: datetime) -> int:
        """删除早于截止时间完成的作业；死信作业保留以便人工处理。"""
        with self._session_factory.begin() as db:
            result = db.execute(
                delete(JobORM)
                .where(
                    JobORM.status == JobStatus.completed.value,
                    JobORM.completed_at < before,
                )
                .execution_options(synchronize_session=False)
            )
            return int(result.rowcount or 0)
