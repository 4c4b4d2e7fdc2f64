"""作业接口：提交作业、查询详情与列表、重投死信作业以及队列监控。"""

from __future__ import annotations

from fastapi import APIRouter, Depends, HTTPException, Query, status

from skillsync.api.v1.schemas import (
    JobDetailResponse,
    JobListResponse,
    JobResubmitResponse,
    JobSubmitRequest,
    JobSubmitResponse,
    QueueStatsItem,
    QueueStatsResponse,
)
from skillsync.application.container import get_dispatcher
from skillsync.application.dispatcher import JobDispatcher
from skillsync.domain.enums import JobStatus
from skillsync.domain.errors import InvalidTransitionError, PayloadValidationError, UnknownJobError
from skillsync.infra.db.models import JobORM, ensure_utc

router = APIRouter()


def _dispatcher() -> JobDispatcher:
    return get_dispatcher()


def _to_detail(job: JobORM) -> JobDetailResponse:
    return JobDetailResponse(
        job_id=job.id,
        type=job.job_type,
        status=job.status,
        priority=job.priority,
        attempts=job.attempts,
        max_attempts=job.max_attempts,
        payload=job.payload,
        delay_until=ensure_utc(job.delay_until),
        error_code=job.error_code,
        last_error=job.last_error,
        result=job.result,
        created_at=ensure_utc(job.created_at),
        updated_at=ensure_utc(job.updated_at),
        completed_at=ensure_utc(job.completed_at),
    )


@router.post("/jobs", response_model=JobSubmitResponse, status_code=status.HTTP_202_ACCEPTED)
def submit_job(
    request: JobSubmitRequest,
    dispatcher: JobDispatcher = Depends(_dispatcher),
) -> JobSubmitResponse:
    """校验并入队作业；非法类型或载荷直接返回 422，不会入队。"""
    try:
        job_id = dispatcher.submit(
            request.type,
            request.payload,
            priority=request.priority,
            delay_seconds=request.delay_seconds,
            max_attempts=request.max_attempts,
        )
    except PayloadValidationError as exc:
        raise HTTPException(status_code=422, detail=str(exc)) from exc
    return JobSubmitResponse(job_id=job_id, status=JobStatus.waiting.value)


@router.get("/jobs", response_model=JobListResponse)
def list_jobs(
    job_status: str | None = Query(default=None, alias="status"),
    job_type: str | None = Query(default=None, alias="type"),
    limit: int = Query(default=100, ge=1, le=1000),
    dispatcher: JobDispatcher = Depends(_dispatcher),
) -> JobListResponse:
    """按状态与类型过滤作业；status=dead-lettered 即死信列表。"""
    try:
        resolved_status = JobStatus(job_status) if job_status is not None else None
        jobs = dispatcher.list_jobs(status=resolved_status, job_type=job_type, limit=limit)
    except ValueError as exc:
        raise HTTPException(status_code=422, detail=str(exc)) from exc
    return JobListResponse(items=[_to_detail(job) for job in jobs])


@router.get("/jobs/{job_id}", response_model=JobDetailResponse)
def get_job(
    job_id: str,
    dispatcher: JobDispatcher = Depends(_dispatcher),
) -> JobDetailResponse:
    try:
        job = dispatcher.get_job(job_id)
    except UnknownJobError as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc
    return _to_detail(job)


@router.post("/jobs/{job_id}/resubmit", response_model=JobResubmitResponse, status_code=status.HTTP_202_ACCEPTED)
def resubmit_job(
    job_id: str,
    dispatcher: JobDispatcher = Depends(_dispatcher),
) -> JobResubmitResponse:
    """以原类型与载荷重新投递死信作业。"""
    try:
        new_id = dispatcher.resubmit(job_id)
    except UnknownJobError as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc
    except InvalidTransitionError as exc:
        raise HTTPException(status_code=409, detail=str(exc)) from exc
    except PayloadValidationError as exc:
        raise HTTPException(status_code=422, detail=str(exc)) from exc
    return JobResubmitResponse(original_job_id=job_id, job_id=new_id, status=JobStatus.waiting.value)


@router.get("/queues/stats", response_model=QueueStatsResponse)
def queue_stats(dispatcher: JobDispatcher = Depends(_dispatcher)) -> QueueStatsResponse:
    """各作业类型的队列深度、延迟、活跃与失败计数。"""
    stats = dispatcher.queue_stats()
    return QueueStatsResponse(queues=[QueueStatsItem(**item.as_dict()) for item in stats.values()])
