"""API 请求与响应数据模型定义，约束作业、队列与技能档案接口结构。"""

from __future__ import annotations

from datetime import datetime
from typing import Any

from pydantic import BaseModel, Field


class JobSubmitRequest(BaseModel):
    """提交作业请求模型；载荷按作业类型在调度器内校验。"""
    type: str
    payload: dict[str, Any]
    priority: int | None = None
    delay_seconds: float = Field(default=0, ge=0)
    max_attempts: int | None = Field(default=None, ge=1)


class JobSubmitResponse(BaseModel):
    job_id: str
    status: str


class JobDetailResponse(BaseModel):
    """作业详情接口响应模型。"""
    job_id: str
    type: str
    status: str
    priority: int
    attempts: int
    max_attempts: int
    payload: dict[str, Any]
    delay_until: datetime | None
    error_code: str | None
    last_error: str | None
    result: dict[str, Any] | None
    created_at: datetime
    updated_at: datetime
    completed_at: datetime | None


class JobListResponse(BaseModel):
    items: list[JobDetailResponse]


class JobResubmitResponse(BaseModel):
    original_job_id: str
    job_id: str
    status: str


class QueueStatsItem(BaseModel):
    """单个作业类型的队列深度与失败计数。"""
    job_type: str
    concurrency: int
    waiting: int
    delayed: int
    active: int
    completed: int
    failed: int
    dead_lettered: int
    total_failures: int


class QueueStatsResponse(BaseModel):
    queues: list[QueueStatsItem]


class SkillRecordResponse(BaseModel):
    """员工技能档案接口响应模型。"""
    skill_id: str | None
    skill_name: str
    category: str
    level: str
    confidence: float
    projects_used: int
    lines_of_code: int | None
    last_used: datetime
    source: str
    is_auto_detected: bool


class EmployeeSkillsResponse(BaseModel):
    employee_id: str
    skills: list[SkillRecordResponse]


class SkillEvolutionItem(BaseModel):
    level: str
    confidence: float
    total_projects: int
    total_lines: int | None
    evidence_source: str
    run_id: str
    created_at: datetime


class SkillEvolutionResponse(BaseModel):
    employee_id: str
    skill_name: str
    history: list[SkillEvolutionItem]
