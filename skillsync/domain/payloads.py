"""作业载荷定义：按作业类型区分的带标签联合体，并在提交时完成结构校验。"""

from __future__ import annotations

from datetime import datetime
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator, model_validator

from skillsync.domain.enums import JobType
from skillsync.domain.errors import PayloadValidationError


class _Payload(BaseModel):
    """载荷基类：拒绝未知字段，避免脏数据入队。"""
    model_config = ConfigDict(extra="forbid", frozen=True)


class OrgSyncPayload(_Payload):
    company_id: str = Field(min_length=1)
    admin_id: str | None = None
    full_sync: bool = False


class EmployeeSyncPayload(_Payload):
    employee_id: str = Field(min_length=1)
    sources: list[str] | None = None
    repositories: list[str] | None = None


class SkillDetectionPayload(_Payload):
    employee_id: str = Field(min_length=1)
    source: str = Field(min_length=1)
    username: str = Field(min_length=1)
    repositories: list[str] | None = None


class CertificateGenerationPayload(_Payload):
    employee_id: str = Field(min_length=1)
    period_start: datetime
    period_end: datetime
    requested_by: str = Field(min_length=1)

    @model_validator(mode="after")
    def _check_period(self) -> "CertificateGenerationPayload":
        if self.period_start > self.period_end:
            raise ValueError("period_start must not be after period_end")
        return self


class EmailSendPayload(_Payload):
    to: list[str] = Field(min_length=1)
    subject: str = Field(min_length=1)
    html: str | None = None
    template: str | None = None
    template_data: dict[str, Any] | None = None

    @field_validator("to", mode="before")
    @classmethod
    def _coerce_recipients(cls, value: Any) -> Any:
        # 单个收件人也允许直接传字符串。
        if isinstance(value, str):
            return [value]
        return value

    @field_validator("to")
    @classmethod
    def _check_recipients(cls, value: list[str]) -> list[str]:
        for item in value:
            if "@" not in item:
                raise ValueError(f"invalid recipient: {item!r}")
        return value

    @model_validator(mode="after")
    def _check_body(self) -> "EmailSendPayload":
        if not self.html and not self.template:
            raise ValueError("either html or template is required")
        return self


class WebhookProcessPayload(_Payload):
    webhook_id: str = Field(min_length=1)
    source: str = Field(min_length=1)
    event_type: str = Field(min_length=1)
    payload: dict[str, Any] = Field(default_factory=dict)
    retry_count: int = Field(default=0, ge=0)


class CleanupPayload(_Payload):
    target: Literal[
        "expired_invitations",
        "old_audit_logs",
        "expired_sessions",
        "finished_jobs",
        "stale_skill_records",
    ]
    before: datetime


PAYLOAD_MODELS: dict[JobType, type[_Payload]] = {
    JobType.org_sync: OrgSyncPayload,
    JobType.employee_sync: EmployeeSyncPayload,
    JobType.skill_detection: SkillDetectionPayload,
    JobType.certificate_generation: CertificateGenerationPayload,
    JobType.email_send: EmailSendPayload,
    JobType.webhook_process: WebhookProcessPayload,
    JobType.cleanup: CleanupPayload,
}


def coerce_job_type(value: JobType | str) -> JobType:
    """将字符串作业类型转换为枚举，非法值按校验错误处理。"""
    if isinstance(value, JobType):
        return value
    try:
        return JobType(value)
    except ValueError as exc:
        raise PayloadValidationError(f"unknown job type: {value!r}") from exc


def parse_payload(job_type: JobType | str, raw: Any) -> _Payload:
    """按作业类型校验载荷并返回对应模型实例。"""
    resolved = coerce_job_type(job_type)
    model = PAYLOAD_MODELS[resolved]
    if isinstance(raw, model):
        return raw
    if isinstance(raw, BaseModel):
        raw = raw.model_dump()
    if not isinstance(raw, dict):
        raise PayloadValidationError(f"payload for {resolved.value} must be an object")
    try:
        return model.model_validate(raw)
    except ValidationError as exc:
        raise PayloadValidationError(f"invalid payload for {resolved.value}: {exc}") from exc
