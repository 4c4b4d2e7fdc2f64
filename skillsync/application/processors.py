"""内置作业处理器：组织/员工同步扇出、技能识别、证书、邮件、Webhook 与清理。"""

from __future__ import annotations

import logging
from collections import Counter
from datetime import datetime
from typing import Any, Callable, TypeVar

from pydantic import BaseModel

from skillsync.application.reconciler import SkillReconciler
from skillsync.domain.enums import JobType
from skillsync.domain.errors import FatalJobError
from skillsync.domain.models import EmployeeRef, JobContext, SourceRef
from skillsync.domain.payloads import (
    CertificateGenerationPayload,
    CleanupPayload,
    EmailSendPayload,
    EmployeeSyncPayload,
    OrgSyncPayload,
    SkillDetectionPayload,
    WebhookProcessPayload,
)
from skillsync.domain.ports import (
    CertificateGenerator,
    EmailSender,
    OrganizationDirectory,
    RetentionStore,
    SignalExtractor,
    WebhookProcessor,
)
from skillsync.infra.db.models import ensure_utc
from skillsync.worker.registry import ProcessorRegistry

logger = logging.getLogger(__name__)

Purger = Callable[[datetime], int]
P = TypeVar("P", bound=BaseModel)


def _payload(ctx: JobContext, model: type[P]) -> P:
    if not isinstance(ctx.payload, model):
        raise FatalJobError(f"unexpected payload type for {ctx.job_type.value}", code="validation")
    return ctx.payload


class JobProcessors:
    """处理器集合；子作业一律通过 ctx.submitter 投递。"""

    def __init__(
        self,
        *,
        directory: OrganizationDirectory,
        extractor: SignalExtractor,
        reconciler: SkillReconciler,
        certificates: CertificateGenerator,
        emails: EmailSender,
        webhooks: WebhookProcessor,
        retention: RetentionStore,
        purge_finished_jobs: Purger,
        purge_stale_skill_records: Purger,
    ) -> None:
        self._directory = directory
        self._extractor = extractor
        self._reconciler = reconciler
        self._certificates = certificates
        self._emails = emails
        self._webhooks = webhooks
        self._retention = retention
        self._purge_finished_jobs = purge_finished_jobs
        self._purge_stale_skill_records = purge_stale_skill_records

    def org_sync(self, ctx: JobContext) -> dict[str, Any]:
        """为组织内每个成员投递一个员工同步作业。"""
        payload = _payload(ctx, OrgSyncPayload)
        members = self._directory.list_members(payload.company_id)
        job_ids = [
            ctx.submitter.submit(JobType.employee_sync, {"employee_id": member.employee_id})
            for member in members
        ]
        return {"company_id": payload.company_id, "members": len(members), "submitted": job_ids}

    def employee_sync(self, ctx: JobContext) -> dict[str, Any]:
        """按员工已连接的来源逐个投递技能识别作业。"""
        payload = _payload(ctx, EmployeeSyncPayload)
        connections = self._directory.list_connections(payload.employee_id)
        if payload.sources is not None:
            wanted = set(payload.sources)
            connections = [item for item in connections if item.source in wanted]
        job_ids: list[str] = []
        for connection in connections:
            repositories = payload.repositories if payload.repositories is not None else list(connection.repositories)
            body: dict[str, Any] = {
                "employee_id": payload.employee_id,
                "source": connection.source,
                "username": connection.username,
            }
            if repositories:
                body["repositories"] = repositories
            job_ids.append(ctx.submitter.submit(JobType.skill_detection, body))
        return {"employee_id": payload.employee_id, "sources": len(connections), "submitted": job_ids}

    def skill_detection(self, ctx: JobContext) -> dict[str, Any]:
        """提取观测并逐条合并进技能档案；run_id 取作业 ID，重试不重复计数。"""
        payload = _payload(ctx, SkillDetectionPayload)
        employee = EmployeeRef(employee_id=payload.employee_id, identities={payload.source: payload.username})
        source = SourceRef(
            source=payload.source,
            username=payload.username,
            repositories=tuple(payload.repositories or ()),
        )
        observations = self._extractor.extract(employee, source, run_id=ctx.job_id)
        records = [self._reconciler.reconcile(item) for item in observations]
        levels = Counter(record.level.value for record in records)
        logger.info(
            "skill detection finished",
            extra={
                "event": "skill.detection.finished",
                "payload_preview": {"source": payload.source, "skills": len(records), "levels": dict(levels)},
            },
        )
        return {
            "employee_id": payload.employee_id,
            "source": payload.source,
            "observations": len(observations),
            "skills": sorted(record.skill_name for record in records),
            "levels": dict(levels),
        }

    def certificate_generation(self, ctx: JobContext) -> dict[str, Any]:
        payload = _payload(ctx, CertificateGenerationPayload)
        certificate_id = self._certificates.generate(
            payload.employee_id,
            payload.period_start,
            payload.period_end,
            payload.requested_by,
        )
        return {"employee_id": payload.employee_id, "certificate_id": certificate_id}

    def email_send(self, ctx: JobContext) -> dict[str, Any]:
        payload = _payload(ctx, EmailSendPayload)
        self._emails.send(
            to=list(payload.to),
            subject=payload.subject,
            html=payload.html,
            template=payload.template,
            template_data=payload.template_data,
        )
        return {"recipients": len(payload.to)}

    def webhook_process(self, ctx: JobContext) -> dict[str, Any]:
        """转发 Webhook 事件；命中员工时投递一次增量技能识别。"""
        payload = _payload(ctx, WebhookProcessPayload)
        affected = self._webhooks.process(payload.webhook_id, payload.source, payload.event_type, dict(payload.payload))
        if affected is None:
            return {"webhook_id": payload.webhook_id, "submitted": None}
        username = affected.identities.get(payload.source)
        if not username:
            # 员工未连接该来源，没有可识别的账号。
            return {"webhook_id": payload.webhook_id, "employee_id": affected.employee_id, "submitted": None}
        body: dict[str, Any] = {
            "employee_id": affected.employee_id,
            "source": payload.source,
            "username": username,
        }
        repository = payload.payload.get("repository")
        if isinstance(repository, str) and repository:
            body["repositories"] = [repository]
        job_id = ctx.submitter.submit(JobType.skill_detection, body)
        return {"webhook_id": payload.webhook_id, "employee_id": affected.employee_id, "submitted": job_id}

    def cleanup(self, ctx: JobContext) -> dict[str, Any]:
        payload = _payload(ctx, CleanupPayload)
        before = ensure_utc(payload.before)
        if payload.target == "finished_jobs":
            deleted = self._purge_finished_jobs(before)
        elif payload.target == "stale_skill_records":
            deleted = self._purge_stale_skill_records(before)
        else:
            deleted = self._retention.purge(payload.target, before)
        logger.info(
            "cleanup finished",
            extra={"event": "cleanup.finished", "payload_preview": {"target": payload.target, "deleted": deleted}},
        )
        return {"target": payload.target, "deleted": deleted}


def register_default_processors(registry: ProcessorRegistry, processors: JobProcessors) -> ProcessorRegistry:
    """登记全部内置处理器；发信与出证书不可安全重放。"""
    registry.register(JobType.org_sync, processors.org_sync)
    registry.register(JobType.employee_sync, processors.employee_sync)
    registry.register(JobType.skill_detection, processors.skill_detection)
    registry.register(JobType.certificate_generation, processors.certificate_generation, idempotent=False)
    registry.register(JobType.email_send, processors.email_send, idempotent=False)
    registry.register(JobType.webhook_process, processors.webhook_process)
    registry.register(JobType.cleanup, processors.cleanup)
    return registry
