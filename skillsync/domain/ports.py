"""外部协作方接口约定：信号提取、组织目录、证书、邮件、Webhook 与数据保留。"""

from __future__ import annotations

from datetime import datetime
from typing import Any, Protocol

from skillsync.domain.enums import JobType
from skillsync.domain.models import EmployeeRef, SkillObservation, SourceRef


class JobSubmitter(Protocol):
    """处理器可见的最小投递能力，由调度器实例注入。"""

    def submit(
        self,
        job_type: JobType | str,
        payload: Any,
        *,
        priority: int | None = None,
        delay_seconds: float = 0,
        max_attempts: int | None = None,
    ) -> str: ...


class SignalExtractor(Protocol):
    """信号提取器：失败时抛出可分类异常（网络/限流可重试，鉴权/不存在不可重试）。"""

    def extract(self, employee: EmployeeRef, source: SourceRef, *, run_id: str) -> list[SkillObservation]: ...


class OrganizationDirectory(Protocol):
    """组织目录：成员列表与员工已连接的外部来源。"""

    def list_members(self, company_id: str) -> list[EmployeeRef]: ...

    def list_connections(self, employee_id: str) -> list[SourceRef]: ...


class CertificateGenerator(Protocol):
    def generate(self, employee_id: str, period_start: datetime, period_end: datetime, requested_by: str) -> str: ...


class EmailSender(Protocol):
    def send(
        self,
        *,
        to: list[str],
        subject: str,
        html: str | None,
        template: str | None,
        template_data: dict[str, Any] | None,
    ) -> None: ...


class WebhookProcessor(Protocol):
    """处理已验签的 Webhook 事件，返回受影响的员工（若有）。"""

    def process(self, webhook_id: str, source: str, event_type: str, payload: dict[str, Any]) -> EmployeeRef | None: ...


class RetentionStore(Protocol):
    def purge(self, target: str, before: datetime) -> int: ...
