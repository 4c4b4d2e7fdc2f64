"""协作方网关 HTTP 客户端：组织目录、技能证据、证书、邮件、Webhook 与数据保留接口。"""

from __future__ import annotations

import logging
import time
from datetime import datetime
from typing import Any, Callable

import httpx
from pydantic import BaseModel, ConfigDict, Field

from skillsync.domain.enums import EvidenceKind
from skillsync.domain.models import EmployeeRef, RepositoryEvidence, SkillObservation, SourceRef
from skillsync.domain.scoring.evidence import aggregate_evidence, estimate_lines_from_bytes, repository_complexity
from skillsync.infra.db.models import utcnow

logger = logging.getLogger(__name__)


class _RepositoryStats(BaseModel):
    size: int = 0
    language_count: int = 0
    stars: int = 0
    forks: int = 0
    watchers: int = 0


class _EvidenceItem(BaseModel):
    """网关返回的单条仓库证据；复杂度与行数缺省时由仓库统计推导。"""
    model_config = ConfigDict(extra="ignore", populate_by_name=True)

    skill_name: str = Field(min_length=1)
    kind: EvidenceKind = EvidenceKind.language
    frequency: float = 0
    last_activity_at: datetime
    first_activity_at: datetime | None = None
    complexity: float | None = None
    lines_of_code: int | None = None
    byte_count: int | None = Field(default=None, alias="bytes")
    repository: str | None = None
    category: str | None = None
    repository_stats: _RepositoryStats | None = None

    def to_evidence(self) -> RepositoryEvidence:
        complexity = self.complexity
        if complexity is None:
            stats = self.repository_stats or _RepositoryStats()
            complexity = repository_complexity(
                size=stats.size,
                language_count=stats.language_count,
                stars=stats.stars,
                forks=stats.forks,
                watchers=stats.watchers,
            )
        lines = self.lines_of_code
        if lines is None and self.byte_count is not None:
            lines = estimate_lines_from_bytes(self.byte_count)
        return RepositoryEvidence(
            skill_name=self.skill_name,
            kind=self.kind,
            frequency=self.frequency,
            last_activity_at=self.last_activity_at,
            complexity=complexity,
            lines_of_code=lines,
            first_activity_at=self.first_activity_at,
            repository=self.repository,
            category=self.category,
        )


class CollaboratorClient:
    """协作方网关同步 HTTP 客户端，实现各处理器依赖的端口。

    异常原样抛出（httpx.HTTPStatusError / TransportError），由执行器统一分类为
    可重试、限流或不可重试失败。
    """

    def __init__(
        self,
        base_url: str,
        *,
        api_token: str | None = None,
        timeout_seconds: int = 30,
        transport: httpx.BaseTransport | None = None,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self._base_url = base_url.rstrip("/")
        self._closed = False
        self._clock = clock
        headers = {"Accept": "application/json"}
        if api_token:
            headers["Authorization"] = f"Bearer {api_token}"
        self._client = httpx.Client(
            base_url=self._base_url,
            timeout=httpx.Timeout(timeout_seconds),
            headers=headers,
            transport=transport,
            limits=httpx.Limits(max_connections=50, max_keepalive_connections=10),
        )

    def _client_or_raise(self) -> httpx.Client:
        if self._closed:
            raise RuntimeError("CollaboratorClient is already closed")
        return self._client

    def close(self) -> None:
        """关闭底层 HTTP 客户端连接池。"""
        if self._closed:
            return
        self._client.close()
        self._closed = True

    def _request(
        self,
        *,
        method: str,
        path: str,
        op: str,
        params: dict[str, Any] | None = None,
        json_body: dict[str, Any] | None = None,
        payload_preview: dict[str, Any] | None = None,
    ) -> httpx.Response:
        """发送 HTTP 请求并记录结构化日志。"""
        started = time.perf_counter()
        try:
            response = self._client_or_raise().request(method, path, params=params, json=json_body)
            response.raise_for_status()
        except httpx.HTTPError as exc:
            duration_ms = round((time.perf_counter() - started) * 1000, 2)
            status_code = None
            if isinstance(exc, httpx.HTTPStatusError):
                status_code = exc.response.status_code
            logger.warning(
                "collaborator request failed",
                extra={
                    "event": "collaborator.request.failed",
                    "external_service": "collaborator",
                    "op": op,
                    "duration_ms": duration_ms,
                    "status_code": status_code,
                    "error_type": type(exc).__name__,
                    "error": str(exc),
                    "payload_preview": payload_preview,
                },
            )
            raise
        logger.debug(
            "collaborator request succeeded",
            extra={
                "event": "collaborator.request.succeeded",
                "external_service": "collaborator",
                "op": op,
                "duration_ms": round((time.perf_counter() - started) * 1000, 2),
                "status_code": response.status_code,
            },
        )
        return response

    def list_members(self, company_id: str) -> list[EmployeeRef]:
        """列出组织成员及其外部身份映射。"""
        response = self._request(
            method="GET",
            path=f"/organizations/{company_id}/members",
            op="organization.members",
            payload_preview={"company_id": company_id},
        )
        return [
            EmployeeRef(employee_id=str(item["id"]), identities=dict(item.get("identities") or {}))
            for item in response.json().get("members", [])
        ]

    def list_connections(self, employee_id: str) -> list[SourceRef]:
        """返回员工已连接且处于启用状态的外部来源。"""
        response = self._request(
            method="GET",
            path=f"/employees/{employee_id}/connections",
            op="employee.connections",
            payload_preview={"employee_id": employee_id},
        )
        refs: list[SourceRef] = []
        for item in response.json().get("connections", []):
            if not item.get("active", True):
                continue
            refs.append(
                SourceRef(
                    source=str(item["source"]),
                    username=str(item["username"]),
                    repositories=tuple(item.get("repositories") or ()),
                )
            )
        return refs

    def extract(self, employee: EmployeeRef, source: SourceRef, *, run_id: str) -> list[SkillObservation]:
        """拉取某来源的逐仓库证据，并聚合为每个技能一条观测。"""
        params: dict[str, Any] = {"source": source.source, "username": source.username}
        if source.repositories:
            params["repositories"] = ",".join(source.repositories)
        response = self._request(
            method="GET",
            path=f"/employees/{employee.employee_id}/evidence",
            op="evidence.fetch",
            params=params,
            payload_preview={"employee_id": employee.employee_id, "source": source.source},
        )
        items = [_EvidenceItem.model_validate(raw).to_evidence() for raw in response.json().get("items", [])]
        return aggregate_evidence(
            items,
            employee_id=employee.employee_id,
            source=source.source,
            run_id=run_id,
            now=self._clock(),
        )

    def generate(self, employee_id: str, period_start: datetime, period_end: datetime, requested_by: str) -> str:
        """请求生成技能证书，返回证书 ID。"""
        response = self._request(
            method="POST",
            path="/certificates",
            op="certificate.generate",
            json_body={
                "employee_id": employee_id,
                "period_start": period_start.isoformat(),
                "period_end": period_end.isoformat(),
                "requested_by": requested_by,
            },
            payload_preview={"employee_id": employee_id},
        )
        certificate_id = response.json().get("id")
        if not certificate_id:
            raise RuntimeError("missing certificate id from collaborator response")
        return str(certificate_id)

    def send(
        self,
        *,
        to: list[str],
        subject: str,
        html: str | None,
        template: str | None,
        template_data: dict[str, Any] | None,
    ) -> None:
        self._request(
            method="POST",
            path="/emails",
            op="email.send",
            json_body={
                "to": to,
                "subject": subject,
                "html": html,
                "template": template,
                "template_data": template_data,
            },
            payload_preview={"recipients": len(to), "template": template},
        )

    def process(self, webhook_id: str, source: str, event_type: str, payload: dict[str, Any]) -> EmployeeRef | None:
        """转发已验签的 Webhook 事件，返回受影响的员工（若有）。"""
        response = self._request(
            method="POST",
            path=f"/webhooks/{webhook_id}/process",
            op="webhook.process",
            json_body={"source": source, "event_type": event_type, "payload": payload},
            payload_preview={"webhook_id": webhook_id, "source": source, "event_type": event_type},
        )
        affected = response.json().get("employee")
        if not affected:
            return None
        return EmployeeRef(employee_id=str(affected["id"]), identities=dict(affected.get("identities") or {}))

    def purge(self, target: str, before: datetime) -> int:
        response = self._request(
            method="POST",
            path=f"/retention/{target}",
            op="retention.purge",
            json_body={"before": before.isoformat()},
            payload_preview={"target": target},
        )
        return int(response.json().get("deleted", 0))
