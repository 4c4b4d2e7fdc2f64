"""处理器注册中心：按作业类型登记处理函数及其幂等性。"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Callable

from skillsync.domain.enums import JobType
from skillsync.domain.models import JobContext
from skillsync.domain.payloads import coerce_job_type

JobHandler = Callable[[JobContext], dict[str, Any] | None]


@dataclass(frozen=True, slots=True)
class RegisteredProcessor:
    job_type: JobType
    handler: JobHandler
    # 非幂等处理器（发信、出证书）遇到不确定结果时不再重试。
    idempotent: bool = True


class ProcessorRegistry:
    """处理器注册中心，每种作业类型至多一个处理器。"""

    def __init__(self) -> None:
        self._processors: dict[JobType, RegisteredProcessor] = {}

    def register(self, job_type: JobType | str, handler: JobHandler, *, idempotent: bool = True) -> None:
        resolved = coerce_job_type(job_type)
        self._processors[resolved] = RegisteredProcessor(job_type=resolved, handler=handler, idempotent=idempotent)

    def get(self, job_type: JobType | str) -> RegisteredProcessor | None:
        return self._processors.get(coerce_job_type(job_type))

    def job_types(self) -> list[JobType]:
        return list(self._processors)
