"""队列策略值对象：并发上限、默认优先级、重试次数与退避计算。"""

from __future__ import annotations

from dataclasses import dataclass

from skillsync.domain.enums import JobType


@dataclass(frozen=True, slots=True)
class QueuePolicy:
    """单个作业类型的调度策略。"""
    job_type: JobType
    concurrency: int
    default_priority: int
    max_attempts: int
    base_delay_seconds: float
    timeout_seconds: int

    def backoff_seconds(self, attempts: int) -> float:
        """指数退避：第 n 次失败后的等待时长为 base × 2^n。"""
        return self.base_delay_seconds * (2 ** attempts)
