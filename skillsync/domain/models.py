"""领域数据结构定义：技能观测、技能档案与作业执行上下文等核心值对象。"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import TYPE_CHECKING, Any

from pydantic import BaseModel

from skillsync.domain.enums import EvidenceKind, JobType, SkillLevel

if TYPE_CHECKING:
    from skillsync.domain.ports import JobSubmitter


@dataclass(frozen=True, slots=True)
class SkillObservation:
    """单次作业运行中某来源对某员工某技能的证据，不直接落库。"""
    employee_id: str
    skill_name: str
    category: str
    frequency: float
    recency_days: float
    complexity_score: float
    duration_months: float
    depth_score: float
    projects_used: int
    lines_of_code: int | None
    observed_at: datetime
    source: str
    run_id: str


@dataclass(frozen=True, slots=True)
class ScoreResult:
    """评分结果：置信度与离散等级。"""
    confidence: float
    level: SkillLevel


@dataclass(frozen=True, slots=True)
class Contribution:
    """某次运行（run_id + source）贡献的项目数与代码行数。"""
    projects: int
    lines: int | None
    observed_at: datetime
    source: str
    category: str


@dataclass(slots=True)
class SkillRecord:
    """员工 × 技能的累计档案，仅通过合并操作变更。"""
    employee_id: str
    skill_name: str
    category: str
    level: SkillLevel
    confidence: float
    projects_used: int
    lines_of_code: int | None
    last_used: datetime
    source: str
    is_auto_detected: bool = True
    contributions: dict[str, Contribution] = field(default_factory=dict)
    skill_id: str | None = field(default=None, compare=False)
    version: int = field(default=0, compare=False)


@dataclass(frozen=True, slots=True)
class RepositoryEvidence:
    """单个仓库/项目产出的原始技能证据，供聚合为观测值。"""
    skill_name: str
    kind: EvidenceKind
    frequency: float
    last_activity_at: datetime
    complexity: float
    lines_of_code: int | None = None
    first_activity_at: datetime | None = None
    repository: str | None = None
    category: str | None = None


@dataclass(frozen=True, slots=True)
class EmployeeRef:
    """员工引用，包含在各外部系统中的身份映射。"""
    employee_id: str
    identities: dict[str, str] = field(default_factory=dict)


@dataclass(frozen=True, slots=True)
class SourceRef:
    """外部来源引用：来源系统、账号与可选的仓库范围。"""
    source: str
    username: str
    repositories: tuple[str, ...] = ()


@dataclass(slots=True)
class JobContext:
    """处理器执行上下文，聚合作业执行所需的关键信息。"""
    job_id: str
    job_type: JobType
    payload: BaseModel
    attempts: int
    submitter: "JobSubmitter"
    metadata: dict[str, Any] = field(default_factory=dict)
