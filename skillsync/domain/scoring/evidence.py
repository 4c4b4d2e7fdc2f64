"""证据聚合：仓库复杂度分桶、字节数估算代码行，以及把多仓库证据汇总为单条技能观测。"""

from __future__ import annotations

from collections import OrderedDict
from datetime import datetime, timezone

from skillsync.domain.enums import EvidenceKind
from skillsync.domain.models import RepositoryEvidence, SkillObservation

# 语言统计按字节给出，约 50 字节折算一行代码。
BYTES_PER_LINE = 50
DAYS_PER_MONTH = 30.44

_CATEGORY_BY_KIND = {
    EvidenceKind.language: "Programming Language",
    EvidenceKind.framework: "Framework",
    EvidenceKind.tool: "Tool",
    EvidenceKind.practice: "Practice",
}


def estimate_lines_from_bytes(byte_count: int) -> int:
    return round(byte_count / BYTES_PER_LINE)


def repository_complexity(
    *,
    size: int,
    language_count: int,
    stars: int = 0,
    forks: int = 0,
    watchers: int = 0,
) -> float:
    """按仓库体量、语言多样性与关注度分桶计算复杂度，封顶 1.0。"""
    complexity = 0.0
    if size > 10000:
        complexity += 0.3
    elif size > 1000:
        complexity += 0.2
    elif size > 100:
        complexity += 0.1

    if language_count > 5:
        complexity += 0.3
    elif language_count > 3:
        complexity += 0.2
    elif language_count > 1:
        complexity += 0.1

    if stars > 100:
        complexity += 0.2
    elif stars > 10:
        complexity += 0.1

    if forks > 10:
        complexity += 0.1
    if watchers > 10:
        complexity += 0.1
    return round(min(complexity, 1.0), 6)


def _as_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def aggregate_evidence(
    items: list[RepositoryEvidence],
    *,
    employee_id: str,
    source: str,
    run_id: str,
    now: datetime,
) -> list[SkillObservation]:
    """按技能名（不区分大小写）聚合证据，每个技能产出一条观测。"""
    grouped: OrderedDict[str, list[RepositoryEvidence]] = OrderedDict()
    for item in items:
        grouped.setdefault(item.skill_name.strip().lower(), []).append(item)

    observations: list[SkillObservation] = []
    current = _as_utc(now)
    for skill_name, evidences in grouped.items():
        latest = max(_as_utc(item.last_activity_at) for item in evidences)
        earliest = min(_as_utc(item.first_activity_at or item.last_activity_at) for item in evidences)
        line_values = [item.lines_of_code for item in evidences if item.lines_of_code is not None]
        lines = sum(line_values) if line_values else None
        first = evidences[0]
        observations.append(
            SkillObservation(
                employee_id=employee_id,
                skill_name=skill_name,
                category=first.category or _CATEGORY_BY_KIND[first.kind],
                frequency=sum(item.frequency for item in evidences),
                recency_days=max(0.0, (current - latest).total_seconds() / 86400),
                complexity_score=sum(item.complexity for item in evidences) / len(evidences),
                duration_months=max(0.0, (latest - earliest).days / DAYS_PER_MONTH),
                depth_score=float(lines or 0),
                projects_used=len({item.repository or f"#{index}" for index, item in enumerate(evidences)}),
                lines_of_code=lines,
                observed_at=latest,
                source=source,
                run_id=run_id,
            )
        )
    return observations
