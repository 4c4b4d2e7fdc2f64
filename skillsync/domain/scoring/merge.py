"""技能档案合并：把新观测并入累计档案，满足交换律与幂等性。"""

from __future__ import annotations

from skillsync.domain.models import Contribution, SkillObservation, SkillRecord
from skillsync.domain.scoring.engine import ConfidenceScorer


def contribution_key(observation: SkillObservation) -> str:
    """同一作业（含其重试）对同一来源只占一个贡献槽位。"""
    return f"{observation.run_id}:{observation.source}"


def _sum_lines(contributions: dict[str, Contribution]) -> int | None:
    values = [item.lines for item in contributions.values() if item.lines is not None]
    if not values:
        return None
    return sum(values)


def _merge_contribution(current: Contribution | None, incoming: Contribution) -> Contribution:
    """同一槽位重放时逐字段取较大值，保证重试不重复计数。"""
    if current is None:
        return incoming
    if current.lines is None:
        lines = incoming.lines
    elif incoming.lines is None:
        lines = current.lines
    else:
        lines = max(current.lines, incoming.lines)
    latest = max(current, incoming, key=_recency_key)
    return Contribution(
        projects=max(current.projects, incoming.projects),
        lines=lines,
        observed_at=latest.observed_at,
        source=latest.source,
        category=latest.category,
    )


def _recency_key(item: Contribution) -> tuple:
    # 时间相同则按名称排序，结果与到达顺序无关。
    return (item.observed_at, item.source, item.category)


def _seed_contributions(existing: SkillRecord | None) -> dict[str, Contribution]:
    if existing is None:
        return {}
    if existing.contributions:
        return dict(existing.contributions)
    if existing.projects_used == 0 and existing.lines_of_code is None:
        return {}
    # 手工录入或早于贡献账本的档案：把已有体量折算为一个固定槽位，避免被新观测覆盖。
    return {
        f"legacy:{existing.source}": Contribution(
            projects=existing.projects_used,
            lines=existing.lines_of_code,
            observed_at=existing.last_used,
            source=existing.source,
            category=existing.category,
        )
    }


def merge(
    existing: SkillRecord | None,
    observation: SkillObservation,
    scorer: ConfidenceScorer,
) -> SkillRecord:
    """合并观测到技能档案，等级总是由合并后的数值重新判定。"""
    observed_confidence = scorer.confidence(observation)
    incoming = Contribution(
        projects=observation.projects_used,
        lines=observation.lines_of_code,
        observed_at=observation.observed_at,
        source=observation.source,
        category=observation.category,
    )

    contributions = _seed_contributions(existing)
    key = contribution_key(observation)
    contributions[key] = _merge_contribution(contributions.get(key), incoming)

    confidence = observed_confidence if existing is None else max(existing.confidence, observed_confidence)
    projects_used = sum(item.projects for item in contributions.values())
    lines_of_code = _sum_lines(contributions)
    latest = max(contributions.values(), key=_recency_key)
    last_used = latest.observed_at if existing is None else max(existing.last_used, latest.observed_at)

    return SkillRecord(
        employee_id=observation.employee_id,
        skill_name=observation.skill_name,
        category=latest.category,
        level=scorer.classify(confidence, projects_used, lines_of_code),
        confidence=confidence,
        projects_used=projects_used,
        lines_of_code=lines_of_code,
        last_used=last_used,
        source=latest.source,
        is_auto_detected=True if existing is None else existing.is_auto_detected,
        contributions=contributions,
        skill_id=existing.skill_id if existing is not None else None,
        version=existing.version if existing is not None else 0,
    )
