"""评分配置：特征权重、等级阈值、时效断点与归一化上限，进程内只读。"""

from __future__ import annotations

import json
import math
from pathlib import Path

from pydantic import BaseModel, ConfigDict, Field, model_validator

from skillsync.domain.enums import SkillLevel


class FeatureWeights(BaseModel):
    """五个加权特征的权重，总和必须为 1。"""
    model_config = ConfigDict(frozen=True)

    frequency: float = Field(default=0.25, ge=0)
    recency: float = Field(default=0.20, ge=0)
    complexity: float = Field(default=0.20, ge=0)
    duration: float = Field(default=0.15, ge=0)
    depth: float = Field(default=0.20, ge=0)

    @model_validator(mode="after")
    def _check_sum(self) -> "FeatureWeights":
        total = self.frequency + self.recency + self.complexity + self.duration + self.depth
        if not math.isclose(total, 1.0, abs_tol=1e-9):
            raise ValueError(f"feature weights must sum to 1.0, got {total}")
        return self


class LevelThreshold(BaseModel):
    """单个等级的最低要求；lines_optional 表示缺少代码行信号时视为满足行数条件。"""
    model_config = ConfigDict(frozen=True)

    confidence: float = Field(ge=0, le=1)
    projects: int = Field(ge=0)
    lines: int = Field(ge=0)
    lines_optional: bool = False


class RecencyBreakpoint(BaseModel):
    model_config = ConfigDict(frozen=True)

    max_days: float = Field(ge=0)
    score: float = Field(ge=0, le=1)


class Normalization(BaseModel):
    model_config = ConfigDict(frozen=True)

    frequency: float = Field(default=10000, gt=0)
    duration_months: float = Field(default=10, gt=0)
    depth: float = Field(default=10000, gt=0)


def _default_thresholds() -> dict[SkillLevel, LevelThreshold]:
    return {
        SkillLevel.EXPERT: LevelThreshold(confidence=0.8, projects=10, lines=10000),
        SkillLevel.ADVANCED: LevelThreshold(confidence=0.6, projects=5, lines=5000),
        SkillLevel.INTERMEDIATE: LevelThreshold(confidence=0.4, projects=2, lines=1000, lines_optional=True),
        SkillLevel.BEGINNER: LevelThreshold(confidence=0.0, projects=1, lines=100, lines_optional=True),
    }


def _default_breakpoints() -> tuple[RecencyBreakpoint, ...]:
    return (
        RecencyBreakpoint(max_days=30, score=1.0),
        RecencyBreakpoint(max_days=90, score=0.8),
        RecencyBreakpoint(max_days=180, score=0.6),
        RecencyBreakpoint(max_days=365, score=0.4),
        RecencyBreakpoint(max_days=730, score=0.2),
    )


# 等级从高到低的判定顺序。
LEVEL_ORDER: tuple[SkillLevel, ...] = (
    SkillLevel.EXPERT,
    SkillLevel.ADVANCED,
    SkillLevel.INTERMEDIATE,
    SkillLevel.BEGINNER,
)


class ScoringConfig(BaseModel):
    """置信度评分配置对象。"""
    model_config = ConfigDict(frozen=True)

    weights: FeatureWeights = Field(default_factory=FeatureWeights)
    thresholds: dict[SkillLevel, LevelThreshold] = Field(default_factory=_default_thresholds)
    recency_breakpoints: tuple[RecencyBreakpoint, ...] = Field(default_factory=_default_breakpoints)
    recency_floor: float = Field(default=0.1, ge=0, le=1)
    normalization: Normalization = Field(default_factory=Normalization)

    @model_validator(mode="after")
    def _check_thresholds(self) -> "ScoringConfig":
        missing = [level.value for level in LEVEL_ORDER if level not in self.thresholds]
        if missing:
            raise ValueError(f"thresholds missing for levels: {', '.join(missing)}")
        # 高等级的每项要求都不得低于下一级，否则判定顺序失去意义。
        for higher, lower in zip(LEVEL_ORDER, LEVEL_ORDER[1:]):
            upper, below = self.thresholds[higher], self.thresholds[lower]
            if (
                upper.confidence < below.confidence
                or upper.projects < below.projects
                or upper.lines < below.lines
            ):
                raise ValueError(f"threshold for {higher.value} must not be below {lower.value}")
        days = [item.max_days for item in self.recency_breakpoints]
        if days != sorted(days) or len(set(days)) != len(days):
            raise ValueError("recency breakpoints must be strictly ascending by max_days")
        return self


def load_scoring_config(path: Path | None) -> ScoringConfig:
    """从 JSON 文件加载评分配置；未配置路径时使用内置默认值。"""
    if path is None:
        return ScoringConfig()
    payload = json.loads(Path(path).read_text(encoding="utf-8"))
    return ScoringConfig.model_validate(payload)

