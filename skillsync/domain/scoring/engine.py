"""置信度评分引擎：将原始特征归一化加权为置信度，并按阈值判定技能等级。

评分是纯函数，不做任何 I/O：

1. frequency / depth / duration 按配置上限归一化并截断到 1.0，complexity 已是 [0,1] 分值；
2. recency 按天数断点取阶梯分值（边界含等号）；
3. confidence = Σ 权重 × 特征，截断到 [0,1]；
4. 从 EXPERT 向下逐级判定，置信度、项目数、代码行三项同时达标才命中，否则为 BEGINNER。

缺少代码行信号（如 CI/CD 这类实践型技能）时，只有标记 lines_optional 的等级视为满足行数条件，
默认配置下这类技能最高只能到 INTERMEDIATE。
"""

from __future__ import annotations

from skillsync.domain.enums import SkillLevel
from skillsync.domain.models import ScoreResult, SkillObservation, SkillRecord
from skillsync.domain.scoring.config import LEVEL_ORDER, ScoringConfig

# 落库与比较时统一精度，保证重复评分结果逐位一致。
CONFIDENCE_PRECISION = 6


def normalize(value: float, maximum: float) -> float:
    """归一化到 [0,1]；负值按 0 处理。"""
    if value <= 0:
        return 0.0
    return min(value / maximum, 1.0)


class ConfidenceScorer:
    """置信度评分器，持有只读评分配置。"""

    def __init__(self, config: ScoringConfig | None = None) -> None:
        self._config = config or ScoringConfig()

    @property
    def config(self) -> ScoringConfig:
        return self._config

    def recency_score(self, recency_days: float) -> float:
        """按断点返回时效分值，超出全部断点时取兜底分值。"""
        for breakpoint in self._config.recency_breakpoints:
            if recency_days <= breakpoint.max_days:
                return breakpoint.score
        return self._config.recency_floor

    def features(self, observation: SkillObservation) -> dict[str, float]:
        """返回五个归一化后的特征值。"""
        norm = self._config.normalization
        return {
            "frequency": normalize(observation.frequency, norm.frequency),
            "recency": self.recency_score(observation.recency_days),
            "complexity": min(max(observation.complexity_score, 0.0), 1.0),
            "duration": normalize(observation.duration_months, norm.duration_months),
            "depth": normalize(observation.depth_score, norm.depth),
        }

    def confidence(self, observation: SkillObservation) -> float:
        """计算加权置信度。"""
        weights = self._config.weights
        features = self.features(observation)
        total = (
            weights.frequency * features["frequency"]
            + weights.recency * features["recency"]
            + weights.complexity * features["complexity"]
            + weights.duration * features["duration"]
            + weights.depth * features["depth"]
        )
        return round(min(max(total, 0.0), 1.0), CONFIDENCE_PRECISION)

    def classify(self, confidence: float, projects_used: int, lines_of_code: int | None) -> SkillLevel:
        """自高向低判定等级，首个三项条件全部满足的等级胜出。"""
        for level in LEVEL_ORDER:
            threshold = self._config.thresholds[level]
            if confidence < threshold.confidence or projects_used < threshold.projects:
                continue
            if lines_of_code is None:
                if threshold.lines_optional:
                    return level
                continue
            if lines_of_code >= threshold.lines:
                return level
        return SkillLevel.BEGINNER

    def score(self, observation: SkillObservation, prior: SkillRecord | None = None) -> ScoreResult:
        """为单条观测评分；给定 prior 时置信度不低于既有值，体量取两者较大者（预览用途）。"""
        confidence = self.confidence(observation)
        projects = observation.projects_used
        lines = observation.lines_of_code
        if prior is not None:
            confidence = max(confidence, prior.confidence)
            projects = max(projects, prior.projects_used)
            lines = _max_optional(lines, prior.lines_of_code)
        return ScoreResult(confidence=confidence, level=self.classify(confidence, projects, lines))


def _max_optional(left: int | None, right: int | None) -> int | None:
    if left is None:
        return right
    if right is None:
        return left
    return max(left, right)
