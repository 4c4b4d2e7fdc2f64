"""置信度评分引擎测试：归一化、时效断点、等级判定与配置校验。"""

from __future__ import annotations

import json
from pathlib import Path

import pytest
from pydantic import ValidationError

from skillsync.domain.enums import SkillLevel
from skillsync.domain.models import SkillRecord
from skillsync.domain.scoring.config import LevelThreshold, ScoringConfig, load_scoring_config
from skillsync.domain.scoring.engine import ConfidenceScorer, normalize


def test_concrete_scenario_scores_advanced(make_observation) -> None:
    """置信度 0.79 满足 ADVANCED 而不满足 EXPERT。"""
    scorer = ConfidenceScorer()
    observation = make_observation(
        frequency=8000,
        recency_days=20,
        complexity_score=0.6,
        duration_months=6,
        depth_score=9000,
        projects_used=12,
        lines_of_code=12000,
    )

    features = scorer.features(observation)
    result = scorer.score(observation)

    assert features == pytest.approx(
        {"frequency": 0.8, "recency": 1.0, "complexity": 0.6, "duration": 0.6, "depth": 0.9}
    )
    assert result.confidence == pytest.approx(0.79)
    assert result.level == SkillLevel.ADVANCED


def test_score_is_deterministic(make_observation) -> None:
    scorer = ConfidenceScorer()
    observation = make_observation()
    assert scorer.score(observation) == scorer.score(observation)


@pytest.mark.parametrize(
    ("days", "expected"),
    [
        (0, 1.0),
        (30, 1.0),
        (31, 0.8),
        (90, 0.8),
        (180, 0.6),
        (365, 0.4),
        (366, 0.2),
        (730, 0.2),
        (731, 0.1),
    ],
)
def test_recency_breakpoints_are_inclusive(days: int, expected: float) -> None:
    assert ConfidenceScorer().recency_score(days) == expected


def test_features_are_clamped(make_observation) -> None:
    """超出上限的特征截断为 1.0，负值按 0 处理。"""
    scorer = ConfidenceScorer()
    observation = make_observation(frequency=50000, depth_score=-5, duration_months=40, complexity_score=1.7)
    features = scorer.features(observation)

    assert features["frequency"] == 1.0
    assert features["depth"] == 0.0
    assert features["duration"] == 1.0
    assert features["complexity"] == 1.0
    assert normalize(0, 10) == 0.0


def test_confidence_never_exceeds_one(make_observation) -> None:
    scorer = ConfidenceScorer()
    observation = make_observation(
        frequency=10**6,
        recency_days=0,
        complexity_score=1.0,
        duration_months=120,
        depth_score=10**6,
    )
    assert scorer.confidence(observation) == 1.0


def test_classify_walks_levels_downward() -> None:
    scorer = ConfidenceScorer()
    assert scorer.classify(0.85, 10, 10000) == SkillLevel.EXPERT
    # 置信度够 EXPERT，但项目数只够 ADVANCED。
    assert scorer.classify(0.95, 6, 20000) == SkillLevel.ADVANCED
    assert scorer.classify(0.45, 2, 1000) == SkillLevel.INTERMEDIATE
    assert scorer.classify(0.1, 0, None) == SkillLevel.BEGINNER


def test_missing_lines_caps_at_intermediate() -> None:
    """缺少代码行信号时最高只能到 INTERMEDIATE。"""
    scorer = ConfidenceScorer()
    assert scorer.classify(0.99, 50, None) == SkillLevel.INTERMEDIATE
    assert scorer.classify(0.99, 50, 50000) == SkillLevel.EXPERT


def test_score_with_prior_never_drops_below_prior(make_observation) -> None:
    scorer = ConfidenceScorer()
    prior = SkillRecord(
        employee_id="emp-1",
        skill_name="python",
        category="Programming Language",
        level=SkillLevel.ADVANCED,
        confidence=0.7,
        projects_used=8,
        lines_of_code=8000,
        last_used=make_observation().observed_at,
        source="github",
    )
    weak = make_observation(frequency=10, recency_days=900, complexity_score=0, duration_months=0, depth_score=0)

    result = scorer.score(weak, prior=prior)

    assert result.confidence == 0.7
    assert result.level == SkillLevel.ADVANCED


def test_weights_must_sum_to_one() -> None:
    with pytest.raises(ValidationError):
        ScoringConfig.model_validate({"weights": {"frequency": 0.5, "recency": 0.5, "complexity": 0.5}})


def test_thresholds_must_be_ordered() -> None:
    config = ScoringConfig()
    thresholds = dict(config.thresholds)
    thresholds[SkillLevel.EXPERT] = LevelThreshold(confidence=0.5, projects=10, lines=10000)
    with pytest.raises(ValidationError):
        ScoringConfig(thresholds=thresholds)


def test_breakpoints_must_ascend() -> None:
    with pytest.raises(ValidationError):
        ScoringConfig.model_validate(
            {"recency_breakpoints": [{"max_days": 90, "score": 0.8}, {"max_days": 30, "score": 1.0}]}
        )


def test_load_scoring_config_from_file(tmp_path: Path) -> None:
    path = tmp_path / "scoring.json"
    path.write_text(json.dumps({"normalization": {"frequency": 500}, "recency_floor": 0.05}), encoding="utf-8")

    config = load_scoring_config(path)

    assert config.normalization.frequency == 500
    assert config.recency_floor == 0.05
    assert load_scoring_config(None) == ScoringConfig()
