"""技能档案协调器：把观测合并进持久化档案，写入冲突时重读重试。"""

from __future__ import annotations

import logging
import time

from skillsync.domain.models import SkillObservation, SkillRecord
from skillsync.domain.scoring.engine import ConfidenceScorer
from skillsync.domain.scoring.merge import merge
from skillsync.infra.db.skill_repository import SkillRecordRepository

logger = logging.getLogger(__name__)


class SkillReconciler:
    """按 员工 × 技能 粒度做乐观并发合并，不同键之间互不阻塞。"""

    def __init__(
        self,
        *,
        repository: SkillRecordRepository,
        scorer: ConfidenceScorer,
        max_retries: int = 10,
    ) -> None:
        self._repository = repository
        self._scorer = scorer
        self._max_retries = max_retries

    @property
    def scorer(self) -> ConfidenceScorer:
        return self._scorer

    def reconcile(self, observation: SkillObservation) -> SkillRecord:
        """合并单条观测并返回落库后的档案。"""
        started = time.perf_counter()
        skill = self._repository.get_or_create_skill(observation.skill_name, observation.category)
        record = self._repository.compare_and_merge(
            employee_id=observation.employee_id,
            skill=skill,
            merge_fn=lambda existing: merge(existing, observation, self._scorer),
            run_id=observation.run_id,
            max_retries=self._max_retries,
        )
        logger.info(
            "skill reconciled",
            extra={
                "event": "skill.reconciled",
                "duration_ms": round((time.perf_counter() - started) * 1000, 2),
                "payload_preview": {
                    "employee_id": observation.employee_id,
                    "skill": observation.skill_name,
                    "source": observation.source,
                    "level": record.level.value,
                    "confidence": record.confidence,
                    "version": record.version,
                },
            },
        )
        return record
