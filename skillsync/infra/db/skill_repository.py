"""技能档案仓储：技能字典维护，以及基于版本号的比较-合并写入。"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Callable
from uuid import uuid4

from sqlalchemy import delete, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session, sessionmaker

from skillsync.domain.enums import SkillLevel
from skillsync.domain.errors import ReconcileConflictError
from skillsync.domain.models import Contribution, SkillRecord
from skillsync.infra.db.models import SkillEvolutionORM, SkillORM, SkillRecordORM, ensure_utc, utcnow

logger = logging.getLogger(__name__)


class _StaleWrite(Exception):
    """条件更新未命中：读取后档案已被其他写入者修改。"""


@dataclass(slots=True)
class SkillRef:
    id: str
    name: str
    category: str


def _encode_contributions(contributions: dict[str, Contribution]) -> dict[str, dict]:
    return {
        key: {
            "projects": item.projects,
            "lines": item.lines,
            "observed_at": item.observed_at.isoformat(),
            "source": item.source,
            "category": item.category,
        }
        for key, item in contributions.items()
    }


def _decode_contributions(raw: dict | None) -> dict[str, Contribution]:
    if not raw:
        return {}
    return {
        key: Contribution(
            projects=int(item["projects"]),
            lines=item.get("lines"),
            observed_at=ensure_utc(datetime.fromisoformat(item["observed_at"])),
            source=item["source"],
            category=item["category"],
        )
        for key, item in raw.items()
    }


def _to_record(row: SkillRecordORM, skill: SkillRef) -> SkillRecord:
    return SkillRecord(
        employee_id=row.employee_id,
        skill_name=skill.name,
        category=skill.category,
        level=SkillLevel(row.level),
        confidence=row.confidence,
        projects_used=row.projects_used,
        lines_of_code=row.lines_of_code,
        last_used=ensure_utc(row.last_used),
        source=row.source,
        is_auto_detected=row.is_auto_detected,
        contributions=_decode_contributions(row.contributions),
        skill_id=row.skill_id,
        version=row.version,
    )


class SkillRecordRepository:
    """技能档案仓储实现。"""
    def __init__(self, session_factory: sessionmaker[Session]) -> None:
        self._session_factory = session_factory

    def get_or_create_skill(self, name: str, category: str) -> SkillRef:
        """按名称获取技能，不存在则创建；并发创建冲突时回读已有记录。"""
        with self._session_factory() as db:
            skill = db.execute(select(SkillORM).where(SkillORM.name == name)).scalars().first()
            if skill is not None:
                return SkillRef(id=skill.id, name=skill.name, category=skill.category)
        try:
            with self._session_factory.begin() as db:
                skill = SkillORM(
                    id=str(uuid4()),
                    name=name,
                    category=category,
                    description=f"{name} detected from activity signals",
                )
                db.add(skill)
                db.flush()
                return SkillRef(id=skill.id, name=skill.name, category=skill.category)
        except IntegrityError:
            with self._session_factory() as db:
                skill = db.execute(select(SkillORM).where(SkillORM.name == name)).scalars().one()
                return SkillRef(id=skill.id, name=skill.name, category=skill.category)

    def get_record(self, employee_id: str, skill_name: str) -> SkillRecord | None:
        with self._session_factory() as db:
            row = db.execute(
                select(SkillRecordORM, SkillORM)
                .join(SkillORM, SkillORM.id == SkillRecordORM.skill_id)
                .where(SkillRecordORM.employee_id == employee_id, SkillORM.name == skill_name)
            ).first()
            if row is None:
                return None
            record, skill = row
            return _to_record(record, SkillRef(id=skill.id, name=skill.name, category=skill.category))

    def list_records(self, employee_id: str) -> list[SkillRecord]:
        """返回员工全部技能档案，按置信度降序。"""
        with self._session_factory() as db:
            rows = db.execute(
                select(SkillRecordORM, SkillORM)
                .join(SkillORM, SkillORM.id == SkillRecordORM.skill_id)
                .where(SkillRecordORM.employee_id == employee_id)
                .order_by(SkillRecordORM.confidence.desc(), SkillORM.name.asc())
            ).all()
            return [
                _to_record(record, SkillRef(id=skill.id, name=skill.name, category=skill.category))
                for record, skill in rows
            ]

    def list_evolution(self, employee_id: str, skill_name: str, limit: int = 200) -> list[SkillEvolutionORM]:
        """按时间顺序返回技能演进快照。"""
        with self._session_factory() as db:
            stmt = (
                select(SkillEvolutionORM)
                .join(SkillORM, SkillORM.id == SkillEvolutionORM.skill_id)
                .where(SkillEvolutionORM.employee_id == employee_id, SkillORM.name == skill_name)
                .order_by(SkillEvolutionORM.id.asc())
                .limit(limit)
            )
            return list(db.execute(stmt).scalars().all())

    def compare_and_merge(
        self,
        *,
        employee_id: str,
        skill: SkillRef,
        merge_fn: Callable[[SkillRecord | None], SkillRecord],
        run_id: str,
        max_retries: int = 10,
    ) -> SkillRecord:
        """读取当前档案与版本号，合并后按版本条件写回；冲突时重新读取并重试。"""
        for attempt in range(max_retries):
            with self._session_factory() as db:
                row = db.execute(
                    select(SkillRecordORM).where(
                        SkillRecordORM.employee_id == employee_id,
                        SkillRecordORM.skill_id == skill.id,
                    )
                ).scalars().first()
                current = _to_record(row, skill) if row is not None else None

            merged = merge_fn(current)
            try:
                with self._session_factory.begin() as db:
                    if current is None:
                        version = 1
                        db.add(self._new_row(employee_id, skill, merged))
                        db.flush()
                    else:
                        version = current.version + 1
                        result = db.execute(
                            update(SkillRecordORM)
                            .where(
                                SkillRecordORM.employee_id == employee_id,
                                SkillRecordORM.skill_id == skill.id,
                                SkillRecordORM.version == current.version,
                            )
                            .values(**self._row_values(merged), version=version, updated_at=utcnow())
                            .execution_options(synchronize_session=False)
                        )
                        if result.rowcount != 1:
                            raise _StaleWrite()
                    db.add(
                        SkillEvolutionORM(
                            employee_id=employee_id,
                            skill_id=skill.id,
                            level=merged.level.value,
                            confidence=merged.confidence,
                            total_projects=merged.projects_used,
                            total_lines=merged.lines_of_code,
                            evidence_source=merged.source,
                            run_id=run_id,
                        )
                    )
            except (_StaleWrite, IntegrityError):
                logger.debug(
                    "skill record write conflict",
                    extra={
                        "event": "skill.reconcile.conflict",
                        "retry": attempt,
                        "payload_preview": {"employee_id": employee_id, "skill": skill.name},
                    },
                )
                continue
            merged.skill_id = skill.id
            merged.version = version
            return merged
        raise ReconcileConflictError(
            f"skill record {employee_id}/{skill.name} still conflicting after {max_retries} attempts"
        )

    def purge_stale(self, before: datetime) -> int:
        """数据保留清理：删除最近使用时间早于截止时间的自动识别档案。"""
        with self._session_factory.begin() as db:
            result = db.execute(
                delete(SkillRecordORM)
                .where(SkillRecordORM.last_used < before, SkillRecordORM.is_auto_detected.is_(True))
                .execution_options(synchronize_session=False)
            )
            return int(result.rowcount or 0)

    @staticmethod
    def _row_values(record: SkillRecord) -> dict:
        return {
            "level": record.level.value,
            "confidence": record.confidence,
            "projects_used": record.projects_used,
            "lines_of_code": record.lines_of_code,
            "last_used": record.last_used,
            "source": record.source,
            "is_auto_detected": record.is_auto_detected,
            "contributions": _encode_contributions(record.contributions),
        }

    def _new_row(self, employee_id: str, skill: SkillRef, record: SkillRecord) -> SkillRecordORM:
        return SkillRecordORM(
            employee_id=employee_id,
            skill_id=skill.id,
            version=1,
            **self._row_values(record),
        )
