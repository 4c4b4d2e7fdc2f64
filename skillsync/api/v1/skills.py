"""员工技能接口：查询技能档案与单个技能的演进历史。"""

from __future__ import annotations

from fastapi import APIRouter, Depends, HTTPException

from skillsync.api.v1.schemas import (
    EmployeeSkillsResponse,
    SkillEvolutionItem,
    SkillEvolutionResponse,
    SkillRecordResponse,
)
from skillsync.application.container import get_skill_repository
from skillsync.infra.db.models import ensure_utc
from skillsync.infra.db.skill_repository import SkillRecordRepository

router = APIRouter()


def _repository() -> SkillRecordRepository:
    return get_skill_repository()


@router.get("/employees/{employee_id}/skills", response_model=EmployeeSkillsResponse)
def list_employee_skills(
    employee_id: str,
    repository: SkillRecordRepository = Depends(_repository),
) -> EmployeeSkillsResponse:
    """返回员工全部技能档案，按置信度降序。"""
    records = repository.list_records(employee_id)
    return EmployeeSkillsResponse(
        employee_id=employee_id,
        skills=[
            SkillRecordResponse(
                skill_id=record.skill_id,
                skill_name=record.skill_name,
                category=record.category,
                level=record.level.value,
                confidence=record.confidence,
                projects_used=record.projects_used,
                lines_of_code=record.lines_of_code,
                last_used=record.last_used,
                source=record.source,
                is_auto_detected=record.is_auto_detected,
            )
            for record in records
        ],
    )


@router.get("/employees/{employee_id}/skills/{skill_name}/history", response_model=SkillEvolutionResponse)
def skill_history(
    employee_id: str,
    skill_name: str,
    repository: SkillRecordRepository = Depends(_repository),
) -> SkillEvolutionResponse:
    """返回某技能每次合并后的快照，用于趋势展示。"""
    rows = repository.list_evolution(employee_id, skill_name)
    if not rows:
        raise HTTPException(status_code=404, detail=f"no history for {employee_id}/{skill_name}")
    return SkillEvolutionResponse(
        employee_id=employee_id,
        skill_name=skill_name,
        history=[
            SkillEvolutionItem(
                level=row.level,
                confidence=row.confidence,
                total_projects=row.total_projects,
                total_lines=row.total_lines,
                evidence_source=row.evidence_source,
                run_id=row.run_id,
                created_at=ensure_utc(row.created_at),
            )
            for row in rows
        ],
    )
