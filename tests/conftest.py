"""测试公共夹具：文件型 SQLite、可控时钟与观测值构造器。"""

from __future__ import annotations

from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Any, Callable, Iterator

import pytest
from sqlalchemy.orm import Session, sessionmaker

from skillsync.application.dispatcher import JobDispatcher
from skillsync.config import Settings
from skillsync.domain.enums import JobType
from skillsync.domain.models import SkillObservation
from skillsync.domain.queue_policy import QueuePolicy
from skillsync.infra.db.job_repository import JobRepository
from skillsync.infra.db.session import build_engine, build_session_factory, init_db
from skillsync.infra.db.skill_repository import SkillRecordRepository

START = datetime(2026, 3, 1, 9, 0, tzinfo=timezone.utc)


class FakeClock:
    """可手动推进的 UTC 时钟。"""

    def __init__(self, start: datetime = START) -> None:
        self.current = start

    def __call__(self) -> datetime:
        return self.current

    def advance(self, seconds: float) -> datetime:
        self.current = self.current + timedelta(seconds=seconds)
        return self.current


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def session_factory(tmp_path: Path) -> Iterator[sessionmaker[Session]]:
    # 并发测试需要真实文件库，内存库无法跨连接共享。
    engine = build_engine(f"sqlite:///{tmp_path / 'skillsync.db'}")
    init_db(engine)
    yield build_session_factory(engine)
    engine.dispose()


@pytest.fixture
def policies() -> dict[JobType, QueuePolicy]:
    return Settings(_env_file=None).queue_policies()


@pytest.fixture
def job_repository(session_factory: sessionmaker[Session]) -> JobRepository:
    return JobRepository(session_factory)


@pytest.fixture
def skill_repository(session_factory: sessionmaker[Session]) -> SkillRecordRepository:
    return SkillRecordRepository(session_factory)


@pytest.fixture
def dispatcher(job_repository: JobRepository, policies: dict[JobType, QueuePolicy], clock: FakeClock) -> JobDispatcher:
    return JobDispatcher(repository=job_repository, policies=policies, clock=clock)


@pytest.fixture
def make_observation() -> Callable[..., SkillObservation]:
    """构造观测值，默认是一条中等强度的 python 证据。"""

    def _make(**overrides: Any) -> SkillObservation:
        values: dict[str, Any] = {
            "employee_id": "emp-1",
            "skill_name": "python",
            "category": "Programming Language",
            "frequency": 3000,
            "recency_days": 45,
            "complexity_score": 0.5,
            "duration_months": 4,
            "depth_score": 3000,
            "projects_used": 3,
            "lines_of_code": 3000,
            "observed_at": START,
            "source": "github",
            "run_id": "run-1",
        }
        values.update(overrides)
        return SkillObservation(**values)

    return _make
