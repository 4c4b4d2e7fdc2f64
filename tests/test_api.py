"""HTTP 接口测试：通过依赖覆盖注入测试库上的调度器与技能仓储。"""

from __future__ import annotations

from typing import Iterator

import pytest
from fastapi import FastAPI
from fastapi.testclient import TestClient

from skillsync.api.router import api_router
from skillsync.api.v1 import jobs as jobs_api
from skillsync.api.v1 import skills as skills_api
from skillsync.application.dispatcher import JobDispatcher
from skillsync.application.reconciler import SkillReconciler
from skillsync.domain.enums import JobType
from skillsync.domain.errors import JobFailure
from skillsync.domain.scoring.engine import ConfidenceScorer
from skillsync.infra.db.skill_repository import SkillRecordRepository

DETECTION = {"employee_id": "emp-1", "source": "github", "username": "octo"}


@pytest.fixture
def client(dispatcher: JobDispatcher, skill_repository: SkillRecordRepository) -> Iterator[TestClient]:
    app = FastAPI()
    app.include_router(api_router)
    app.dependency_overrides[jobs_api._dispatcher] = lambda: dispatcher
    app.dependency_overrides[skills_api._repository] = lambda: skill_repository
    with TestClient(app) as test_client:
        yield test_client


def test_submit_and_fetch_job(client: TestClient) -> None:
    response = client.post("/api/v1/jobs", json={"type": "skill-detection", "payload": DETECTION, "priority": 1})

    assert response.status_code == 202
    job_id = response.json()["job_id"]
    detail = client.get(f"/api/v1/jobs/{job_id}")
    assert detail.status_code == 200
    body = detail.json()
    assert body["status"] == "waiting"
    assert body["priority"] == 1
    assert body["payload"]["username"] == "octo"


@pytest.mark.parametrize(
    "request_body",
    [
        {"type": "skill-detection", "payload": {"employee_id": "emp-1"}},
        {"type": "no-such-type", "payload": {}},
        {"type": "skill-detection", "payload": DETECTION, "delay_seconds": -5},
        {"type": "skill-detection", "payload": DETECTION, "max_attempts": 0},
    ],
)
def test_submit_rejects_invalid_requests(client: TestClient, request_body: dict) -> None:
    response = client.post("/api/v1/jobs", json=request_body)

    assert response.status_code == 422
    assert client.get("/api/v1/jobs").json()["items"] == []


def test_unknown_job_returns_404(client: TestClient) -> None:
    assert client.get("/api/v1/jobs/missing").status_code == 404
    assert client.post("/api/v1/jobs/missing/resubmit").status_code == 404


def test_resubmit_flow(client: TestClient, dispatcher: JobDispatcher) -> None:
    job_id = dispatcher.submit(JobType.skill_detection, DETECTION)

    assert client.post(f"/api/v1/jobs/{job_id}/resubmit").status_code == 409

    job = dispatcher.claim(JobType.skill_detection)
    dispatcher.fail(job_id, JobFailure.fatal("bad credentials", code="auth"), lease_token=job.lease_token)
    dead = client.get("/api/v1/jobs", params={"status": "dead-lettered"}).json()["items"]
    assert [item["job_id"] for item in dead] == [job_id]
    assert dead[0]["error_code"] == "auth"

    response = client.post(f"/api/v1/jobs/{job_id}/resubmit")
    assert response.status_code == 202
    assert response.json()["original_job_id"] == job_id
    assert client.get(f"/api/v1/jobs/{response.json()['job_id']}").json()["status"] == "waiting"


def test_list_jobs_rejects_unknown_filters(client: TestClient) -> None:
    assert client.get("/api/v1/jobs", params={"status": "exploded"}).status_code == 422
    assert client.get("/api/v1/jobs", params={"type": "no-such-type"}).status_code == 422


def test_queue_stats_lists_every_job_type(client: TestClient, dispatcher: JobDispatcher) -> None:
    dispatcher.submit(JobType.email_send, {"to": "a@example.com", "subject": "s", "html": "x"})

    queues = {item["job_type"]: item for item in client.get("/api/v1/queues/stats").json()["queues"]}

    assert set(queues) == {item.value for item in JobType}
    assert queues["email-send"]["waiting"] == 1
    assert queues["email-send"]["concurrency"] == 10


def test_employee_skills_and_history(
    client: TestClient, skill_repository: SkillRecordRepository, make_observation
) -> None:
    reconciler = SkillReconciler(repository=skill_repository, scorer=ConfidenceScorer())
    reconciler.reconcile(make_observation(run_id="run-1"))
    reconciler.reconcile(make_observation(run_id="run-2"))

    skills = client.get("/api/v1/employees/emp-1/skills").json()["skills"]
    history = client.get("/api/v1/employees/emp-1/skills/python/history").json()["history"]

    assert [item["skill_name"] for item in skills] == ["python"]
    assert skills[0]["projects_used"] == 6
    assert [item["run_id"] for item in history] == ["run-1", "run-2"]
    assert client.get("/api/v1/employees/emp-1/skills/cobol/history").status_code == 404


def test_resubmit_logs_structured_event(client: TestClient, dispatcher: JobDispatcher, caplog) -> None:
    job_id = dispatcher.submit(JobType.skill_detection, DETECTION)
    job = dispatcher.claim(JobType.skill_detection)
    dispatcher.fail(job_id, JobFailure.fatal("bad credentials", code="auth"), lease_token=job.lease_token)

    with caplog.at_level("INFO", logger="skillsync"):
        new_id = client.post(f"/api/v1/jobs/{job_id}/resubmit").json()["job_id"]

    records = [record for record in caplog.records if record.name.startswith("skillsync")]
    assert records
    assert all(getattr(record, "event", None) for record in records)
    resubmitted = [record for record in records if record.event == "job.resubmitted"]
    assert len(resubmitted) == 1
    assert resubmitted[0].job_id == new_id
    assert resubmitted[0].payload_preview == {"original_job_id": job_id}
