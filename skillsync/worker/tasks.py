"""异步任务定义：按类型排空队列、周期性回收超时作业并唤醒有积压的队列。"""

from __future__ import annotations

import logging
from datetime import timedelta

from skillsync.application.container import get_dispatcher, get_job_runner
from skillsync.config import get_settings
from skillsync.domain.enums import JobType
from skillsync.infra.logging.context import bind_log_context
from skillsync.worker.celery_app import celery_app, queue_name

logger = logging.getLogger(__name__)


@celery_app.task(bind=True, name="skillsync.worker.tasks.drain_queue_task")
def drain_queue_task(self, job_type: str) -> int:
    """连续领取并执行某类型的作业，直到暂无可领取作业或达到批量上限。"""
    resolved = JobType(job_type)
    with bind_log_context(task_id=self.request.id, job_type=resolved.value, worker=self.request.hostname):
        processed = get_job_runner().drain(
            resolved,
            max_jobs=get_settings().drain_batch_size,
            worker=self.request.hostname,
        )
        logger.info(
            "queue drain finished",
            extra={"event": "queue.drain.finished", "payload_preview": {"processed": processed}},
        )
        return processed


@celery_app.task(bind=True, name="skillsync.worker.tasks.dispatch_tick_task")
def dispatch_tick_task(self) -> dict[str, int]:
    """派发节拍：先回收超时作业，再为有可领取作业的类型投递排空任务。"""
    dispatcher = get_dispatcher()
    with bind_log_context(task_id=self.request.id):
        reaped = dispatcher.reap_timed_out()
        eligible = dispatcher.eligible_counts()
        for job_type, count in eligible.items():
            # 并发上限由领取时的条件更新保证，这里按上限投递即可。
            fan_out = min(count, dispatcher.policy(job_type).concurrency)
            for _ in range(fan_out):
                drain_queue_task.apply_async(args=(job_type.value,), queue=queue_name(job_type))
        summary = {item.value: count for item, count in eligible.items()}
        logger.info(
            "dispatch tick finished",
            extra={"event": "queue.tick.finished", "payload_preview": {"reaped": reaped, "eligible": summary}},
        )
        return summary


@celery_app.task(bind=True, name="skillsync.worker.tasks.schedule_cleanup_task")
def schedule_cleanup_task(self) -> str:
    """每日投递一次已完成作业的清理作业。"""
    settings = get_settings()
    dispatcher = get_dispatcher()
    with bind_log_context(task_id=self.request.id):
        before = dispatcher.now() - timedelta(hours=settings.finished_job_retention_hours)
        job_id = dispatcher.submit(JobType.cleanup, {"target": "finished_jobs", "before": before.isoformat()})
        logger.info("cleanup job scheduled", extra={"event": "cleanup.scheduled", "job_id": job_id})
        return job_id
