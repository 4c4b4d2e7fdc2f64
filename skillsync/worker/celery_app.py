"""Celery 应用配置：每种作业类型一个队列、派发节拍与每日清理的 beat 计划、进程退出时回收资源。"""

from __future__ import annotations

import logging
import sys

from celery import Celery
from celery.schedules import crontab
from celery.signals import worker_process_shutdown
from kombu import Queue

from skillsync.application.container import shutdown_container_resources
from skillsync.config import get_settings
from skillsync.domain.enums import JobType
from skillsync.infra.logging.setup import configure_logging, shutdown_logging

settings = get_settings()
logger = logging.getLogger(__name__)

CONTROL_QUEUE = "default"


def queue_name(job_type: JobType) -> str:
    """作业类型对应的 Celery 队列名，worker 可用 -Q 只订阅部分类型。"""
    return f"jobs.{job_type.value}"


def _detect_process_role() -> str | None:
    # 只认 celery 子命令本身，测试文件名之类的参数不算。
    argv = {item.lower() for item in sys.argv[1:]}
    for role in ("beat", "worker"):
        if role in argv:
            return role
    return None


process_role = _detect_process_role()
if process_role:
    configure_logging(settings, process_role=process_role)

celery_app = Celery("skillsync", broker=settings.redis_url, backend=settings.redis_url)
celery_app.conf.update(
    imports=("skillsync.worker.tasks",),
    task_default_queue=CONTROL_QUEUE,
    task_queues=[Queue(CONTROL_QUEUE), *(Queue(queue_name(item)) for item in JobType)],
    task_routes={
        "skillsync.worker.tasks.dispatch_tick_task": {"queue": CONTROL_QUEUE},
        "skillsync.worker.tasks.schedule_cleanup_task": {"queue": CONTROL_QUEUE},
    },
    # 作业状态在数据库里，Celery 消息只是唤醒信号：结果不落 backend，丢失的消息由下一次节拍补发。
    task_ignore_result=True,
    task_acks_late=True,
    worker_prefetch_multiplier=1,
    broker_connection_retry_on_startup=True,
    task_always_eager=settings.celery_task_always_eager,
    task_eager_propagates=settings.celery_task_always_eager,
    beat_schedule={
        "dispatch-tick": {
            "task": "skillsync.worker.tasks.dispatch_tick_task",
            "schedule": settings.dispatch_tick_seconds,
        },
        "cleanup-finished-jobs-daily": {
            "task": "skillsync.worker.tasks.schedule_cleanup_task",
            "schedule": crontab(minute=30, hour=2),
        },
    },
)

if process_role:
    logger.info(
        "celery app configured",
        extra={
            "event": "celery.config.loaded",
            "external_service": "redis",
            "op": process_role,
            "payload_preview": {
                "always_eager": settings.celery_task_always_eager,
                "tick_seconds": settings.dispatch_tick_seconds,
                "queues": [queue.name for queue in celery_app.conf.task_queues],
            },
        },
    )


@worker_process_shutdown.connect
def _shutdown_worker_resources(**_: object) -> None:
    """Worker 子进程退出时停止线程池、关闭客户端与连接池并刷新日志。"""
    shutdown_container_resources()
    shutdown_logging()
