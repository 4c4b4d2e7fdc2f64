"""依赖容器模块，负责单例化创建引擎、仓储、调度器、协作方客户端与工作组件。"""

from __future__ import annotations

import logging
from functools import lru_cache

from sqlalchemy import Engine
from sqlalchemy.orm import Session, sessionmaker

from skillsync.application.dispatcher import JobDispatcher
from skillsync.application.executor import JobRunner
from skillsync.application.processors import JobProcessors, register_default_processors
from skillsync.application.reconciler import SkillReconciler
from skillsync.config import get_settings
from skillsync.domain.scoring.config import ScoringConfig, load_scoring_config
from skillsync.domain.scoring.engine import ConfidenceScorer
from skillsync.infra.collaborators.client import CollaboratorClient
from skillsync.infra.db.job_repository import JobRepository
from skillsync.infra.db.session import build_engine, build_session_factory, init_db
from skillsync.infra.db.skill_repository import SkillRecordRepository
from skillsync.worker.pool import WorkerPool
from skillsync.worker.registry import ProcessorRegistry

logger = logging.getLogger(__name__)


@lru_cache(maxsize=1)
def get_engine() -> Engine:
    """获取数据库引擎单例，首次创建时建表。"""
    engine = build_engine(get_settings().database_url)
    init_db(engine)
    return engine


@lru_cache(maxsize=1)
def get_session_factory() -> sessionmaker[Session]:
    return build_session_factory(get_engine())


@lru_cache(maxsize=1)
def get_job_repository() -> JobRepository:
    return JobRepository(get_session_factory())


@lru_cache(maxsize=1)
def get_skill_repository() -> SkillRecordRepository:
    return SkillRecordRepository(get_session_factory())


@lru_cache(maxsize=1)
def get_scoring_config() -> ScoringConfig:
    """获取评分配置；进程内只加载一次。"""
    return load_scoring_config(get_settings().scoring_config_path)


@lru_cache(maxsize=1)
def get_scorer() -> ConfidenceScorer:
    return ConfidenceScorer(get_scoring_config())


@lru_cache(maxsize=1)
def get_dispatcher() -> JobDispatcher:
    """获取作业调度器单例。"""
    return JobDispatcher(repository=get_job_repository(), policies=get_settings().queue_policies())


@lru_cache(maxsize=1)
def get_reconciler() -> SkillReconciler:
    return SkillReconciler(
        repository=get_skill_repository(),
        scorer=get_scorer(),
        max_retries=get_settings().reconcile_max_retries,
    )


@lru_cache(maxsize=1)
def get_collaborator_client() -> CollaboratorClient:
    """获取协作方网关客户端单例。"""
    settings = get_settings()
    return CollaboratorClient(
        settings.collaborator_base_url,
        api_token=settings.collaborator_api_token,
        timeout_seconds=settings.collaborator_request_timeout_seconds,
    )


@lru_cache(maxsize=1)
def get_processor_registry() -> ProcessorRegistry:
    """获取已登记全部内置处理器的注册中心。"""
    client = get_collaborator_client()
    processors = JobProcessors(
        directory=client,
        extractor=client,
        reconciler=get_reconciler(),
        certificates=client,
        emails=client,
        webhooks=client,
        retention=client,
        purge_finished_jobs=get_dispatcher().purge_finished,
        purge_stale_skill_records=get_skill_repository().purge_stale,
    )
    return register_default_processors(ProcessorRegistry(), processors)


@lru_cache(maxsize=1)
def get_job_runner() -> JobRunner:
    return JobRunner(dispatcher=get_dispatcher(), registry=get_processor_registry())


@lru_cache(maxsize=1)
def get_worker_pool() -> WorkerPool:
    """获取单进程部署使用的线程池（不自动启动）。"""
    settings = get_settings()
    return WorkerPool(
        dispatcher=get_dispatcher(),
        runner=get_job_runner(),
        poll_interval_seconds=settings.worker_poll_interval_seconds,
        reaper_interval_seconds=settings.reaper_interval_seconds,
    )


def shutdown_container_resources() -> None:
    """停止线程池、关闭共享客户端与连接池并清理依赖容器缓存。"""
    if get_worker_pool.cache_info().currsize and get_worker_pool().running:
        get_worker_pool().stop()
    if get_collaborator_client.cache_info().currsize:
        try:
            get_collaborator_client().close()
        except Exception:
            logger.warning("collaborator client close failed", exc_info=True, extra={"event": "container.close.failed"})
    if get_engine.cache_info().currsize:
        get_engine().dispose()

    # 按依赖顺序清理缓存，确保后续调用可重新构建全新实例。
    for provider in (
        get_worker_pool,
        get_job_runner,
        get_processor_registry,
        get_collaborator_client,
        get_reconciler,
        get_dispatcher,
        get_scorer,
        get_scoring_config,
        get_skill_repository,
        get_job_repository,
        get_session_factory,
        get_engine,
    ):
        provider.cache_clear()
