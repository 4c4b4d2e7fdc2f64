"""全局配置加载模块：从环境变量构建运行参数并提供缓存访问。"""

from __future__ import annotations

from functools import lru_cache
from pathlib import Path

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict

from skillsync.domain.enums import JobType
from skillsync.domain.queue_policy import QueuePolicy


def _csv_to_list(value: str) -> list[str]:
    """将逗号分隔字符串转换为去空白列表。"""
    return [item.strip() for item in value.split(",") if item.strip()]


# 默认值沿用线上队列配置：组织级同步受上游限流约束压低并发，通知类任务廉价且相互独立。
DEFAULT_CONCURRENCY: dict[str, int] = {
    JobType.org_sync.value: 2,
    JobType.employee_sync.value: 5,
    JobType.skill_detection.value: 3,
    JobType.certificate_generation.value: 2,
    JobType.email_send.value: 10,
    JobType.webhook_process.value: 5,
    JobType.cleanup.value: 1,
}

DEFAULT_PRIORITY: dict[str, int] = {
    JobType.cleanup.value: 0,
    JobType.email_send.value: 1,
    JobType.skill_detection.value: 2,
    JobType.employee_sync.value: 3,
    JobType.certificate_generation.value: 4,
    JobType.org_sync.value: 5,
    JobType.webhook_process.value: 6,
}

DEFAULT_TIMEOUT_SECONDS: dict[str, int] = {
    JobType.org_sync.value: 30 * 60,
    JobType.employee_sync.value: 10 * 60,
    JobType.skill_detection.value: 15 * 60,
    JobType.certificate_generation.value: 5 * 60,
    JobType.email_send.value: 60,
    JobType.webhook_process.value: 2 * 60,
    JobType.cleanup.value: 10 * 60,
}


class Settings(BaseSettings):
    """系统运行配置对象，从环境变量读取并提供类型化访问。"""
    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8", extra="ignore")

    app_name: str = "Skill Signal Orchestrator"
    api_prefix: str = "/api/v1"
    environment: str = "dev"
    cors_allowed_origins: str = ""

    database_url: str = "sqlite:///./skillsync.db"
    redis_url: str = "redis://localhost:6379/0"
    celery_task_always_eager: bool = False

    collaborator_base_url: str = "http://127.0.0.1:8080"
    collaborator_api_token: str | None = None
    collaborator_request_timeout_seconds: int = 30

    queue_base_delay_seconds: float = 2.0
    queue_default_max_attempts: int = 3
    queue_concurrency: dict[str, int] = Field(default_factory=lambda: dict(DEFAULT_CONCURRENCY))
    queue_priority: dict[str, int] = Field(default_factory=lambda: dict(DEFAULT_PRIORITY))
    queue_timeout_seconds: dict[str, int] = Field(default_factory=lambda: dict(DEFAULT_TIMEOUT_SECONDS))

    embedded_worker_enabled: bool = False
    worker_poll_interval_seconds: float = 1.0
    reaper_interval_seconds: float = 30.0
    dispatch_tick_seconds: float = 5.0
    drain_batch_size: int = 50
    finished_job_retention_hours: int = 7 * 24
    reconcile_max_retries: int = 10

    scoring_config_path: Path | None = None

    log_dir: Path = Field(default=Path("./logs"))
    log_level: str = "INFO"
    log_debug_modules: str = ""
    log_debug_job_ids: str = ""
    log_debug_job_types: str = ""
    log_stderr_level: str = "ERROR"
    log_redaction_mode: str = "standard"
    log_payload_preview_chars: int = 2048
    log_max_bytes: int = 50 * 1024 * 1024
    log_backup_count: int = 10

    def cors_allowed_origins_list(self) -> list[str]:
        return _csv_to_list(self.cors_allowed_origins)

    def log_debug_modules_list(self) -> list[str]:
        return _csv_to_list(self.log_debug_modules)

    def log_debug_job_ids_list(self) -> list[str]:
        return _csv_to_list(self.log_debug_job_ids)

    def log_debug_job_types_list(self) -> list[str]:
        return _csv_to_list(self.log_debug_job_types)

    def queue_policies(self) -> dict[JobType, QueuePolicy]:
        """合并默认值与环境覆盖项，为每种作业类型生成队列策略。"""
        policies: dict[JobType, QueuePolicy] = {}
        for job_type in JobType:
            key = job_type.value
            # 环境变量只覆盖部分类型时，其余类型仍回落到内置默认值。
            policies[job_type] = QueuePolicy(
                job_type=job_type,
                concurrency=self.queue_concurrency.get(key, DEFAULT_CONCURRENCY[key]),
                default_priority=self.queue_priority.get(key, DEFAULT_PRIORITY[key]),
                max_attempts=self.queue_default_max_attempts,
                base_delay_seconds=self.queue_base_delay_seconds,
                timeout_seconds=self.queue_timeout_seconds.get(key, DEFAULT_TIMEOUT_SECONDS[key]),
            )
        return policies


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    """构建并缓存 Settings。"""
    settings = Settings()
    # 相对路径统一按当前工作目录解析，避免不同启动方式下语义漂移。
    if not settings.log_dir.is_absolute():
        settings.log_dir = (Path.cwd() / settings.log_dir).resolve()
    return settings
