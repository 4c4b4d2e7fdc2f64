"""日志初始化：作业维度的 JSON 行日志、队列异步落盘、凭据脱敏与按作业放行 DEBUG。"""

from __future__ import annotations

import json
import logging
import logging.config
import re
import sys
from datetime import datetime, timezone
from logging.handlers import QueueHandler, QueueListener, RotatingFileHandler
from pathlib import Path
from queue import SimpleQueue
from typing import Any

from skillsync.config import Settings
from skillsync.infra.logging.context import CONTEXT_KEYS, get_log_context

_listener: QueueListener | None = None

# 集成凭据在协作方响应、httpx 异常文本里都可能出现，统一按键名遮蔽取值。
_SECRET_KEYS = ("access_token", "refresh_token", "api_token", "api_key", "client_secret", "password", "secret")
_AUTH_HEADER = re.compile(r"(?i)(authorization\s*[:=]\s*(?:bearer|token)\s+)[^\s,;\"]+")
_SECRET_VALUE = re.compile(
    r"(?i)(\"?(?:" + "|".join(_SECRET_KEYS) + r")\"?\s*[:=]\s*\"?)[^\s,;\"]+"
)
_EMAIL = re.compile(r"[\w.+-]+@[\w-]+(\.[\w-]+)+")

_NUMERIC_FIELDS = ("duration_ms", "status_code", "retry")
_TEXT_FIELDS = ("external_service", "op", "error_type")

# 第三方库默认降噪。
_NOISY_LOGGERS: dict[str, int] = {
    "uvicorn.access": logging.WARNING,
    "httpx": logging.WARNING,
    "httpcore": logging.WARNING,
    "celery": logging.INFO,
    "kombu": logging.WARNING,
    "sqlalchemy.engine": logging.WARNING,
}


def redact_text(value: str | None, mode: str) -> str | None:
    """按模式脱敏：off 原样返回，standard 遮蔽凭据，strict 另外遮蔽邮箱地址。"""
    if value is None:
        return None
    text = str(value)
    mode = mode.lower()
    if mode == "off":
        return text
    text = _AUTH_HEADER.sub(r"\1***", text)
    text = _SECRET_VALUE.sub(r"\1***", text)
    if mode == "strict":
        text = _EMAIL.sub("***@***", text)
    return text


def render_payload_preview(payload: Any, *, max_chars: int, redaction_mode: str) -> str | None:
    """序列化、脱敏并截断 payload_preview。"""
    if payload is None:
        return None
    if isinstance(payload, str):
        serialized = payload
    else:
        try:
            serialized = json.dumps(payload, ensure_ascii=False, sort_keys=True, default=str)
        except (TypeError, ValueError):
            serialized = str(payload)
    redacted = redact_text(serialized, redaction_mode) or ""
    if len(redacted) > max_chars:
        return f"{redacted[:max_chars]}...(truncated)"
    return redacted


class DebugRoutingFilter(logging.Filter):
    """低于最小级别的记录默认丢弃；指定模块、作业 ID 或作业类型可单独放行 DEBUG。"""

    def __init__(
        self,
        *,
        min_level: int,
        debug_modules: set[str],
        debug_job_ids: set[str],
        debug_job_types: set[str] | None = None,
    ) -> None:
        super().__init__()
        self._min_level = min_level
        self._debug_modules = debug_modules
        self._debug_job_ids = debug_job_ids
        self._debug_job_types = debug_job_types or set()

    def _field(self, record: logging.LogRecord, key: str) -> str | None:
        return getattr(record, key, None) or get_log_context().get(key)

    def filter(self, record: logging.LogRecord) -> bool:
        if record.levelno >= self._min_level:
            return True
        if record.levelno != logging.DEBUG:
            return False
        name = record.name
        if any(name == item or name.startswith(f"{item}.") for item in self._debug_modules):
            return True
        if self._field(record, "job_id") in self._debug_job_ids:
            return True
        return self._field(record, "job_type") in self._debug_job_types


class ContextInjectionFilter(logging.Filter):
    """入队前把 contextvars 拷贝到 record 上；监听线程里已读不到调用方的上下文。"""

    def filter(self, record: logging.LogRecord) -> bool:
        for key, value in get_log_context().items():
            if value is not None and getattr(record, key, None) is None:
                setattr(record, key, value)
        return True


class StructuredJsonFormatter(logging.Formatter):
    """每条记录输出一行 JSON，字段集合固定，缺失字段写 null。"""

    def __init__(
        self,
        *,
        service: str,
        process_role: str,
        redaction_mode: str,
        payload_preview_chars: int,
    ) -> None:
        super().__init__()
        self._service = service
        self._process_role = process_role
        self._redaction_mode = redaction_mode
        self._payload_preview_chars = payload_preview_chars

    @staticmethod
    def _number(value: Any) -> int | float | None:
        if value is None or isinstance(value, (int, float)):
            return value
        text = str(value)
        try:
            return int(text) if text.isdigit() else float(text)
        except ValueError:
            return None

    def _error_text(self, record: logging.LogRecord) -> str | None:
        error = getattr(record, "error", None)
        if not record.exc_info:
            return None if error is None else str(error)
        trace = self.formatException(record.exc_info)
        return trace if error is None else f"{error}\n{trace}"

    def format(self, record: logging.LogRecord) -> str:
        ctx = get_log_context()
        created = datetime.fromtimestamp(record.created, tz=timezone.utc)
        entry: dict[str, Any] = {
            "ts": created.isoformat().replace("+00:00", "Z"),
            "level": record.levelname,
            "service": self._service,
            "process_role": self._process_role,
            "module": record.name,
            "event": getattr(record, "event", None),
        }
        for key in CONTEXT_KEYS:
            entry[key] = getattr(record, key, None) or ctx.get(key)
        for key in _TEXT_FIELDS:
            entry[key] = getattr(record, key, None)
        for key in _NUMERIC_FIELDS:
            entry[key] = self._number(getattr(record, key, None))
        entry["message"] = redact_text(record.getMessage(), self._redaction_mode)
        entry["error"] = redact_text(self._error_text(record), self._redaction_mode)
        entry["payload_preview"] = render_payload_preview(
            getattr(record, "payload_preview", None),
            max_chars=self._payload_preview_chars,
            redaction_mode=self._redaction_mode,
        )
        return json.dumps(entry, ensure_ascii=False)


def _parse_level(level_text: str, default: int = logging.INFO) -> int:
    level = logging.getLevelName(str(level_text).upper())
    return level if isinstance(level, int) else default


def _build_sinks(settings: Settings, log_file: Path, formatter: logging.Formatter) -> list[logging.Handler]:
    file_handler = RotatingFileHandler(
        str(log_file),
        maxBytes=settings.log_max_bytes,
        backupCount=settings.log_backup_count,
        encoding="utf-8",
    )
    file_handler.setLevel(logging.DEBUG)
    stderr_handler = logging.StreamHandler(stream=sys.stderr)
    stderr_handler.setLevel(_parse_level(settings.log_stderr_level, logging.ERROR))
    for handler in (file_handler, stderr_handler):
        handler.setFormatter(formatter)
    return [file_handler, stderr_handler]


def configure_logging(settings: Settings, *, process_role: str) -> Path:
    """为当前进程角色（api/worker/beat）初始化日志，返回 JSONL 文件路径。

    业务线程只把记录放进内存队列，由 QueueListener 线程负责格式化与写文件。
    """
    global _listener
    shutdown_logging()

    log_root = settings.log_dir if settings.log_dir.is_absolute() else (Path.cwd() / settings.log_dir).resolve()
    role_dir = log_root / process_role
    role_dir.mkdir(parents=True, exist_ok=True)
    log_file = role_dir / "skillsync.jsonl"

    records: SimpleQueue[logging.LogRecord] = SimpleQueue()
    logging.config.dictConfig(
        {
            "version": 1,
            "disable_existing_loggers": False,
            "handlers": {"queue": {"class": "logging.handlers.QueueHandler", "queue": records}},
            "root": {"level": "DEBUG", "handlers": ["queue"]},
        }
    )
    queue_handler = next((item for item in logging.getLogger().handlers if isinstance(item, QueueHandler)), None)
    if queue_handler is None:
        raise RuntimeError("queue logging handler is not configured")
    queue_handler.addFilter(ContextInjectionFilter())
    queue_handler.addFilter(
        DebugRoutingFilter(
            min_level=_parse_level(settings.log_level),
            debug_modules=set(settings.log_debug_modules_list()),
            debug_job_ids=set(settings.log_debug_job_ids_list()),
            debug_job_types=set(settings.log_debug_job_types_list()),
        )
    )

    formatter = StructuredJsonFormatter(
        service="skillsync",
        process_role=process_role,
        redaction_mode=settings.log_redaction_mode,
        payload_preview_chars=settings.log_payload_preview_chars,
    )
    _listener = QueueListener(records, *_build_sinks(settings, log_file, formatter), respect_handler_level=True)
    _listener.start()

    for name, level in _NOISY_LOGGERS.items():
        logging.getLogger(name).setLevel(level)
    return log_file


def shutdown_logging() -> None:
    """停止监听线程（会先写完队列中剩余记录）并关闭文件句柄。"""
    global _listener
    listener, _listener = _listener, None
    if listener is None:
        return
    listener.stop()
    for handler in listener.handlers:
        try:
            handler.close()
        except OSError:
            continue
