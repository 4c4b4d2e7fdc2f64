"""数据库会话管理：构建引擎（SQLite 下开启 WAL 与写锁等待）、建表并提供会话工厂。"""

from __future__ import annotations

import logging
import time
from typing import Any

from sqlalchemy import Engine, create_engine, event
from sqlalchemy.orm import Session, sessionmaker

from skillsync.infra.db.models import Base

logger = logging.getLogger(__name__)

_SQLITE_BUSY_TIMEOUT_MS = 30_000


def _enable_sqlite_pragmas(dbapi_connection: Any, _connection_record: Any) -> None:
    # 多个工作线程同时领取与回报作业；WAL 让读不阻塞写，busy_timeout 让写锁排队等待。
    cursor = dbapi_connection.cursor()
    try:
        cursor.execute("PRAGMA journal_mode=WAL")
        cursor.execute(f"PRAGMA busy_timeout={_SQLITE_BUSY_TIMEOUT_MS}")
        cursor.execute("PRAGMA foreign_keys=ON")
    finally:
        cursor.close()


def build_engine(database_url: str, **kwargs: Any) -> Engine:
    """按连接串创建引擎；SQLite 连接允许跨线程使用。"""
    is_sqlite = database_url.startswith("sqlite")
    connect_args: dict[str, Any] = dict(kwargs.pop("connect_args", {}))
    if is_sqlite:
        connect_args.setdefault("check_same_thread", False)
        connect_args.setdefault("timeout", _SQLITE_BUSY_TIMEOUT_MS / 1000)
    engine = create_engine(database_url, pool_pre_ping=True, connect_args=connect_args, **kwargs)
    if is_sqlite:
        event.listen(engine, "connect", _enable_sqlite_pragmas)
    return engine


def build_session_factory(engine: Engine) -> sessionmaker[Session]:
    # 仓储在会话关闭后仍返回 ORM 对象，提交后不能过期其属性。
    return sessionmaker(bind=engine, autoflush=False, expire_on_commit=False)


def init_db(engine: Engine) -> None:
    """按 ORM 元数据建表（已存在的表跳过），记录耗时。"""
    started = time.perf_counter()
    base_extra = {"external_service": "database", "op": "create_all", "payload_preview": {"dialect": engine.dialect.name}}
    logger.info("db init started", extra={"event": "db.init.started", **base_extra})
    try:
        Base.metadata.create_all(bind=engine)
    except Exception as exc:
        logger.exception(
            "db init failed",
            extra={
                "event": "db.init.failed",
                **base_extra,
                "duration_ms": round((time.perf_counter() - started) * 1000, 2),
                "error_type": type(exc).__name__,
                "error": str(exc),
            },
        )
        raise
    logger.info(
        "db init succeeded",
        extra={
            "event": "db.init.succeeded",
            **base_extra,
            "duration_ms": round((time.perf_counter() - started) * 1000, 2),
            "payload_preview": {"dialect": engine.dialect.name, "tables": sorted(Base.metadata.tables)},
        },
    )
