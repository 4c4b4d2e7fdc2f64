"""FastAPI 应用入口：生命周期（建表、可选的进程内 worker）、请求 ID 中间件、健康检查与路由挂载。"""

from __future__ import annotations

import logging
import time
from collections.abc import AsyncIterator, Awaitable, Callable
from contextlib import asynccontextmanager
from uuid import uuid4

from fastapi import FastAPI, Request, Response
from fastapi.middleware.cors import CORSMiddleware

from skillsync.api.router import api_router
from skillsync.application.container import get_engine, get_worker_pool, shutdown_container_resources
from skillsync.config import Settings, get_settings
from skillsync.infra.logging.context import bind_log_context
from skillsync.infra.logging.setup import configure_logging, shutdown_logging

settings = get_settings()
configure_logging(settings, process_role="api")
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(_app: FastAPI) -> AsyncIterator[None]:
    """启动时建表，按配置拉起进程内线程池；退出时停池并释放容器资源。"""
    get_engine()
    if settings.embedded_worker_enabled:
        get_worker_pool().start()
    logger.info(
        "api startup ready",
        extra={"event": "api.startup.succeeded", "payload_preview": {"embedded_worker": settings.embedded_worker_enabled}},
    )
    try:
        yield
    finally:
        logger.info("api shutdown begin", extra={"event": "api.shutdown.started"})
        shutdown_container_resources()
        shutdown_logging()


async def _request_id_middleware(request: Request, call_next: Callable[[Request], Awaitable[Response]]) -> Response:
    """透传或生成 X-Request-Id，绑定到日志上下文并回写响应头。"""
    request_id = request.headers.get("X-Request-Id") or uuid4().hex
    op = f"{request.method} {request.url.path}"
    started = time.perf_counter()
    with bind_log_context(request_id=request_id):
        try:
            response = await call_next(request)
        except Exception as exc:
            logger.exception(
                "http request failed",
                extra={
                    "event": "http.request.failed",
                    "op": op,
                    "duration_ms": round((time.perf_counter() - started) * 1000, 2),
                    "error_type": type(exc).__name__,
                },
            )
            raise
        logger.info(
            "http request completed",
            extra={
                "event": "http.request.completed",
                "op": op,
                "duration_ms": round((time.perf_counter() - started) * 1000, 2),
                "status_code": response.status_code,
            },
        )
    response.headers["X-Request-Id"] = request_id
    return response


def create_app(app_settings: Settings) -> FastAPI:
    application = FastAPI(title=app_settings.app_name, lifespan=lifespan)
    origins = app_settings.cors_allowed_origins_list()
    if origins:
        application.add_middleware(
            CORSMiddleware,
            allow_origins=origins,
            allow_methods=["GET", "POST"],
            allow_headers=["*"],
        )
    application.middleware("http")(_request_id_middleware)

    @application.get("/health")
    def health() -> dict[str, str | bool]:
        return {"status": "ok", "embedded_worker": app_settings.embedded_worker_enabled}

    application.include_router(api_router)
    return application


app = create_app(settings)
