"""日志上下文：基于 contextvars 透传请求、作业、工作线程与 Celery 任务标识。"""

from __future__ import annotations

from contextlib import contextmanager
from contextvars import ContextVar, Token
from typing import Iterator

CONTEXT_KEYS: tuple[str, ...] = ("request_id", "job_id", "job_type", "worker", "task_id")

_VARS: dict[str, ContextVar[str | None]] = {
    key: ContextVar(f"log_{key}", default=None) for key in CONTEXT_KEYS
}


def get_log_context() -> dict[str, str | None]:
    """返回当前执行上下文绑定的全部字段，未绑定的为 None。"""
    return {key: var.get() for key, var in _VARS.items()}


@contextmanager
def bind_log_context(**fields: str | None) -> Iterator[None]:
    """在 with 范围内绑定日志字段，退出时按相反顺序恢复。

    只覆盖显式传入的字段；传 None 表示在该范围内清空。
    """
    unknown = set(fields) - set(_VARS)
    if unknown:
        raise TypeError(f"unknown log context fields: {', '.join(sorted(unknown))}")
    tokens: list[tuple[ContextVar[str | None], Token[str | None]]] = [
        (_VARS[key], _VARS[key].set(value)) for key, value in fields.items()
    ]
    try:
        yield
    finally:
        for var, token in reversed(tokens):
            var.reset(token)
