"""错误分类：作业失败值对象、处理器异常体系与外部异常到失败分类的映射。"""

from __future__ import annotations

from dataclasses import dataclass, replace
from datetime import datetime, timezone
from email.utils import parsedate_to_datetime

import httpx

from skillsync.domain.enums import FailureKind


@dataclass(frozen=True, slots=True)
class JobFailure:
    """一次作业执行失败的显式分类结果。"""
    kind: FailureKind
    message: str
    code: str = "internal"
    retry_after_seconds: float | None = None

    @property
    def is_retryable(self) -> bool:
        return self.kind in {FailureKind.retryable, FailureKind.rate_limited}

    def as_fatal(self, reason: str) -> "JobFailure":
        """降级为不可重试失败，保留原始错误码。"""
        return replace(self, kind=FailureKind.fatal, message=f"{reason}: {self.message}", retry_after_seconds=None)

    @classmethod
    def retryable(cls, message: str, *, code: str = "transient") -> "JobFailure":
        return cls(kind=FailureKind.retryable, message=message, code=code)

    @classmethod
    def rate_limited(cls, message: str, retry_after_seconds: float | None) -> "JobFailure":
        return cls(
            kind=FailureKind.rate_limited,
            message=message,
            code="rate_limited",
            retry_after_seconds=retry_after_seconds,
        )

    @classmethod
    def fatal(cls, message: str, *, code: str = "internal") -> "JobFailure":
        return cls(kind=FailureKind.fatal, message=message, code=code)


class PayloadValidationError(ValueError):
    """提交作业时载荷不合法，同步拒绝且不入队。"""


class UnknownJobError(KeyError):
    """作业不存在。"""


class InvalidTransitionError(RuntimeError):
    """作业状态流转不符合状态机约束。"""


class ReconcileConflictError(RuntimeError):
    """技能档案乐观并发重试次数耗尽。"""


class JobError(Exception):
    """处理器主动抛出的分类异常基类。"""

    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = message

    @property
    def failure(self) -> JobFailure:
        return JobFailure.fatal(self.message)


class RetryableJobError(JobError):
    """瞬时失败：网络超时、上游 5xx 等。"""

    def __init__(self, message: str, *, code: str = "transient") -> None:
        super().__init__(message)
        self.code = code

    @property
    def failure(self) -> JobFailure:
        return JobFailure.retryable(self.message, code=self.code)


class RateLimitedJobError(JobError):
    """上游限流，可携带服务端给出的 retry-after 提示。"""

    def __init__(self, message: str, retry_after_seconds: float | None = None) -> None:
        super().__init__(message)
        self.retry_after_seconds = retry_after_seconds

    @property
    def failure(self) -> JobFailure:
        return JobFailure.rate_limited(self.message, self.retry_after_seconds)


class FatalJobError(JobError):
    """不可重试失败：鉴权失效、资源不存在或逻辑错误。"""

    def __init__(self, message: str, *, code: str = "internal") -> None:
        super().__init__(message)
        self.code = code

    @property
    def failure(self) -> JobFailure:
        return JobFailure.fatal(self.message, code=self.code)


def parse_retry_after(value: str | None, *, now: datetime | None = None) -> float | None:
    """解析 Retry-After 头，兼容秒数与 HTTP-date 两种格式。"""
    if value is None:
        return None
    text = value.strip()
    if not text:
        return None
    try:
        return max(0.0, float(text))
    except ValueError:
        pass
    try:
        target = parsedate_to_datetime(text)
    except (TypeError, ValueError):
        return None
    if target.tzinfo is None:
        target = target.replace(tzinfo=timezone.utc)
    current = now or datetime.now(timezone.utc)
    return max(0.0, (target - current).total_seconds())


def _rate_limit_reset_seconds(response: httpx.Response, now: datetime | None) -> float | None:
    """解析 GitHub 风格的 X-RateLimit-Reset（epoch 秒）。"""
    reset = response.headers.get("X-RateLimit-Reset")
    if not reset:
        return None
    try:
        reset_at = datetime.fromtimestamp(float(reset), tz=timezone.utc)
    except (TypeError, ValueError, OverflowError):
        return None
    current = now or datetime.now(timezone.utc)
    return max(0.0, (reset_at - current).total_seconds())


def classify_exception(exc: BaseException, *, now: datetime | None = None) -> JobFailure:
    """将处理器抛出的异常映射为显式失败分类；未知异常按逻辑错误处理。"""
    if isinstance(exc, JobError):
        return exc.failure
    if isinstance(exc, PayloadValidationError):
        return JobFailure.fatal(str(exc), code="validation")
    if isinstance(exc, httpx.HTTPStatusError):
        response = exc.response
        status_code = response.status_code
        message = f"{exc.request.method} {exc.request.url} -> {status_code}"
        if status_code == 429:
            return JobFailure.rate_limited(message, parse_retry_after(response.headers.get("Retry-After"), now=now))
        # GitHub 用 403 + 剩余额度 0 表示限流，需与真正的权限失败区分。
        if status_code == 403 and response.headers.get("X-RateLimit-Remaining") == "0":
            retry_after = parse_retry_after(response.headers.get("Retry-After"), now=now)
            if retry_after is None:
                retry_after = _rate_limit_reset_seconds(response, now)
            return JobFailure.rate_limited(message, retry_after)
        if status_code in {401, 403}:
            return JobFailure.fatal(message, code="auth")
        if status_code in {404, 410}:
            return JobFailure.fatal(message, code="not_found")
        if status_code in {400, 409, 422}:
            return JobFailure.fatal(message, code="validation")
        if status_code in {408, 425} or status_code >= 500:
            return JobFailure.retryable(message)
        return JobFailure.fatal(message, code="upstream")
    if isinstance(exc, (httpx.TimeoutException, httpx.NetworkError, httpx.RemoteProtocolError)):
        return JobFailure.retryable(f"{type(exc).__name__}: {exc}")
    if isinstance(exc, TimeoutError):
        return JobFailure.retryable(str(exc) or "timeout", code="timeout")
    return JobFailure.fatal(f"{type(exc).__name__}: {exc}")
