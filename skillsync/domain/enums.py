"""领域枚举定义：统一作业类型、作业状态、失败分类与技能等级取值。"""

from __future__ import annotations

from enum import Enum


class JobType(str, Enum):
    """后台作业类型枚举，每种类型对应一个独立队列。"""
    org_sync = "org-sync"
    employee_sync = "employee-sync"
    skill_detection = "skill-detection"
    certificate_generation = "certificate-generation"
    email_send = "email-send"
    webhook_process = "webhook-process"
    cleanup = "cleanup"


class JobStatus(str, Enum):
    """作业生命周期状态枚举。"""
    waiting = "waiting"
    active = "active"
    completed = "completed"
    # 仅用于监控视图：已失败且等待重试的 waiting 作业，状态机不会落库该值。
    failed = "failed"
    dead_lettered = "dead-lettered"


# 允许的状态流转；终态不在键中，即不可再变更。
ALLOWED_TRANSITIONS: dict[JobStatus, frozenset[JobStatus]] = {
    JobStatus.waiting: frozenset({JobStatus.active}),
    JobStatus.active: frozenset({JobStatus.completed, JobStatus.waiting, JobStatus.dead_lettered}),
}


class FailureKind(str, Enum):
    """作业失败分类：决定重试与死信策略。"""
    retryable = "retryable"
    rate_limited = "rate_limited"
    fatal = "fatal"


class SkillLevel(str, Enum):
    """技能熟练度等级，按从低到高声明。"""
    BEGINNER = "BEGINNER"
    INTERMEDIATE = "INTERMEDIATE"
    ADVANCED = "ADVANCED"
    EXPERT = "EXPERT"


class EvidenceKind(str, Enum):
    """技能证据来源类别。"""
    language = "language"
    framework = "framework"
    tool = "tool"
    practice = "practice"
