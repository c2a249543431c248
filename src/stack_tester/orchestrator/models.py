"""Data models for the orchestrator module."""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import List, Optional


class StackTestError(RuntimeError):
    """Base class of every entry in an orchestration error list."""


class StackTimeoutError(StackTestError):
    """The deadline passed before the stack reached a terminal state."""


class StackFailedError(StackTestError):
    """The stack root (or the service itself) reported an unrecoverable failure."""


class MemberFailedError(StackTestError):
    """A stack member reported an explicit *_failed state."""

    def __init__(self, message: str, member_id: str, member_name: str) -> None:
        super().__init__(message)
        self.member_id = member_id
        self.member_name = member_name


class StackStuckError(StackTestError):
    """Nothing is in flight but the stack never finished deploying."""


class TriggerError(StackTestError):
    """A validate/undeploy command could not be issued."""


class DiagnosticsError(StackTestError):
    """Diagnostic text attached after a root cause (job logs, unresolved references)."""


class ResyncError(StackTestError):
    """A best-effort sync of a stalled member failed."""


class MemberClass(Enum):
    """部署轮询中对成员状态的分类"""
    DEPLOYED = "deployed"           # 已部署
    IN_FLIGHT = "in_flight"         # 正在验证/部署（含 approved、validated）
    AWAITING = "awaiting"           # 预期中的等待状态
    NUDGED = "nudged"               # 意外停在 draft，已重新触发 validate
    TRANSIENT = "transient"         # 数据缺失或未知，乐观地继续轮询
    FAILED = "failed"               # 明确失败
    IDLE = "idle"                   # 没有任何进展的其他状态

    @property
    def is_active(self) -> bool:
        return self in (
            MemberClass.IN_FLIGHT,
            MemberClass.AWAITING,
            MemberClass.NUDGED,
            MemberClass.TRANSIENT,
        )


@dataclass
class DeployOutcome:
    """Result of one deploy orchestration run."""

    stack_name: str
    completed: bool = False
    errors: List[StackTestError] = field(default_factory=list)
    # 尽力而为的附带错误（如 sync 失败），仅在运行失败时附加到 errors 之后
    warnings: List[StackTestError] = field(default_factory=list)
    iterations: int = 0
    elapsed_seconds: float = 0.0

    @property
    def succeeded(self) -> bool:
        return self.completed and not self.errors

    def error_list(self) -> List[StackTestError]:
        if not self.errors:
            return []
        return list(self.errors) + list(self.warnings)


@dataclass
class UndeployOutcome:
    """Result of one undeploy orchestration run."""

    stack_name: str
    triggered: bool = False
    completed: bool = False
    errors: List[StackTestError] = field(default_factory=list)
    warnings: List[StackTestError] = field(default_factory=list)
    iterations: int = 0
    elapsed_seconds: float = 0.0
    detail: Optional[str] = None

    @property
    def succeeded(self) -> bool:
        return not self.errors

    def error_list(self) -> List[StackTestError]:
        if not self.errors:
            return []
        return list(self.errors) + list(self.warnings)


def format_errors(errors: List[StackTestError]) -> str:
    """Join an error list the way callers are expected to print it."""
    return "\n".join(f"  {err}" for err in errors)
