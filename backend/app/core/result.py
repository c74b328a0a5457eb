"""
尽力而为步骤的返回值
图片获取、通知发送这类步骤失败时返回 error 而不是抛异常，
由编排方决定丢弃错误、继续流程
"""

from dataclasses import dataclass
from typing import Generic, Optional, TypeVar

T = TypeVar("T")


@dataclass(frozen=True)
class StepResult(Generic[T]):
    value: Optional[T] = None
    error: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.error is None

    @classmethod
    def success(cls, value: T) -> "StepResult[T]":
        return cls(value=value)

    @classmethod
    def failure(cls, error: str) -> "StepResult[T]":
        return cls(error=error or "unknown error")

    def unwrap_or(self, default: T) -> T:
        """成功返回结果值，失败返回默认值（错误被有意丢弃）"""
        return self.value if self.ok else default
