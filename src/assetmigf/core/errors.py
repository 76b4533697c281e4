"""
迁移异常与错误分类
"""
from enum import Enum
from typing import Optional


class ErrorKind(str, Enum):
    NOT_FOUND = "not_found"
    PERMISSION_DENIED = "permission_denied"
    INVALID = "invalid"
    CONSTRAINT = "constraint"
    RETRYABLE = "retryable"


FATAL_KINDS = {
    ErrorKind.NOT_FOUND,
    ErrorKind.PERMISSION_DENIED,
    ErrorKind.INVALID,
    ErrorKind.CONSTRAINT,
}

# 仅用于系统外部（驱动、第三方库）抛出的未标记异常
FATAL_PATTERNS = [
    ("not found", ErrorKind.NOT_FOUND),
    ("does not exist", ErrorKind.NOT_FOUND),
    ("permission denied", ErrorKind.PERMISSION_DENIED),
    ("access denied", ErrorKind.PERMISSION_DENIED),
    ("constraint violation", ErrorKind.CONSTRAINT),
    ("invalid", ErrorKind.INVALID),
]


class MigrationError(Exception):
    """迁移错误基类，携带错误类别"""

    kind = ErrorKind.RETRYABLE

    def __init__(self, message: str = "", kind: Optional[ErrorKind] = None):
        super().__init__(message)
        if kind is not None:
            self.kind = kind

    @property
    def is_fatal(self) -> bool:
        return self.kind in FATAL_KINDS


class PathTraversalError(MigrationError):
    kind = ErrorKind.INVALID


class LockAcquireError(MigrationError):
    """另一个迁移正在运行"""
    kind = ErrorKind.CONSTRAINT


class BackupVerificationError(MigrationError):
    kind = ErrorKind.INVALID


class UnknownPhaseError(MigrationError):
    kind = ErrorKind.INVALID


class MigrationCancelled(MigrationError):
    """操作员在确认点取消"""
    kind = ErrorKind.INVALID


class RetryExhaustedError(MigrationError):
    """重试次数耗尽"""
    kind = ErrorKind.CONSTRAINT

    def __init__(self, operation_id: str, last_error: BaseException, attempts: int = 0):
        super().__init__(
            f"操作 {operation_id} 在 {attempts} 次尝试后仍失败: {last_error}"
        )
        self.operation_id = operation_id
        self.last_error = last_error
        self.attempts = attempts


def classify_error(error: BaseException) -> ErrorKind:
    """判断异常类别

    已标记的 MigrationError 直接使用其类别；其余按异常类型和消息子串判断。
    """
    if isinstance(error, MigrationError):
        return error.kind
    if isinstance(error, FileNotFoundError):
        return ErrorKind.NOT_FOUND
    if isinstance(error, PermissionError):
        return ErrorKind.PERMISSION_DENIED

    message = str(error).lower()
    for pattern, kind in FATAL_PATTERNS:
        if pattern in message:
            return kind
    return ErrorKind.RETRYABLE


def is_fatal_error(error: BaseException) -> bool:
    return classify_error(error) in FATAL_KINDS
