"""错误恢复：带指数退避的重试"""

import time
from typing import Any, Callable, Dict, Set, TypeVar

from loguru import logger

from .errors import RetryExhaustedError, classify_error, FATAL_KINDS

T = TypeVar("T")


class ErrorRecoveryManager:
    """重试管理器

    致命错误立即抛出，不消耗重试次数；其余错误按
    base_delay * 2^(attempt-1) 退避重试，最多 max_retries 次。
    """

    def __init__(
        self,
        max_retries: int = 3,
        base_delay: float = 1.0,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.max_retries = max_retries
        self.base_delay = base_delay
        self._sleep = sleep
        # 当前进行中的重试计数，成功后清除
        self.retry_counts: Dict[str, int] = {}
        # 历史统计，仅在本实例生命周期内有效
        self.total_retries = 0
        self.operations_retried: Set[str] = set()

    def retry_operation(self, operation: Callable[[], T], operation_id: str) -> T:
        attempt = 0
        while True:
            attempt += 1
            try:
                result = operation()
            except Exception as e:
                kind = classify_error(e)
                if kind in FATAL_KINDS:
                    logger.debug(f"操作 {operation_id} 遇到致命错误({kind.value}): {e}")
                    self.retry_counts.pop(operation_id, None)
                    raise

                if attempt > self.max_retries:
                    self.retry_counts.pop(operation_id, None)
                    logger.debug(f"操作 {operation_id} 重试 {self.max_retries} 次后仍失败: {e}")
                    raise RetryExhaustedError(operation_id, e, attempt) from e

                delay = self.base_delay * (2 ** (attempt - 1))
                self.retry_counts[operation_id] = attempt
                self.total_retries += 1
                self.operations_retried.add(operation_id)
                logger.warning(
                    f"操作 {operation_id} 失败 (第 {attempt}/{self.max_retries} 次重试)，"
                    f"{delay:.1f} 秒后重试: {e}"
                )
                self._sleep(delay)
                continue

            if operation_id in self.retry_counts:
                logger.info(f"操作 {operation_id} 重试后成功")
                del self.retry_counts[operation_id]
            return result

    def get_retry_stats(self) -> Dict[str, Any]:
        return {
            'total_retries': self.total_retries,
            'operations_retried': len(self.operations_retried),
            'current_retrying': dict(self.retry_counts),
        }
