"""
错误处理与重试策略

基于 tenacity 提供两类重试：
- 步骤级重试：只重试 TransientOperationError，按步骤配置的次数和退避执行
- 冲突重试：乐观更新失败（ConcurrencyConflictError）时重新读取状态后再试

不可重试的异常（配置错误、验证错误等）直接向上抛出。
"""

from collections.abc import Awaitable, Callable
from typing import TypeVar

from tenacity import (
    AsyncRetrying,
    RetryCallState,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
    wait_none,
)

from stepline.framework.shared.exceptions import (
    ConcurrencyConflictError,
    SteplineError,
    TransientOperationError,
)
from stepline.framework.shared.logging import get_logger

logger = get_logger(__name__)

T = TypeVar("T")

# 单次退避的上限（秒）
MAX_BACKOFF_SECONDS = 60.0


def _log_retry(retry_state: RetryCallState) -> None:
    """记录一次重试"""
    exc = retry_state.outcome.exception() if retry_state.outcome else None
    logger.warning(
        "操作失败，准备重试",
        attempt=retry_state.attempt_number,
        error_type=type(exc).__name__ if exc else None,
        error=str(exc) if exc else None,
    )


def step_retrying(max_attempts: int, backoff_ms: int) -> AsyncRetrying:
    """
    构建步骤级重试器

    Args:
        max_attempts: 最大尝试次数（含首次）
        backoff_ms: 首次退避时长（毫秒），之后指数增长

    Returns:
        AsyncRetrying: 耗尽后原样抛出最后一次异常
    """
    backoff_seconds = backoff_ms / 1000
    wait = (
        wait_exponential(multiplier=backoff_seconds, min=backoff_seconds, max=MAX_BACKOFF_SECONDS)
        if backoff_seconds > 0
        else wait_none()
    )
    return AsyncRetrying(
        stop=stop_after_attempt(max(1, max_attempts)),
        wait=wait,
        retry=retry_if_exception_type(TransientOperationError),
        before_sleep=_log_retry,
        reraise=True,
    )


def conflict_retrying(max_attempts: int) -> AsyncRetrying:
    """构建乐观并发冲突重试器（不退避，立即重新读取）"""
    return AsyncRetrying(
        stop=stop_after_attempt(max(1, max_attempts)),
        wait=wait_none(),
        retry=retry_if_exception_type(ConcurrencyConflictError),
        before_sleep=_log_retry,
        reraise=True,
    )


async def with_conflict_retry(
    operation: Callable[[], Awaitable[T]], max_attempts: int
) -> T:
    """
    在冲突重试策略下执行操作

    operation 每次调用都必须重新读取当前状态。

    Raises:
        SteplineError: 重试耗尽后以内部错误的形式抛出
    """
    try:
        async for attempt in conflict_retrying(max_attempts):
            with attempt:
                return await operation()
    except ConcurrencyConflictError as e:
        logger.error("并发冲突重试耗尽", resource=e.details.get("resource"), error=e.message)
        raise SteplineError(
            f"并发冲突未能解决: {e.message}", "INTERNAL_ERROR", e.details, cause=e
        ) from e
