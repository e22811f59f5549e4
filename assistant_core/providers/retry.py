"""带指数退避与随机抖动的异步重试，基于 tenacity。"""

import asyncio
import logging
from typing import Awaitable, Callable, Optional, TypeVar

from tenacity import (
    AsyncRetrying,
    RetryCallState,
    RetryError,
    retry_if_exception,
    stop_after_attempt,
    wait_exponential,
    wait_random,
)

from assistant_core.domain.exceptions import BusinessError, RetriesExhaustedError
from assistant_core.infrastructure.logging.logger import log_event


T = TypeVar("T")

MAX_RETRIES = 3
BASE_DELAY = 0.1
MAX_JITTER = 0.1


def backoff_wait(base_delay: float = BASE_DELAY, max_jitter: float = MAX_JITTER):
    """第 n 次失败后等待 2^n * base + [0, max_jitter) 秒。

    tenacity 的 wait_exponential 按 multiplier * 2^(n-1) 计算，所以 multiplier 取 2 * base。
    """

    return wait_exponential(multiplier=2 * base_delay, exp_base=2) + wait_random(0, max_jitter)


def is_retryable(exc: BaseException) -> bool:
    # 取消等 BaseException 不重试，原样抛出
    if not isinstance(exc, Exception):
        return False
    if isinstance(exc, BusinessError):
        return exc.retryable
    return True


def _log_before_sleep(label: Optional[str]) -> Callable[[RetryCallState], None]:
    def _hook(state: RetryCallState) -> None:
        exc = state.outcome.exception() if state.outcome else None
        delay = state.next_action.sleep if state.next_action else 0.0
        log_event(
            logging.WARNING,
            "Retrying after failure",
            label=label,
            attempt=state.attempt_number,
            delay_seconds=round(delay, 3),
            error=str(exc),
        )

    return _hook


async def retry(
    operation: Callable[[], Awaitable[T]],
    *,
    max_retries: int = MAX_RETRIES,
    base_delay: float = BASE_DELAY,
    max_jitter: float = MAX_JITTER,
    sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    label: Optional[str] = None,
) -> T:
    """调用 *operation*，失败时按退避策略重试。

    Parameters
    ----------
    operation:
        无参可调用对象，每次调用返回一个新的 awaitable（传工厂，不要传协程本身）。
    max_retries:
        首次调用之后最多重试几次，总调用次数不超过 1 + max_retries。
    sleep:
        退避等待函数，测试里可以替换掉。

    Raises
    ------
    BusinessError
        retryable=False 的错误立即原样抛出，不再重试。
    RetriesExhaustedError
        重试用尽，__cause__ / last_error 为最后一次的底层错误。
    """

    retrying = AsyncRetrying(
        stop=stop_after_attempt(1 + max_retries),
        wait=backoff_wait(base_delay, max_jitter),
        retry=retry_if_exception(is_retryable),
        before_sleep=_log_before_sleep(label),
        sleep=sleep,
    )
    try:
        async for attempt in retrying:
            with attempt:
                return await operation()
    except RetryError as e:
        last_error = e.last_attempt.exception()
        raise RetriesExhaustedError(
            attempts=e.last_attempt.attempt_number,
            last_error=last_error,
            label=label or "",
        ) from last_error
