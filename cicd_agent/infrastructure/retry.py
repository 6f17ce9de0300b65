"""外部调用的有限重试与指数退避。"""

from __future__ import annotations

import time
from dataclasses import dataclass
from typing import Callable, Optional, TypeVar

from cicd_agent.domain.cancellation import CancelToken
from cicd_agent.domain.exceptions import ExternalServiceError
from cicd_agent.infrastructure.logging.logger import logger

T = TypeVar("T")


@dataclass(frozen=True)
class RetryPolicy:
    attempts: int = 3
    backoff_initial: float = 0.5
    backoff_factor: float = 2.0
    backoff_max: float = 8.0

    @classmethod
    def from_settings(cls, cfg) -> "RetryPolicy":
        return cls(
            attempts=cfg.retry_attempts,
            backoff_initial=cfg.retry_backoff_initial,
            backoff_factor=cfg.retry_backoff_factor,
            backoff_max=cfg.retry_backoff_max,
        )

    def delay(self, retries: int) -> float:
        return min(self.backoff_initial * (self.backoff_factor ** retries), self.backoff_max)


def call_with_retries(
    fn: Callable[[], T],
    *,
    policy: RetryPolicy,
    operation: str,
    cancel: Optional[CancelToken] = None,
    sleep: Callable[[float], None] = time.sleep,
) -> T:
    """执行 fn，对 retryable 的 ExternalServiceError 做指数退避重试。

    非外部服务错误、不可重试的错误以及最后一次失败都会原样抛出。
    取消信号会中断退避等待，并抛出最后一次的错误。
    """

    retries = 0
    while True:
        try:
            return fn()
        except ExternalServiceError as exc:
            if not exc.retryable or retries + 1 >= policy.attempts:
                raise
            sleep_s = policy.delay(retries)
            logger.warning(
                "External call failed; retrying in %ss (attempt %s/%s)",
                sleep_s,
                retries + 2,
                policy.attempts,
                extra={"extra": {"operation": operation, "code": exc.code, "error": exc.message}},
            )
            if cancel is not None:
                if cancel.wait(sleep_s):
                    raise
            else:
                sleep(sleep_s)
            retries += 1
