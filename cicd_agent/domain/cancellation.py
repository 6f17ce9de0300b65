"""会话级取消信号。"""

import threading

from .exceptions import TurnCancelledError


class CancelToken:
    """外部取消信号，在编排器的每个挂起点检查。

    cancel() 可以从任意线程调用；已经在执行的工具不会被强行中断，
    只在下一个挂起点生效。
    """

    def __init__(self) -> None:
        self._event = threading.Event()
        self.reason = ""

    def cancel(self, reason: str = "cancelled by caller") -> None:
        self.reason = reason
        self._event.set()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def wait(self, timeout: float) -> bool:
        """最多等待 timeout 秒，被取消时提前返回 True。"""

        return self._event.wait(timeout)

    def raise_if_cancelled(self, where: str = "") -> None:
        if self._event.is_set():
            raise TurnCancelledError(message=f"Turn cancelled: {self.reason}", where=where)
