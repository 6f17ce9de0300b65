"""工具批次执行器。

编排器每一轮把后端请求的全部 ToolCall 交给 ToolExecutor.execute_batch：

- 先整体校验批次：correlation id 不得重复，工具名必须已注册；
  任何一项不满足都会在执行前中止本轮，避免半途修改外部世界。
- 各调用互不共享状态，使用线程池并发执行。
- 单个调用失败不会中止批次：业务异常与意外异常都会转成
  ok=False 的 ToolResult，照常回传给后端。
- 返回的结果与请求一一对应、顺序一致，缺失任何一个即为协议错误。
- 批次超时后，未开始的调用被取消（outcome=not_started）；已开始的调用
  无法中断，结果标记为 outcome=unknown，后端需重新读取外部状态。
"""

from __future__ import annotations

import json
import time
from concurrent.futures import FIRST_COMPLETED, Future, ThreadPoolExecutor, wait
from typing import Any, Callable, Dict, List, Optional

from cicd_agent.domain.cancellation import CancelToken
from cicd_agent.domain.exceptions import BusinessError, ToolProtocolError, TurnCancelledError
from cicd_agent.executors.base import ExecutionContext
from cicd_agent.infrastructure.logging.logger import logger
from .definitions import ToolCall, ToolResult
from .registry import ToolRegistry

POLL_INTERVAL = 0.05


def error_result(call: ToolCall, error: Dict[str, Any]) -> ToolResult:
    return ToolResult(call_id=call.id, name=call.name, ok=False, error=error)


class ToolExecutor:
    def __init__(
        self,
        registry: ToolRegistry,
        max_workers: int = 8,
        batch_timeout: float = 1800.0,
        clock: Callable[[], float] = time.monotonic,
    ):
        self._registry = registry
        self._max_workers = max_workers
        self._batch_timeout = batch_timeout
        self._clock = clock

    def execute(self, call: ToolCall, ctx: Optional[ExecutionContext] = None) -> ToolResult:
        """同步执行单个调用，失败转成结构化结果。"""

        descriptor = self._registry.resolve(call.name)
        ctx = ctx or ExecutionContext(call_id=call.id)
        started = time.time()
        try:
            validated = descriptor.executor.validate(call.arguments)
            output = descriptor.executor.execute(validated, ctx)
            result = ToolResult(call_id=call.id, name=call.name, ok=True, output=output)
        except BusinessError as exc:
            result = error_result(call, exc.to_dict())
        except Exception as exc:  # noqa: BLE001 - 需要把异常转换为工具错误
            logger.exception(
                "Tool raised unexpected error",
                extra={"extra": {"tool": call.name, "call_id": call.id, "trace_id": ctx.trace_id}},
            )
            result = error_result(call, {"code": "TOOL_EXECUTION_ERROR", "message": str(exc)})
        logger.info(
            "Tool finished",
            extra={"extra": {
                "tool": call.name,
                "call_id": call.id,
                "ok": result.ok,
                "error_code": (result.error or {}).get("code"),
                "elapsed_seconds": round(time.time() - started, 2),
                "trace_id": ctx.trace_id,
            }},
        )
        return result

    def execute_batch(
        self,
        calls: List[ToolCall],
        cancel: Optional[CancelToken] = None,
        trace_id: str = "",
    ) -> List[ToolResult]:
        cancel = cancel or CancelToken()
        self._check_batch(calls)
        if not calls:
            return []

        pool = ThreadPoolExecutor(
            max_workers=min(self._max_workers, len(calls)),
            thread_name_prefix="tool",
        )
        futures: Dict[Future, ToolCall] = {}
        try:
            for call in calls:
                ctx = ExecutionContext(call_id=call.id, cancel=cancel, trace_id=trace_id)
                futures[pool.submit(self.execute, call, ctx)] = call
            results = self._collect(futures, cancel)
        finally:
            pool.shutdown(wait=False, cancel_futures=True)

        ordered = [results[call.id] for call in calls if call.id in results]
        if len(ordered) != len(calls):
            missing = [call.id for call in calls if call.id not in results]
            raise ToolProtocolError("Tool batch is incomplete", missing=missing)
        return ordered

    def _check_batch(self, calls: List[ToolCall]) -> None:
        seen = set()
        for call in calls:
            if not call.id or call.id in seen:
                raise ToolProtocolError(
                    f"Duplicate or empty tool call id {call.id!r}",
                    call_id=call.id,
                )
            seen.add(call.id)
            self._registry.resolve(call.name)

    def _collect(self, futures: Dict[Future, ToolCall], cancel: CancelToken) -> Dict[str, ToolResult]:
        results: Dict[str, ToolResult] = {}
        pending = set(futures)
        deadline = self._clock() + self._batch_timeout
        while pending:
            if cancel.cancelled:
                self._drain_cancelled(pending)
                raise TurnCancelledError(
                    message=f"Turn cancelled during tool batch: {cancel.reason}",
                    completed=sorted(results),
                )
            remaining = deadline - self._clock()
            if remaining <= 0:
                for fut in pending:
                    call = futures[fut]
                    if fut.done():
                        results[call.id] = fut.result()
                        continue
                    results[call.id] = self._timeout_result(call, started=not fut.cancel())
                break
            done, pending = wait(pending, timeout=min(POLL_INTERVAL, remaining), return_when=FIRST_COMPLETED)
            for fut in done:
                results[futures[fut].id] = fut.result()
        return results

    def _timeout_result(self, call: ToolCall, started: bool) -> ToolResult:
        # 已开始的调用仍在后台运行，外部副作用可能已经或即将生效
        outcome = "unknown" if started else "not_started"
        logger.warning(
            "Tool timed out",
            extra={"extra": {"tool": call.name, "call_id": call.id, "outcome": outcome}},
        )
        message = f"{call.name} did not finish within {self._batch_timeout}s"
        if started:
            message += "; it may still complete, re-read the target state before retrying"
        return error_result(call, {"code": "TOOL_TIMEOUT", "message": message, "outcome": outcome})

    @staticmethod
    def _drain_cancelled(pending) -> None:
        # 未开始的调用直接取消，已在执行的调用等待其原子地完成
        running = [fut for fut in pending if not fut.cancel()]
        if running:
            wait(running)


def summarize_arguments(arguments: Any, limit: int = 160) -> str:
    text = json.dumps(arguments, ensure_ascii=False, sort_keys=True, default=str)
    return text if len(text) <= limit else text[:limit] + "..."
