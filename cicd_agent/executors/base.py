"""执行器抽象。

每个工具背后都是一个 ActionExecutor，分两步完成一次调用：

1. validate(args): 用描述符的 JSON Schema 校验后端给出的原始参数，
   再转换成类型化的参数对象；失败抛出 ValidationError。
2. execute(validated, ctx): 真正访问外部系统，返回可 JSON 序列化的 dict。

执行器不持有全局客户端，所有外部协作方都通过构造函数注入。
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, Generic, List, Optional, TypeVar

from jsonschema import Draft202012Validator

from cicd_agent.domain.cancellation import CancelToken
from cicd_agent.domain.exceptions import ValidationError
from cicd_agent.infrastructure.retry import RetryPolicy, call_with_retries
from cicd_agent.tools.definitions import ToolDef, ToolParam

A = TypeVar("A")
T = TypeVar("T")


@dataclass
class ExecutionContext:
    """单次工具调用的上下文。"""

    call_id: str
    cancel: CancelToken = field(default_factory=CancelToken)
    trace_id: str = ""


class ActionExecutor(ABC, Generic[A]):
    """工具执行器基类。"""

    name: str
    description: str
    params: Dict[str, ToolParam]

    def __init__(self, retry_policy: Optional[RetryPolicy] = None) -> None:
        self._retry_policy = retry_policy or RetryPolicy()
        self._validator = Draft202012Validator(self.descriptor().parameters_schema())

    def descriptor(self) -> ToolDef:
        return ToolDef(name=self.name, description=self.description, params=self.params, executor=self)

    def validate(self, args: Dict[str, Any]) -> A:
        if not isinstance(args, dict):
            raise ValidationError(
                code="INVALID_ARGUMENTS",
                message=f"{self.name}: arguments must be a JSON object",
                tool=self.name,
            )
        errors: List[str] = []
        for err in sorted(self._validator.iter_errors(args), key=lambda e: list(e.absolute_path)):
            location = "/".join(str(p) for p in err.absolute_path) or "<root>"
            errors.append(f"{location}: {err.message}")
        if errors:
            raise ValidationError(
                code="INVALID_ARGUMENTS",
                message=f"{self.name}: invalid arguments",
                tool=self.name,
                errors=errors,
            )
        return self._coerce(args)

    @abstractmethod
    def _coerce(self, args: Dict[str, Any]) -> A:
        """把已通过 schema 校验的参数转换成类型化对象，可补充跨字段校验。"""

    @abstractmethod
    def execute(self, validated: A, ctx: ExecutionContext) -> Dict[str, Any]:
        ...

    def _external(self, operation: str, fn: Callable[[], T], ctx: Optional[ExecutionContext] = None) -> T:
        """外部调用统一入口：对可重试错误做有限退避重试。"""

        return call_with_retries(
            fn,
            policy=self._retry_policy,
            operation=f"{self.name}.{operation}",
            cancel=ctx.cancel if ctx else None,
        )
