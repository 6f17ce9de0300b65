"""工具数据结构定义。

这些 dataclass 描述了“工具调用”的 schema，既用于：
- 将可用工具列表暴露给 LLM（ToolDef / ToolParam）。
- 在编排器中保存和执行模型触发的工具调用（ToolCall / ToolResult）。
"""

import json
from dataclasses import dataclass, field
from typing import Dict, Any, Optional, TYPE_CHECKING

if TYPE_CHECKING:
    from cicd_agent.executors.base import ActionExecutor


@dataclass(frozen=True)
class ToolParam:
    """单个工具参数的定义。"""

    name: str
    description: str
    required: bool
    schema: Dict[str, Any]


@dataclass(frozen=True)
class ToolDef:
    """一个可供 LLM 调用的工具定义（注册表中的描述符）。"""

    name: str
    description: str
    params: Dict[str, ToolParam]
    executor: Optional["ActionExecutor"] = field(default=None, compare=False, repr=False)

    def parameters_schema(self) -> Dict[str, Any]:
        """渲染为 JSON Schema object，既发给后端也用于本地校验。"""

        properties: Dict[str, Any] = {}
        required = []
        for name, param in self.params.items():
            prop = dict(param.schema or {"type": "string"})
            if param.description:
                prop["description"] = param.description
            properties[name] = prop
            if param.required:
                required.append(name)
        return {
            "type": "object",
            "properties": properties,
            "required": required,
            "additionalProperties": False,
        }


@dataclass
class ToolCall:
    """模型发起的一次工具调用请求。"""

    id: str
    name: str
    arguments: Dict[str, Any]


@dataclass
class ToolResult:
    """工具执行结果：成功时携带 output，失败时携带结构化 error。"""

    call_id: str
    name: str
    ok: bool
    output: Dict[str, Any] = field(default_factory=dict)
    error: Optional[Dict[str, Any]] = None

    @property
    def content(self) -> str:
        """回传给推理后端的 JSON 文本。"""

        if self.ok:
            payload: Dict[str, Any] = {"ok": True, "result": self.output}
        else:
            payload = {"ok": False, "error": self.error or {}}
        return json.dumps(payload, ensure_ascii=False, sort_keys=True, default=str)
