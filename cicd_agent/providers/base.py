"""Provider 抽象接口。

编排器不直接依赖具体厂商的 HTTP SDK，而是依赖此协议：

- 每类接口实现一个 ProviderClient（如 ChatCompletionsClient）。
- 负责：将 ChatRequest 转成具体 API 请求，并把响应 JSON 解析为 ChatResult。

测试中用脚本化的假后端实现同一协议即可驱动整个编排循环。
"""

from typing import Protocol

from cicd_agent.domain.models import ChatRequest, ChatResult


class ProviderClient(Protocol):
    """LLM Provider 客户端协议。

    - name: Provider 名称，用于日志/统计。
    - chat(req): 执行一次对话调用，返回统一的 ChatResult。
    """

    name: str

    def chat(self, req: ChatRequest) -> ChatResult:
        ...
