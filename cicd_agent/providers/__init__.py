"""LLM Provider 集成层。

该包下的模块负责：
- 定义 Provider 抽象接口 (base)。
- 维护 Provider 与模型配置 (registry)。
- 提供 OpenAI 兼容接口的具体实现 (chat_completions)。
"""

from typing import Literal, Optional

from cicd_agent.config.settings import settings
from cicd_agent.providers.base import ProviderClient
from cicd_agent.providers.chat_completions import ChatCompletionsClient
from cicd_agent.providers.registry import get_provider_config


def create_provider(name: Optional[str] = None, cfg=None) -> ProviderClient:
    """根据名称创建 Provider 实例，默认取配置中的 provider。"""

    cfg = cfg or settings
    provider_name = (name or getattr(cfg, "default_provider", "openai")).lower()
    return ChatCompletionsClient(cfg, get_provider_config(provider_name))


DefaultProviderName = Literal["openai", "kimi", "glm"]
