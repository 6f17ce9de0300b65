"""CI/CD Agent 顶层包。

该包提供由 LLM 驱动的 CI/CD 编排 Agent 的核心实现，
包括配置加载、领域模型、Provider 适配、工具注册表、
动作执行器、对话编排与会话持久化等能力。
"""

from cicd_agent.api.service import run_turn

__all__ = ["run_turn"]
