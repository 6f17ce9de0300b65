"""对外 API 服务模块。

提供简化的函数接口供上层应用（CLI、Web 服务等）调用。
"""

from typing import Any, Dict, Optional

from cicd_agent.agents.orchestrator import AgentConfig, ConversationOrchestrator
from cicd_agent.config.settings import settings
from cicd_agent.domain.cancellation import CancelToken
from cicd_agent.domain.exceptions import ToolLoopExceededError
from cicd_agent.infrastructure.logging.logger import logger
from cicd_agent.infrastructure.retry import RetryPolicy
from cicd_agent.infrastructure.storage.json_store import create_conversation_store
from cicd_agent.integrations import create_services
from cicd_agent.providers import create_provider
from cicd_agent.tools.catalog import build_default_registry
from cicd_agent.tools.executor import ToolExecutor

LOOP_EXCEEDED_TEXT = "Unable to complete request: the agent needed more tool rounds than allowed."

_orchestrator: Optional[ConversationOrchestrator] = None


def build_orchestrator(cfg=None, services=None, provider_client=None, store=None) -> ConversationOrchestrator:
    """按配置装配编排器；各参数可单独替换，便于测试。"""

    cfg = cfg or settings
    registry = build_default_registry(services or create_services(cfg=cfg), cfg)
    return ConversationOrchestrator(
        registry=registry,
        provider_client=provider_client or create_provider(cfg=cfg),
        store=store or create_conversation_store(cfg.session_store, cfg.storage_root),
        tool_executor=ToolExecutor(
            registry,
            max_workers=cfg.max_parallel_tools,
            batch_timeout=cfg.tool_batch_timeout,
        ),
        config=AgentConfig.from_settings(cfg),
        retry_policy=RetryPolicy.from_settings(cfg),
    )


def get_default_orchestrator() -> ConversationOrchestrator:
    """获取默认编排器实例（单例）。"""
    global _orchestrator
    if _orchestrator is None:
        _orchestrator = build_orchestrator()
    return _orchestrator


def set_default_orchestrator(orchestrator: Optional[ConversationOrchestrator]) -> None:
    global _orchestrator
    _orchestrator = orchestrator


def run_turn(
    user_text: str,
    continuation_token: Optional[str] = None,
    cancel: Optional[CancelToken] = None,
) -> Dict[str, Any]:
    """运行一个对话回合。

    Args:
        user_text: 用户输入内容
        continuation_token: 上一回合返回的 token（可选，不提供则新建会话）
        cancel: 外部取消信号（可选）

    Returns:
        包含 response_text、continuation_token、tool_rounds 的字典。
        工具轮数超限时 response_text 为 "Unable to complete request..."，
        并附带 error="TOOL_LOOP_EXCEEDED"，continuation_token 保持原值。

    Raises:
        其余 domain.exceptions 中定义的回合级异常
    """
    orchestrator = get_default_orchestrator()
    try:
        outcome = orchestrator.run_turn(user_text, continuation_token=continuation_token, cancel=cancel)
    except ToolLoopExceededError as e:
        logger.warning(
            "Tool loop exceeded",
            extra={"extra": {"max_rounds": e.extra.get("max_rounds"), "continuation_token": continuation_token}},
        )
        return {
            "response_text": LOOP_EXCEEDED_TEXT,
            "continuation_token": continuation_token,
            "tool_rounds": e.extra.get("max_rounds"),
            "error": e.code,
        }
    return {
        "response_text": outcome.response_text,
        "continuation_token": outcome.continuation_token,
        "tool_rounds": outcome.rounds,
        "session_id": outcome.session_id,
    }
