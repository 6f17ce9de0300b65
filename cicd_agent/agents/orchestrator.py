"""会话编排器核心模块。

一次 run_turn 的流程：

1. 根据 continuation token 恢复会话状态（没有 token 则新建会话）。
2. 裁剪历史、注入系统提示词，追加本轮用户输入。
3. 运行 backend ⇄ tools 状态图，直到后端给出最终文本。
4. 保存新的会话快照，并签发新的 continuation token。

回合中途失败（轮数超限、协议错误、取消等）时不保存任何状态，
调用方仍可以用旧 token 重试。
"""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional
from uuid import uuid4
import logging
import time

from cicd_agent.config.settings import settings
from cicd_agent.domain.cancellation import CancelToken
from cicd_agent.domain.conversation import ConversationState, ConversationStore, is_valid_token
from cicd_agent.domain.exceptions import BusinessError, ValidationError
from cicd_agent.domain.models import ChatMessage
from cicd_agent.flows.graph import GraphDeps, build_graph, initial_state, recursion_limit_for
from cicd_agent.infrastructure.logging.logger import logger
from cicd_agent.infrastructure.retry import RetryPolicy
from cicd_agent.infrastructure.trace import TurnTraceRecorder
from cicd_agent.prompts import load_system_prompt
from cicd_agent.providers.base import ProviderClient
from cicd_agent.tools.definitions import ToolResult
from cicd_agent.tools.executor import ToolExecutor
from cicd_agent.tools.registry import ToolRegistry


@dataclass
class AgentConfig:
    agent_type: str = "cicd-agent"
    provider: str = "openai"
    model: str = "cicd-agent"
    max_tool_rounds: int = 8  # 超过后抛出 ToolLoopExceededError
    max_context_messages: int = 40
    temperature: float = 0.2
    prompt_locale: str = "zh"
    trace_dir: Optional[str] = None

    @classmethod
    def from_settings(cls, cfg) -> "AgentConfig":
        return cls(
            provider=cfg.default_provider,
            model=cfg.default_model,
            max_tool_rounds=cfg.max_tool_rounds,
            max_context_messages=cfg.max_context_messages,
            prompt_locale=cfg.prompt_locale,
            trace_dir=cfg.trace_dir,
        )


@dataclass
class TurnOutcome:
    response_text: str
    continuation_token: str
    session_id: str
    rounds: int
    tool_results: List[ToolResult] = field(default_factory=list)
    usage: Optional[Any] = None


def trim_history(turns: List[ChatMessage], limit: int) -> List[ChatMessage]:
    """保留最近 limit 条消息，并从用户消息处截断。

    截断点总是落在一条 user 消息上，工具结果不会与对应的工具调用分离。
    窗口内没有 user 消息时，从最后一条 user 消息开始保留（可能超过 limit）。
    """

    if len(turns) <= limit:
        return list(turns)
    start = len(turns) - limit
    for idx in range(start, len(turns)):
        if turns[idx].role == "user":
            return list(turns[idx:])
    for idx in range(start - 1, -1, -1):
        if turns[idx].role == "user":
            return list(turns[idx:])
    return list(turns[start:])


class ConversationOrchestrator:
    def __init__(
        self,
        registry: ToolRegistry,
        provider_client: ProviderClient,
        store: ConversationStore,
        tool_executor: Optional[ToolExecutor] = None,
        config: Optional[AgentConfig] = None,
        retry_policy: Optional[RetryPolicy] = None,
    ):
        self._registry = registry
        self._provider_client = provider_client
        self._store = store
        self._tool_executor = tool_executor or ToolExecutor(
            registry,
            max_workers=settings.max_parallel_tools,
            batch_timeout=settings.tool_batch_timeout,
        )
        self._config = config or AgentConfig(provider=getattr(provider_client, "name", "openai"))
        self._graph = build_graph(
            GraphDeps(
                provider=provider_client,
                registry=registry,
                tool_executor=self._tool_executor,
                provider_name=self._config.provider,
                model=self._config.model,
                temperature=self._config.temperature,
                max_tool_rounds=self._config.max_tool_rounds,
                retry_policy=retry_policy or RetryPolicy(),
            )
        )

    @property
    def config(self) -> AgentConfig:
        return self._config

    def run_turn(
        self,
        user_text: str,
        continuation_token: Optional[str] = None,
        cancel: Optional[CancelToken] = None,
    ) -> TurnOutcome:
        """执行一个完整的对话回合。

        Args:
            user_text: 用户输入
            continuation_token: 上一回合返回的 token（可选，不提供则新建会话）
            cancel: 外部取消信号（可选）

        Returns:
            TurnOutcome，包含最终回复与新的 continuation token

        Raises:
            ToolLoopExceededError / ToolProtocolError / UnknownToolError /
            TurnCancelledError / ConversationNotFoundError
        """
        if not user_text or not user_text.strip():
            raise ValidationError(code="EMPTY_INPUT", message="user_text must not be empty")

        start_time = time.time()
        cancel = cancel or CancelToken()
        trace_id = f"tr-{uuid4().hex}"
        log_ctx: Dict[str, Any] = {"trace_id": trace_id, "agent_type": self._config.agent_type}

        # 1. 恢复或新建会话
        if continuation_token:
            state = self._store.load(continuation_token)
        else:
            state = ConversationState(session_id=f"s-{uuid4().hex}", continuation_token="")
            self._log(logging.INFO, "Created new session", log_ctx, session_id=state.session_id)
        log_ctx["session_id"] = state.session_id

        # 2. 裁剪上下文并构造消息
        history = trim_history(state.turns, self._config.max_context_messages)
        if len(history) < len(state.turns):
            self._log(
                logging.INFO,
                "Truncated context",
                log_ctx,
                max_context=self._config.max_context_messages,
                trimmed=len(state.turns) - len(history),
            )
        system_prompt = load_system_prompt(self._config.agent_type, self._config.prompt_locale)
        user_msg = ChatMessage(role="user", content=user_text, meta={"trace_id": trace_id})
        messages = [ChatMessage(role="system", content=system_prompt), *history, user_msg]

        # 3. 运行状态图
        trace = TurnTraceRecorder(
            self._config.trace_dir,
            trace_id,
            session_id=state.session_id,
            max_rounds=self._config.max_tool_rounds,
        )
        try:
            final = self._graph.invoke(
                initial_state(messages, [user_msg], trace_id=trace_id, cancel=cancel, trace=trace),
                config={"recursion_limit": recursion_limit_for(self._config.max_tool_rounds)},
            )
        except BusinessError as exc:
            trace.finalize(f"error:{exc.code}")
            self._log(logging.WARNING, "Turn aborted", log_ctx, code=exc.code, error=exc.message)
            raise

        # 4. 保存会话快照
        token = final.get("response_id")
        if not is_valid_token(token) or token == continuation_token:
            token = f"ct-{uuid4().hex}"
        state.turns = [*state.turns, *final["new_turns"]]
        state.continuation_token = token
        state.updated_at = datetime.now(timezone.utc)
        self._store.save(state)

        response_text = final.get("final_text") or ""
        trace.finalize("success", response_text)
        self._log(
            logging.INFO,
            "Completed turn",
            log_ctx,
            rounds=final["rounds"],
            tool_calls=len(final["tool_results"]),
            elapsed_seconds=round(time.time() - start_time, 2),
        )
        return TurnOutcome(
            response_text=response_text,
            continuation_token=token,
            session_id=state.session_id,
            rounds=final["rounds"],
            tool_results=list(final["tool_results"]),
            usage=final.get("usage"),
        )

    @staticmethod
    def _log(level: int, message: str, log_ctx: Dict[str, Any], **fields: Any) -> None:
        payload = dict(log_ctx)
        payload.update(fields)
        logger.log(level, message, extra={"extra": payload})
