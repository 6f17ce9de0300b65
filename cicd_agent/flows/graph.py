"""LangGraph construction and node implementations.

backend ──(tool calls)──> tools ──> backend ... ──(final text)──> END
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Dict, List

from langgraph.graph import END, StateGraph
from langgraph.graph.state import CompiledStateGraph

from cicd_agent.domain.exceptions import ToolLoopExceededError, ToolProtocolError
from cicd_agent.domain.models import ChatMessage, ChatRequest
from cicd_agent.flows.state import TurnState
from cicd_agent.infrastructure.logging.logger import logger
from cicd_agent.infrastructure.retry import RetryPolicy, call_with_retries
from cicd_agent.providers.base import ProviderClient
from cicd_agent.tools.definitions import ToolCall
from cicd_agent.tools.executor import ToolExecutor, summarize_arguments
from cicd_agent.tools.registry import ToolRegistry


@dataclass
class GraphDeps:
    provider: ProviderClient
    registry: ToolRegistry
    tool_executor: ToolExecutor
    provider_name: str
    model: str
    temperature: float
    max_tool_rounds: int
    retry_policy: RetryPolicy


def backend_node(state: TurnState, deps: GraphDeps) -> TurnState:
    cancel = state["cancel"]
    cancel.raise_if_cancelled("backend")
    round_no = state["rounds"] + 1
    logger.info(
        "backend_node.start",
        extra={"extra": {"trace_id": state["trace_id"], "round": round_no, "messages": len(state["messages"])}},
    )
    req = ChatRequest(
        provider=deps.provider_name,
        model=deps.model,
        messages=list(state["messages"]),
        temperature=deps.temperature,
        tools=list(deps.registry.list_descriptors()),
        tool_choice="auto",
    )
    result = call_with_retries(
        lambda: deps.provider.chat(req),
        policy=deps.retry_policy,
        operation=f"{deps.provider_name}.chat",
        cancel=cancel,
    )
    if not result.choices:
        raise ToolProtocolError("Backend returned no choices", trace_id=state["trace_id"])
    message = result.choices[0].message
    state["response_id"] = result.response_id or state.get("response_id")
    state["usage"] = result.usage

    if message.tool_calls:
        if state["rounds"] >= deps.max_tool_rounds:
            raise ToolLoopExceededError(deps.max_tool_rounds)
        assistant = ChatMessage(
            role="assistant",
            content=message.content or "",
            tool_calls=list(message.tool_calls),
            meta={"round": round_no},
        )
        state["pending_calls"] = list(message.tool_calls)
        state["trace"].record_backend_step(
            round_no, tool_calls=[c.name for c in message.tool_calls], summary=(message.content or "")[:200]
        )
        logger.info(
            "backend_node.tool_decision",
            extra={"extra": {"trace_id": state["trace_id"], "tools": [c.name for c in message.tool_calls]}},
        )
    else:
        text = (message.content or "").strip()
        if not text:
            raise ToolProtocolError("Backend returned neither text nor tool calls", trace_id=state["trace_id"])
        assistant = ChatMessage(role="assistant", content=message.content, meta={"round": round_no})
        state["final_text"] = message.content
        state["pending_calls"] = []
        state["trace"].record_backend_step(round_no, tool_calls=[], summary=text[:200])
        logger.info("backend_node.final_decision", extra={"extra": {"trace_id": state["trace_id"]}})

    state["messages"].append(assistant)
    state["new_turns"].append(assistant)
    return state


def tools_node(state: TurnState, deps: GraphDeps) -> TurnState:
    calls = state.get("pending_calls") or []
    round_no = state["rounds"] + 1
    logger.info(
        "tools_node.execute",
        extra={"extra": {
            "trace_id": state["trace_id"],
            "round": round_no,
            "calls": [f"{c.name}({summarize_arguments(c.arguments)})" for c in calls],
        }},
    )
    results = deps.tool_executor.execute_batch(calls, cancel=state["cancel"], trace_id=state["trace_id"])
    by_id: Dict[str, ToolCall] = {c.id: c for c in calls}
    for result in results:
        call = by_id[result.call_id]
        state["trace"].record_tool_step(
            round_no,
            tool_name=result.name,
            call_id=result.call_id,
            args=call.arguments,
            ok=result.ok,
            error=result.error,
        )
        tool_message = ChatMessage(
            role="tool",
            content=result.content,
            tool_call_id=result.call_id,
            meta={"tool": result.name, "ok": result.ok, "round": round_no},
        )
        state["messages"].append(tool_message)
        state["new_turns"].append(tool_message)
    state["tool_results"].extend(results)
    state["pending_calls"] = []
    state["rounds"] = round_no
    logger.info(
        "tools_node.result",
        extra={"extra": {"trace_id": state["trace_id"], "round": round_no, "failed": sum(1 for r in results if not r.ok)}},
    )
    return state


def backend_router(state: TurnState) -> str:
    if state.get("pending_calls"):
        return "tools"
    return "done"


def recursion_limit_for(max_tool_rounds: int) -> int:
    # 每轮 backend + tools 两步，外加最后一次 backend
    return 2 * max_tool_rounds + 5


def build_graph(deps: GraphDeps) -> CompiledStateGraph:
    graph = StateGraph(TurnState)
    graph.add_node("backend", lambda s: backend_node(s, deps))
    graph.add_node("tools", lambda s: tools_node(s, deps))
    graph.set_entry_point("backend")
    graph.add_conditional_edges("backend", backend_router, {"tools": "tools", "done": END})
    graph.add_edge("tools", "backend")
    return graph.compile()


def initial_state(messages: List[ChatMessage], new_turns: List[ChatMessage], **fields) -> TurnState:
    state: TurnState = {
        "messages": messages,
        "new_turns": new_turns,
        "pending_calls": [],
        "tool_results": [],
        "rounds": 0,
        "final_text": None,
        "response_id": None,
        "usage": None,
    }
    state.update(fields)
    return state
