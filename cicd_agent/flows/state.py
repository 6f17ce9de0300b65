"""State definition for the orchestration graph."""

from __future__ import annotations

from typing import Any, List, Optional, TypedDict

from cicd_agent.domain.cancellation import CancelToken
from cicd_agent.domain.models import ChatMessage
from cicd_agent.infrastructure.trace import TurnTraceRecorder
from cicd_agent.tools.definitions import ToolCall, ToolResult


class TurnState(TypedDict, total=False):
    """State shared across graph nodes for a single turn.

    messages holds the full request context (system prompt, trimmed history
    and everything produced in this turn); new_turns only the messages
    produced in this turn, which are persisted when the turn completes.
    """

    messages: List[ChatMessage]
    new_turns: List[ChatMessage]
    pending_calls: List[ToolCall]
    tool_results: List[ToolResult]
    rounds: int
    final_text: Optional[str]
    response_id: Optional[str]
    usage: Optional[Any]
    trace_id: str
    cancel: CancelToken
    trace: TurnTraceRecorder
