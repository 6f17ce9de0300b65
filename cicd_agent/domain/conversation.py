import re
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import List, Optional, Protocol

from .models import ChatMessage


TOKEN_PATTERN = re.compile(r"[A-Za-z0-9][A-Za-z0-9_.\-]{0,199}")


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def is_valid_token(token: Optional[str]) -> bool:
    """continuation token 同时用作存储键（文件名），只允许安全字符。"""
    return bool(token) and TOKEN_PATTERN.fullmatch(token) is not None


@dataclass
class ConversationState:
    """一次编排会话的完整上下文。

    turns 按时间顺序保存用户输入、后端输出（含工具调用）和工具结果，
    不包含 system prompt（每轮由编排器重新注入）。
    """

    session_id: str
    continuation_token: str
    turns: List[ChatMessage] = field(default_factory=list)
    created_at: datetime = field(default_factory=_utcnow)
    updated_at: datetime = field(default_factory=_utcnow)


class ConversationStore(Protocol):
    def save(self, state: ConversationState) -> None:
        ...

    def load(self, token: str) -> ConversationState:
        ...

    def discard(self, token: str) -> None:
        ...
