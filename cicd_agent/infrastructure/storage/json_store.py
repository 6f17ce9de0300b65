import json
import os
import threading
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict
from uuid import uuid4

from cicd_agent.config.settings import settings
from cicd_agent.domain.conversation import ConversationState, ConversationStore, is_valid_token
from cicd_agent.domain.exceptions import BusinessError, ConversationNotFoundError
from cicd_agent.domain.models import ChatMessage
from cicd_agent.tools.definitions import ToolCall

def _iso(value: datetime) -> str:
    return value.astimezone(timezone.utc).isoformat().replace("+00:00", "Z")


def _parse_iso(value: str) -> datetime:
    return datetime.fromisoformat(str(value).replace("Z", "+00:00"))


def message_to_dict(message: ChatMessage) -> Dict[str, Any]:
    data: Dict[str, Any] = {"role": message.role, "content": message.content, "meta": message.meta}
    if message.tool_calls:
        data["tool_calls"] = [
            {"id": call.id, "name": call.name, "arguments": call.arguments} for call in message.tool_calls
        ]
    if message.tool_call_id:
        data["tool_call_id"] = message.tool_call_id
    return data


def message_from_dict(data: Dict[str, Any]) -> ChatMessage:
    calls = [
        ToolCall(id=c["id"], name=c["name"], arguments=c.get("arguments") or {})
        for c in data.get("tool_calls") or []
    ]
    return ChatMessage(
        role=data["role"],
        content=data.get("content") or "",
        meta=data.get("meta") or {},
        tool_calls=calls or None,
        tool_call_id=data.get("tool_call_id"),
    )


def state_to_dict(state: ConversationState) -> Dict[str, Any]:
    return {
        "session_id": state.session_id,
        "continuation_token": state.continuation_token,
        "created_at": _iso(state.created_at),
        "updated_at": _iso(state.updated_at),
        "turns": [message_to_dict(m) for m in state.turns],
    }


def state_from_dict(data: Dict[str, Any]) -> ConversationState:
    return ConversationState(
        session_id=data["session_id"],
        continuation_token=data["continuation_token"],
        turns=[message_from_dict(m) for m in data.get("turns") or []],
        created_at=_parse_iso(data["created_at"]),
        updated_at=_parse_iso(data["updated_at"]),
    )


class InMemoryConversationStore(ConversationStore):
    """进程内存储；保存的是快照副本，调用方后续修改不会影响已存状态。"""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._states: Dict[str, Dict[str, Any]] = {}

    def save(self, state: ConversationState) -> None:
        snapshot = state_to_dict(state)
        with self._lock:
            self._states[state.continuation_token] = snapshot

    def load(self, token: str) -> ConversationState:
        with self._lock:
            snapshot = self._states.get(token)
        if snapshot is None:
            raise ConversationNotFoundError(token)
        return state_from_dict(snapshot)

    def discard(self, token: str) -> None:
        with self._lock:
            self._states.pop(token, None)


class JsonConversationStore(ConversationStore):
    """每个 continuation token 一个 JSON 文件：<root>/sessions/<token>.json。"""

    def __init__(self, root: str | Path | None = None):
        self._root = Path(root or settings.storage_root).resolve()
        self._sessions = self._root / "sessions"
        self._sessions.mkdir(parents=True, exist_ok=True)

    def _path(self, token: str) -> Path:
        if not is_valid_token(token):
            raise ConversationNotFoundError(token)
        return self._sessions / f"{token}.json"

    def save(self, state: ConversationState) -> None:
        path = self._path(state.continuation_token)
        tmp_path = self._sessions / f".{state.continuation_token}.{uuid4().hex}.tmp"
        try:
            tmp_path.write_text(json.dumps(state_to_dict(state), ensure_ascii=False, default=str), encoding="utf-8")
            os.replace(tmp_path, path)
        except OSError as e:
            raise BusinessError(code="STORE_WRITE_ERROR", message=str(e))

    def load(self, token: str) -> ConversationState:
        path = self._path(token)
        if not path.exists():
            raise ConversationNotFoundError(token)
        try:
            data = json.loads(path.read_text(encoding="utf-8"))
            return state_from_dict(data)
        except (OSError, ValueError, KeyError) as e:
            raise BusinessError(code="STORE_READ_ERROR", message=str(e), continuation_token=token)

    def discard(self, token: str) -> None:
        try:
            self._path(token).unlink(missing_ok=True)
        except ConversationNotFoundError:
            return
        except OSError as e:
            raise BusinessError(code="STORE_DELETE_ERROR", message=str(e))


def create_conversation_store(kind: str | None = None, root: str | Path | None = None) -> ConversationStore:
    selected = (kind or settings.session_store).lower()
    if selected == "memory":
        return InMemoryConversationStore()
    return JsonConversationStore(root)
