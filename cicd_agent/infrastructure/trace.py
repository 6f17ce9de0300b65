"""回合 trace 记录器。"""

from __future__ import annotations

import json
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, List, Optional


def _utcnow() -> str:
    return datetime.now(timezone.utc).isoformat()


class TurnTraceRecorder:
    """把单个对话回合的关键步骤写入 <trace_dir>/<trace_id>.json，便于审计。

    trace_dir 为空时所有方法都是空操作。
    """

    def __init__(self, trace_dir: Optional[str], trace_id: str, *, session_id: str, max_rounds: int):
        self.path: Optional[Path] = None
        self.data: Dict[str, Any] = {
            "trace_id": trace_id,
            "session_id": session_id,
            "max_rounds": max_rounds,
            "started_at": _utcnow(),
            "finished_at": None,
            "final_status": None,
            "final_reply_preview": None,
            "steps": [],
        }
        if trace_dir:
            root = Path(trace_dir)
            root.mkdir(parents=True, exist_ok=True)
            self.path = root / f"{trace_id}.json"
            self._flush()

    @property
    def enabled(self) -> bool:
        return self.path is not None

    def _flush(self) -> None:
        if self.path is not None:
            self.path.write_text(json.dumps(self.data, ensure_ascii=False, indent=2, default=str), encoding="utf-8")

    def record_backend_step(self, round_no: int, *, tool_calls: List[str], summary: str) -> None:
        if not self.enabled:
            return
        self.data["steps"].append(
            {
                "type": "backend",
                "round": round_no,
                "timestamp": _utcnow(),
                "tool_calls": tool_calls,
                "response_summary": summary,
            }
        )
        self._flush()

    def record_tool_step(
        self,
        round_no: int,
        *,
        tool_name: str,
        call_id: str,
        args: Dict[str, Any],
        ok: bool,
        error: Optional[Dict[str, Any]] = None,
    ) -> None:
        if not self.enabled:
            return
        entry: Dict[str, Any] = {
            "type": "tool",
            "round": round_no,
            "timestamp": _utcnow(),
            "tool_name": tool_name,
            "call_id": call_id,
            "args": _trim_args(args),
            "ok": ok,
        }
        if error:
            entry["error"] = error
        self.data["steps"].append(entry)
        self._flush()

    def finalize(self, status: str, final_reply: str = "") -> None:
        if not self.enabled:
            return
        self.data["finished_at"] = _utcnow()
        self.data["final_status"] = status
        self.data["final_reply_preview"] = (final_reply or "")[:400]
        self._flush()


def _trim_args(args: Any) -> Any:
    if not isinstance(args, dict):
        return str(args)[:200]
    trimmed: Dict[str, Any] = {}
    for key, value in args.items():
        if isinstance(value, str) and len(value) > 200:
            trimmed[key] = value[:200] + "..."
        else:
            trimmed[key] = value
    return trimmed
